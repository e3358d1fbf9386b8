"""
Composition Root
================
Builds every service and provider adapter once, with their clients injected,
and hands the bundle to the FastAPI app via `app.state.container`.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx
import stripe

from config import PaypalConfig, StripeConfig, VietQrConfig, VnpayConfig
from payments import (
    CodAdapter,
    PaypalAdapter,
    ReconciliationService,
    StripeAdapter,
    VietQrAdapter,
    VnpayAdapter,
)
from services import (
    ActivityRecorder,
    CartService,
    FulfillmentHooks,
    OrderService,
    RealtimeNotifier,
    StaffAssigner,
)
from storage.repositories import IStore


@dataclass
class Container:
    store: IStore
    notifier: RealtimeNotifier
    hooks: FulfillmentHooks
    orders: OrderService
    reconciler: ReconciliationService
    vnpay: VnpayAdapter
    paypal: PaypalAdapter
    stripe: StripeAdapter
    vietqr: VietQrAdapter
    cod: CodAdapter


def build_container(
    store: IStore,
    http: httpx.AsyncClient,
    stripe_client: Optional[stripe.StripeClient] = None,
    notifier: Optional[RealtimeNotifier] = None,
    vnpay_config: Optional[VnpayConfig] = None,
    paypal_config: Optional[PaypalConfig] = None,
    stripe_config: Optional[StripeConfig] = None,
    vietqr_config: Optional[VietQrConfig] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Container:
    clock = clock or datetime.now
    notifier = notifier or RealtimeNotifier()
    stripe_config = stripe_config or StripeConfig.from_env()
    if stripe_client is None and stripe_config.secret_key:
        stripe_client = stripe.StripeClient(stripe_config.secret_key)

    hooks = FulfillmentHooks(
        cart=CartService(store),
        assigner=StaffAssigner(store, clock=clock),
        activity=ActivityRecorder(store),
        notifier=notifier,
    )
    reconciler = ReconciliationService(store, hooks)

    return Container(
        store=store,
        notifier=notifier,
        hooks=hooks,
        orders=OrderService(store, hooks),
        reconciler=reconciler,
        vnpay=VnpayAdapter(store, reconciler, vnpay_config or VnpayConfig.from_env(), clock=clock),
        paypal=PaypalAdapter(store, reconciler, paypal_config or PaypalConfig.from_env(), http, clock=clock),
        stripe=StripeAdapter(store, reconciler, stripe_config, client=stripe_client, clock=clock),
        vietqr=VietQrAdapter(store, reconciler, vietqr_config or VietQrConfig.from_env(), notifier=notifier, clock=clock),
        cod=CodAdapter(store, reconciler, hooks=hooks, clock=clock),
    )
