"""
Provider Adapter Contract
=========================
Every provider adapter exposes the same three operations:

- create_payment_request(order_id, ...) -> PaymentRequest
- verify_callback(request) -> bool
- reconcile(event) -> ReconciliationResult

plus shared helpers for loading a payable order and writing the `initiated`
ledger row.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

import structlog

from database import log_event
from errors import NotFoundError
from payments.reconciliation import ReconciliationService
from schemas.orders import Order
from schemas.payments import (
    CallbackRequest,
    NewPayment,
    Payment,
    PaymentProvider,
    PaymentRequest,
    ProviderEvent,
    ReconciliationResult,
)
from storage.repositories import IStore


def format_timestamp(moment: datetime) -> str:
    """yyyyMMddHHmmss"""
    return moment.strftime("%Y%m%d%H%M%S")


class PaymentAdapter(ABC):
    """Base class for VNPAY / PayPal / Stripe / VietQR / COD adapters"""

    provider: PaymentProvider

    def __init__(
        self,
        store: IStore,
        reconciler: ReconciliationService,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self._clock = clock or datetime.now
        self._logger = structlog.get_logger().bind(component="payments", provider=self.provider.value)

    @abstractmethod
    async def create_payment_request(self, order_id: int, **options: Any) -> PaymentRequest:
        pass

    @abstractmethod
    async def verify_callback(self, request: CallbackRequest) -> bool:
        pass

    async def reconcile(self, event: ProviderEvent) -> ReconciliationResult:
        return await self.reconciler.reconcile(event)

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    async def load_payable_order(self, order_id: int, user_id: Optional[int] = None) -> Order:
        """Fetch the order, scoped to its owner when `user_id` is given."""
        order = await self.store.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND", metadata={"order_id": order_id})
        order.ensure_payable()
        return order

    async def record_initiated(
        self,
        order: Order,
        txn_ref: str,
        currency: str,
        meta: Optional[dict[str, Any]] = None,
        amount: Optional[Decimal] = None,
        store: Optional[IStore] = None,
    ) -> Payment:
        payment = await (store or self.store).payments.create(NewPayment(
            order_id=order.order_id,
            provider=self.provider,
            amount=order.total_amount if amount is None else amount,
            currency=currency,
            txn_ref=txn_ref,
            meta={"created_at": self._clock().isoformat(), **(meta or {})},
        ))
        await log_event(
            order_id=order.order_id,
            event_type="PAYMENT_INITIATED",
            payload={
                "provider": self.provider.value,
                "txn_ref": txn_ref,
                "payment_id": payment.payment_id,
                "amount": str(payment.amount),
            },
            component="payments",
        )
        return payment

    def to_request(self, payment: Payment, **fields: Any) -> PaymentRequest:
        return PaymentRequest(
            provider=self.provider,
            payment_id=payment.payment_id,
            order_id=payment.order_id,
            txn_ref=payment.txn_ref,
            amount=payment.amount,
            currency=payment.currency,
            **fields,
        )
