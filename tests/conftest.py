"""Shared fixtures: in-memory store, fixed clock, fake provider clients."""

import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

import httpx
import pytest

from config import PaypalConfig, StripeConfig, VietQrConfig, VnpayConfig, database_config
from payments import (
    CodAdapter,
    PaypalAdapter,
    ReconciliationService,
    StripeAdapter,
    VietQrAdapter,
    VnpayAdapter,
)
from payments.vnpay import sign_params
from schemas.orders import CreateOrderRequest, OrderItemInput, Product, StaffShift
from schemas.payments import Payment
from services import (
    ActivityRecorder,
    CartService,
    FulfillmentHooks,
    OrderService,
    RealtimeNotifier,
    StaffAssigner,
)
from storage.memory import InMemoryStore

VNP_SECRET = "TESTHASHSECRET0123456789"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
PAYPAL_ORDER_ID = "5O190127TN364715T"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int = 1) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier(RealtimeNotifier):

    def __init__(self):
        super().__init__()
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def emit(self, room: str, event: str, payload: dict[str, Any]) -> int:
        self.sent.append((room, event, payload))
        return 1


class _FakePaymentIntents:

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.error: Optional[Exception] = None

    def create(self, params: dict[str, Any]) -> dict[str, Any]:
        if self.error is not None:
            raise self.error
        self.calls.append(params)
        intent_id = f"pi_test_{len(self.calls)}"
        return {"id": intent_id, "client_secret": f"{intent_id}_secret_abc", "status": "requires_payment_method"}


class FakeStripeClient:
    def __init__(self):
        self.payment_intents = _FakePaymentIntents()


class PaypalSandbox:
    """httpx.MockTransport handler imitating the PayPal REST endpoints used"""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.verification_status = "SUCCESS"
        self.capture_status_code = 201
        self.capture_value = "100000.00"

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AAtoken", "expires_in": 32400})

        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={
                "id": PAYPAL_ORDER_ID,
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{PAYPAL_ORDER_ID}"},
                    {"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={PAYPAL_ORDER_ID}"},
                ],
            })

        if path.endswith("/capture"):
            if self.capture_status_code >= 400:
                return httpx.Response(self.capture_status_code, json={"name": "UNPROCESSABLE_ENTITY"})
            order_id = path.split("/")[-2]
            return httpx.Response(201, json={
                "id": order_id,
                "status": "COMPLETED",
                "purchase_units": [{
                    "reference_id": "ORDER-1",
                    "payments": {"captures": [{
                        "id": "3C679366HH908993F",
                        "status": "COMPLETED",
                        "amount": {"currency_code": "USD", "value": self.capture_value},
                    }]},
                }],
            })

        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})

        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

    def last_json(self, path: str) -> dict[str, Any]:
        for request in reversed(self.requests):
            if request.url.path == path:
                return json.loads(request.content)
        raise AssertionError(f"no request to {path}")


# =============================================================================
# CORE FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def no_database(monkeypatch):
    monkeypatch.setattr(database_config, "DATABASE_URL", None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 15, 10, 30, 0))


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.products.add(Product(product_id=1, name="Burger", price=Decimal("50000")))
    store.products.add(Product(product_id=2, name="Fries", price=Decimal("25000")))
    store.products.add(Product(product_id=3, name="Retired Combo", price=Decimal("99000"), is_active=False))
    return store


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def hooks(store, notifier, clock) -> FulfillmentHooks:
    return FulfillmentHooks(
        cart=CartService(store),
        assigner=StaffAssigner(store, clock=clock),
        activity=ActivityRecorder(store),
        notifier=notifier,
    )


@pytest.fixture
def reconciler(store, hooks) -> ReconciliationService:
    return ReconciliationService(store, hooks)


@pytest.fixture
def order_service(store, hooks) -> OrderService:
    return OrderService(store, hooks)


@pytest.fixture
def on_duty(store):
    store.shifts.add(StaffShift(
        shift_id=1,
        staff_id=7,
        shift_date="2025-01-15",
        start_time="08:00:00",
        end_time="17:00:00",
    ))
    return 7


@pytest.fixture
async def order(order_service):
    """Customer 1, two burgers: 100000 VND"""
    return await order_service.create_order(
        1,
        CreateOrderRequest(items=[OrderItemInput(product_id=1, quantity=2)]),
    )


# =============================================================================
# PROVIDER FIXTURES
# =============================================================================

@pytest.fixture
def vnpay_config() -> VnpayConfig:
    return VnpayConfig(
        tmn_code="FATFOOD1",
        hash_secret=VNP_SECRET,
        return_url="http://localhost:5173/payment/vnpay-return",
    )


@pytest.fixture
def vnpay(store, reconciler, vnpay_config, clock) -> VnpayAdapter:
    return VnpayAdapter(store, reconciler, vnpay_config, clock=clock)


@pytest.fixture
def paypal_sandbox() -> PaypalSandbox:
    return PaypalSandbox()


@pytest.fixture
def paypal_config() -> PaypalConfig:
    return PaypalConfig(client_id="client-id", client_secret="client-secret", webhook_id="WH-123")


@pytest.fixture
async def paypal(store, reconciler, paypal_config, paypal_sandbox, clock):
    async with httpx.AsyncClient(transport=httpx.MockTransport(paypal_sandbox)) as http:
        yield PaypalAdapter(store, reconciler, paypal_config, http, clock=clock)


@pytest.fixture
def stripe_client() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(secret_key="sk_test_123", webhook_secret=STRIPE_WEBHOOK_SECRET, currency="vnd")


@pytest.fixture
def stripe_adapter(store, reconciler, stripe_config, stripe_client, clock) -> StripeAdapter:
    return StripeAdapter(store, reconciler, stripe_config, client=stripe_client, clock=clock)


@pytest.fixture
def vietqr_config() -> VietQrConfig:
    return VietQrConfig(bank="VCB", account_no="0123456789", account_name="FATFOOD SHOP")


@pytest.fixture
def vietqr(store, reconciler, vietqr_config, notifier, clock) -> VietQrAdapter:
    return VietQrAdapter(store, reconciler, vietqr_config, notifier=notifier, clock=clock)


@pytest.fixture
def cod(store, reconciler, hooks, clock) -> CodAdapter:
    return CodAdapter(store, reconciler, hooks=hooks, clock=clock)


# =============================================================================
# HELPERS
# =============================================================================

def vnpay_callback(
    payment: Payment,
    response_code: str = "00",
    amount: Optional[str] = None,
    secret: str = VNP_SECRET,
) -> dict[str, str]:
    """Query parameters of a VNPAY return/IPN call, signed like VNPAY does"""
    params = {
        "vnp_Amount": amount or str(int(payment.amount * 100)),
        "vnp_BankCode": "NCB",
        "vnp_BankTranNo": "VNP14226112",
        "vnp_CardType": "ATM",
        "vnp_OrderInfo": f"Thanh toan cho ma GD:{payment.order_id}",
        "vnp_PayDate": "20250115103500",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": "FATFOOD1",
        "vnp_TransactionNo": "14226112",
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": payment.txn_ref,
    }
    params["vnp_SecureHash"] = sign_params(params, secret)
    return params
