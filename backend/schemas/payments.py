# schemas/payments.py
# ============================================================================
# FATFOOD BACKEND — PAYMENT LEDGER SCHEMAS
# ============================================================================
# Payment ledger rows, provider events and reconciliation results
# ============================================================================

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from errors import DuplicateEventError, InvalidStateError
from schemas.orders import OrderStatus


class PaymentProvider(str, Enum):
    VNPAY = "vnpay"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    VIETQR = "vietqr"
    COD = "cod"


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED})


class Payment(BaseModel):
    """One payment attempt, keyed by a provider transaction reference"""
    payment_id: int
    order_id: int
    provider: PaymentProvider
    amount: Decimal
    currency: str
    txn_ref: str
    status: PaymentStatus = PaymentStatus.INITIATED
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    def with_meta(self, **updates: Any) -> "Payment":
        """Append audit metadata; allowed in any status"""
        return self.model_copy(update={
            "meta": {**self.meta, **updates},
            "updated_at": datetime.now(timezone.utc),
        })

    def settle(self, status: PaymentStatus, **meta: Any) -> "Payment":
        """Move initiated -> success | failed, exactly once"""
        if status == PaymentStatus.INITIATED:
            raise ValueError("settle() needs a terminal status")
        if self.status == PaymentStatus.SUCCESS and status == PaymentStatus.SUCCESS:
            raise DuplicateEventError(
                "Payment already confirmed",
                metadata={"payment_id": self.payment_id, "txn_ref": self.txn_ref},
            )
        if self.is_terminal:
            raise InvalidStateError(
                "Payment already finalized",
                code="PAYMENT_FINALIZED",
                metadata={"payment_id": self.payment_id, "status": self.status.value},
            )
        return self.model_copy(update={
            "status": status,
            "meta": {**self.meta, **meta},
            "updated_at": datetime.now(timezone.utc),
        })


class NewPayment(BaseModel):
    """Ledger row about to be created in `initiated` status"""
    order_id: int
    provider: PaymentProvider
    amount: Decimal
    currency: str
    txn_ref: str
    meta: dict[str, Any] = Field(default_factory=dict)


class PaymentRequest(BaseModel):
    """What the client needs for the next payment step"""
    provider: PaymentProvider
    payment_id: int
    order_id: int
    txn_ref: str
    amount: Decimal
    currency: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    qr_image_url: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)


class CallbackRequest(BaseModel):
    """Raw inbound callback as the HTTP boundary received it"""
    query: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


class ProviderEvent(BaseModel):
    """A verified provider outcome, mapped into ledger vocabulary"""
    provider: PaymentProvider
    txn_ref: str
    succeeded: bool
    claimed_amount: Optional[Decimal] = None
    response_code: Optional[str] = None
    failure_reason: Optional[str] = None
    event_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"          # payment success committed, order paid
    DUPLICATE = "duplicate"      # payment was already success
    SUPERSEDED = "superseded"    # a sibling payment already paid the order
    FAILED = "failed"            # payment recorded as failed


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    payment: Payment
    order_status: Optional[OrderStatus] = None
    order_updated: bool = False

    @property
    def paid(self) -> bool:
        return self.outcome in (
            ReconciliationOutcome.APPLIED,
            ReconciliationOutcome.DUPLICATE,
            ReconciliationOutcome.SUPERSEDED,
        )
