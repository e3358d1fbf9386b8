# schemas/orders.py
# ============================================================================
# FATFOOD BACKEND — ORDER SCHEMAS
# ============================================================================
# Order / OrderItem records and the order status state machine
# ============================================================================

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from errors import InvalidStateError


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    PREPARING = "preparing"
    DELIVERING = "delivering"
    SHIPPING = "shipping"
    COMPLETED = "completed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


# Fulfillment only moves forward; canceled/refunded are terminal side-branches.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.PAID, OrderStatus.CANCELED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PAID, OrderStatus.PREPARING, OrderStatus.CANCELED}),
    OrderStatus.PAID: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELED, OrderStatus.REFUNDED}),
    OrderStatus.PREPARING: frozenset({
        OrderStatus.DELIVERING, OrderStatus.SHIPPING, OrderStatus.CANCELED, OrderStatus.REFUNDED,
    }),
    OrderStatus.DELIVERING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.REFUNDED}),
    OrderStatus.SHIPPING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.REFUNDED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

NON_CANCELABLE_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.REFUNDED})
NON_PAYABLE_STATUSES = frozenset({OrderStatus.CANCELED, OrderStatus.REFUNDED})
PAYMENT_SUCCESS_SOURCE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PAID})


class OrderItem(BaseModel):
    """Line item with a price snapshot taken at order creation"""
    product_id: int
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)
    name: Optional[str] = None

    model_config = {"frozen": True}

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class Order(BaseModel):
    """Core order entity"""
    order_id: int
    user_id: int
    items: list[OrderItem] = Field(default_factory=list)
    total_amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    assigned_staff_id: Optional[int] = None
    expected_delivery_time: Optional[datetime] = None
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @staticmethod
    def compute_total(items: list[OrderItem]) -> Decimal:
        return sum((item.price * item.quantity for item in items), Decimal("0"))

    @property
    def is_payable(self) -> bool:
        return self.status not in NON_PAYABLE_STATUSES

    @property
    def is_cancelable(self) -> bool:
        return self.status not in NON_CANCELABLE_STATUSES

    @property
    def accepts_payment_success(self) -> bool:
        return self.status in PAYMENT_SUCCESS_SOURCE_STATUSES

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        return new_status in ORDER_TRANSITIONS[self.status]

    def transition_to(self, new_status: OrderStatus) -> "Order":
        """Immutable state transition; raises on an illegal move"""
        if new_status == OrderStatus.CANCELED and not self.is_cancelable:
            raise InvalidStateError(
                "Order cannot be canceled in its current status",
                code="ORDER_NOT_CANCELABLE",
                metadata={"order_id": self.order_id, "status": self.status.value},
            )
        if not self.can_transition_to(new_status):
            raise InvalidStateError(
                f"Cannot move order from {self.status.value} to {new_status.value}",
                code="ORDER_INVALID_TRANSITION",
                metadata={
                    "order_id": self.order_id,
                    "status": self.status.value,
                    "requested": new_status.value,
                },
            )
        return self.model_copy(update={"status": new_status, "updated_at": datetime.now(timezone.utc)})

    def ensure_payable(self) -> None:
        if not self.is_payable:
            raise InvalidStateError(
                "Order is not in a payable status",
                status_code=400,
                code="ORDER_INVALID_STATUS",
                metadata={"order_id": self.order_id, "status": self.status.value},
            )


class OrderItemInput(BaseModel):
    """Requested line item, before price lookup"""
    product_id: int = Field(alias="productId")
    quantity: int

    model_config = {"populate_by_name": True}


class CreateOrderRequest(BaseModel):
    items: list[OrderItemInput] = Field(default_factory=list)
    note: Optional[str] = None
    expected_delivery_time: Optional[datetime] = Field(default=None, alias="expectedDeliveryTime")

    model_config = {"populate_by_name": True}


class Product(BaseModel):
    """Catalog entry the order service prices against"""
    product_id: int
    name: str
    price: Decimal
    is_active: bool = True


class StaffShift(BaseModel):
    shift_id: int
    staff_id: int
    shift_date: str  # YYYY-MM-DD
    start_time: str  # HH:MM:SS
    end_time: str
    status: str = "scheduled"
