# schemas/__init__.py
# ============================================================================
# FATFOOD BACKEND — SCHEMAS MODULE
# ============================================================================
# Typed records shared by storage, services and payment providers
# ============================================================================

from schemas.orders import (
    Order,
    OrderItem,
    OrderStatus,
    OrderItemInput,
    CreateOrderRequest,
    Product,
    StaffShift,
    ORDER_TRANSITIONS,
)

from schemas.payments import (
    Payment,
    NewPayment,
    PaymentProvider,
    PaymentStatus,
    PaymentRequest,
    CallbackRequest,
    ProviderEvent,
    ReconciliationOutcome,
    ReconciliationResult,
)

__all__ = [
    # Orders
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderItemInput",
    "CreateOrderRequest",
    "Product",
    "StaffShift",
    "ORDER_TRANSITIONS",
    # Payments
    "Payment",
    "NewPayment",
    "PaymentProvider",
    "PaymentStatus",
    "PaymentRequest",
    "CallbackRequest",
    "ProviderEvent",
    "ReconciliationOutcome",
    "ReconciliationResult",
]
