# services/__init__.py
# ============================================================================
# FATFOOD BACKEND — SERVICES MODULE
# ============================================================================
# Order service and the collaborators payment reconciliation notifies
# ============================================================================

from services.cart import CartService
from services.assignment import StaffAssigner
from services.activity import ActivityRecorder
from services.notifier import RealtimeNotifier
from services.fulfillment import FulfillmentHooks
from services.orders import OrderService

__all__ = [
    "CartService",
    "StaffAssigner",
    "ActivityRecorder",
    "RealtimeNotifier",
    "FulfillmentHooks",
    "OrderService",
]
