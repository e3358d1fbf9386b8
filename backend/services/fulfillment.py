# services/fulfillment.py
# ============================================================================
# FATFOOD BACKEND — FULFILLMENT HOOKS
# ============================================================================
# Side effects that run after an order/payment change has committed.
# Every hook is best-effort: a collaborator failure is logged, never raised.
# ============================================================================

from typing import Any, Optional

import structlog

from schemas.orders import Order
from services.activity import ActivityRecorder
from services.assignment import StaffAssigner
from services.cart import CartService
from services.notifier import RealtimeNotifier

logger = structlog.get_logger().bind(component="fulfillment")


class FulfillmentHooks:

    def __init__(
        self,
        cart: CartService,
        assigner: StaffAssigner,
        activity: ActivityRecorder,
        notifier: Optional[RealtimeNotifier] = None,
    ):
        self.cart = cart
        self.assigner = assigner
        self.activity = activity
        self.notifier = notifier

    async def _notify(self, user_id: Optional[int], event: str, payload: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            if user_id:
                await self.notifier.emit_to_user(user_id, event, payload)
            await self.notifier.emit_to_staff(event, payload)
        except Exception as e:
            logger.warning("notify_failed", event_name=event, error=str(e))

    async def _assign(self, order: Order) -> Optional[int]:
        try:
            return await self.assigner.assign_order_to_on_duty_staff(order)
        except Exception as e:
            logger.error("staff_assignment_failed", order_id=order.order_id, error=str(e))
            return None

    async def on_order_created(self, order: Order) -> None:
        await self._assign(order)
        await self.activity.log_action(order.user_id, "ORDER_CREATED", "orders", {
            "order_id": order.order_id,
            "total_amount": str(order.total_amount),
        })
        await self._notify(None, "order:new", {"order_id": order.order_id})

    async def on_payment_confirmed(
        self,
        order: Order,
        provider: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        await self.cart.clear_cart(order.user_id)
        await self._assign(order)
        await self.activity.log_action(order.user_id, "PAYMENT_CONFIRMED", "orders", {
            "order_id": order.order_id,
            "provider": provider,
            **(metadata or {}),
        })
        await self._notify(order.user_id, "order:paid", {
            "order_id": order.order_id,
            "provider": provider,
        })

    async def on_order_status_changed(self, order: Order, previous: str, actor_id: Optional[int]) -> None:
        await self.activity.log_action(actor_id, "ORDER_STATUS_CHANGED", "orders", {
            "order_id": order.order_id,
            "from": previous,
            "to": order.status.value,
        })
        await self._notify(order.user_id, "order:status", {
            "order_id": order.order_id,
            "status": order.status.value,
        })
