# services/orders.py
# ============================================================================
# FATFOOD BACKEND — ORDER SERVICE
# ============================================================================
# Order creation with price snapshots, cancellation and status transitions
# ============================================================================

from datetime import datetime
from typing import Optional

import structlog

from errors import ForbiddenError, NotFoundError, ValidationError
from schemas.orders import (
    CreateOrderRequest,
    Order,
    OrderItem,
    OrderStatus,
)
from schemas.payments import Payment
from services.fulfillment import FulfillmentHooks
from storage.repositories import IStore

logger = structlog.get_logger().bind(component="order_service")


class OrderService:

    def __init__(self, store: IStore, hooks: FulfillmentHooks):
        self.store = store
        self.hooks = hooks

    async def create_order(self, user_id: int, request: CreateOrderRequest) -> Order:
        """
        Create a `pending` order from the requested items.

        Unit prices are snapshotted from the catalog at this moment; the
        total is the sum of price x quantity and never changes afterwards.
        """
        if not request.items:
            raise ValidationError("Order must contain at least one product", code="ORDER_ITEMS_REQUIRED")

        for index, item in enumerate(request.items, start=1):
            if item.product_id <= 0:
                raise ValidationError(
                    f"Invalid product id at position {index}",
                    code="PRODUCT_INVALID",
                )
            if item.quantity <= 0:
                raise ValidationError(
                    f"Quantity must be greater than 0 at position {index}",
                    code="QUANTITY_INVALID",
                )

        product_ids = list(dict.fromkeys(item.product_id for item in request.items))
        products = {p.product_id: p for p in await self.store.products.get_active(product_ids)}
        missing = [pid for pid in product_ids if pid not in products]
        if missing:
            raise NotFoundError(
                "Some products do not exist or are no longer sold",
                code="PRODUCT_NOT_FOUND",
                metadata={"missing": missing},
            )

        items = [
            OrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                price=products[item.product_id].price,
                name=products[item.product_id].name,
            )
            for item in request.items
        ]
        total = Order.compute_total(items)
        note = request.note.strip() if request.note else None

        async with self.store.transaction() as tx:
            order = await tx.orders.create(
                user_id=user_id,
                items=items,
                total_amount=total,
                note=note or None,
                expected_delivery_time=request.expected_delivery_time,
            )

        logger.info("order_created", order_id=order.order_id, user_id=user_id, total=str(total))
        await self.hooks.on_order_created(order)
        return await self.store.orders.get(order.order_id) or order

    async def get_order(self, order_id: int, user_id: Optional[int] = None) -> Order:
        order = await self.store.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND", metadata={"order_id": order_id})
        return order

    async def list_orders(self, user_id: int, status: Optional[str] = None) -> list[Order]:
        if status and status != "all":
            try:
                wanted = OrderStatus(status)
            except ValueError:
                raise ValidationError("Unknown order status", code="STATUS_INVALID", metadata={"status": status})
            return await self.store.orders.list_for_user(user_id, wanted)
        return await self.store.orders.list_for_user(user_id)

    async def list_payments(self, order_id: int, user_id: Optional[int] = None) -> list[Payment]:
        await self.get_order(order_id, user_id)
        return await self.store.payments.list_for_order(order_id)

    async def cancel_order(self, user_id: int, order_id: int) -> Order:
        """Customer cancellation; refused once completed, canceled or refunded."""
        async with self.store.transaction() as tx:
            order = await tx.orders.get(order_id, for_update=True)
            if order is None or order.user_id != user_id:
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND", metadata={"order_id": order_id})
            previous = order.status.value
            order = await tx.orders.save(order.transition_to(OrderStatus.CANCELED))

        logger.info("order_canceled", order_id=order_id, user_id=user_id, previous=previous)
        await self.hooks.on_order_status_changed(order, previous, user_id)
        return order

    async def advance_status(
        self,
        order_id: int,
        new_status: str,
        actor_id: Optional[int] = None,
        actor_role: Optional[str] = None,
    ) -> Order:
        """Staff/admin transition along the order state machine."""
        if actor_role not in ("staff", "admin"):
            raise ForbiddenError("Only staff can change order status")
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError("Unknown order status", code="STATUS_INVALID", metadata={"status": new_status})

        async with self.store.transaction() as tx:
            order = await tx.orders.get(order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND", metadata={"order_id": order_id})
            previous = order.status.value
            order = await tx.orders.save(order.transition_to(target))

        logger.info("order_status_changed", order_id=order_id, previous=previous, status=target.value)
        await self.hooks.on_order_status_changed(order, previous, actor_id)
        return order
