"""
Cash on Delivery
================
No provider is involved: the ledger row stays `initiated` until the money is
collected, and a pending order is confirmed so the kitchen can start.
"""

from typing import Any, Optional

from errors import NotFoundError
from payments.base import PaymentAdapter, format_timestamp
from schemas.orders import OrderStatus
from schemas.payments import CallbackRequest, PaymentProvider, PaymentRequest
from services.fulfillment import FulfillmentHooks


class CodAdapter(PaymentAdapter):

    provider = PaymentProvider.COD

    def __init__(self, store, reconciler, hooks: Optional[FulfillmentHooks] = None, clock=None):
        super().__init__(store, reconciler, clock)
        self.hooks = hooks

    async def create_payment_request(
        self,
        order_id: int,
        user_id: Optional[int] = None,
        **options: Any,
    ) -> PaymentRequest:
        async with self.store.transaction() as tx:
            order = await tx.orders.get(order_id, for_update=True)
            if order is None or (user_id is not None and order.user_id != user_id):
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND", metadata={"order_id": order_id})
            order.ensure_payable()

            payment = await self.record_initiated(
                order,
                f"COD-{order_id}-{format_timestamp(self._clock())}",
                "VND",
                meta={"method": "cash_on_delivery"},
                store=tx,
            )
            previous = order.status
            if order.status == OrderStatus.PENDING:
                order = await tx.orders.save(order.transition_to(OrderStatus.CONFIRMED))

        if self.hooks is not None and order.status != previous:
            await self.hooks.on_order_status_changed(order, previous.value, user_id)
        return self.to_request(payment, extra={"order_status": order.status.value})

    async def verify_callback(self, request: CallbackRequest) -> bool:
        return False
