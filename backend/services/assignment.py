# services/assignment.py
# ============================================================================
# FATFOOD BACKEND — STAFF ASSIGNMENT
# ============================================================================
# Assigns an order to the staff member whose shift is active right now
# ============================================================================

from datetime import datetime
from typing import Callable, Optional

import structlog

from schemas.orders import Order, StaffShift
from storage.repositories import IStore

logger = structlog.get_logger().bind(component="staff_assignment")


class StaffAssigner:

    def __init__(self, store: IStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self._clock = clock

    async def find_on_duty_shift(self, store: Optional[IStore] = None) -> Optional[StaffShift]:
        now = self._clock()
        return await (store or self.store).shifts.find_on_duty(
            now.strftime("%Y-%m-%d"),
            now.strftime("%H:%M:%S"),
        )

    async def assign_order_to_on_duty_staff(
        self,
        order: Optional[Order],
        store: Optional[IStore] = None,
    ) -> Optional[int]:
        """
        Assign the order to the on-duty staff member.

        No-op (returns None) when the order is already assigned or nobody is
        on shift. Pass `store` to run inside an open transaction.
        """
        if order is None or order.assigned_staff_id:
            return None

        target = store or self.store
        shift = await self.find_on_duty_shift(target)
        if shift is None:
            logger.debug("no_staff_on_duty", order_id=order.order_id)
            return None

        current = await target.orders.get(order.order_id)
        if current is None or current.assigned_staff_id:
            return None

        await target.orders.save(current.model_copy(update={"assigned_staff_id": shift.staff_id}))
        logger.info("order_assigned", order_id=order.order_id, staff_id=shift.staff_id)
        return shift.staff_id
