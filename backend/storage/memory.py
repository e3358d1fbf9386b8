"""
In-Memory Store
===============
Lock-guarded in-memory implementations of every repository. Used by tests
and by the server when no DATABASE_URL is configured.

A transaction holds the store-wide lock for its whole scope, snapshots the
tables on entry and restores them if the scope raises.
"""

import asyncio
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from errors import InvalidStateError
from schemas.orders import Order, OrderItem, OrderStatus, Product, StaffShift
from schemas.payments import NewPayment, Payment, PaymentProvider
from storage.repositories import (
    IActivityLog,
    ICartRepository,
    IOrderRepository,
    IPaymentRepository,
    IProductRepository,
    IShiftRepository,
    IStore,
)


@dataclass
class MemoryState:
    orders: dict[int, Order] = field(default_factory=dict)
    payments: dict[int, Payment] = field(default_factory=dict)
    products: dict[int, Product] = field(default_factory=dict)
    shifts: list[StaffShift] = field(default_factory=list)
    carts: dict[int, list[dict[str, Any]]] = field(default_factory=dict)
    activity: list[dict[str, Any]] = field(default_factory=list)
    next_order_id: int = 1
    next_payment_id: int = 1

    def snapshot(self) -> "MemoryState":
        return MemoryState(
            orders=dict(self.orders),
            payments=dict(self.payments),
            products=dict(self.products),
            shifts=list(self.shifts),
            carts=dict(self.carts),
            activity=list(self.activity),
            next_order_id=self.next_order_id,
            next_payment_id=self.next_payment_id,
        )

    def restore(self, other: "MemoryState") -> None:
        self.__dict__.update(other.__dict__)


class _Guarded:
    def __init__(self, state: MemoryState, lock: Optional[asyncio.Lock]):
        self._state = state
        self._lock = lock

    def _guard(self):
        return self._lock if self._lock is not None else nullcontext()


class InMemoryOrderRepository(_Guarded, IOrderRepository):

    async def get(self, order_id: int, for_update: bool = False) -> Optional[Order]:
        async with self._guard():
            return self._state.orders.get(order_id)

    async def create(
        self,
        user_id: int,
        items: list[OrderItem],
        total_amount: Decimal,
        note: Optional[str] = None,
        expected_delivery_time: Optional[datetime] = None,
    ) -> Order:
        async with self._guard():
            order = Order(
                order_id=self._state.next_order_id,
                user_id=user_id,
                items=list(items),
                total_amount=total_amount,
                status=OrderStatus.PENDING,
                note=note,
                expected_delivery_time=expected_delivery_time,
            )
            self._state.next_order_id += 1
            self._state.orders[order.order_id] = order
            return order

    async def save(self, order: Order) -> Order:
        async with self._guard():
            existing = self._state.orders.get(order.order_id)
            if existing is None:
                raise KeyError(order.order_id)
            # Items and total are immutable after creation.
            stored = order.model_copy(update={
                "items": existing.items,
                "total_amount": existing.total_amount,
            })
            self._state.orders[order.order_id] = stored
            return stored

    async def list_for_user(self, user_id: int, status: Optional[OrderStatus] = None) -> list[Order]:
        async with self._guard():
            orders = [
                o for o in self._state.orders.values()
                if o.user_id == user_id and (status is None or o.status == status)
            ]
            return sorted(orders, key=lambda o: (o.created_at, o.order_id), reverse=True)


class InMemoryPaymentRepository(_Guarded, IPaymentRepository):

    async def create(self, payment: NewPayment) -> Payment:
        async with self._guard():
            for existing in self._state.payments.values():
                if existing.provider == payment.provider and existing.txn_ref == payment.txn_ref:
                    raise InvalidStateError(
                        "Duplicate transaction reference",
                        code="DUPLICATE_TXN_REF",
                        metadata={"provider": payment.provider.value, "txn_ref": payment.txn_ref},
                    )
            row = Payment(payment_id=self._state.next_payment_id, **payment.model_dump())
            self._state.next_payment_id += 1
            self._state.payments[row.payment_id] = row
            return row

    async def get(self, payment_id: int) -> Optional[Payment]:
        async with self._guard():
            return self._state.payments.get(payment_id)

    async def get_by_txn_ref(
        self,
        provider: PaymentProvider,
        txn_ref: str,
        for_update: bool = False,
    ) -> Optional[Payment]:
        async with self._guard():
            for payment in self._state.payments.values():
                if payment.provider == provider and payment.txn_ref == txn_ref:
                    return payment
            return None

    async def list_for_order(self, order_id: int, for_update: bool = False) -> list[Payment]:
        async with self._guard():
            return [p for p in self._state.payments.values() if p.order_id == order_id]

    async def latest_for_order(self, order_id: int, provider: PaymentProvider) -> Optional[Payment]:
        async with self._guard():
            candidates = [
                p for p in self._state.payments.values()
                if p.order_id == order_id and p.provider == provider
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda p: (p.created_at, p.payment_id))

    async def save(self, payment: Payment) -> Payment:
        async with self._guard():
            if payment.payment_id not in self._state.payments:
                raise KeyError(payment.payment_id)
            self._state.payments[payment.payment_id] = payment
            return payment


class InMemoryProductRepository(_Guarded, IProductRepository):

    async def get_active(self, product_ids: list[int]) -> list[Product]:
        async with self._guard():
            return [
                self._state.products[pid] for pid in product_ids
                if pid in self._state.products and self._state.products[pid].is_active
            ]

    def add(self, product: Product) -> None:
        self._state.products[product.product_id] = product


class InMemoryShiftRepository(_Guarded, IShiftRepository):

    async def find_on_duty(self, shift_date: str, at_time: str) -> Optional[StaffShift]:
        async with self._guard():
            matches = [
                s for s in self._state.shifts
                if s.shift_date == shift_date
                and s.status == "scheduled"
                and s.start_time <= at_time <= s.end_time
            ]
            matches.sort(key=lambda s: s.start_time)
            return matches[0] if matches else None

    def add(self, shift: StaffShift) -> None:
        self._state.shifts.append(shift)


class InMemoryCartRepository(_Guarded, ICartRepository):

    async def clear(self, user_id: int) -> int:
        async with self._guard():
            removed = self._state.carts.pop(user_id, [])
            return len(removed)

    def add_line(self, user_id: int, product_id: int, quantity: int) -> None:
        lines = list(self._state.carts.get(user_id, []))
        lines.append({"product_id": product_id, "quantity": quantity})
        self._state.carts[user_id] = lines

    def lines(self, user_id: int) -> list[dict[str, Any]]:
        return list(self._state.carts.get(user_id, []))


class InMemoryActivityLog(_Guarded, IActivityLog):

    async def append(
        self,
        user_id: Optional[int],
        action: str,
        resource: str,
        metadata: dict[str, Any],
    ) -> None:
        async with self._guard():
            self._state.activity.append({
                "user_id": user_id,
                "action": action,
                "resource": resource,
                "metadata": dict(metadata),
                "created_at": datetime.now(timezone.utc),
            })

    async def list_recent(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self._guard():
            return list(reversed(self._state.activity))[:limit]


class InMemoryStore(IStore):
    """Thread-safe in-memory store"""

    def __init__(
        self,
        state: Optional[MemoryState] = None,
        lock: Optional[asyncio.Lock] = None,
        in_transaction: bool = False,
    ):
        self.state = state or MemoryState()
        self._lock = lock or asyncio.Lock()
        self._in_transaction = in_transaction

        repo_lock = None if in_transaction else self._lock
        self.orders = InMemoryOrderRepository(self.state, repo_lock)
        self.payments = InMemoryPaymentRepository(self.state, repo_lock)
        self.products = InMemoryProductRepository(self.state, repo_lock)
        self.shifts = InMemoryShiftRepository(self.state, repo_lock)
        self.carts = InMemoryCartRepository(self.state, repo_lock)
        self.activity = InMemoryActivityLog(self.state, repo_lock)

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction:
            yield self
            return

        async with self._lock:
            snapshot = self.state.snapshot()
            scope = InMemoryStore(self.state, self._lock, in_transaction=True)
            try:
                yield scope
            except BaseException:
                self.state.restore(snapshot)
                raise
