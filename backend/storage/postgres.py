"""
PostgreSQL Store
================
asyncpg implementations of the repositories over the pool owned by
`database.Database`. Outside a transaction every call acquires its own
connection; inside `transaction()` all repositories share one connection and
`for_update=True` reads take row locks.

pip install asyncpg
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import asyncpg

from database import Database
from errors import InvalidStateError
from schemas.orders import Order, OrderItem, OrderStatus, Product, StaffShift
from schemas.payments import NewPayment, Payment, PaymentProvider, PaymentStatus
from storage.repositories import (
    IActivityLog,
    ICartRepository,
    IOrderRepository,
    IPaymentRepository,
    IProductRepository,
    IShiftRepository,
    IStore,
)


# =============================================================================
# ROW MAPPING
# =============================================================================

def _json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _payment_from_row(row: asyncpg.Record) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        order_id=row["order_id"],
        provider=PaymentProvider(row["provider"]),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        txn_ref=row["txn_ref"],
        status=PaymentStatus(row["status"]),
        meta=_json(row["meta"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _order_from_rows(row: asyncpg.Record, item_rows: list[asyncpg.Record]) -> Order:
    return Order(
        order_id=row["order_id"],
        user_id=row["user_id"],
        items=[
            OrderItem(
                product_id=item["product_id"],
                quantity=item["quantity"],
                price=Decimal(item["price"]),
                name=item["name"],
            )
            for item in item_rows
        ],
        total_amount=Decimal(row["total_amount"]),
        status=OrderStatus(row["status"]),
        assigned_staff_id=row["assigned_staff_id"],
        expected_delivery_time=row["expected_delivery_time"],
        note=row["note"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class _Bound:
    """Uses the bound transaction connection, or a pooled one per call"""

    def __init__(self, conn: Optional[asyncpg.Connection] = None):
        self._bound = conn

    @asynccontextmanager
    async def _conn(self):
        if self._bound is not None:
            yield self._bound
        else:
            async with Database.acquire() as conn:
                yield conn

    def _lock_clause(self, for_update: bool) -> str:
        return " FOR UPDATE" if for_update and self._bound is not None else ""


# =============================================================================
# REPOSITORIES
# =============================================================================

class PostgresOrderRepository(_Bound, IOrderRepository):

    async def _load(self, conn: asyncpg.Connection, row: Optional[asyncpg.Record]) -> Optional[Order]:
        if row is None:
            return None
        items = await conn.fetch(
            "SELECT * FROM order_items WHERE order_id = $1 ORDER BY order_item_id",
            row["order_id"],
        )
        return _order_from_rows(row, items)

    async def get(self, order_id: int, for_update: bool = False) -> Optional[Order]:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM orders WHERE order_id = $1" + self._lock_clause(for_update),
                order_id,
            )
            return await self._load(conn, row)

    async def create(
        self,
        user_id: int,
        items: list[OrderItem],
        total_amount: Decimal,
        note: Optional[str] = None,
        expected_delivery_time: Optional[datetime] = None,
    ) -> Order:
        async with self._conn() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    INSERT INTO orders (user_id, total_amount, status, note, expected_delivery_time)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                    """,
                    user_id,
                    total_amount,
                    OrderStatus.PENDING.value,
                    note,
                    expected_delivery_time,
                )
                await conn.executemany(
                    """
                    INSERT INTO order_items (order_id, product_id, name, quantity, price)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    [
                        (row["order_id"], item.product_id, item.name, item.quantity, item.price)
                        for item in items
                    ],
                )
                return await self._load(conn, row)

    async def save(self, order: Order) -> Order:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE orders
                SET status = $1, assigned_staff_id = $2, updated_at = NOW()
                WHERE order_id = $3
                RETURNING *
                """,
                order.status.value,
                order.assigned_staff_id,
                order.order_id,
            )
            if row is None:
                raise KeyError(order.order_id)
            return await self._load(conn, row)

    async def list_for_user(self, user_id: int, status: Optional[OrderStatus] = None) -> list[Order]:
        async with self._conn() as conn:
            if status is not None:
                rows = await conn.fetch(
                    "SELECT * FROM orders WHERE user_id = $1 AND status = $2 ORDER BY created_at DESC",
                    user_id,
                    status.value,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM orders WHERE user_id = $1 ORDER BY created_at DESC",
                    user_id,
                )
            return [await self._load(conn, row) for row in rows]


class PostgresPaymentRepository(_Bound, IPaymentRepository):

    async def create(self, payment: NewPayment) -> Payment:
        async with self._conn() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO payments (order_id, provider, amount, currency, txn_ref, status, meta)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                    """,
                    payment.order_id,
                    payment.provider.value,
                    payment.amount,
                    payment.currency,
                    payment.txn_ref,
                    PaymentStatus.INITIATED.value,
                    json.dumps(payment.meta, default=str),
                )
            except asyncpg.UniqueViolationError:
                raise InvalidStateError(
                    "Duplicate transaction reference",
                    code="DUPLICATE_TXN_REF",
                    metadata={"provider": payment.provider.value, "txn_ref": payment.txn_ref},
                )
            return _payment_from_row(row)

    async def get(self, payment_id: int) -> Optional[Payment]:
        async with self._conn() as conn:
            row = await conn.fetchrow("SELECT * FROM payments WHERE payment_id = $1", payment_id)
            return _payment_from_row(row) if row else None

    async def get_by_txn_ref(
        self,
        provider: PaymentProvider,
        txn_ref: str,
        for_update: bool = False,
    ) -> Optional[Payment]:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM payments WHERE provider = $1 AND txn_ref = $2" + self._lock_clause(for_update),
                provider.value,
                txn_ref,
            )
            return _payment_from_row(row) if row else None

    async def list_for_order(self, order_id: int, for_update: bool = False) -> list[Payment]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM payments WHERE order_id = $1 ORDER BY payment_id" + self._lock_clause(for_update),
                order_id,
            )
            return [_payment_from_row(row) for row in rows]

    async def latest_for_order(self, order_id: int, provider: PaymentProvider) -> Optional[Payment]:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM payments
                WHERE order_id = $1 AND provider = $2
                ORDER BY created_at DESC, payment_id DESC
                LIMIT 1
                """,
                order_id,
                provider.value,
            )
            return _payment_from_row(row) if row else None

    async def save(self, payment: Payment) -> Payment:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE payments
                SET status = $1, meta = $2, updated_at = NOW()
                WHERE payment_id = $3
                RETURNING *
                """,
                payment.status.value,
                json.dumps(payment.meta, default=str),
                payment.payment_id,
            )
            if row is None:
                raise KeyError(payment.payment_id)
            return _payment_from_row(row)


class PostgresProductRepository(_Bound, IProductRepository):

    async def get_active(self, product_ids: list[int]) -> list[Product]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM products WHERE product_id = ANY($1) AND is_active",
                product_ids,
            )
            return [
                Product(
                    product_id=row["product_id"],
                    name=row["name"],
                    price=Decimal(row["price"]),
                    is_active=row["is_active"],
                )
                for row in rows
            ]


class PostgresShiftRepository(_Bound, IShiftRepository):

    async def find_on_duty(self, shift_date: str, at_time: str) -> Optional[StaffShift]:
        async with self._conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM staff_shifts
                WHERE shift_date = $1::date
                  AND status = 'scheduled'
                  AND start_time <= $2::time
                  AND end_time >= $2::time
                ORDER BY start_time ASC
                LIMIT 1
                """,
                shift_date,
                at_time,
            )
            if row is None:
                return None
            return StaffShift(
                shift_id=row["shift_id"],
                staff_id=row["staff_id"],
                shift_date=row["shift_date"].isoformat(),
                start_time=row["start_time"].strftime("%H:%M:%S"),
                end_time=row["end_time"].strftime("%H:%M:%S"),
                status=row["status"],
            )


class PostgresCartRepository(_Bound, ICartRepository):

    async def clear(self, user_id: int) -> int:
        async with self._conn() as conn:
            result = await conn.execute("DELETE FROM cart_items WHERE user_id = $1", user_id)
            # "DELETE <n>"
            return int(result.split()[-1])


class PostgresActivityLog(_Bound, IActivityLog):

    async def append(
        self,
        user_id: Optional[int],
        action: str,
        resource: str,
        metadata: dict[str, Any],
    ) -> None:
        async with self._conn() as conn:
            await conn.execute(
                """
                INSERT INTO activity_logs (user_id, action, resource, metadata)
                VALUES ($1, $2, $3, $4)
                """,
                user_id,
                action,
                resource,
                json.dumps(metadata, default=str),
            )

    async def list_recent(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self._conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM activity_logs ORDER BY created_at DESC LIMIT $1",
                limit,
            )
            return [{**dict(row), "metadata": _json(row["metadata"])} for row in rows]


# =============================================================================
# STORE
# =============================================================================

class PostgresStore(IStore):

    def __init__(self, conn: Optional[asyncpg.Connection] = None):
        self._bound = conn
        self.orders = PostgresOrderRepository(conn)
        self.payments = PostgresPaymentRepository(conn)
        self.products = PostgresProductRepository(conn)
        self.shifts = PostgresShiftRepository(conn)
        self.carts = PostgresCartRepository(conn)
        self.activity = PostgresActivityLog(conn)

    @asynccontextmanager
    async def transaction(self):
        if self._bound is not None:
            async with self._bound.transaction():
                yield self
            return

        async with Database.acquire() as conn:
            async with conn.transaction():
                yield PostgresStore(conn)
