"""
Persistence Interfaces
======================
Abstract async repositories for orders, the payment ledger and the
collaborator tables, plus the unit-of-work `IStore` whose `transaction()`
scope binds every repository to one all-or-nothing transaction.

Rows read with `for_update=True` inside a transaction stay locked until the
scope exits.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from schemas.orders import Order, OrderItem, OrderStatus, Product, StaffShift
from schemas.payments import NewPayment, Payment, PaymentProvider


class IOrderRepository(ABC):

    @abstractmethod
    async def get(self, order_id: int, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(
        self,
        user_id: int,
        items: list[OrderItem],
        total_amount: Decimal,
        note: Optional[str] = None,
        expected_delivery_time: Optional[datetime] = None,
    ) -> Order:
        """Persist an order and its items in status `pending`."""
        pass

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """Write back status, assignment and updated_at."""
        pass

    @abstractmethod
    async def list_for_user(self, user_id: int, status: Optional[OrderStatus] = None) -> list[Order]:
        pass


class IPaymentRepository(ABC):

    @abstractmethod
    async def create(self, payment: NewPayment) -> Payment:
        """Insert an `initiated` row. (provider, txn_ref) must be unique."""
        pass

    @abstractmethod
    async def get(self, payment_id: int) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_txn_ref(
        self,
        provider: PaymentProvider,
        txn_ref: str,
        for_update: bool = False,
    ) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: int, for_update: bool = False) -> list[Payment]:
        pass

    @abstractmethod
    async def latest_for_order(self, order_id: int, provider: PaymentProvider) -> Optional[Payment]:
        pass

    @abstractmethod
    async def save(self, payment: Payment) -> Payment:
        pass


class IProductRepository(ABC):

    @abstractmethod
    async def get_active(self, product_ids: list[int]) -> list[Product]:
        pass


class IShiftRepository(ABC):

    @abstractmethod
    async def find_on_duty(self, shift_date: str, at_time: str) -> Optional[StaffShift]:
        """Scheduled shift covering `at_time` on `shift_date`, earliest start first."""
        pass


class ICartRepository(ABC):

    @abstractmethod
    async def clear(self, user_id: int) -> int:
        """Remove every cart line of the user. Returns the number removed."""
        pass


class IActivityLog(ABC):

    @abstractmethod
    async def append(
        self,
        user_id: Optional[int],
        action: str,
        resource: str,
        metadata: dict[str, Any],
    ) -> None:
        pass

    @abstractmethod
    async def list_recent(self, limit: int = 50) -> list[dict[str, Any]]:
        pass


class IStore(ABC):
    """Unit of work over every repository"""

    orders: IOrderRepository
    payments: IPaymentRepository
    products: IProductRepository
    shifts: IShiftRepository
    carts: ICartRepository
    activity: IActivityLog

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager["IStore"]:
        pass
