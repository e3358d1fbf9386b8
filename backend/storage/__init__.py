# storage/__init__.py
# ============================================================================
# FATFOOD BACKEND — STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory and PostgreSQL implementations
# ============================================================================

from storage.repositories import (
    IStore,
    IOrderRepository,
    IPaymentRepository,
    IProductRepository,
    IShiftRepository,
    ICartRepository,
    IActivityLog,
)

from storage.memory import (
    InMemoryStore,
    MemoryState,
)

__all__ = [
    # Interfaces
    "IStore",
    "IOrderRepository",
    "IPaymentRepository",
    "IProductRepository",
    "IShiftRepository",
    "ICartRepository",
    "IActivityLog",
    # In-memory
    "InMemoryStore",
    "MemoryState",
]
