"""
Database - FatFood Backend
==========================
PostgreSQL pool, schema and the payment event trail.

Provides:
- The asyncpg pool shared by storage.postgres
- Schema migrations for orders, order items, the payment ledger and the
  collaborator tables (shifts, carts, activity logs)
- The Black Box (system_events) for unified payment/order event logging

pip install asyncpg
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

import asyncpg
import structlog

from config import database_config

# Configure logger
logger = structlog.get_logger().bind(component="database")


# =============================================================================
# EVENT SEVERITY (The Black Box)
# =============================================================================

Severity = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    def is_configured(cls) -> bool:
        return bool(database_config.DATABASE_URL)

    @classmethod
    async def initialize(cls):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                database_config.DATABASE_URL,
                min_size=database_config.MIN_POOL_SIZE,
                max_size=database_config.MAX_POOL_SIZE,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            """
            CREATE TABLE IF NOT EXISTS products (
                product_id SERIAL PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                price NUMERIC(14, 2) NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS orders (
                order_id SERIAL PRIMARY KEY,
                user_id INTEGER NOT NULL,
                total_amount NUMERIC(14, 2) NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'pending',
                assigned_staff_id INTEGER,
                expected_delivery_time TIMESTAMPTZ,
                note TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # Prices are snapshots taken at order creation
            """
            CREATE TABLE IF NOT EXISTS order_items (
                order_item_id SERIAL PRIMARY KEY,
                order_id INTEGER NOT NULL REFERENCES orders(order_id),
                product_id INTEGER NOT NULL,
                name VARCHAR(255),
                quantity INTEGER NOT NULL CHECK (quantity > 0),
                price NUMERIC(14, 2) NOT NULL
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS payments (
                payment_id SERIAL PRIMARY KEY,
                order_id INTEGER NOT NULL REFERENCES orders(order_id),
                provider VARCHAR(20) NOT NULL,
                amount NUMERIC(14, 2) NOT NULL,
                currency VARCHAR(3) NOT NULL,
                txn_ref VARCHAR(255) NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'initiated',
                meta JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                UNIQUE (provider, txn_ref)
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS staff_shifts (
                shift_id SERIAL PRIMARY KEY,
                staff_id INTEGER NOT NULL,
                shift_date DATE NOT NULL,
                start_time TIME NOT NULL,
                end_time TIME NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'scheduled'
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS cart_items (
                cart_item_id SERIAL PRIMARY KEY,
                user_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                quantity INTEGER NOT NULL DEFAULT 1
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS activity_logs (
                log_id SERIAL PRIMARY KEY,
                user_id INTEGER,
                action VARCHAR(64) NOT NULL,
                resource VARCHAR(64) NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # THE BLACK BOX: Unified event log
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                order_id INTEGER,
                timestamp TIMESTAMPTZ DEFAULT NOW(),
                event_type VARCHAR(50) NOT NULL,
                component VARCHAR(50),
                payload JSONB NOT NULL DEFAULT '{}',
                severity VARCHAR(10) DEFAULT 'INFO'
            )
            """,

            "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
            "CREATE INDEX IF NOT EXISTS idx_payments_order ON payments(order_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_order ON system_events(order_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_type ON system_events(event_type)",
            "CREATE INDEX IF NOT EXISTS idx_shifts_date ON staff_shifts(shift_date)",
            "CREATE INDEX IF NOT EXISTS idx_cart_user ON cart_items(user_id)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# THE BLACK BOX: Event Logging
# =============================================================================

async def log_event(
    order_id: Optional[int],
    event_type: str,
    payload: Dict[str, Any],
    component: Optional[str] = None,
    severity: Severity = "INFO",
) -> str:
    """
    Unified event logging for payment and order flows.

    Every significant event goes to the console with context and, when a
    database is configured, into system_events. Persisting is best-effort.

    Returns:
        Event ID
    """
    event_id = str(uuid4())

    log_method = {
        "DEBUG": logger.debug,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.info)
    log_method(
        event_type,
        event_id=event_id[:8],
        order_id=order_id,
        event_component=component,
        **{k: v for k, v in payload.items() if k not in ("event", "event_id", "order_id")},
    )

    if not Database.is_configured():
        return event_id

    try:
        await Database.execute(
            """
            INSERT INTO system_events
            (id, order_id, timestamp, event_type, component, payload, severity)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            event_id,
            order_id,
            datetime.now(timezone.utc),
            event_type,
            component,
            json.dumps(payload, default=str),
            severity,
        )
    except Exception as e:
        logger.error("event_persist_failed", error=str(e), event_type=event_type)

    return event_id


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database():
    """Initialize database on app startup"""
    await Database.initialize()


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
