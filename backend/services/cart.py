# services/cart.py
# ============================================================================
# FATFOOD BACKEND — CART SERVICE
# ============================================================================
# Best-effort cart clearing after a confirmed payment
# ============================================================================

from typing import Optional

import structlog

from storage.repositories import IStore

logger = structlog.get_logger().bind(component="cart_service")


class CartService:

    def __init__(self, store: IStore):
        self.store = store

    async def clear_cart(self, user_id: Optional[int]) -> Optional[int]:
        """Empty the user's cart. Failures are logged, not propagated."""
        if not user_id:
            return None
        try:
            removed = await self.store.carts.clear(user_id)
            logger.info("cart_cleared", user_id=user_id, removed=removed)
            return removed
        except Exception as e:
            logger.error("cart_clear_failed", user_id=user_id, error=str(e))
            return None
