# services/activity.py
# ============================================================================
# FATFOOD BACKEND — ACTIVITY LOG
# ============================================================================
# Fire-and-forget audit recording into activity_logs and the Black Box
# ============================================================================

from typing import Any, Optional

import structlog

from database import log_event
from storage.repositories import IStore

logger = structlog.get_logger().bind(component="activity_log")


class ActivityRecorder:

    def __init__(self, store: IStore):
        self.store = store

    async def log_action(
        self,
        user_id: Optional[int],
        action: str,
        resource: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record an action. Never raises."""
        metadata = metadata or {}
        try:
            await self.store.activity.append(user_id, action, resource, metadata)
        except Exception as e:
            logger.error("activity_log_failed", action=action, resource=resource, error=str(e))
            return

        try:
            await log_event(
                order_id=metadata.get("order_id"),
                event_type=action,
                payload={"user_id": user_id, "resource": resource, **metadata},
                component=resource,
            )
        except Exception as e:
            logger.error("event_log_failed", action=action, error=str(e))
