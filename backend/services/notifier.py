# services/notifier.py
# ============================================================================
# FATFOOD BACKEND — REALTIME NOTIFIER
# ============================================================================
# Per-user and per-role WebSocket rooms; delivery is best-effort
# ============================================================================

from typing import Any, Dict, List, Optional

import structlog
from fastapi import WebSocket

logger = structlog.get_logger().bind(component="realtime")

STAFF_ROOM = "staff"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


class RealtimeNotifier:
    """Manages WebSocket connections for real-time order/payment updates"""

    def __init__(self):
        self._rooms: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: int, role: Optional[str] = None):
        """Accept and register connection"""
        await websocket.accept()
        rooms = [user_room(user_id)]
        if role in ("staff", "admin"):
            rooms.append(STAFF_ROOM)
        for room in rooms:
            self._rooms.setdefault(room, []).append(websocket)
        logger.info("websocket_connected", user_id=user_id, role=role)

    def disconnect(self, websocket: WebSocket):
        """Remove connection from every room"""
        for room in list(self._rooms):
            if websocket in self._rooms[room]:
                self._rooms[room].remove(websocket)
            if not self._rooms[room]:
                del self._rooms[room]

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, []))

    async def emit(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        """Send to every socket in a room; returns how many received it"""
        delivered = 0
        dead = []
        for websocket in list(self._rooms.get(room, [])):
            try:
                await websocket.send_json({"event": event, "data": payload})
                delivered += 1
            except Exception as e:
                logger.warning("websocket_send_failed", room=room, event_name=event, error=str(e))
                dead.append(websocket)
        for websocket in dead:
            self.disconnect(websocket)
        return delivered

    async def emit_to_user(self, user_id: int, event: str, payload: Dict[str, Any]) -> int:
        return await self.emit(user_room(user_id), event, payload)

    async def emit_to_staff(self, event: str, payload: Dict[str, Any]) -> int:
        return await self.emit(STAFF_ROOM, event, payload)
