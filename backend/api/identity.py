"""
Identity Resolution
===================
One policy for "who is calling", checked in this order:

1. `request.state.actor`, set by an upstream authentication middleware
2. the gateway headers `X-User-Id` / `X-User-Role`, honoured only when the
   request also carries `X-Gateway-Secret` matching `GATEWAY_SECRET`

Anything else is unauthenticated (401). Handlers never look for user ids in
bodies or query strings.
"""

import hmac
from typing import Callable

from fastapi import Request
from pydantic import BaseModel
from starlette.requests import HTTPConnection

from config import server_config
from errors import ForbiddenError, UnauthorizedError

ROLES = ("customer", "staff", "admin")


class Actor(BaseModel):
    user_id: int
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in ("staff", "admin")

    def scope_user_id(self):
        """Customers only ever see their own orders"""
        return self.user_id if self.role == "customer" else None


def _from_gateway(connection: HTTPConnection) -> bool:
    expected = server_config.GATEWAY_SECRET
    presented = connection.headers.get("x-gateway-secret")
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


def resolve_actor(connection: HTTPConnection) -> Actor:
    actor = getattr(connection.state, "actor", None)
    if isinstance(actor, Actor):
        return actor
    if isinstance(actor, dict) and actor.get("user_id") is not None:
        return Actor(user_id=int(actor["user_id"]), role=str(actor.get("role", "customer")))

    raw_id = connection.headers.get("x-user-id")
    role = (connection.headers.get("x-user-role") or "customer").lower()
    if raw_id is None:
        raise UnauthorizedError("Authentication required")
    if not _from_gateway(connection):
        raise UnauthorizedError("Identity headers not from the gateway", code="GATEWAY_UNTRUSTED")
    try:
        user_id = int(raw_id)
    except ValueError:
        raise UnauthorizedError("Invalid user id header")
    if role not in ROLES:
        raise UnauthorizedError("Unknown role", metadata={"role": role})
    return Actor(user_id=user_id, role=role)


def require_roles(*roles: str) -> Callable[[Request], Actor]:
    """FastAPI dependency: resolve the actor and enforce one of `roles`"""

    def dependency(request: Request) -> Actor:
        actor = resolve_actor(request)
        if roles and actor.role not in roles:
            raise ForbiddenError("Insufficient permissions", metadata={"required": list(roles)})
        return actor

    return dependency
