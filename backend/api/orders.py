"""
Order Routes
============
Customer order placement and cancellation, staff status updates.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.container import Container
from api.identity import Actor, require_roles
from api.payments import get_container
from schemas.orders import CreateOrderRequest

router = APIRouter(prefix="/api/orders", tags=["orders"])

any_role = require_roles()


class StatusUpdate(BaseModel):
    status: str


@router.post("", status_code=201)
async def create_order(
    body: CreateOrderRequest,
    actor: Actor = Depends(require_roles("customer", "admin")),
    container: Container = Depends(get_container),
):
    order = await container.orders.create_order(actor.user_id, body)
    return {"success": True, "data": order.model_dump(mode="json")}


@router.get("")
async def list_orders(
    status: Optional[str] = None,
    actor: Actor = Depends(any_role),
    container: Container = Depends(get_container),
):
    orders = await container.orders.list_orders(actor.user_id, status)
    return {"success": True, "data": [order.model_dump(mode="json") for order in orders]}


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    actor: Actor = Depends(any_role),
    container: Container = Depends(get_container),
):
    order = await container.orders.get_order(order_id, actor.scope_user_id())
    return {"success": True, "data": order.model_dump(mode="json")}


@router.get("/{order_id}/payments")
async def list_order_payments(
    order_id: int,
    actor: Actor = Depends(any_role),
    container: Container = Depends(get_container),
):
    payments = await container.orders.list_payments(order_id, actor.scope_user_id())
    return {"success": True, "data": [payment.model_dump(mode="json") for payment in payments]}


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    actor: Actor = Depends(require_roles("customer")),
    container: Container = Depends(get_container),
):
    order = await container.orders.cancel_order(actor.user_id, order_id)
    return {"success": True, "data": order.model_dump(mode="json")}


@router.patch("/{order_id}/status")
async def update_order_status(
    order_id: int,
    body: StatusUpdate,
    actor: Actor = Depends(require_roles("staff", "admin")),
    container: Container = Depends(get_container),
):
    order = await container.orders.advance_status(order_id, body.status, actor.user_id, actor.role)
    return {"success": True, "data": order.model_dump(mode="json")}
