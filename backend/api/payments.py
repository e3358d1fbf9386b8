"""
Payment Routes
==============
Thin handlers under /api/payments. They extract provider payloads and hand
them to the adapters; no payment logic lives here.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from api.container import Container
from api.identity import Actor, require_roles
from errors import ValidationError
from schemas.payments import CallbackRequest, PaymentRequest

router = APIRouter(prefix="/api/payments", tags=["payments"])

customer_or_admin = require_roles("customer", "admin")
staff_or_admin = require_roles("staff", "admin")


def get_container(request: Request) -> Container:
    return request.app.state.container


async def read_params(request: Request) -> dict[str, Any]:
    """Query string merged with a JSON body, if any"""
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        body = await request.body()
        if body:
            try:
                payload = await request.json()
            except ValueError:
                raise ValidationError("Malformed JSON body", code="BODY_INVALID")
            if isinstance(payload, dict):
                params.update(payload)
    return params


def order_id_from(params: dict[str, Any]) -> int:
    raw = params.get("orderId", params.get("order_id"))
    try:
        order_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Invalid orderId", code="ORDER_ID_INVALID", metadata={"orderId": raw})
    if order_id <= 0:
        raise ValidationError("Invalid orderId", code="ORDER_ID_INVALID", metadata={"orderId": raw})
    return order_id


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    return request.client.host if request.client else None


async def callback_from(request: Request) -> CallbackRequest:
    return CallbackRequest(
        query=dict(request.query_params),
        headers={key.lower(): value for key, value in request.headers.items()},
        body=await request.body(),
    )


def ok(data: Any) -> dict[str, Any]:
    if isinstance(data, PaymentRequest):
        data = data.model_dump(mode="json")
    return {"success": True, "data": data}


# =============================================================================
# VNPAY
# =============================================================================

async def _create_vnpay(request: Request, actor: Actor, container: Container) -> PaymentRequest:
    params = await read_params(request)
    return await container.vnpay.create_payment_request(
        order_id_from(params),
        user_id=actor.scope_user_id(),
        client_ip=client_ip(request),
        bank_code=params.get("bankCode"),
        locale=params.get("locale"),
        with_debug=str(params.get("debug", "")).lower() in ("1", "true"),
    )


@router.api_route("/vnpay/create", methods=["GET", "POST"])
async def create_vnpay_url(
    request: Request,
    actor: Actor = Depends(customer_or_admin),
    container: Container = Depends(get_container),
):
    return ok(await _create_vnpay(request, actor, container))


@router.get("/vnpay/redirect")
async def redirect_to_vnpay(
    request: Request,
    actor: Actor = Depends(customer_or_admin),
    container: Container = Depends(get_container),
):
    payment_request = await _create_vnpay(request, actor, container)
    return RedirectResponse(payment_request.redirect_url, status_code=302)


@router.get("/vnpay/return")
async def vnpay_return(request: Request, container: Container = Depends(get_container)):
    result = await container.vnpay.handle_return(dict(request.query_params))
    return {"success": result.ok, "data": result.model_dump(mode="json")}


@router.get("/vnpay/ipn")
async def vnpay_ipn(request: Request, container: Container = Depends(get_container)):
    return await container.vnpay.handle_ipn(dict(request.query_params))


@router.get("/vnpay/status")
async def vnpay_status(
    request: Request,
    actor: Actor = Depends(customer_or_admin),
    container: Container = Depends(get_container),
):
    txn_ref = request.query_params.get("txnRef") or request.query_params.get("vnp_TxnRef")
    if not txn_ref:
        raise ValidationError("Missing txnRef", code="TXN_REF_REQUIRED")
    return ok(await container.vnpay.get_status(txn_ref, user_id=actor.scope_user_id()))


# =============================================================================
# PAYPAL
# =============================================================================

@router.api_route("/paypal/create", methods=["GET", "POST"])
async def create_paypal_order(
    request: Request,
    actor: Actor = Depends(customer_or_admin),
    container: Container = Depends(get_container),
):
    params = await read_params(request)
    return ok(await container.paypal.create_payment_request(order_id_from(params), user_id=actor.scope_user_id()))


@router.get("/paypal/return")
async def paypal_return(request: Request, container: Container = Depends(get_container)):
    result = await container.paypal.capture(request.query_params.get("token"))
    return {"success": result["ok"], "data": result}


@router.get("/paypal/cancel")
async def paypal_cancel(request: Request, container: Container = Depends(get_container)):
    return {"success": False, "data": await container.paypal.cancel(request.query_params.get("token"))}


@router.post("/paypal/webhook")
async def paypal_webhook(request: Request, container: Container = Depends(get_container)):
    return await container.paypal.handle_webhook(await callback_from(request))


# =============================================================================
# STRIPE
# =============================================================================

@router.post("/stripe/create-intent")
async def create_stripe_intent(
    request: Request,
    actor: Actor = Depends(customer_or_admin),
    container: Container = Depends(get_container),
):
    params = await read_params(request)
    return ok(await container.stripe.create_payment_request(order_id_from(params), user_id=actor.scope_user_id()))


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, container: Container = Depends(get_container)):
    # Signature verification needs the raw, unparsed body
    return await container.stripe.handle_webhook(await callback_from(request))


# =============================================================================
# COD / VIETQR
# =============================================================================

@router.api_route("/cod/create", methods=["GET", "POST"])
async def create_cod(
    request: Request,
    actor: Actor = Depends(customer_or_admin),
    container: Container = Depends(get_container),
):
    params = await read_params(request)
    return ok(await container.cod.create_payment_request(order_id_from(params), user_id=actor.scope_user_id()))


@router.api_route("/vietqr/create", methods=["GET", "POST"])
async def create_vietqr(
    request: Request,
    actor: Actor = Depends(customer_or_admin),
    container: Container = Depends(get_container),
):
    params = await read_params(request)
    return ok(await container.vietqr.create_payment_request(order_id_from(params), user_id=actor.scope_user_id()))


@router.post("/vietqr/confirm")
async def confirm_vietqr(
    request: Request,
    actor: Actor = Depends(customer_or_admin),
    container: Container = Depends(get_container),
):
    params = await read_params(request)
    payment = await container.vietqr.confirm(actor.user_id, order_id_from(params))
    return ok(payment.model_dump(mode="json"))


@router.post("/vietqr/settle")
async def settle_vietqr(
    request: Request,
    actor: Actor = Depends(staff_or_admin),
    container: Container = Depends(get_container),
):
    params = await read_params(request)
    received = params.get("receivedAmount")
    try:
        received_amount = Decimal(str(received)) if received is not None else None
    except InvalidOperation:
        raise ValidationError("Invalid receivedAmount", code="AMOUNT_INVALID")
    result = await container.vietqr.settle(actor.user_id, order_id_from(params), received_amount)
    return {"success": result.paid, "data": result.model_dump(mode="json")}
