"""
PayPal Adapter
==============
Orders v2 REST API over httpx.

Flow: create a PayPal order (intent CAPTURE) -> customer approves on PayPal
-> return URL captures it -> reconciliation. Webhooks are verified by
PayPal's verify-webhook-signature endpoint before anything is trusted.

The PayPal order id is the ledger `txn_ref`.
"""

import json
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx

from config import PaypalConfig
from errors import NotFoundError, ProviderError, SignatureInvalidError, ValidationError
from payments.base import PaymentAdapter
from schemas.payments import (
    CallbackRequest,
    PaymentProvider,
    PaymentRequest,
    PaymentStatus,
    ProviderEvent,
)

TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

SUCCESS_EVENTS = frozenset({"PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED"})
FAILURE_EVENTS = frozenset({"PAYMENT.CAPTURE.DENIED"})


def format_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _captured_amount(result: dict[str, Any]) -> Optional[Decimal]:
    for unit in result.get("purchase_units") or []:
        for capture in (unit.get("payments") or {}).get("captures") or []:
            value = (capture.get("amount") or {}).get("value")
            if value is not None:
                return Decimal(str(value))
    return None


def _webhook_order_id(event_type: str, resource: dict[str, Any]) -> Optional[str]:
    related = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
    if event_type.startswith("PAYMENT.CAPTURE."):
        return related
    return resource.get("id") or related


class PaypalAdapter(PaymentAdapter):

    provider = PaymentProvider.PAYPAL

    def __init__(self, store, reconciler, config: PaypalConfig, http: httpx.AsyncClient, clock=None):
        super().__init__(store, reconciler, clock)
        self.config = config
        self.http = http
        self._token: Optional[str] = None
        self._token_expires_at = None

    # -------------------------------------------------------------------------
    # REST plumbing
    # -------------------------------------------------------------------------

    async def _access_token(self) -> str:
        cfg = self.config.ensure()
        now = self._clock()
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token

        try:
            response = await self.http.post(
                f"{cfg.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(cfg.client_id, cfg.client_secret),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._logger.error("paypal_token_failed", error=str(e))
            raise ProviderError("Could not authenticate with PayPal", code="PAYPAL_AUTH_FAILED")

        body = response.json()
        self._token = body["access_token"]
        # Refresh a minute early
        self._token_expires_at = now + timedelta(seconds=max(int(body.get("expires_in", 0)) - 60, 0))
        return self._token

    async def _call(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> httpx.Response:
        token = await self._access_token()
        return await self.http.request(
            method,
            f"{self.config.base_url}{path}",
            json=payload,
            headers={
                "Authorization": f"Bearer {token}",
                "Prefer": "return=representation",
            },
        )

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def create_payment_request(
        self,
        order_id: int,
        user_id: Optional[int] = None,
        **options: Any,
    ) -> PaymentRequest:
        cfg = self.config.ensure()
        order = await self.load_payable_order(order_id, user_id)
        currency = cfg.currency.upper()

        try:
            response = await self._call("POST", "/v2/checkout/orders", {
                "intent": "CAPTURE",
                "purchase_units": [{
                    "reference_id": f"ORDER-{order_id}",
                    "amount": {"currency_code": currency, "value": format_amount(order.total_amount)},
                }],
                "application_context": {
                    "return_url": cfg.return_url,
                    "cancel_url": cfg.cancel_url,
                    "user_action": "PAY_NOW",
                },
            })
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._logger.error("paypal_create_failed", order_id=order_id, error=str(e))
            raise ProviderError(
                "Could not create PayPal order",
                code="PAYPAL_CREATE_FAILED",
                metadata={"order_id": order_id},
            )

        result = response.json()
        approval_url = next(
            (link.get("href") for link in result.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not approval_url:
            raise ProviderError(
                "PayPal did not return an approval link",
                status_code=500,
                code="PAYPAL_APPROVAL_URL_MISSING",
            )

        payment = await self.record_initiated(order, result["id"], currency, meta={"paypal_order": result})
        self._logger.info("paypal_order_created", order_id=order_id, txn_ref=payment.txn_ref)
        return self.to_request(payment, redirect_url=approval_url, extra={"paypal_order_id": result["id"]})

    async def verify_callback(self, request: CallbackRequest) -> bool:
        webhook_id = self.config.ensure_webhook()
        headers = {field: request.header(name) for field, name in TRANSMISSION_HEADERS.items()}
        if not all(headers.values()):
            return False

        try:
            event = json.loads(request.body or b"{}")
        except ValueError:
            return False

        try:
            response = await self._call("POST", "/v1/notifications/verify-webhook-signature", {
                **headers,
                "webhook_id": webhook_id,
                "webhook_event": event,
            })
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._logger.warning("paypal_verify_failed", error=str(e))
            return False
        return response.json().get("verification_status") == "SUCCESS"

    # -------------------------------------------------------------------------
    # Return / webhook / cancel
    # -------------------------------------------------------------------------

    async def capture(self, paypal_order_id: Optional[str]) -> dict[str, Any]:
        """Capture an approved PayPal order and reconcile the result."""
        if not paypal_order_id:
            raise ValidationError("Missing PayPal order token", status_code=400, code="PAYPAL_TOKEN_MISSING")

        payment = await self.store.payments.get_by_txn_ref(self.provider, paypal_order_id)
        if payment is not None and payment.status == PaymentStatus.SUCCESS:
            return {"ok": True, "order_id": payment.order_id, "status": "COMPLETED", "already_captured": True}

        try:
            response = await self._call("POST", f"/v2/checkout/orders/{paypal_order_id}/capture", {})
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._logger.error("paypal_capture_failed", txn_ref=paypal_order_id, error=str(e))
            raise ProviderError(
                "Could not capture PayPal order",
                code="PAYPAL_CAPTURE_FAILED",
                metadata={"paypal_order_id": paypal_order_id},
            )

        result = response.json()
        status = result.get("status")
        if status != "COMPLETED":
            return {"ok": False, "order_id": payment.order_id if payment else None, "status": status}

        reconciled = await self.reconcile(ProviderEvent(
            provider=self.provider,
            txn_ref=paypal_order_id,
            succeeded=True,
            claimed_amount=_captured_amount(result),
            response_code=status,
            event_id=result.get("id"),
            payload={"paypal_capture": result},
        ))
        return {
            "ok": reconciled.paid,
            "order_id": reconciled.payment.order_id,
            "status": status,
            "outcome": reconciled.outcome.value,
        }

    async def handle_webhook(self, request: CallbackRequest) -> dict[str, Any]:
        try:
            event = json.loads(request.body or b"{}")
        except ValueError:
            raise SignatureInvalidError("Malformed PayPal webhook body", code="PAYPAL_WEBHOOK_INVALID")

        event_type = event.get("event_type") or ""
        resource = event.get("resource") or {}
        txn_ref = _webhook_order_id(event_type, resource)

        if not await self.verify_callback(request):
            await self.reconciler.record_signature_failure(self.provider, txn_ref, {"event_type": event_type})
            raise SignatureInvalidError("PayPal webhook signature invalid", code="PAYPAL_WEBHOOK_INVALID")

        if not txn_ref or (event_type not in SUCCESS_EVENTS and event_type not in FAILURE_EVENTS):
            self._logger.info("paypal_webhook_ignored", event_type=event_type)
            return {"received": True, "matched": False}

        value = (resource.get("amount") or {}).get("value")
        succeeded = event_type in SUCCESS_EVENTS
        try:
            result = await self.reconcile(ProviderEvent(
                provider=self.provider,
                txn_ref=txn_ref,
                succeeded=succeeded,
                claimed_amount=Decimal(str(value)) if value is not None else None,
                response_code=event_type,
                failure_reason=None if succeeded else "PAYPAL_CAPTURE_DENIED",
                event_id=event.get("id"),
                payload={"paypal_event": {"id": event.get("id"), "event_type": event_type}},
            ))
        except NotFoundError:
            self._logger.warning("paypal_webhook_unmatched", event_type=event_type, txn_ref=txn_ref)
            return {"received": True, "matched": False}

        return {"received": True, "matched": True, "outcome": result.outcome.value}

    async def cancel(self, paypal_order_id: Optional[str]) -> dict[str, Any]:
        """Customer left PayPal without approving. The attempt stays open."""
        if not paypal_order_id:
            return {"ok": False, "canceled": True}
        payment = await self.store.payments.get_by_txn_ref(self.provider, paypal_order_id)
        if payment is not None and not payment.is_terminal:
            await self.store.payments.save(payment.with_meta(canceled_by_customer_at=self._clock().isoformat()))
        return {"ok": False, "canceled": True, "order_id": payment.order_id if payment else None}
