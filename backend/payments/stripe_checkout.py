"""
Stripe Adapter
==============
PaymentIntent based checkout. The client confirms the intent in the browser
with the returned client_secret; the outcome arrives only through the signed
webhook.

The PaymentIntent id is the ledger `txn_ref`.

pip install stripe
"""

import asyncio
import json
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import stripe

from config import StripeConfig
from database import log_event
from errors import ConfigurationError, NotFoundError, ProviderError, SignatureInvalidError
from payments.base import PaymentAdapter
from schemas.payments import CallbackRequest, PaymentProvider, PaymentRequest, ProviderEvent

ZERO_DECIMAL_CURRENCIES = frozenset({"vnd", "jpy", "krw"})


def to_minor_units(amount: Decimal, currency: str) -> int:
    value = Decimal(amount)
    if currency.lower() not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int], currency: str) -> Optional[Decimal]:
    if amount is None:
        return None
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return Decimal(amount) / 100


class StripeAdapter(PaymentAdapter):

    provider = PaymentProvider.STRIPE

    def __init__(self, store, reconciler, config: StripeConfig, client: Optional[stripe.StripeClient] = None, clock=None):
        super().__init__(store, reconciler, clock)
        self.config = config
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            raise ConfigurationError("Stripe client not configured", code="STRIPE_CLIENT_MISSING")
        return self._client

    async def create_payment_request(
        self,
        order_id: int,
        user_id: Optional[int] = None,
        **options: Any,
    ) -> PaymentRequest:
        cfg = self.config.ensure()
        order = await self.load_payable_order(order_id, user_id)
        currency = cfg.currency.lower()

        try:
            intent = await asyncio.to_thread(self.client.payment_intents.create, params={
                "amount": to_minor_units(order.total_amount, currency),
                "currency": currency,
                "metadata": {"order_id": str(order_id)},
                "automatic_payment_methods": {"enabled": True},
            })
        except stripe.StripeError as e:
            self._logger.error("stripe_intent_failed", order_id=order_id, error=str(e))
            raise ProviderError(
                "Could not create Stripe payment intent",
                code="STRIPE_INTENT_FAILED",
                metadata={"order_id": order_id},
            )

        payment = await self.record_initiated(order, intent["id"], currency.upper(), meta={"stripe_pi": intent["id"]})
        self._logger.info("stripe_intent_created", order_id=order_id, txn_ref=payment.txn_ref)
        return self.to_request(
            payment,
            client_secret=intent["client_secret"],
            extra={"payment_intent_id": intent["id"]},
        )

    async def verify_callback(self, request: CallbackRequest) -> bool:
        secret = self.config.ensure_webhook()
        signature = request.header("stripe-signature")
        if not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(request.body.decode("utf-8"), signature, secret)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            self._logger.warning("stripe_signature_invalid", error=str(e))
            return False
        return True

    async def handle_webhook(self, request: CallbackRequest) -> dict[str, Any]:
        """
        Verify and apply a Stripe event.

        payment_intent.succeeded -> success. payment_intent.payment_failed is
        recorded on the row, which stays initiated: the customer may retry the
        same intent and a later succeeded event still settles it. Everything
        else is acknowledged and ignored.
        """
        try:
            event = json.loads(request.body or b"{}")
        except ValueError:
            event = None

        intent = ((event or {}).get("data") or {}).get("object") or {}
        txn_ref = intent.get("id") if intent.get("object") == "payment_intent" else None

        if event is None or not await self.verify_callback(request):
            await self.reconciler.record_signature_failure(self.provider, txn_ref, {"type": (event or {}).get("type")})
            raise SignatureInvalidError("Stripe webhook signature invalid", code="STRIPE_WEBHOOK_INVALID")

        event_type = event.get("type")
        if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed") or not txn_ref:
            self._logger.info("stripe_webhook_ignored", event_type=event_type)
            return {"received": True, "type": event_type, "matched": False}

        if event_type == "payment_intent.payment_failed":
            return await self._record_decline(event, intent, txn_ref)

        currency = intent.get("currency") or self.config.currency
        try:
            result = await self.reconcile(ProviderEvent(
                provider=self.provider,
                txn_ref=txn_ref,
                succeeded=True,
                claimed_amount=from_minor_units(intent.get("amount_received"), currency),
                response_code=intent.get("status"),
                event_id=event.get("id"),
                payload={"stripe_event": {"id": event.get("id"), "type": event_type}},
            ))
        except NotFoundError:
            self._logger.warning("stripe_webhook_unmatched", txn_ref=txn_ref)
            return {"received": True, "type": event_type, "matched": False}

        return {"received": True, "type": event_type, "matched": True, "outcome": result.outcome.value}

    async def _record_decline(self, event: dict[str, Any], intent: dict[str, Any], txn_ref: str) -> dict[str, Any]:
        event_type = event.get("type")
        last_error = intent.get("last_payment_error") or {}
        decline = {
            "code": last_error.get("code") or "STRIPE_PAYMENT_FAILED",
            "message": last_error.get("message"),
            "event_id": event.get("id"),
            "at": datetime.now(timezone.utc).isoformat(),
        }

        async with self.store.transaction() as tx:
            payment = await tx.payments.get_by_txn_ref(self.provider, txn_ref, for_update=True)
            if payment is None:
                self._logger.warning("stripe_webhook_unmatched", txn_ref=txn_ref)
                return {"received": True, "type": event_type, "matched": False}
            if payment.is_terminal:
                payment = await tx.payments.save(payment.with_meta(late_event={**decline, "succeeded": False}))
            else:
                payment = await tx.payments.save(payment.with_meta(
                    last_decline=decline,
                    decline_count=int(payment.meta.get("decline_count", 0)) + 1,
                ))

        await log_event(
            order_id=payment.order_id,
            event_type="PAYMENT_DECLINED",
            payload={"provider": self.provider.value, "txn_ref": txn_ref, "code": decline["code"]},
            component="stripe",
            severity="WARN",
        )
        return {
            "received": True,
            "type": event_type,
            "matched": True,
            "outcome": "declined",
            "status": payment.status.value,
        }
