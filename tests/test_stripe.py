import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
import stripe

from conftest import STRIPE_WEBHOOK_SECRET
from config import StripeConfig
from errors import ConfigurationError, ProviderError, SignatureInvalidError
from payments.stripe_checkout import StripeAdapter, from_minor_units, to_minor_units
from schemas.orders import OrderStatus
from schemas.payments import CallbackRequest, PaymentProvider, PaymentStatus


def _signed(event, secret=STRIPE_WEBHOOK_SECRET):
    body = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return CallbackRequest(
        headers={"stripe-signature": f"t={timestamp},v1={signature}"},
        body=body.encode(),
    )


def _intent_event(event_type, intent_id, amount=100000, **intent_fields):
    return {
        "id": "evt_1OaBcD2eZvKYlo2C",
        "object": "event",
        "type": event_type,
        "data": {"object": {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "amount_received": amount if event_type == "payment_intent.succeeded" else 0,
            "currency": "vnd",
            "status": "succeeded" if event_type == "payment_intent.succeeded" else "requires_payment_method",
            "metadata": {"order_id": "1"},
            **intent_fields,
        }},
    }


async def _payment(store, txn_ref):
    return await store.payments.get_by_txn_ref(PaymentProvider.STRIPE, txn_ref)


@pytest.mark.parametrize("amount, currency, expected", [
    (Decimal("100000"), "vnd", 100000),
    (Decimal("1500"), "JPY", 1500),
    (Decimal("12.34"), "usd", 1234),
    (Decimal("10"), "eur", 1000),
])
def test_minor_units(amount, currency, expected):
    assert to_minor_units(amount, currency) == expected
    assert from_minor_units(expected, currency) == amount


async def test_create_intent(stripe_adapter, stripe_client, store, order):
    request = await stripe_adapter.create_payment_request(order.order_id)

    params = stripe_client.payment_intents.calls[0]
    assert params["amount"] == 100000
    assert params["currency"] == "vnd"
    assert params["metadata"] == {"order_id": str(order.order_id)}
    assert params["automatic_payment_methods"] == {"enabled": True}

    assert request.client_secret == "pi_test_1_secret_abc"
    assert request.txn_ref == "pi_test_1"
    payment = await _payment(store, "pi_test_1")
    assert payment.currency == "VND"
    assert payment.amount == Decimal("100000")


async def test_create_intent_scales_two_decimal_currencies(store, reconciler, stripe_client, order):
    adapter = StripeAdapter(store, reconciler, StripeConfig(secret_key="sk_test", currency="usd"), client=stripe_client)
    await adapter.create_payment_request(order.order_id)
    assert stripe_client.payment_intents.calls[0]["amount"] == 10000000


async def test_stripe_error_becomes_provider_error(stripe_adapter, stripe_client, store, order):
    stripe_client.payment_intents.error = stripe.StripeError("network down")

    with pytest.raises(ProviderError) as exc:
        await stripe_adapter.create_payment_request(order.order_id)

    assert exc.value.code == "STRIPE_INTENT_FAILED"
    assert await store.payments.list_for_order(order.order_id) == []


async def test_missing_secret_key(store, reconciler, order):
    adapter = StripeAdapter(store, reconciler, StripeConfig())
    with pytest.raises(ConfigurationError) as exc:
        await adapter.create_payment_request(order.order_id)
    assert exc.value.code == "STRIPE_CONFIG_MISSING"


async def test_configured_adapter_without_client(store, reconciler, order):
    adapter = StripeAdapter(store, reconciler, StripeConfig(secret_key="sk_test"))
    with pytest.raises(ConfigurationError) as exc:
        await adapter.create_payment_request(order.order_id)
    assert exc.value.code == "STRIPE_CLIENT_MISSING"
    assert await store.payments.list_for_order(order.order_id) == []


async def test_succeeded_webhook_marks_order_paid(stripe_adapter, store, order):
    request = await stripe_adapter.create_payment_request(order.order_id)

    result = await stripe_adapter.handle_webhook(_signed(_intent_event("payment_intent.succeeded", request.txn_ref)))

    assert result["matched"]
    assert result["outcome"] == "applied"
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PAID
    assert (await _payment(store, request.txn_ref)).status == PaymentStatus.SUCCESS


async def test_redelivered_webhook_is_a_no_op(stripe_adapter, store, order):
    request = await stripe_adapter.create_payment_request(order.order_id)
    event = _signed(_intent_event("payment_intent.succeeded", request.txn_ref))

    await stripe_adapter.handle_webhook(event)
    payment = await _payment(store, request.txn_ref)
    again = await stripe_adapter.handle_webhook(event)

    assert again["outcome"] == "duplicate"
    assert await _payment(store, request.txn_ref) == payment


async def test_payment_failed_webhook_keeps_intent_open(stripe_adapter, store, order):
    request = await stripe_adapter.create_payment_request(order.order_id)
    event = _intent_event(
        "payment_intent.payment_failed",
        request.txn_ref,
        last_payment_error={"code": "card_declined", "message": "Your card was declined."},
    )

    result = await stripe_adapter.handle_webhook(_signed(event))

    assert result["matched"]
    assert result["outcome"] == "declined"
    payment = await _payment(store, request.txn_ref)
    assert payment.status == PaymentStatus.INITIATED
    assert payment.meta["last_decline"]["code"] == "card_declined"
    assert payment.meta["decline_count"] == 1
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PENDING


async def test_retry_after_decline_succeeds(stripe_adapter, store, order):
    request = await stripe_adapter.create_payment_request(order.order_id)
    declined = _intent_event(
        "payment_intent.payment_failed",
        request.txn_ref,
        last_payment_error={"code": "insufficient_funds"},
    )

    await stripe_adapter.handle_webhook(_signed(declined))
    await stripe_adapter.handle_webhook(_signed(declined))
    result = await stripe_adapter.handle_webhook(_signed(_intent_event("payment_intent.succeeded", request.txn_ref)))

    assert result["outcome"] == "applied"
    payment = await _payment(store, request.txn_ref)
    assert payment.status == PaymentStatus.SUCCESS
    assert payment.meta["decline_count"] == 2
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PAID


async def test_decline_after_success_is_only_audited(stripe_adapter, store, order):
    request = await stripe_adapter.create_payment_request(order.order_id)
    await stripe_adapter.handle_webhook(_signed(_intent_event("payment_intent.succeeded", request.txn_ref)))

    result = await stripe_adapter.handle_webhook(_signed(_intent_event("payment_intent.payment_failed", request.txn_ref)))

    assert result["status"] == "success"
    payment = await _payment(store, request.txn_ref)
    assert payment.status == PaymentStatus.SUCCESS
    assert payment.meta["late_event"]["code"] == "STRIPE_PAYMENT_FAILED"


async def test_other_events_are_acknowledged(stripe_adapter, store, order):
    request = await stripe_adapter.create_payment_request(order.order_id)

    result = await stripe_adapter.handle_webhook(_signed(_intent_event("payment_intent.created", request.txn_ref)))

    assert result == {"received": True, "type": "payment_intent.created", "matched": False}
    assert (await _payment(store, request.txn_ref)).status == PaymentStatus.INITIATED


async def test_forged_signature_fails_the_payment(stripe_adapter, store, order):
    request = await stripe_adapter.create_payment_request(order.order_id)
    forged = _signed(_intent_event("payment_intent.succeeded", request.txn_ref), secret="whsec_attacker")

    with pytest.raises(SignatureInvalidError) as exc:
        await stripe_adapter.handle_webhook(forged)

    assert exc.value.code == "STRIPE_WEBHOOK_INVALID"
    payment = await _payment(store, request.txn_ref)
    assert payment.status == PaymentStatus.FAILED
    assert payment.meta["reason"] == "INVALID_SIGNATURE"
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PENDING


async def test_missing_signature_header(stripe_adapter, order):
    request = await stripe_adapter.create_payment_request(order.order_id)
    event = _signed(_intent_event("payment_intent.succeeded", request.txn_ref))

    with pytest.raises(SignatureInvalidError):
        await stripe_adapter.handle_webhook(CallbackRequest(body=event.body))


async def test_webhook_for_unknown_intent(stripe_adapter):
    result = await stripe_adapter.handle_webhook(_signed(_intent_event("payment_intent.succeeded", "pi_unknown")))
    assert result["matched"] is False


async def test_webhook_secret_required(store, reconciler, stripe_client):
    adapter = StripeAdapter(store, reconciler, StripeConfig(secret_key="sk_test"), client=stripe_client)
    with pytest.raises(ConfigurationError) as exc:
        await adapter.handle_webhook(_signed(_intent_event("payment_intent.succeeded", "pi_1")))
    assert exc.value.code == "STRIPE_WEBHOOK_SECRET_MISSING"
