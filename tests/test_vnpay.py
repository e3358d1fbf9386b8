import asyncio
import hashlib
import hmac
from decimal import Decimal
from urllib.parse import parse_qsl, urlsplit

import pytest

from conftest import VNP_SECRET, vnpay_callback
from config import VnpayConfig
from errors import ConfigurationError, InvalidStateError, NotFoundError
from payments.vnpay import (
    VnpayAdapter,
    build_sign_data,
    normalize_ip,
    sign_params,
    sort_params,
    to_vnp_amount,
    verify_signature,
)
from schemas.orders import OrderStatus
from schemas.payments import PaymentProvider, PaymentStatus, ReconciliationOutcome


async def _payment(store, txn_ref):
    return await store.payments.get_by_txn_ref(PaymentProvider.VNPAY, txn_ref)


# =============================================================================
# SIGNING
# =============================================================================

def test_sign_then_verify_round_trip():
    params = {
        "vnp_Amount": "10000000",
        "vnp_OrderInfo": "Thanh toan cho ma GD:1",
        "vnp_TxnRef": "1-20250115103000",
        "vnp_ResponseCode": "00",
    }
    signed = {**params, "vnp_SecureHash": sign_params(params, VNP_SECRET)}

    assert verify_signature(signed, VNP_SECRET)


def test_flipping_one_hash_character_fails_verification():
    params = {"vnp_Amount": "10000000", "vnp_TxnRef": "1-20250115103000"}
    secure_hash = sign_params(params, VNP_SECRET)
    flipped = ("1" if secure_hash[0] != "1" else "2") + secure_hash[1:]

    assert not verify_signature({**params, "vnp_SecureHash": flipped}, VNP_SECRET)


def test_verification_ignores_hash_type_and_hash_case():
    params = {"vnp_Amount": "10000000", "vnp_TxnRef": "1-20250115103000"}
    signed = {
        **params,
        "vnp_SecureHash": sign_params(params, VNP_SECRET).upper(),
        "vnp_SecureHashType": "HmacSHA512",
    }
    assert verify_signature(signed, VNP_SECRET)


def test_wrong_secret_or_missing_hash_fails():
    params = {"vnp_Amount": "10000000"}
    assert not verify_signature({**params, "vnp_SecureHash": sign_params(params, "other")}, VNP_SECRET)
    assert not verify_signature(params, VNP_SECRET)


def test_sign_data_encodes_values_and_sorts_keys():
    sorted_params = sort_params({
        "vnp_TxnRef": "1-20250115103000",
        "vnp_OrderInfo": "Thanh toan cho ma GD:1",
        "vnp_Amount": 10000000,
        "vnp_BankCode": None,
    })

    assert list(sorted_params) == ["vnp_Amount", "vnp_OrderInfo", "vnp_TxnRef"]
    assert build_sign_data(sorted_params) == (
        "vnp_Amount=10000000&vnp_OrderInfo=Thanh+toan+cho+ma+GD%3A1&vnp_TxnRef=1-20250115103000"
    )


def test_empty_values_are_part_of_the_sign_data():
    params = {
        "vnp_TxnRef": "1-20250115103000",
        "vnp_BankTranNo": "",
        "vnp_Amount": "10000000",
    }
    sign_data = "vnp_Amount=10000000&vnp_BankTranNo=&vnp_TxnRef=1-20250115103000"
    expected = hmac.new(VNP_SECRET.encode(), sign_data.encode(), hashlib.sha512).hexdigest()

    assert build_sign_data(sort_params(params)) == sign_data
    assert verify_signature({**params, "vnp_SecureHash": expected}, VNP_SECRET)


@pytest.mark.parametrize("raw, expected", [
    (None, "127.0.0.1"),
    ("::1", "127.0.0.1"),
    ("::ffff:10.0.0.5", "10.0.0.5"),
    ("203.0.113.9, 10.0.0.1", "203.0.113.9"),
    ("2001:db8::1", "127.0.0.1"),
])
def test_normalize_ip(raw, expected):
    assert normalize_ip(raw) == expected


def test_amount_is_scaled_by_100():
    assert to_vnp_amount(Decimal("100000")) == 10000000


# =============================================================================
# PAYMENT URL
# =============================================================================

async def test_create_payment_url(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id, client_ip="::1", bank_code="NCB")

    assert request.txn_ref == f"{order.order_id}-20250115103000"
    assert request.redirect_url.startswith("https://sandbox.vnpayment.vn/paymentv2/vpcpay.html?")

    query = dict(parse_qsl(urlsplit(request.redirect_url).query))
    assert query["vnp_Amount"] == "10000000"
    assert query["vnp_TmnCode"] == "FATFOOD1"
    assert query["vnp_IpAddr"] == "127.0.0.1"
    assert query["vnp_BankCode"] == "NCB"
    assert query["vnp_CreateDate"] == "20250115103000"
    assert verify_signature(query, VNP_SECRET)

    payment = await _payment(store, request.txn_ref)
    assert payment.status == PaymentStatus.INITIATED
    assert payment.amount == Decimal("100000")
    assert payment.currency == "VND"


async def test_debug_mode_returns_sign_data(vnpay, order):
    request = await vnpay.create_payment_request(order.order_id, with_debug=True)
    assert request.extra["debug"]["sign_data"].startswith("vnp_Amount=10000000&")


async def test_each_request_mints_a_new_txn_ref(vnpay, order, clock):
    first = await vnpay.create_payment_request(order.order_id)
    clock.advance(1)
    second = await vnpay.create_payment_request(order.order_id)

    assert first.txn_ref != second.txn_ref


async def test_same_second_txn_ref_is_rejected(vnpay, order):
    await vnpay.create_payment_request(order.order_id)
    with pytest.raises(InvalidStateError) as exc:
        await vnpay.create_payment_request(order.order_id)
    assert exc.value.code == "DUPLICATE_TXN_REF"


async def test_missing_credentials_fail_before_anything_is_recorded(store, reconciler, order):
    adapter = VnpayAdapter(store, reconciler, VnpayConfig())
    with pytest.raises(ConfigurationError) as exc:
        await adapter.create_payment_request(order.order_id)

    assert exc.value.code == "VNPAY_CONFIG_MISSING"
    assert await store.payments.list_for_order(order.order_id) == []


async def test_unknown_order(vnpay):
    with pytest.raises(NotFoundError):
        await vnpay.create_payment_request(999)


async def test_other_customers_order_is_not_found(vnpay, order):
    with pytest.raises(NotFoundError):
        await vnpay.create_payment_request(order.order_id, user_id=2)


@pytest.mark.parametrize("status", [OrderStatus.CANCELED, OrderStatus.REFUNDED])
async def test_non_payable_order_is_rejected(vnpay, store, order, status):
    await store.orders.save(order.model_copy(update={"status": status}))
    with pytest.raises(InvalidStateError) as exc:
        await vnpay.create_payment_request(order.order_id)
    assert exc.value.code == "ORDER_INVALID_STATUS"


# =============================================================================
# RETURN URL
# =============================================================================

async def test_return_success_marks_order_paid(vnpay, store, order, on_duty):
    store.carts.add_line(1, 1, 2)
    request = await vnpay.create_payment_request(order.order_id)
    payment = await _payment(store, request.txn_ref)

    result = await vnpay.handle_return(vnpay_callback(payment))

    assert result.ok
    assert result.code == "00"
    assert result.outcome == ReconciliationOutcome.APPLIED

    updated_order = await store.orders.get(order.order_id)
    assert updated_order.status == OrderStatus.PAID
    assert updated_order.assigned_staff_id == on_duty
    assert (await _payment(store, request.txn_ref)).status == PaymentStatus.SUCCESS
    assert store.carts.lines(1) == []
    assert any(entry["action"] == "PAYMENT_CONFIRMED" for entry in store.state.activity)


async def test_return_after_ipn_is_reported_as_success(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    params = vnpay_callback(await _payment(store, request.txn_ref))

    assert (await vnpay.handle_ipn(params))["RspCode"] == "00"
    result = await vnpay.handle_return(params)

    assert result.ok
    assert result.outcome == ReconciliationOutcome.DUPLICATE


async def test_return_with_declined_code(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    result = await vnpay.handle_return(vnpay_callback(await _payment(store, request.txn_ref), response_code="24"))

    assert not result.ok
    assert result.code == "24"
    payment = await _payment(store, request.txn_ref)
    assert payment.status == PaymentStatus.FAILED
    assert payment.meta["response_code"] == "24"
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PENDING


async def test_return_with_bad_signature(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    params = vnpay_callback(await _payment(store, request.txn_ref), secret="not-the-secret")

    result = await vnpay.handle_return(params)

    assert not result.ok
    assert result.code == "97"
    assert (await _payment(store, request.txn_ref)).meta["reason"] == "INVALID_SIGNATURE"


async def test_return_for_unknown_txn_ref(vnpay):
    with pytest.raises(NotFoundError):
        await vnpay.handle_return({"vnp_TxnRef": "404-20250115103000", "vnp_SecureHash": "00"})


# =============================================================================
# IPN
# =============================================================================

async def test_ipn_delivered_twice(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    params = vnpay_callback(await _payment(store, request.txn_ref))

    first = await vnpay.handle_ipn(params)
    after_first = (await _payment(store, request.txn_ref), await store.orders.get(order.order_id))
    second = await vnpay.handle_ipn(params)
    after_second = (await _payment(store, request.txn_ref), await store.orders.get(order.order_id))

    assert first == {"RspCode": "00", "Message": "Confirm Success"}
    assert second["RspCode"] == "02"
    assert after_first == after_second
    assert after_second[0].status == PaymentStatus.SUCCESS
    assert after_second[1].status == OrderStatus.PAID


async def test_ipn_with_blank_bank_transaction_number(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    params = vnpay_callback(await _payment(store, request.txn_ref))
    params.pop("vnp_SecureHash")
    params["vnp_BankTranNo"] = ""
    params["vnp_SecureHash"] = sign_params(params, VNP_SECRET)

    response = await vnpay.handle_ipn(params)

    assert response["RspCode"] == "00"
    assert (await _payment(store, request.txn_ref)).status == PaymentStatus.SUCCESS
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PAID


async def test_simultaneous_ipn_deliveries(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    params = vnpay_callback(await _payment(store, request.txn_ref))

    responses = await asyncio.gather(vnpay.handle_ipn(params), vnpay.handle_ipn(dict(params)))

    assert sorted(r["RspCode"] for r in responses) == ["00", "02"]
    payments = await store.payments.list_for_order(order.order_id)
    assert [p.status for p in payments] == [PaymentStatus.SUCCESS]


async def test_ipn_with_tampered_amount(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    payment = await _payment(store, request.txn_ref)

    response = await vnpay.handle_ipn(vnpay_callback(payment, amount="100000"))

    assert response["RspCode"] == "04"
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PENDING
    failed = await _payment(store, request.txn_ref)
    assert failed.status == PaymentStatus.FAILED
    assert failed.meta["reason"] == "AMOUNT_MISMATCH"
    assert failed.meta["claimed"] == "1000"


async def test_ipn_with_invalid_signature_records_failure(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    params = vnpay_callback(await _payment(store, request.txn_ref))
    params["vnp_ResponseCode"] = "00 "

    response = await vnpay.handle_ipn(params)

    assert response["RspCode"] == "97"
    payment = await _payment(store, request.txn_ref)
    assert payment.status == PaymentStatus.FAILED
    assert payment.meta["reason"] == "INVALID_SIGNATURE"
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PENDING


async def test_ipn_invalid_signature_after_success_keeps_success(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    payment = await _payment(store, request.txn_ref)
    await vnpay.handle_ipn(vnpay_callback(payment))

    response = await vnpay.handle_ipn(vnpay_callback(payment, secret="forged"))

    assert response["RspCode"] == "97"
    payment = await _payment(store, request.txn_ref)
    assert payment.status == PaymentStatus.SUCCESS
    assert "rejected_callback" in payment.meta


async def test_ipn_unknown_txn_ref(vnpay):
    response = await vnpay.handle_ipn({"vnp_TxnRef": "404-20250115103000", "vnp_SecureHash": "00"})
    assert response == {"RspCode": "01", "Message": "Order not found"}


async def test_ipn_declined_is_acknowledged(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)
    payment = await _payment(store, request.txn_ref)

    response = await vnpay.handle_ipn(vnpay_callback(payment, response_code="11"))

    assert response["RspCode"] == "00"
    assert (await _payment(store, request.txn_ref)).status == PaymentStatus.FAILED
    assert (await store.orders.get(order.order_id)).status == OrderStatus.PENDING


async def test_ipn_never_raises_without_configuration(store, reconciler):
    adapter = VnpayAdapter(store, reconciler, VnpayConfig())
    response = await adapter.handle_ipn({"vnp_TxnRef": "1-20250115103000"})
    assert response == {"RspCode": "99", "Message": "Unknown error"}


# =============================================================================
# STATUS LOOKUP
# =============================================================================

async def test_status_lookup_is_owner_scoped(vnpay, store, order):
    request = await vnpay.create_payment_request(order.order_id)

    status = await vnpay.get_status(request.txn_ref, user_id=1)
    assert status["payment_status"] == "initiated"
    assert status["order_status"] == "pending"

    with pytest.raises(NotFoundError):
        await vnpay.get_status(request.txn_ref, user_id=2)
