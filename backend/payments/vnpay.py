"""
VNPAY Adapter
=============
Redirect-based payments signed with HMAC-SHA512.

Signing: every parameter value is URL-encoded the way a browser's
encodeURIComponent does (`%20` -> `+`), keys are sorted by their encoded
form, joined as `key=value&...` without further encoding, and the HMAC hex
digest is appended as `vnp_SecureHash`.

Two inbound paths carry the outcome:
- the browser return URL (`handle_return`)
- the server-to-server IPN (`handle_ipn`), which must answer with
  `{"RspCode", "Message"}` and never raise.
"""

import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import quote

from pydantic import BaseModel

from config import VnpayConfig
from errors import AmountMismatchError, NotFoundError
from payments.base import PaymentAdapter, format_timestamp
from schemas.payments import (
    CallbackRequest,
    Payment,
    PaymentProvider,
    PaymentRequest,
    ProviderEvent,
    ReconciliationOutcome,
)

SUCCESS_CODE = "00"
HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")


class IpnCode:
    SUCCESS = "00"
    NOT_FOUND = "01"
    ALREADY_CONFIRMED = "02"
    INVALID_AMOUNT = "04"
    INVALID_SIGNATURE = "97"
    UNKNOWN = "99"


# =============================================================================
# SIGNING
# =============================================================================

def encode_component(value: Any) -> str:
    return quote(str(value), safe="-_.!~*'()")


def sort_params(params: dict[str, Any]) -> dict[str, str]:
    """Encode keys and values, ordered by encoded key. Empty values are signed too."""
    encoded = {
        encode_component(key): encode_component(value).replace("%20", "+")
        for key, value in params.items()
        if value is not None
    }
    return {key: encoded[key] for key in sorted(encoded)}


def build_sign_data(sorted_params: dict[str, str]) -> str:
    return "&".join(f"{key}={value}" for key, value in sorted_params.items())


def sign_params(params: dict[str, Any], secret: str) -> str:
    sign_data = build_sign_data(sort_params(params))
    return hmac.new(secret.encode("utf-8"), sign_data.encode("utf-8"), hashlib.sha512).hexdigest()


def verify_signature(params: dict[str, Any], secret: str) -> bool:
    received = params.get("vnp_SecureHash")
    if not received:
        return False
    unsigned = {k: v for k, v in params.items() if k not in HASH_FIELDS}
    expected = sign_params(unsigned, secret)
    return hmac.compare_digest(expected.lower(), str(received).lower())


def normalize_ip(ip: Optional[str]) -> str:
    """First forwarded address as IPv4; anything IPv6 falls back to loopback"""
    if not ip:
        return "127.0.0.1"
    first = str(ip).split(",")[0].strip()
    if first == "::1":
        return "127.0.0.1"
    if first.startswith("::ffff:"):
        return first[len("::ffff:"):]
    if ":" in first:
        return "127.0.0.1"
    return first


def to_vnp_amount(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_vnp_amount(raw: Optional[str]) -> Optional[Decimal]:
    if raw in (None, ""):
        return None
    try:
        return Decimal(str(raw)) / 100
    except InvalidOperation:
        return None


class VnpayReturnResult(BaseModel):
    ok: bool
    code: str
    message: str
    txn_ref: Optional[str] = None
    order_id: Optional[int] = None
    outcome: Optional[ReconciliationOutcome] = None


# =============================================================================
# ADAPTER
# =============================================================================

class VnpayAdapter(PaymentAdapter):

    provider = PaymentProvider.VNPAY

    def __init__(self, store, reconciler, config: VnpayConfig, clock=None):
        super().__init__(store, reconciler, clock)
        self.config = config

    def build_txn_ref(self, order_id: int) -> str:
        return f"{order_id}-{format_timestamp(self._clock())}"

    async def create_payment_request(
        self,
        order_id: int,
        client_ip: Optional[str] = None,
        bank_code: Optional[str] = None,
        locale: Optional[str] = None,
        user_id: Optional[int] = None,
        with_debug: bool = False,
        **options: Any,
    ) -> PaymentRequest:
        cfg = self.config.ensure()
        order = await self.load_payable_order(order_id, user_id)

        txn_ref = self.build_txn_ref(order_id)
        params: dict[str, Any] = {
            "vnp_Version": "2.1.0",
            "vnp_Command": "pay",
            "vnp_TmnCode": cfg.tmn_code,
            "vnp_Locale": locale or cfg.locale,
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": f"Thanh toan cho ma GD:{order_id}",
            "vnp_OrderType": "other",
            "vnp_Amount": to_vnp_amount(order.total_amount),
            "vnp_ReturnUrl": cfg.return_url,
            "vnp_IpAddr": normalize_ip(client_ip),
            "vnp_CreateDate": format_timestamp(self._clock()),
        }
        if bank_code:
            params["vnp_BankCode"] = bank_code

        sorted_params = sort_params(params)
        sign_data = build_sign_data(sorted_params)
        secure_hash = hmac.new(
            cfg.hash_secret.encode("utf-8"), sign_data.encode("utf-8"), hashlib.sha512
        ).hexdigest()
        if cfg.debug_sign:
            self._logger.debug("vnpay_sign", stage="create", sign_data=sign_data, hash=secure_hash)

        pay_url = f"{cfg.pay_url}?{build_sign_data({**sorted_params, 'vnp_SecureHash': secure_hash})}"
        payment = await self.record_initiated(order, txn_ref, "VND")

        extra: dict[str, Any] = {}
        if with_debug:
            extra["debug"] = {"sign_data": sign_data, "params": sorted_params}

        self._logger.info("vnpay_url_created", order_id=order_id, txn_ref=txn_ref)
        return self.to_request(payment, redirect_url=pay_url, extra=extra)

    async def verify_callback(self, request: CallbackRequest) -> bool:
        cfg = self.config.ensure()
        valid = verify_signature(request.query, cfg.hash_secret)
        if cfg.debug_sign:
            self._logger.debug(
                "vnpay_sign",
                stage="verify",
                sign_data=build_sign_data(sort_params(
                    {k: v for k, v in request.query.items() if k not in HASH_FIELDS}
                )),
                valid=valid,
            )
        return valid

    def event_from_params(self, params: dict[str, str]) -> ProviderEvent:
        code = params.get("vnp_ResponseCode")
        return ProviderEvent(
            provider=self.provider,
            txn_ref=params.get("vnp_TxnRef", ""),
            succeeded=code == SUCCESS_CODE,
            claimed_amount=from_vnp_amount(params.get("vnp_Amount")),
            response_code=code,
            failure_reason=None if code == SUCCESS_CODE else f"VNPAY_{code}",
            event_id=params.get("vnp_TransactionNo"),
            payload={"vnp": dict(params)},
        )

    async def _find(self, params: dict[str, str]) -> Optional[Payment]:
        txn_ref = params.get("vnp_TxnRef")
        if not txn_ref:
            return None
        return await self.store.payments.get_by_txn_ref(self.provider, txn_ref)

    async def handle_return(self, params: dict[str, str]) -> VnpayReturnResult:
        """Browser return URL. Raises NotFoundError for an unknown txn_ref."""
        self.config.ensure()
        payment = await self._find(params)
        if payment is None:
            raise NotFoundError(
                "Transaction not found",
                code="PAYMENT_NOT_FOUND",
                metadata={"txn_ref": params.get("vnp_TxnRef")},
            )

        base = {"txn_ref": payment.txn_ref, "order_id": payment.order_id}
        if not await self.verify_callback(CallbackRequest(query=params)):
            await self.reconciler.record_signature_failure(self.provider, payment.txn_ref, {"vnp": dict(params)})
            return VnpayReturnResult(ok=False, code=IpnCode.INVALID_SIGNATURE, message="Invalid signature", **base)

        event = self.event_from_params(params)
        try:
            result = await self.reconcile(event)
        except AmountMismatchError:
            return VnpayReturnResult(ok=False, code=IpnCode.INVALID_AMOUNT, message="Invalid amount", **base)

        if result.paid:
            return VnpayReturnResult(
                ok=True,
                code=SUCCESS_CODE,
                message="Payment successful",
                outcome=result.outcome,
                **base,
            )
        return VnpayReturnResult(
            ok=False,
            code=event.response_code or IpnCode.UNKNOWN,
            message="Payment failed",
            outcome=result.outcome,
            **base,
        )

    async def handle_ipn(self, params: dict[str, str]) -> dict[str, str]:
        """Server-to-server IPN. Always answers with VNPAY's code set."""
        try:
            self.config.ensure()
            payment = await self._find(params)
            if payment is None:
                return {"RspCode": IpnCode.NOT_FOUND, "Message": "Order not found"}

            if not await self.verify_callback(CallbackRequest(query=params)):
                await self.reconciler.record_signature_failure(self.provider, payment.txn_ref, {"vnp": dict(params)})
                return {"RspCode": IpnCode.INVALID_SIGNATURE, "Message": "Invalid signature"}

            if payment.is_terminal:
                return {"RspCode": IpnCode.ALREADY_CONFIRMED, "Message": "Order already confirmed"}

            try:
                result = await self.reconcile(self.event_from_params(params))
            except AmountMismatchError:
                return {"RspCode": IpnCode.INVALID_AMOUNT, "Message": "Invalid amount"}

            if result.outcome in (ReconciliationOutcome.DUPLICATE, ReconciliationOutcome.SUPERSEDED):
                return {"RspCode": IpnCode.ALREADY_CONFIRMED, "Message": "Order already confirmed"}
            # A recorded failure is acknowledged the same way as a success.
            return {"RspCode": IpnCode.SUCCESS, "Message": "Confirm Success"}

        except NotFoundError:
            return {"RspCode": IpnCode.NOT_FOUND, "Message": "Order not found"}
        except Exception as e:
            self._logger.error("vnpay_ipn_error", error=str(e), txn_ref=params.get("vnp_TxnRef"))
            return {"RspCode": IpnCode.UNKNOWN, "Message": "Unknown error"}

    async def get_status(self, txn_ref: str, user_id: Optional[int] = None) -> dict[str, Any]:
        payment = await self.store.payments.get_by_txn_ref(self.provider, txn_ref)
        order = await self.store.orders.get(payment.order_id) if payment else None
        if payment is None or order is None or (user_id is not None and order.user_id != user_id):
            raise NotFoundError("Transaction not found", code="PAYMENT_NOT_FOUND", metadata={"txn_ref": txn_ref})
        return {
            "txn_ref": payment.txn_ref,
            "payment_status": payment.status.value,
            "order_id": order.order_id,
            "order_status": order.status.value,
            "amount": str(payment.amount),
        }
