"""
VietQR Adapter
==============
Bank-transfer QR codes rendered by img.vietqr.io. There is no provider
callback: the customer's "I have paid" is recorded as a customer-asserted
claim only, and the payment is settled once staff have seen the money
arrive on the bank statement.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
from urllib.parse import quote, urlencode

from config import VietQrConfig
from database import log_event
from errors import ForbiddenError, NotFoundError
from payments.base import PaymentAdapter, format_timestamp
from schemas.payments import (
    CallbackRequest,
    Payment,
    PaymentProvider,
    PaymentRequest,
    ProviderEvent,
    ReconciliationResult,
)
from services.notifier import RealtimeNotifier

QR_IMAGE_BASE = "https://img.vietqr.io/image"


def build_qr_image_url(
    bank: str,
    account_no: str,
    amount: Optional[Decimal] = None,
    add_info: Optional[str] = None,
    account_name: Optional[str] = None,
) -> str:
    base = f"{QR_IMAGE_BASE}/{quote(bank, safe='')}-{quote(account_no, safe='')}-qr_only.png"
    params = {}
    if amount:
        params["amount"] = str(int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))
    if add_info:
        params["addInfo"] = add_info
    if account_name:
        params["accountName"] = account_name
    return f"{base}?{urlencode(params)}"


class VietQrAdapter(PaymentAdapter):

    provider = PaymentProvider.VIETQR

    def __init__(
        self,
        store,
        reconciler,
        config: VietQrConfig,
        notifier: Optional[RealtimeNotifier] = None,
        clock=None,
    ):
        super().__init__(store, reconciler, clock)
        self.config = config
        self.notifier = notifier

    async def create_payment_request(
        self,
        order_id: int,
        user_id: Optional[int] = None,
        **options: Any,
    ) -> PaymentRequest:
        cfg = self.config.ensure()
        order = await self.load_payable_order(order_id, user_id)

        add_info = f"FATFOOD-{order_id}"
        qr_image_url = build_qr_image_url(cfg.bank, cfg.account_no, order.total_amount, add_info, cfg.account_name)
        payment = await self.record_initiated(
            order,
            f"{add_info}-{format_timestamp(self._clock())}",
            "VND",
            meta={
                "bank": cfg.bank,
                "account_no": cfg.account_no,
                "account_name": cfg.account_name,
                "add_info": add_info,
                "qr_image_url": qr_image_url,
            },
        )
        return self.to_request(payment, qr_image_url=qr_image_url, extra={"add_info": add_info})

    async def verify_callback(self, request: CallbackRequest) -> bool:
        # VietQR never calls back; nothing inbound can be authenticated.
        return False

    async def _latest(self, order_id: int) -> Payment:
        payment = await self.store.payments.latest_for_order(order_id, self.provider)
        if payment is None:
            raise NotFoundError(
                "VietQR transaction not found",
                code="PAYMENT_NOT_FOUND",
                metadata={"order_id": order_id},
            )
        return payment

    async def confirm(self, user_id: int, order_id: int) -> Payment:
        """
        Customer says the transfer was made.

        Recorded as an unverified claim: the payment stays `initiated` and
        the order is not marked paid until staff settle it.
        """
        order = await self.store.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND", metadata={"order_id": order_id})
        if order.user_id != user_id:
            raise ForbiddenError("You cannot confirm this order", metadata={"order_id": order_id})

        payment = await self._latest(order_id)
        payment = await self.store.payments.save(payment.with_meta(
            user_confirmed=True,
            user_confirmed_at=self._clock().isoformat(),
            trust="customer_asserted",
        ))

        await log_event(
            order_id=order_id,
            event_type="PAYMENT_CUSTOMER_CONFIRMED",
            payload={"provider": self.provider.value, "txn_ref": payment.txn_ref, "user_id": user_id},
            component="payments",
            severity="WARN",
        )
        if self.notifier is not None:
            try:
                await self.notifier.emit_to_staff("payment:vietqr_confirmed", {
                    "order_id": order_id,
                    "payment_id": payment.payment_id,
                    "amount": str(payment.amount),
                })
            except Exception as e:
                self._logger.warning("notify_failed", order_id=order_id, error=str(e))
        return payment

    async def settle(
        self,
        staff_id: int,
        order_id: int,
        received_amount: Optional[Decimal] = None,
    ) -> ReconciliationResult:
        """Staff confirm the transfer arrived; reconciles it as a success."""
        payment = await self._latest(order_id)
        return await self.reconcile(ProviderEvent(
            provider=self.provider,
            txn_ref=payment.txn_ref,
            succeeded=True,
            claimed_amount=received_amount,
            response_code="STAFF_VERIFIED",
            payload={
                "verified_by": staff_id,
                "customer_asserted": bool(payment.meta.get("user_confirmed")),
            },
        ))
