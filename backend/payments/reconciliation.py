"""
Reconciliation Service
======================
Applies a verified provider outcome to the payment ledger and the owning
order exactly once.

- Payment row and order status change commit together in one transaction.
- A payment already in `success` is a no-op (duplicate webhook delivery,
  return URL racing the IPN, ...).
- Once any payment of an order succeeded, no sibling payment may. Every
  reconciliation locks the order row before the payment row, so all
  outcomes for one order are applied one at a time.
- A successful payment only moves the order from pending/confirmed into
  `paid`; it never downgrades fulfillment progress nor revives a
  canceled/refunded order.
- Side effects (cart clearing, staff assignment, activity log, realtime
  notification) run after commit and never fail the reconciliation.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import structlog

from database import log_event
from errors import AmountMismatchError, NotFoundError
from schemas.orders import Order, OrderStatus
from schemas.payments import (
    Payment,
    PaymentProvider,
    PaymentStatus,
    ProviderEvent,
    ReconciliationOutcome,
    ReconciliationResult,
)
from services.fulfillment import FulfillmentHooks
from storage.repositories import IStore

logger = structlog.get_logger().bind(component="reconciliation")


class ReconciliationService:

    def __init__(self, store: IStore, hooks: Optional[FulfillmentHooks] = None):
        self.store = store
        self.hooks = hooks

    async def reconcile(self, event: ProviderEvent) -> ReconciliationResult:
        """
        Apply a verified provider event.

        Raises:
            NotFoundError: no ledger row for (provider, txn_ref)
            AmountMismatchError: claimed amount differs from the ledger; the
                row is recorded as failed before this is raised
        """
        log = logger.bind(provider=event.provider.value, txn_ref=event.txn_ref)
        mismatch: Optional[dict[str, str]] = None
        paid_order: Optional[Order] = None
        callback = {"callback": event.payload} if event.payload else {}

        async with self.store.transaction() as tx:
            located = await tx.payments.get_by_txn_ref(event.provider, event.txn_ref)
            if located is None:
                raise NotFoundError(
                    "Payment not found",
                    code="PAYMENT_NOT_FOUND",
                    metadata={"provider": event.provider.value, "txn_ref": event.txn_ref},
                )
            # Lock order: order row, then payment row.
            order = await tx.orders.get(located.order_id, for_update=True)
            payment = await tx.payments.get_by_txn_ref(event.provider, event.txn_ref, for_update=True)

            if payment.status == PaymentStatus.FAILED:
                # Terminal: only audit metadata may still be appended.
                payment = await tx.payments.save(payment.with_meta(
                    late_event={"at": datetime.now(timezone.utc).isoformat(), "succeeded": event.succeeded},
                ))
                result = ReconciliationResult(outcome=ReconciliationOutcome.FAILED, payment=payment)

            elif payment.status == PaymentStatus.SUCCESS:
                result = ReconciliationResult(
                    outcome=ReconciliationOutcome.DUPLICATE,
                    payment=payment,
                    order_status=order.status if order else None,
                )

            elif event.claimed_amount is not None and Decimal(event.claimed_amount) != payment.amount:
                mismatch = {"claimed": str(event.claimed_amount), "recorded": str(payment.amount)}
                payment = await tx.payments.save(payment.settle(
                    PaymentStatus.FAILED,
                    reason="AMOUNT_MISMATCH",
                    response_code=event.response_code,
                    **mismatch,
                    **callback,
                ))
                result = ReconciliationResult(outcome=ReconciliationOutcome.FAILED, payment=payment)

            elif not event.succeeded:
                payment = await tx.payments.save(payment.settle(
                    PaymentStatus.FAILED,
                    reason=event.failure_reason or "PROVIDER_DECLINED",
                    response_code=event.response_code,
                    **callback,
                ))
                result = ReconciliationResult(
                    outcome=ReconciliationOutcome.FAILED,
                    payment=payment,
                    order_status=order.status if order else None,
                )

            else:
                result, paid_order = await self._apply_success(tx, payment, order, event, callback)

        await self._record(event, result, mismatch)

        if mismatch is not None:
            raise AmountMismatchError(
                "Claimed amount does not match the recorded payment amount",
                metadata={"txn_ref": event.txn_ref, **mismatch},
            )

        if result.outcome == ReconciliationOutcome.APPLIED and paid_order is not None and self.hooks:
            await self.hooks.on_payment_confirmed(paid_order, event.provider.value, {
                "txn_ref": event.txn_ref,
                "payment_id": result.payment.payment_id,
            })

        log.info("reconciled", outcome=result.outcome.value, order_updated=result.order_updated)
        return result

    async def _apply_success(
        self,
        tx: IStore,
        payment: Payment,
        order: Optional[Order],
        event: ProviderEvent,
        callback: dict[str, Any],
    ) -> tuple[ReconciliationResult, Optional[Order]]:
        # Siblings are stable: their reconciliations queue on the order lock we hold.
        siblings = await tx.payments.list_for_order(payment.order_id)
        winner = next(
            (p for p in siblings if p.status == PaymentStatus.SUCCESS and p.payment_id != payment.payment_id),
            None,
        )
        if winner is not None:
            payment = await tx.payments.save(payment.with_meta(
                superseded_by=winner.payment_id,
                superseded_reason="ORDER_ALREADY_PAID",
                **callback,
            ))
            return ReconciliationResult(
                outcome=ReconciliationOutcome.SUPERSEDED,
                payment=payment,
                order_status=order.status if order else None,
            ), None

        extra: dict[str, Any] = {"confirmed_at": datetime.now(timezone.utc).isoformat()}
        if event.response_code:
            extra["response_code"] = event.response_code
        order_updated = False
        if order is not None:
            if order.accepts_payment_success:
                if order.status != OrderStatus.PAID:
                    order = await tx.orders.save(order.transition_to(OrderStatus.PAID))
                    order_updated = True
            else:
                extra["order_status_at_payment"] = order.status.value
                if not order.is_payable:
                    extra["needs_refund"] = True

        payment = await tx.payments.save(payment.settle(PaymentStatus.SUCCESS, **extra, **callback))
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            payment=payment,
            order_status=order.status if order else None,
            order_updated=order_updated,
        ), (order if order is not None and order.status == OrderStatus.PAID else None)

    async def record_signature_failure(
        self,
        provider: PaymentProvider,
        txn_ref: Optional[str],
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[Payment]:
        """Record an unauthenticated callback against its ledger row, if any."""
        await log_event(
            order_id=None,
            event_type="PAYMENT_SIGNATURE_INVALID",
            payload={"provider": provider.value, "txn_ref": txn_ref},
            component="reconciliation",
            severity="WARN",
        )
        if not txn_ref:
            return None

        async with self.store.transaction() as tx:
            payment = await tx.payments.get_by_txn_ref(provider, txn_ref, for_update=True)
            if payment is None:
                return None
            rejected = {"at": datetime.now(timezone.utc).isoformat(), "payload": payload or {}}
            if payment.is_terminal:
                return await tx.payments.save(payment.with_meta(rejected_callback=rejected))
            return await tx.payments.save(payment.settle(
                PaymentStatus.FAILED,
                reason="INVALID_SIGNATURE",
                rejected_callback=rejected,
            ))

    async def _record(
        self,
        event: ProviderEvent,
        result: ReconciliationResult,
        mismatch: Optional[dict[str, str]],
    ) -> None:
        event_type, severity = {
            ReconciliationOutcome.APPLIED: ("PAYMENT_CONFIRMED", "INFO"),
            ReconciliationOutcome.DUPLICATE: ("PAYMENT_DUPLICATE", "INFO"),
            ReconciliationOutcome.SUPERSEDED: ("PAYMENT_SUPERSEDED", "WARN"),
            ReconciliationOutcome.FAILED: ("PAYMENT_FAILED", "WARN"),
        }[result.outcome]
        if mismatch is not None:
            event_type, severity = "PAYMENT_AMOUNT_MISMATCH", "ERROR"
        await log_event(
            order_id=result.payment.order_id,
            event_type=event_type,
            payload={
                "provider": event.provider.value,
                "txn_ref": event.txn_ref,
                "payment_id": result.payment.payment_id,
                "response_code": event.response_code,
                **(mismatch or {}),
            },
            component="reconciliation",
            severity=severity,
        )
