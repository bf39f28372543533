"""Settlement: the only component allowed to change a payment's status.

Each operation locks the payment row, re-reads its status and applies one
transition together with its wallet movement, fulfilment, timeline row and
outbox event in a single transaction. Methods accept an optional session so the
webhook handler can run them inside its own transaction; without one they
open and commit their own.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select

from paysettle.common.exceptions import InvalidPaymentStateException, PaymentException
from paysettle.common.logging import logger
from paysettle.common.metrics import payment_e2e_seconds, settlements_total
from paysettle.common.outbox import OutboxStore
from paysettle.common.state_machine import PaymentStatus, available_transitions, can_transition_to, validate_transition
from paysettle.services.payments.billables import WALLET_TOPUP, BillableRegistry
from paysettle.services.payments.models import Payment, PaymentTimeline
from paysettle.services.wallet.service import WalletService

FAILURE_EVENTS = {PaymentStatus.FAILED: "payments.failed", PaymentStatus.CANCELED: "payments.canceled"}


def payment_event_payload(payment: Payment) -> dict[str, Any]:
    return {
        "uuid": payment.uuid,
        "status": payment.status,
        "payer_id": payment.payer_id,
        "billable_type": payment.billable_type,
        "billable_id": payment.billable_id,
        "amount_cents": payment.amount_cents,
        "wallet_applied_cents": payment.wallet_applied_cents,
        "gateway_amount_cents": payment.gateway_amount_cents,
        "currency": payment.currency,
        "gateway": payment.gateway,
        "gateway_reference": payment.gateway_reference,
    }


class SettlementService:
    """Owns payment state machine progression after creation."""

    def __init__(
        self,
        session_factory,
        wallet: WalletService,
        billables: BillableRegistry,
        outbox: OutboxStore,
        service_name: str = "paysettle",
    ) -> None:
        self.session_factory = session_factory
        self.wallet = wallet
        self.billables = billables
        self.outbox = outbox
        self.service_name = service_name

    @contextmanager
    def unit_of_work(self, db=None):
        """Reuse the caller's session, or open one and commit on success."""

        if db is not None:
            yield db
            return
        with self.session_factory() as session:
            yield session
            session.commit()

    def lock_payment(self, db, payment: Payment | str) -> Payment:
        """SELECT ... FOR UPDATE the payment and refresh its loaded state."""

        uuid = payment if isinstance(payment, str) else payment.uuid
        locked = db.execute(
            select(Payment)
            .where(Payment.uuid == uuid)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if locked is None:
            raise PaymentException(f"Payment {uuid} not found", payment_uuid=uuid)
        return locked

    def can_transition_to(self, payment: Payment, target: str) -> bool:
        return can_transition_to(payment.status, target)

    def available_transitions(self, payment: Payment) -> set[PaymentStatus]:
        return available_transitions(payment.status)

    def _observe_outcome(self, payment: Payment, status: PaymentStatus) -> None:
        settlements_total.labels(service=self.service_name, status=status.value).inc()
        if status not in (PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELED):
            return
        created_at = payment.created_at
        if created_at is None:
            return
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=status.value).observe(elapsed)

    def transition(self, db, payment: Payment, target: PaymentStatus, reason: str, event_id: str | None = None) -> None:
        """Apply one validated transition on a locked payment and audit it."""

        validate_transition(payment.status, target, payment.uuid)
        from_status = payment.status
        payment.status = target.value
        if target.is_terminal:
            payment.retired_at = datetime.now(timezone.utc)
        db.add(
            PaymentTimeline(
                payment_id=payment.id,
                from_state=from_status,
                to_state=target.value,
                reason=reason,
                event_id=event_id,
            )
        )
        logger.info("payment_transition uuid=%s from=%s to=%s reason=%s", payment.uuid, from_status, target.value, reason)
        self._observe_outcome(payment, target)

    def mark_paid(
        self,
        payment: Payment | str,
        context: dict[str, Any] | None = None,
        db=None,
        event_id: str | None = None,
    ) -> Payment:
        """Settle the payment; a second call on a paid payment changes nothing."""

        with self.unit_of_work(db) as session:
            locked = self.lock_payment(session, payment)
            if locked.status == PaymentStatus.PAID.value:
                logger.info("payment_already_paid uuid=%s", locked.uuid)
                return locked
            validate_transition(locked.status, PaymentStatus.PAID, locked.uuid)

            now = datetime.now(timezone.utc)
            locked.paid_at = now
            locked.merge_meta("settlement", {**(context or {}), "settled_at": now.isoformat()})
            if locked.wallet_applied_cents > 0:
                self.wallet.debit(
                    session,
                    locked.payer_id,
                    locked.wallet_applied_cents,
                    reference=locked.uuid,
                    from_hold=True,
                    tags={"payment_uuid": locked.uuid},
                )
            self.transition(session, locked, PaymentStatus.PAID, reason="paid", event_id=event_id)
            self.fulfill(session, locked)
            self.outbox.enqueue(session, "payments.paid", "payment", locked.uuid, payment_event_payload(locked))
            return locked

    def mark_failed(
        self,
        payment: Payment | str,
        reason: str = "failed",
        context: dict[str, Any] | None = None,
        db=None,
        event_id: str | None = None,
    ) -> Payment:
        """Fail or cancel the payment and give its wallet hold back.

        Paid and refunded payments are left untouched (a late failure
        notification must not undo a settlement).
        """

        target = PaymentStatus.CANCELED if reason in ("canceled", "cancelled") else PaymentStatus.FAILED
        with self.unit_of_work(db) as session:
            locked = self.lock_payment(session, payment)
            if locked.status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value, target.value):
                logger.info("payment_failure_ignored uuid=%s status=%s reason=%s", locked.uuid, locked.status, reason)
                return locked
            validate_transition(locked.status, target, locked.uuid)

            locked.merge_meta(
                "failure",
                {**(context or {}), "reason": reason, "failed_at": datetime.now(timezone.utc).isoformat()},
            )
            self.wallet.release_hold(session, locked.uuid, reason)
            self.transition(session, locked, target, reason=reason, event_id=event_id)
            self.outbox.enqueue(session, FAILURE_EVENTS[target], "payment", locked.uuid, payment_event_payload(locked))
            return locked

    def mark_requires_action(
        self,
        payment: Payment | str,
        context: dict[str, Any] | None = None,
        db=None,
        event_id: str | None = None,
    ) -> Payment:
        """Park a pending payment that waits on the payer (3-D Secure, risk review)."""

        with self.unit_of_work(db) as session:
            locked = self.lock_payment(session, payment)
            if locked.status != PaymentStatus.PENDING.value:
                raise InvalidPaymentStateException.cannot_transition(
                    locked.status, PaymentStatus.REQUIRES_ACTION.value, payment_uuid=locked.uuid
                )
            locked.merge_meta("requires_action", context or {})
            self.transition(session, locked, PaymentStatus.REQUIRES_ACTION, reason="requires_action", event_id=event_id)
            self.outbox.enqueue(
                session, "payments.requires_action", "payment", locked.uuid, payment_event_payload(locked)
            )
            return locked

    def apply_refund(self, db, payment: Payment, context: dict[str, Any] | None = None) -> Payment:
        """Move a locked paid payment to refunded and return its wallet portion."""

        validate_transition(payment.status, PaymentStatus.REFUNDED, payment.uuid)
        now = datetime.now(timezone.utc)
        payment.refund_at = now
        payment.merge_meta("refund", {**(context or {}), "completed_at": now.isoformat()})
        if payment.wallet_applied_cents > 0:
            self.wallet.credit(
                db,
                payment.payer_id,
                payment.wallet_applied_cents,
                reference=payment.uuid,
                entry_type="refund",
                tags={"type": "REFUND", "payment_uuid": payment.uuid},
            )
        self.transition(db, payment, PaymentStatus.REFUNDED, reason="refunded")
        self.outbox.enqueue(db, "payments.refunded", "payment", payment.uuid, payment_event_payload(payment))
        return payment

    def fulfill(self, db, payment: Payment) -> None:
        """Deliver what was paid for: confirm a top-up or notify the billable."""

        if payment.billable_type == WALLET_TOPUP:
            self.wallet.confirm_credit(db, int(payment.billable_id))
            return
        self.billables.notify_paid(db, payment)
