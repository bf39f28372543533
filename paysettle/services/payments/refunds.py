"""Refunds of settled payments.

A refund runs in three steps so no row lock is held while the gateway is
called:

1. lock, validate bounds and flag `meta.refund_pending`, commit;
2. call the gateway;
3. lock again, record the refunded amount and (once the whole gateway portion
   is back with the payer) move the payment to `refunded`.

The wallet-applied portion is credited back only when the payment becomes
`refunded`; partial refunds never touch the wallet.
"""

from datetime import datetime, timezone
from typing import Any

from paysettle.common.exceptions import (
    GatewayTimeoutException,
    InsufficientFundsException,
    InvalidPaymentStateException,
    PaymentException,
)
from paysettle.common.logging import log_context, logger
from paysettle.common.metrics import refunds_total
from paysettle.common.state_machine import PaymentStatus
from paysettle.gateways.registry import GatewayRegistry
from paysettle.services.payments.models import Payment
from paysettle.services.payments.settlement import SettlementService, payment_event_payload


class RefundService:
    def __init__(self, session_factory, registry: GatewayRegistry, settlement: SettlementService) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.settlement = settlement

    def _check_refundable(self, payment: Payment) -> None:
        if payment.status == PaymentStatus.REFUNDED.value:
            raise InvalidPaymentStateException.already_refunded(payment.uuid)
        if payment.status != PaymentStatus.PAID.value:
            raise InvalidPaymentStateException.cannot_refund(payment.status, payment.uuid)

    def refund(
        self, payment: Payment | str, amount_cents: int | None = None, context: dict[str, Any] | None = None
    ) -> Payment:
        """Refund `amount_cents` of the gateway portion (default: all that remains)."""

        uuid = payment if isinstance(payment, str) else payment.uuid
        with log_context(payment_id=uuid):
            return self._refund(uuid, amount_cents, context or {})

    def _refund(self, uuid: str, amount_cents: int | None, context: dict[str, Any]) -> Payment:
        with self.session_factory() as db:
            locked = self.settlement.lock_payment(db, uuid)
            self._check_refundable(locked)
            if locked.gateway_amount_cents == 0:
                db.rollback()
                return self.refund_wallet_only(uuid, context)

            refundable = locked.refundable_cents
            amount = refundable if amount_cents is None else amount_cents
            if amount <= 0:
                raise PaymentException("Refund amount must be greater than zero", payment_uuid=uuid)
            if amount > refundable:
                raise InsufficientFundsException.for_refund(amount, refundable, payment_uuid=uuid)
            if (locked.meta or {}).get("refund_pending"):
                raise PaymentException("A refund is already in progress for this payment", payment_uuid=uuid)

            manager = self.registry.driver(locked.gateway)
            payments = manager.payments()
            is_partial = amount < locked.gateway_amount_cents
            if is_partial and not payments.supports_partial_refund():
                raise PaymentException(f"{manager.name} does not support partial refunds", payment_uuid=uuid)

            locked.merge_meta(
                "refund_pending",
                {"amount_cents": amount, "requested_at": datetime.now(timezone.utc).isoformat()},
            )
            charge_id = locked.gateway_reference
            db.commit()

        try:
            result = payments.refund(
                charge_id,
                amount_cents=amount if is_partial else None,
                description=context.get("reason"),
                payment_uuid=uuid,
            )
        except GatewayTimeoutException:
            # Marker stays until reconciliation settles the outcome.
            self._flag_pending(uuid, {"outcome": "unknown"})
            raise
        except Exception:
            self._flag_pending(uuid, None)
            raise

        with self.session_factory() as db:
            locked = self.settlement.lock_payment(db, uuid)
            locked.drop_meta("refund_pending")
            self._check_refundable(locked)
            refunded_total = locked.refunded_cents + amount
            history = list((locked.meta or {}).get("refund", {}).get("history", []))
            history.append(
                {
                    "amount_cents": amount,
                    "gateway_status": result.status,
                    "refunded_at": datetime.now(timezone.utc).isoformat(),
                    **context,
                }
            )
            locked.merge_meta(
                "refund",
                {"amount_cents": amount, "refunded_cents": refunded_total, "history": history},
            )
            if refunded_total >= locked.gateway_amount_cents:
                self.settlement.apply_refund(db, locked, context)
                kind = "full"
            else:
                self.settlement.outbox.enqueue(
                    db, "payments.partially_refunded", "payment", locked.uuid, payment_event_payload(locked)
                )
                kind = "partial"
            db.commit()
        refunds_total.labels(service=self.settlement.service_name, kind=kind).inc()
        logger.info("payment_refunded uuid=%s amount_cents=%s kind=%s", uuid, amount, kind)
        return locked

    def _flag_pending(self, uuid: str, values: dict[str, Any] | None) -> None:
        """Merge `values` into the pending-refund marker, or clear it when None."""

        with self.session_factory() as db:
            locked = self.settlement.lock_payment(db, uuid)
            if values is None:
                locked.drop_meta("refund_pending")
            else:
                locked.merge_meta("refund_pending", values)
            db.commit()

    def refund_wallet_only(self, payment: Payment | str, context: dict[str, Any] | None = None) -> Payment:
        """Refund a paid payment that never touched a gateway: credit the wallet back."""

        with self.session_factory() as db:
            locked = self.settlement.lock_payment(db, payment)
            self._check_refundable(locked)
            if locked.gateway_amount_cents > 0:
                raise PaymentException(
                    "Payment has a gateway portion; use refund() instead", payment_uuid=locked.uuid
                )
            self.settlement.apply_refund(db, locked, {**(context or {}), "amount_cents": 0})
            db.commit()
        refunds_total.labels(service=self.settlement.service_name, kind="wallet").inc()
        return locked
