"""Base webhook handler: verify, parse, persist once, settle once.

Subclasses supply provider-specific `verify` and `parse`; everything after a
`NormalizedWebhookEvent` exists is shared. Processing order:

1. verify the delivery (skipped only for sandbox gateways in local runs);
2. parse into a normalized event;
3. find-or-create the `webhook_events` row, return early if already processed;
4. lock the row, apply the settlement change and set `processed_at` in one
   transaction;
5. on failure, store `attempts`/`error_message` separately and re-raise.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from paysettle.common.config import settings
from paysettle.common.exceptions import InvalidPaymentStateException
from paysettle.common.logging import log_context, logger
from paysettle.common.metrics import duplicate_webhooks_skipped_total
from paysettle.gateways.configuration import GatewayConfiguration
from paysettle.services.payments.models import Payment
from paysettle.services.payments.settlement import SettlementService
from paysettle.services.webhooks.models import WebhookEvent
from paysettle.services.webhooks.schemas import NormalizedWebhookEvent, PaymentEventType, WebhookResult

LOCAL_ENVIRONMENTS = {"local", "development"}


def normalize_headers(headers: dict[str, Any] | None) -> dict[str, str]:
    return {str(key).lower(): str(value) for key, value in (headers or {}).items()}


class WebhookHandler(ABC):
    """Shared processing pipeline for one provider's notifications."""

    provider: str = ""
    # Never persisted with the delivery.
    secret_headers: frozenset[str] = frozenset()

    def __init__(
        self,
        session_factory,
        settlement: SettlementService,
        config: GatewayConfiguration,
        service_name: str = "paysettle",
        environment: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settlement = settlement
        self.config = config
        self.service_name = service_name
        self.environment = environment or settings.environment

    @abstractmethod
    def verify(self, payload: dict[str, Any], headers: dict[str, str]) -> None:
        """Raise `WebhookVerificationException` unless the delivery is authentic."""

    @abstractmethod
    def parse(self, payload: dict[str, Any]) -> NormalizedWebhookEvent:
        """Translate the provider payload into a normalized event."""

    def should_skip_verification(self) -> bool:
        return self.environment.lower() in LOCAL_ENVIRONMENTS and self.config.sandbox

    def process(self, payload: dict[str, Any], headers: dict[str, Any] | None = None) -> WebhookResult:
        headers = normalize_headers(headers)
        if self.should_skip_verification():
            logger.warning("webhook_verification_skipped provider=%s", self.provider)
        else:
            self.verify(payload, headers)

        event = self.parse(payload)
        with log_context(event_id=event.event_id, gateway=self.provider):
            return self._process_event(event, headers)

    def _process_event(self, event: NormalizedWebhookEvent, headers: dict[str, str]) -> WebhookResult:
        webhook_id, already_processed = self._persist(event, headers)
        if already_processed:
            return self._duplicate(webhook_id, event)

        try:
            with self.session_factory() as db:
                webhook = db.execute(
                    select(WebhookEvent)
                    .where(WebhookEvent.id == webhook_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalar_one()
                # A concurrent delivery may have finished while we waited on the lock.
                if webhook.processed_at is not None:
                    return self._duplicate(webhook_id, event)
                payment_uuid = self.handle(db, event)
                webhook.processed_at = datetime.now(timezone.utc)
                webhook.payment_uuid = payment_uuid or event.payment_uuid
                webhook.error_message = None
                db.commit()
        except Exception as exc:
            self._record_failure(webhook_id, exc)
            raise

        logger.info(
            "webhook_processed provider=%s event_type=%s webhook_id=%s", self.provider, event.event_type, webhook_id
        )
        return WebhookResult(webhook_id=webhook_id, provider=self.provider, event_type=event.event_type, processed=True)

    def _duplicate(self, webhook_id: int, event: NormalizedWebhookEvent) -> WebhookResult:
        logger.info("duplicate webhook skipped provider=%s webhook_id=%s", self.provider, webhook_id)
        duplicate_webhooks_skipped_total.labels(service=self.service_name, provider=self.provider).inc()
        return WebhookResult(
            webhook_id=webhook_id,
            provider=self.provider,
            event_type=event.event_type,
            processed=True,
            duplicate=True,
        )

    def _find_event(self, db, event: NormalizedWebhookEvent) -> WebhookEvent | None:
        return db.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == self.provider,
                WebhookEvent.provider_event_id == event.event_id,
            )
        ).scalar_one_or_none()

    def _persist(self, event: NormalizedWebhookEvent, headers: dict[str, str]) -> tuple[int, bool]:
        """Find-or-create the idempotency row; returns (id, already processed)."""

        with self.session_factory() as db:
            existing = self._find_event(db, event)
            if existing is not None:
                return existing.id, existing.processed_at is not None
            row = WebhookEvent(
                provider=self.provider,
                provider_event_id=event.event_id,
                payment_uuid=event.payment_uuid,
                event_type=event.event_type,
                payload=event.payload,
                headers={k: v for k, v in headers.items() if k not in self.secret_headers},
                attempts=0,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # Lost the insert race against a concurrent delivery.
                db.rollback()
                existing = self._find_event(db, event)
                if existing is None:
                    raise
                return existing.id, existing.processed_at is not None
            return row.id, False

    def _record_failure(self, webhook_id: int, exc: Exception) -> None:
        with self.session_factory() as db:
            webhook = db.get(WebhookEvent, webhook_id)
            if webhook is None:
                return
            webhook.attempts = (webhook.attempts or 0) + 1
            webhook.error_message = str(exc)
            db.commit()
        logger.error("webhook_processing_failed provider=%s webhook_id=%s error=%s", self.provider, webhook_id, exc)

    def handle(self, db, event: NormalizedWebhookEvent) -> str | None:
        """Apply the event inside the caller's transaction; returns the payment uuid touched."""

        if event.category == "payment":
            return self.handle_payment_event(db, event)
        if event.category == "transfer":
            logger.info("transfer_webhook_received event_type=%s", event.event_type)
        elif event.category == "subscription":
            logger.info("subscription_webhook_received event_type=%s", event.event_type)
        else:
            logger.info("webhook_ignored provider=%s event_type=%s", self.provider, event.event_type)
        return None

    def find_payment(self, db, event: NormalizedWebhookEvent) -> Payment | None:
        """Look up by our uuid (external reference) first, then by the gateway charge id."""

        if event.payment_uuid:
            payment = db.execute(select(Payment).where(Payment.uuid == event.payment_uuid)).scalar_one_or_none()
            if payment is not None:
                return payment
        if event.gateway_reference:
            return db.execute(
                select(Payment).where(
                    Payment.gateway == self.provider,
                    Payment.gateway_reference == event.gateway_reference,
                )
            ).scalar_one_or_none()
        return None

    def handle_payment_event(self, db, event: NormalizedWebhookEvent) -> str | None:
        payment = self.find_payment(db, event)
        if payment is None:
            logger.warning(
                "webhook_payment_not_found provider=%s event_type=%s reference=%s external_reference=%s",
                self.provider,
                event.event_type,
                event.gateway_reference,
                event.payment_uuid,
            )
            return None

        context = {
            "source": "webhook",
            "provider": self.provider,
            "provider_event_id": event.event_id,
            "provider_event_type": event.event_type,
        }
        kind = event.payment_event
        with log_context(payment_id=payment.uuid):
            self._apply(db, payment, kind, event, context)
        return payment.uuid

    def _apply(
        self, db, payment: Payment, kind: PaymentEventType, event: NormalizedWebhookEvent, context: dict[str, Any]
    ) -> None:
        try:
            if kind.is_successful:
                self.settlement.mark_paid(payment, context, db=db, event_id=event.event_id)
            elif kind == PaymentEventType.PAYMENT_CANCELED:
                self.settlement.mark_failed(payment, "canceled", context, db=db, event_id=event.event_id)
            elif kind in (PaymentEventType.PAYMENT_FAILED, PaymentEventType.PAYMENT_EXPIRED):
                self.settlement.mark_failed(payment, "failed", context, db=db, event_id=event.event_id)
            elif kind.is_refund:
                logger.info("refund_webhook_received uuid=%s event_type=%s", payment.uuid, event.event_type)
            else:
                logger.info("payment_webhook_no_action uuid=%s event_type=%s", payment.uuid, event.event_type)
        except InvalidPaymentStateException as exc:
            logger.warning(
                "stale webhook dropped uuid=%s event_type=%s status=%s", payment.uuid, event.event_type, exc.current_status
            )
