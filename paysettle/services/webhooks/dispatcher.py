"""Routes inbound webhooks to the handler registered for their provider."""

from typing import Any

from paysettle.common.exceptions import PaymentConfigurationException, WebhookVerificationException
from paysettle.common.logging import logger
from paysettle.common.metrics import webhooks_received_total
from paysettle.common.outbox import OutboxStore
from paysettle.services.webhooks.handler import WebhookHandler
from paysettle.services.webhooks.schemas import WebhookResult


class WebhookDispatcher:
    def __init__(self, session_factory, outbox: OutboxStore, service_name: str = "paysettle") -> None:
        self.session_factory = session_factory
        self.outbox = outbox
        self.service_name = service_name
        self._handlers: dict[str, WebhookHandler] = {}

    def register_handler(self, provider: str, handler: WebhookHandler) -> None:
        self._handlers[provider] = handler

    def has_handler(self, provider: str) -> bool:
        return provider in self._handlers

    def get_handler(self, provider: str) -> WebhookHandler:
        if provider not in self._handlers:
            raise PaymentConfigurationException.unknown_webhook_provider(provider)
        return self._handlers[provider]

    def registered_gateways(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, provider: str, payload: dict[str, Any], headers: dict[str, Any] | None = None) -> WebhookResult:
        """Process one delivery and announce it with a `webhooks.received` event."""

        handler = self.get_handler(provider)
        try:
            result = handler.process(payload, headers)
        except WebhookVerificationException:
            webhooks_received_total.labels(service=self.service_name, provider=provider, outcome="rejected").inc()
            raise
        except Exception:
            webhooks_received_total.labels(service=self.service_name, provider=provider, outcome="error").inc()
            raise

        if result.duplicate:
            webhooks_received_total.labels(service=self.service_name, provider=provider, outcome="duplicate").inc()
            return result

        with self.session_factory() as db:
            self.outbox.enqueue(
                db,
                "webhooks.received",
                "webhook",
                str(result.webhook_id),
                {"provider": provider, "webhook_id": result.webhook_id, "event_type": result.event_type},
            )
            db.commit()
        webhooks_received_total.labels(service=self.service_name, provider=provider, outcome="processed").inc()
        logger.info("webhook_dispatched provider=%s webhook_id=%s", provider, result.webhook_id)
        return result
