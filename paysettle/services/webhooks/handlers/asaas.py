"""Asaas webhook handler.

Asaas authenticates deliveries with the static token configured on the webhook
(`asaas-access-token` header) and wraps the affected resource under a key named
after the event family (`payment`, `transfer`, `subscription`).
"""

import hashlib
import hmac
import json
from typing import Any

from paysettle.common.exceptions import WebhookVerificationException
from paysettle.common.logging import logger
from paysettle.common.metrics import webhook_verification_failures_total
from paysettle.services.webhooks.handler import WebhookHandler
from paysettle.services.webhooks.schemas import NormalizedWebhookEvent, PaymentEventType

TOKEN_HEADER = "asaas-access-token"
CATEGORY_PREFIXES = (("PAYMENT_", "payment"), ("TRANSFER_", "transfer"), ("SUBSCRIPTION_", "subscription"))


def event_category(event_type: str) -> str:
    for prefix, category in CATEGORY_PREFIXES:
        if event_type.startswith(prefix):
            return category
    return "other"


def payload_fingerprint(payload: dict[str, Any]) -> str:
    """Stable id for deliveries that carry none: sha256 of the canonical JSON."""

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AsaasWebhookHandler(WebhookHandler):
    provider = "asaas"
    secret_headers = frozenset({TOKEN_HEADER})

    def verify(self, payload: dict[str, Any], headers: dict[str, str]) -> None:
        expected = self.config.webhook_secret
        received = headers.get(TOKEN_HEADER)
        if not expected or not received:
            self._verification_failed()
            raise WebhookVerificationException.missing_signature(self.provider)
        if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
            self._verification_failed()
            raise WebhookVerificationException.invalid_signature(self.provider)

    def _verification_failed(self) -> None:
        webhook_verification_failures_total.labels(service=self.service_name, provider=self.provider).inc()
        logger.warning("webhook_verification_failed provider=%s", self.provider)

    def parse(self, payload: dict[str, Any]) -> NormalizedWebhookEvent:
        event_type = str(payload.get("event") or "UNKNOWN")
        category = event_category(event_type)
        resource = payload.get(category) if category != "other" else None
        resource = resource if isinstance(resource, dict) else {}

        return NormalizedWebhookEvent(
            provider=self.provider,
            event_id=str(payload.get("id") or payload_fingerprint(payload)),
            event_type=event_type,
            payment_event=PaymentEventType.from_provider_event(self.provider, event_type)
            if category == "payment"
            else PaymentEventType.UNKNOWN,
            category=category,
            payment_uuid=resource.get("externalReference"),
            gateway_reference=resource.get("id"),
            customer_id=resource.get("customer"),
            subscription_id=resource.get("subscription"),
            occurred_at=payload.get("dateCreated") or resource.get("paymentDate"),
            payload=payload,
        )
