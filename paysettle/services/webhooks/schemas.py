"""Normalized webhook events and the provider event-type vocabulary."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from paysettle.common.state_machine import PaymentStatus


class PaymentEventType(str, Enum):
    PAYMENT_CREATED = "payment.created"
    PAYMENT_PENDING = "payment.pending"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_PAID = "payment.paid"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELED = "payment.canceled"
    PAYMENT_EXPIRED = "payment.expired"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_PARTIALLY_REFUNDED = "payment.partially_refunded"
    PAYMENT_CHARGEBACK = "payment.chargeback"
    UNKNOWN = "unknown"

    @property
    def is_successful(self) -> bool:
        return self in SUCCESSFUL_EVENTS

    @property
    def is_failed(self) -> bool:
        return self in FAILED_EVENTS

    @property
    def is_refund(self) -> bool:
        return self in REFUND_EVENTS

    def to_payment_status(self) -> PaymentStatus | None:
        return STATUS_BY_EVENT.get(self)

    @classmethod
    def from_provider_event(cls, provider: str, event_type: str) -> "PaymentEventType":
        """Exact provider table first, then provider substrings, then generic words."""

        exact = EXACT_PROVIDER_EVENTS.get(provider, {}).get(event_type.upper())
        if exact is not None:
            return exact
        lowered = event_type.lower()
        for needle, mapped in PROVIDER_SUBSTRINGS.get(provider, []) + GENERIC_SUBSTRINGS:
            if needle in lowered:
                return mapped
        return cls.UNKNOWN


SUCCESSFUL_EVENTS = {
    PaymentEventType.PAYMENT_CONFIRMED,
    PaymentEventType.PAYMENT_RECEIVED,
    PaymentEventType.PAYMENT_PAID,
}
FAILED_EVENTS = {
    PaymentEventType.PAYMENT_FAILED,
    PaymentEventType.PAYMENT_CANCELED,
    PaymentEventType.PAYMENT_EXPIRED,
}
REFUND_EVENTS = {
    PaymentEventType.PAYMENT_REFUNDED,
    PaymentEventType.PAYMENT_PARTIALLY_REFUNDED,
    PaymentEventType.PAYMENT_CHARGEBACK,
}
STATUS_BY_EVENT = {
    PaymentEventType.PAYMENT_CREATED: PaymentStatus.DRAFT,
    PaymentEventType.PAYMENT_PENDING: PaymentStatus.PENDING,
    PaymentEventType.PAYMENT_CONFIRMED: PaymentStatus.PAID,
    PaymentEventType.PAYMENT_RECEIVED: PaymentStatus.PAID,
    PaymentEventType.PAYMENT_PAID: PaymentStatus.PAID,
    PaymentEventType.PAYMENT_FAILED: PaymentStatus.FAILED,
    PaymentEventType.PAYMENT_EXPIRED: PaymentStatus.FAILED,
    PaymentEventType.PAYMENT_CANCELED: PaymentStatus.CANCELED,
    PaymentEventType.PAYMENT_REFUNDED: PaymentStatus.REFUNDED,
    PaymentEventType.PAYMENT_PARTIALLY_REFUNDED: PaymentStatus.REFUNDED,
    PaymentEventType.PAYMENT_CHARGEBACK: PaymentStatus.REFUNDED,
}

EXACT_PROVIDER_EVENTS: dict[str, dict[str, PaymentEventType]] = {
    "asaas": {
        "PAYMENT_CONFIRMED": PaymentEventType.PAYMENT_CONFIRMED,
        "PAYMENT_RECEIVED": PaymentEventType.PAYMENT_RECEIVED,
        "PAYMENT_CREATED": PaymentEventType.PAYMENT_CREATED,
        "PAYMENT_UPDATED": PaymentEventType.PAYMENT_PENDING,
        "PAYMENT_RESTORED": PaymentEventType.PAYMENT_PENDING,
        "PAYMENT_OVERDUE": PaymentEventType.PAYMENT_EXPIRED,
        "PAYMENT_DELETED": PaymentEventType.PAYMENT_CANCELED,
        "PAYMENT_REFUNDED": PaymentEventType.PAYMENT_REFUNDED,
        "PAYMENT_PARTIALLY_REFUNDED": PaymentEventType.PAYMENT_PARTIALLY_REFUNDED,
        "PAYMENT_REFUND_IN_PROGRESS": PaymentEventType.PAYMENT_PENDING,
        "PAYMENT_CHARGEBACK_REQUESTED": PaymentEventType.PAYMENT_CHARGEBACK,
        "PAYMENT_CHARGEBACK_DISPUTE": PaymentEventType.PAYMENT_CHARGEBACK,
        "PAYMENT_AWAITING_CHARGEBACK_REVERSAL": PaymentEventType.PAYMENT_CHARGEBACK,
    },
}
PROVIDER_SUBSTRINGS: dict[str, list[tuple[str, PaymentEventType]]] = {
    "iugu": [
        ("invoice.created", PaymentEventType.PAYMENT_CREATED),
        ("invoice.status_changed", PaymentEventType.PAYMENT_PAID),
        ("invoice.paid", PaymentEventType.PAYMENT_PAID),
        ("invoice.canceled", PaymentEventType.PAYMENT_CANCELED),
        ("invoice.expired", PaymentEventType.PAYMENT_EXPIRED),
        ("invoice.refund", PaymentEventType.PAYMENT_REFUNDED),
    ],
}
# Order matters: "created" is checked before "paid", "refund" after "expired".
GENERIC_SUBSTRINGS: list[tuple[str, PaymentEventType]] = [
    ("created", PaymentEventType.PAYMENT_CREATED),
    ("pending", PaymentEventType.PAYMENT_PENDING),
    ("confirmed", PaymentEventType.PAYMENT_PAID),
    ("succeeded", PaymentEventType.PAYMENT_PAID),
    ("paid", PaymentEventType.PAYMENT_PAID),
    ("received", PaymentEventType.PAYMENT_PAID),
    ("failed", PaymentEventType.PAYMENT_FAILED),
    ("canceled", PaymentEventType.PAYMENT_CANCELED),
    ("cancelled", PaymentEventType.PAYMENT_CANCELED),
    ("expired", PaymentEventType.PAYMENT_EXPIRED),
    ("refund", PaymentEventType.PAYMENT_REFUNDED),
    ("chargeback", PaymentEventType.PAYMENT_CHARGEBACK),
]


class NormalizedWebhookEvent(BaseModel):
    """Provider notification reduced to what settlement needs."""

    provider: str
    event_id: str
    event_type: str
    payment_event: PaymentEventType
    category: str
    payment_uuid: str | None = None
    gateway_reference: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    occurred_at: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookResult(BaseModel):
    """Outcome of one delivery, returned by the dispatcher."""

    webhook_id: int
    provider: str
    event_type: str
    processed: bool
    duplicate: bool = False
