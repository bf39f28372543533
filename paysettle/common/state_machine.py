"""Payment status machine enforced by settlement and refunds."""

from enum import Enum

from paysettle.common.exceptions import InvalidPaymentStateException


class PaymentStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


# Draft -> paid covers a charge whose creation timed out but later settled.
ALLOWED_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.DRAFT: {PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELED},
    PaymentStatus.PENDING: {
        PaymentStatus.PAID,
        PaymentStatus.REQUIRES_ACTION,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
    },
    PaymentStatus.REQUIRES_ACTION: {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELED: set(),
    PaymentStatus.REFUNDED: set(),
}


def available_transitions(current: str) -> set[PaymentStatus]:
    """Statuses reachable in one step from `current`."""

    return set(ALLOWED_TRANSITIONS[PaymentStatus(current)])


def can_transition_to(current: str, target: str) -> bool:
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def validate_transition(current: str, new: str, payment_uuid: str | None = None) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition_to(current, new):
        raise InvalidPaymentStateException.cannot_transition(
            PaymentStatus(current).value, PaymentStatus(new).value, payment_uuid=payment_uuid
        )
