"""Unit tests for payment status machine guardrails."""

import pytest
from sqlalchemy import select

from paysettle.common.exceptions import InvalidPaymentStateException
from paysettle.common.state_machine import (
    ALLOWED_TRANSITIONS,
    PaymentStatus,
    available_transitions,
    can_transition_to,
    validate_transition,
)
from paysettle.services.payments.models import Payment, PaymentTimeline


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending", "paid")


def test_invalid_transition():
    """Illegal transition must raise to protect settlement correctness."""

    with pytest.raises(InvalidPaymentStateException) as excinfo:
        validate_transition("failed", "paid", payment_uuid="p-1")
    assert excinfo.value.current_status == "failed"
    assert excinfo.value.target_status == "paid"
    assert excinfo.value.payment_uuid == "p-1"


def test_terminal_statuses_have_no_exits():
    for status in (PaymentStatus.FAILED, PaymentStatus.CANCELED, PaymentStatus.REFUNDED):
        assert status.is_terminal
        assert available_transitions(status.value) == set()


def test_paid_only_moves_to_refunded():
    assert not PaymentStatus.PAID.is_terminal
    assert available_transitions("paid") == {PaymentStatus.REFUNDED}
    assert not can_transition_to("paid", "failed")


def test_every_status_has_a_transition_entry():
    assert set(ALLOWED_TRANSITIONS) == set(PaymentStatus)
    for targets in ALLOWED_TRANSITIONS.values():
        assert PaymentStatus.DRAFT not in targets


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        can_transition_to("settled", "paid")


FORBIDDEN_MOVES = [
    (current, target)
    for current in PaymentStatus
    for target in PaymentStatus
    if target not in ALLOWED_TRANSITIONS[current]
]


@pytest.mark.parametrize(
    ("current", "target"), FORBIDDEN_MOVES, ids=[f"{c.value}->{t.value}" for c, t in FORBIDDEN_MOVES]
)
def test_forbidden_move_leaves_persisted_payment_untouched(engine, current, target):
    with engine.session_factory() as db:
        payment = Payment(
            payer_id="user-1",
            billable_type="order",
            billable_id="order-1",
            amount_cents=5000,
            gateway_amount_cents=5000,
            status=current.value,
            gateway="asaas",
            meta={"note": "seed"},
        )
        db.add(payment)
        db.commit()
        uuid = payment.uuid

    with engine.session_factory() as db:
        locked = engine.settlement.lock_payment(db, uuid)
        with pytest.raises(InvalidPaymentStateException):
            engine.settlement.transition(db, locked, target, reason="forced")
        db.commit()

    with engine.session_factory() as db:
        reloaded = db.execute(select(Payment).where(Payment.uuid == uuid)).scalar_one()
        timeline = db.execute(select(PaymentTimeline).where(PaymentTimeline.payment_id == reloaded.id)).all()
    assert reloaded.status == current.value
    assert reloaded.retired_at is None
    assert reloaded.meta == {"note": "seed"}
    assert timeline == []
