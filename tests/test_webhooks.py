"""Webhook verification, idempotent processing and settlement effects."""

import pytest
from sqlalchemy import func, select

from paysettle.common.exceptions import PaymentConfigurationException, WebhookVerificationException
from paysettle.gateways.asaas.configuration import asaas_configuration
from paysettle.services.payments.models import OutboxEvent, PaymentTimeline
from paysettle.services.webhooks.handlers.asaas import AsaasWebhookHandler
from paysettle.services.webhooks.models import WebhookEvent
from paysettle.services.webhooks.schemas import PaymentEventType


def asaas_event(event: str, charge_id: str, external_reference: str | None, event_id: str | None = "evt_1") -> dict:
    payment = {"object": "payment", "id": charge_id, "customer": "cus_1", "value": 60.0, "status": "CONFIRMED"}
    if external_reference is not None:
        payment["externalReference"] = external_reference
    payload = {"event": event, "dateCreated": "2026-10-19 10:00:00", "payment": payment}
    if event_id is not None:
        payload["id"] = event_id
    return payload


@pytest.fixture
def pending_payment(checkout, fund_wallet):
    """10000 cents: 4000 held in the wallet, 6000 charged as pay_1."""

    fund_wallet("user-1", 4000)
    return checkout.amount(10000).create().payment.uuid


def _count(engine, model, *criteria) -> int:
    with engine.session_factory() as db:
        return db.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


def test_confirmed_webhook_settles_payment(engine, webhook_headers, pending_payment, load_payment, load_wallet):
    payload = asaas_event("PAYMENT_CONFIRMED", "pay_1", pending_payment)

    result = engine.dispatcher.dispatch("asaas", payload, webhook_headers)

    assert result.processed
    assert not result.duplicate
    payment = load_payment(pending_payment)
    assert payment.status == "paid"
    assert payment.meta["settlement"]["provider_event_id"] == "evt_1"
    account = load_wallet("user-1")
    assert account.balance_cents == 0
    assert account.held_cents == 0

    with engine.session_factory() as db:
        webhook = db.get(WebhookEvent, result.webhook_id)
    assert webhook.processed_at is not None
    assert webhook.payment_uuid == pending_payment
    assert webhook.attempts == 0
    assert "asaas-access-token" not in webhook.headers


def test_repeated_delivery_has_one_effect(engine, webhook_headers, pending_payment, load_payment):
    payload = asaas_event("PAYMENT_RECEIVED", "pay_1", pending_payment)

    results = [engine.dispatcher.dispatch("asaas", payload, webhook_headers) for _ in range(3)]

    assert {r.webhook_id for r in results} == {results[0].webhook_id}
    assert [r.duplicate for r in results] == [False, True, True]
    assert load_payment(pending_payment).status == "paid"
    assert _count(engine, WebhookEvent) == 1
    assert _count(engine, PaymentTimeline, PaymentTimeline.to_state == "paid") == 1
    assert _count(engine, OutboxEvent, OutboxEvent.event_type == "payments.paid") == 1
    assert _count(engine, OutboxEvent, OutboxEvent.event_type == "webhooks.received") == 1


def test_confirmation_for_paid_payment_is_a_noop(engine, webhook_headers, pending_payment, load_payment):
    engine.settlement.mark_paid(pending_payment)
    paid_at = load_payment(pending_payment).paid_at

    result = engine.dispatcher.dispatch(
        "asaas", asaas_event("PAYMENT_CONFIRMED", "pay_1", pending_payment, event_id="evt_late"), webhook_headers
    )

    assert result.processed
    payment = load_payment(pending_payment)
    assert payment.status == "paid"
    assert payment.paid_at == paid_at


def test_payment_found_by_gateway_reference(engine, webhook_headers, pending_payment, load_payment):
    engine.dispatcher.dispatch("asaas", asaas_event("PAYMENT_CONFIRMED", "pay_1", None), webhook_headers)

    assert load_payment(pending_payment).status == "paid"


def test_deleted_charge_cancels_and_releases_hold(engine, webhook_headers, pending_payment, load_payment, load_wallet):
    engine.dispatcher.dispatch("asaas", asaas_event("PAYMENT_DELETED", "pay_1", pending_payment), webhook_headers)

    assert load_payment(pending_payment).status == "canceled"
    assert load_wallet("user-1").held_cents == 0


def test_overdue_charge_fails_payment(engine, webhook_headers, pending_payment, load_payment):
    engine.dispatcher.dispatch("asaas", asaas_event("PAYMENT_OVERDUE", "pay_1", pending_payment), webhook_headers)

    assert load_payment(pending_payment).status == "failed"


def test_stale_confirmation_after_cancel_is_dropped(engine, webhook_headers, pending_payment, load_payment):
    cancel = asaas_event("PAYMENT_DELETED", "pay_1", pending_payment, "evt_1")
    engine.dispatcher.dispatch("asaas", cancel, webhook_headers)

    result = engine.dispatcher.dispatch(
        "asaas", asaas_event("PAYMENT_CONFIRMED", "pay_1", pending_payment, "evt_2"), webhook_headers
    )

    assert result.processed
    assert load_payment(pending_payment).status == "canceled"
    with engine.session_factory() as db:
        assert db.get(WebhookEvent, result.webhook_id).processed_at is not None


def test_unknown_payment_is_acknowledged(engine, webhook_headers):
    payload = asaas_event("PAYMENT_CONFIRMED", "pay_404", None)

    result = engine.dispatcher.dispatch("asaas", payload, webhook_headers)

    assert result.processed


def test_foreign_external_reference_of_any_length_is_stored(engine, webhook_headers):
    reference = "legacy-checkout:order-2024-000123:installment-01-of-12"
    payload = asaas_event("PAYMENT_CONFIRMED", "pay_legacy", reference)

    result = engine.dispatcher.dispatch("asaas", payload, webhook_headers)

    assert result.processed
    assert WebhookEvent.__table__.c.payment_uuid.type.length is None
    with engine.session_factory() as db:
        webhook = db.get(WebhookEvent, result.webhook_id)
    assert webhook.payment_uuid == reference
    assert webhook.processed_at is not None


def test_transfer_event_is_recorded(engine, webhook_headers):
    payload = {"id": "evt_t1", "event": "TRANSFER_DONE", "transfer": {"id": "tra_1", "status": "DONE"}}

    result = engine.dispatcher.dispatch("asaas", payload, webhook_headers)

    assert result.processed
    with engine.session_factory() as db:
        assert db.get(WebhookEvent, result.webhook_id).event_type == "TRANSFER_DONE"


def test_missing_event_id_uses_payload_fingerprint(engine, webhook_headers, pending_payment):
    payload = asaas_event("PAYMENT_CONFIRMED", "pay_1", pending_payment, event_id=None)

    first = engine.dispatcher.dispatch("asaas", payload, webhook_headers)
    second = engine.dispatcher.dispatch("asaas", dict(payload), webhook_headers)

    assert second.webhook_id == first.webhook_id
    assert second.duplicate


def test_invalid_token_is_rejected(engine, pending_payment, load_payment):
    with pytest.raises(WebhookVerificationException) as excinfo:
        engine.dispatcher.dispatch(
            "asaas", asaas_event("PAYMENT_CONFIRMED", "pay_1", pending_payment), {"asaas-access-token": "nope"}
        )

    assert excinfo.value.reason == "invalid_signature"
    assert load_payment(pending_payment).status == "pending"
    assert _count(engine, WebhookEvent) == 0


def test_missing_token_is_rejected(engine, pending_payment):
    with pytest.raises(WebhookVerificationException) as excinfo:
        engine.dispatcher.dispatch("asaas", asaas_event("PAYMENT_CONFIRMED", "pay_1", pending_payment), {})

    assert excinfo.value.reason == "missing_signature"


def test_unknown_provider_is_a_configuration_error(engine):
    assert engine.dispatcher.registered_gateways() == ["asaas"]
    assert not engine.dispatcher.has_handler("stripe")

    with pytest.raises(PaymentConfigurationException):
        engine.dispatcher.dispatch("stripe", {"id": "evt_1"}, {})


def test_processing_error_is_recorded_and_retryable(
    engine, webhook_headers, pending_payment, load_payment, monkeypatch
):
    payload = asaas_event("PAYMENT_CONFIRMED", "pay_1", pending_payment)
    original = engine.settlement.mark_paid

    def boom(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(engine.settlement, "mark_paid", boom)
    with pytest.raises(RuntimeError):
        engine.dispatcher.dispatch("asaas", payload, webhook_headers)

    with engine.session_factory() as db:
        webhook = db.execute(select(WebhookEvent)).scalar_one()
    assert webhook.attempts == 1
    assert webhook.error_message == "database unavailable"
    assert webhook.processed_at is None
    assert load_payment(pending_payment).status == "pending"

    monkeypatch.setattr(engine.settlement, "mark_paid", original)
    result = engine.dispatcher.dispatch("asaas", payload, webhook_headers)

    assert result.processed
    assert not result.duplicate
    assert load_payment(pending_payment).status == "paid"


def test_verification_skipped_only_for_local_sandbox(engine, test_settings):
    config = asaas_configuration(test_settings)
    local = AsaasWebhookHandler(engine.session_factory, engine.settlement, config, environment="local")
    production = AsaasWebhookHandler(
        engine.session_factory,
        engine.settlement,
        config.model_copy(update={"sandbox": False}),
        environment="local",
    )

    assert local.should_skip_verification()
    assert not production.should_skip_verification()
    local.process({"id": "evt_local", "event": "PAYMENT_CREATED", "payment": {"id": "pay_x"}}, {})
    with pytest.raises(WebhookVerificationException):
        production.process({"id": "evt_prod", "event": "PAYMENT_CREATED", "payment": {"id": "pay_x"}}, {})


@pytest.mark.parametrize(
    ("provider", "event_type", "expected"),
    [
        ("asaas", "PAYMENT_CONFIRMED", PaymentEventType.PAYMENT_CONFIRMED),
        ("asaas", "PAYMENT_OVERDUE", PaymentEventType.PAYMENT_EXPIRED),
        ("asaas", "PAYMENT_DELETED", PaymentEventType.PAYMENT_CANCELED),
        ("asaas", "PAYMENT_REFUND_IN_PROGRESS", PaymentEventType.PAYMENT_PENDING),
        ("asaas", "PAYMENT_CHARGEBACK_REQUESTED", PaymentEventType.PAYMENT_CHARGEBACK),
        ("iugu", "invoice.status_changed", PaymentEventType.PAYMENT_PAID),
        ("stripe", "payment_intent.succeeded", PaymentEventType.PAYMENT_PAID),
        ("stripe", "payment_intent.created", PaymentEventType.PAYMENT_CREATED),
        ("stripe", "charge.refunded", PaymentEventType.PAYMENT_REFUNDED),
        ("stripe", "customer.updated", PaymentEventType.UNKNOWN),
    ],
)
def test_provider_event_mapping(provider, event_type, expected):
    assert PaymentEventType.from_provider_event(provider, event_type) == expected


def test_event_type_helpers():
    assert PaymentEventType.PAYMENT_RECEIVED.is_successful
    assert PaymentEventType.PAYMENT_EXPIRED.is_failed
    assert PaymentEventType.PAYMENT_CHARGEBACK.is_refund
    assert PaymentEventType.PAYMENT_CREATED.to_payment_status().value == "draft"
    assert PaymentEventType.PAYMENT_PARTIALLY_REFUNDED.to_payment_status().value == "refunded"
    assert PaymentEventType.UNKNOWN.to_payment_status() is None
