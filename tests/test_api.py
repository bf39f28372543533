"""HTTP surface: webhook intake status codes, checkout, refunds, top-ups."""

import httpx
import pytest
from fastapi.testclient import TestClient

from paysettle.services.payments.main import create_app


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def _checkout_body(**overrides) -> dict:
    body = {
        "payer": {"id": "user-1", "name": "Maria Silva", "email": "maria@example.com"},
        "billable_type": "order",
        "billable_id": "order-1",
        "amount_cents": 10000,
        "method": "pix",
    }
    body.update(overrides)
    return body


def _confirmation(charge_id: str, external_reference: str, event_id: str = "evt_api_1") -> dict:
    return {
        "id": event_id,
        "event": "PAYMENT_CONFIRMED",
        "payment": {"object": "payment", "id": charge_id, "externalReference": external_reference},
    }


def test_checkout_then_webhook_settles(client, fund_wallet, webhook_headers):
    fund_wallet("user-1", 4000)

    created = client.post("/payments/checkout", json=_checkout_body())

    assert created.status_code == 200
    body = created.json()
    assert body["status"] == "pending"
    assert body["wallet_applied_cents"] == 4000
    assert body["gateway_amount_cents"] == 6000
    assert body["pix"]["payload"].startswith("000201")
    assert "raw" not in body["pix"]

    uuid = body["payment_uuid"]
    ack = client.post("/webhooks/asaas", json=_confirmation("pay_1", uuid), headers=webhook_headers)

    assert ack.status_code == 200
    assert ack.json()["success"] is True
    assert ack.json()["processed"] is True
    assert client.get(f"/payments/{uuid}").json()["status"] == "paid"


def test_webhook_redelivery_returns_same_id(client, checkout, webhook_headers):
    uuid = checkout.amount(5000).without_wallet().create().payment.uuid
    payload = _confirmation("pay_1", uuid)

    first = client.post("/webhooks/asaas", json=payload, headers=webhook_headers).json()
    second = client.post("/webhooks/asaas", json=payload, headers=webhook_headers).json()

    assert second["webhook_id"] == first["webhook_id"]
    assert second["success"] is True


def test_webhook_with_bad_token_is_unauthorized(client):
    response = client.post(
        "/webhooks/asaas",
        json=_confirmation("pay_1", "missing"),
        headers={"Asaas-Access-Token": "wrong"},
    )

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Verification failed"}


def test_webhook_for_unknown_provider_is_rejected(client, webhook_headers):
    response = client.post("/webhooks/stripe", json={"id": "evt_1"}, headers=webhook_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "Unknown provider"


def test_webhook_with_malformed_body_is_rejected(client, webhook_headers):
    response = client.post(
        "/webhooks/asaas",
        content=b"not json",
        headers={**webhook_headers, "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid payload"


def test_webhook_processing_error_is_acknowledged(client, engine, checkout, webhook_headers, monkeypatch):
    uuid = checkout.amount(5000).without_wallet().create().payment.uuid

    def boom(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(engine.settlement, "mark_paid", boom)
    response = client.post("/webhooks/asaas", json=_confirmation("pay_1", uuid), headers=webhook_headers)

    assert response.status_code == 200
    assert response.json() == {"success": False, "error": "Processing error"}


def test_webhook_health_reports_verification_mode(client):
    assert client.get("/webhooks/asaas/health").json() == {"ok": True, "provider": "asaas", "verification": "token"}
    assert client.get("/webhooks/stripe/health").status_code == 400


def test_get_unknown_payment_is_not_found(client):
    assert client.get("/payments/does-not-exist").status_code == 404


def test_refund_of_pending_payment_is_unprocessable(client, checkout):
    uuid = checkout.amount(5000).without_wallet().create().payment.uuid

    response = client.post(f"/payments/{uuid}/refund", json={})

    assert response.status_code == 422
    body = response.json()
    assert "cannot be refunded" in body["message"]
    assert body["errors"]["type"] == "InvalidPaymentStateException"
    assert body["errors"]["payment_uuid"] == uuid


def test_partial_refund_over_http(client, engine, checkout):
    uuid = checkout.amount(5000).without_wallet().create().payment.uuid
    engine.settlement.mark_paid(uuid)

    response = client.post(f"/payments/{uuid}/refund", json={"amount_cents": 2000, "reason": "damaged item"})

    assert response.status_code == 200
    assert response.json()["status"] == "paid"
    assert response.json()["refunded_cents"] == 2000


def test_gateway_error_hides_provider_payload(client, fake_asaas):
    fake_asaas.override(
        "POST",
        "/payments",
        httpx.Response(400, json={"errors": [{"code": "invalid_value", "description": "Valor mínimo inválido"}]}),
    )

    response = client.post("/payments/checkout", json=_checkout_body(amount_cents=100))

    assert response.status_code == 502
    body = response.json()
    assert body["message"] == "The payment amount is not accepted by the payment provider."
    assert body["errors"]["codes"] == ["invalid_value"]
    assert "Valor mínimo" not in response.text


def test_invalid_checkout_lists_missing_card(client):
    response = client.post("/payments/checkout", json=_checkout_body(method="credit_card"))

    assert response.status_code == 422
    assert set(response.json()["errors"]) == {"credit_card", "card_holder"}


def test_wallet_top_up_confirms_on_settlement(client, load_wallet, webhook_headers):
    response = client.post("/wallets/user-9/top-ups", json={"amount_cents": 5000})

    assert response.status_code == 200
    body = response.json()
    assert body["deposit_id"]
    assert body["wallet_applied_cents"] == 0
    assert load_wallet("user-9").balance_cents == 0

    client.post("/webhooks/asaas", json=_confirmation("pay_1", body["payment_uuid"]), headers=webhook_headers)

    assert load_wallet("user-9").balance_cents == 5000


def test_gateway_status(client):
    body = client.get("/gateways/status").json()

    assert body["default"] == "asaas"
    asaas = body["gateways"]["asaas"]
    assert asaas["enabled"] is True
    assert asaas["available"] is True
    assert "payments" in asaas["features"]


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text
