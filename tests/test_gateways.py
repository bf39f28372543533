"""Gateway plumbing: HTTP error mapping, registry, feature gates, Asaas mappers."""

import json
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from paysettle.common.exceptions import (
    DEFAULT_GATEWAY_USER_MESSAGE,
    GatewayException,
    GatewayTimeoutException,
    GatewayUnavailableException,
    PaymentConfigurationException,
)
from paysettle.gateways.asaas import mappers
from paysettle.gateways.asaas.manager import AsaasManager
from paysettle.gateways.asaas.services import ALL_RECOMMENDED_EVENTS, PAYMENT_EVENTS
from paysettle.gateways.configuration import GatewayConfiguration
from paysettle.gateways.registry import GatewayRegistry
from paysettle.gateways.schemas import CustomerData, PaymentMethod, TransferRequest
from scripts.setup_asaas_webhook import app_webhook_url, setup_webhook

ALL_FEATURES = frozenset({"customers", "payments", "subscriptions", "transfers", "splits", "webhooks"})


def asaas_manager(handler, **overrides) -> AsaasManager:
    config = GatewayConfiguration(
        name="asaas",
        api_key="test-api-key",
        base_url="https://asaas.test",
        retry_attempts=0,
        features=ALL_FEATURES,
    )
    return AsaasManager(config.model_copy(update=overrides), transport=httpx.MockTransport(handler))


def raising(exc: Exception):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc

    return handler


def test_connection_error_maps_to_unavailable():
    manager = asaas_manager(raising(httpx.ConnectError("connection refused")))

    with pytest.raises(GatewayUnavailableException) as excinfo:
        manager.http.get("/payments/pay_1", payment_uuid="uuid-1")

    assert not isinstance(excinfo.value, GatewayTimeoutException)
    assert excinfo.value.context["reason"] == "connection_failed"
    assert excinfo.value.payment_uuid == "uuid-1"


def test_read_timeout_maps_to_timeout():
    manager = asaas_manager(raising(httpx.ReadTimeout("read timed out")))

    with pytest.raises(GatewayTimeoutException) as excinfo:
        manager.http.post("/payments", json={})

    assert excinfo.value.status_code == 504
    assert excinfo.value.context == {"reason": "timeout", "path": "/payments"}


@pytest.mark.parametrize(
    "error",
    [
        httpx.RemoteProtocolError("Server disconnected without sending a response."),
        httpx.ReadError("connection reset by peer"),
        httpx.WriteError("broken pipe"),
    ],
)
def test_connection_dropped_mid_request_is_unknown_outcome(error):
    manager = asaas_manager(raising(error))

    with pytest.raises(GatewayTimeoutException) as excinfo:
        manager.http.post("/payments", json={}, payment_uuid="uuid-1")

    assert excinfo.value.context == {"reason": "interrupted", "path": "/payments"}
    assert excinfo.value.payment_uuid == "uuid-1"


def test_error_response_carries_provider_messages():
    body = {"errors": [{"code": "invalid_customer", "description": "Cliente inexistente"}]}
    manager = asaas_manager(lambda request: httpx.Response(400, json=body))

    with pytest.raises(GatewayException) as excinfo:
        manager.http.get("/customers/cus_404")

    exc = excinfo.value
    assert exc.http_status_code == 400
    assert exc.message == "asaas request failed: Cliente inexistente"
    assert exc.gateway_response == body
    assert exc.user_message == "The payer details were rejected by the payment provider."


def test_non_json_error_body_is_kept_raw():
    manager = asaas_manager(lambda request: httpx.Response(502, text="Bad Gateway"))

    with pytest.raises(GatewayException) as excinfo:
        manager.http.get("/finance/balance")

    assert excinfo.value.gateway_response == {"raw": "Bad Gateway"}
    assert excinfo.value.message == "asaas request failed: HTTP 502"
    assert excinfo.value.user_message == DEFAULT_GATEWAY_USER_MESSAGE


def test_requests_carry_access_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"balance": 10.5})

    asaas_manager(handler).http.get("/finance/balance")

    assert seen[0].headers["access_token"] == "test-api-key"
    assert str(seen[0].url) == "https://asaas.test/finance/balance"


def test_missing_api_key_fails_before_any_request():
    seen = []
    manager = asaas_manager(lambda request: seen.append(request) or httpx.Response(200, json={}), api_key=None)

    with pytest.raises(GatewayUnavailableException) as excinfo:
        manager.payments()

    assert excinfo.value.context["reason"] == "not_configured"
    assert not manager.is_available()
    assert manager.status().enabled is False
    assert seen == []


def test_disabled_feature_is_rejected():
    manager = asaas_manager(lambda request: httpx.Response(200, json={}), features=frozenset({"payments"}))

    with pytest.raises(GatewayUnavailableException) as excinfo:
        manager.transfers()

    assert excinfo.value.context == {"reason": "feature_disabled", "feature": "transfers"}
    assert manager.supports_feature("payments")
    assert manager.payments() is manager.payments()


def test_cancel_returns_false_when_provider_refuses():
    refused = asaas_manager(
        lambda request: httpx.Response(400, json={"errors": [{"code": "invalid_action", "description": "Pago"}]})
    )
    deleted = asaas_manager(lambda request: httpx.Response(200, json={"deleted": True, "id": "pay_1"}))

    assert refused.payments().cancel("pay_1") is False
    assert deleted.payments().cancel("pay_1") is True


def test_cancel_propagates_connection_failures():
    manager = asaas_manager(raising(httpx.ConnectError("connection refused")))

    with pytest.raises(GatewayUnavailableException):
        manager.payments().cancel("pay_1")


def test_transfer_detects_pix_key_type():
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "tra_1", "status": "PENDING", "value": 25.0})

    transfer = asaas_manager(handler).transfers().create(
        TransferRequest(amount_cents=2500, pix_address_key="maria@example.com")
    )

    assert sent[0] == {"value": 25.0, "pixAddressKey": "maria@example.com", "pixAddressKeyType": "EMAIL"}
    assert transfer.amount_cents == 2500


def test_list_by_customer_sends_asaas_filters():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        charge = {"id": "pay_7", "status": "PENDING", "value": 12.5, "billingType": "PIX", "customer": "cus_1"}
        return httpx.Response(200, json={"data": [charge], "totalCount": 31, "limit": 10, "offset": 0, "hasMore": True})

    page = asaas_manager(handler).payments().list_by_customer("cus_1", {"method": "pix", "status": None, "limit": 10})

    assert dict(seen[0].url.params) == {"customer": "cus_1", "billingType": "PIX", "limit": "10"}
    assert [charge.id for charge in page.items] == ["pay_7"]
    assert page.items[0].amount_cents == 1250
    assert page.total == 31
    assert page.has_more is True


def test_restore_and_supported_methods():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "pay_1", "status": "PENDING", "value": 10})

    payments = asaas_manager(handler).payments()
    charge = payments.restore("pay_1")

    assert (seen[0].method, seen[0].url.path) == ("POST", "/payments/pay_1/restore")
    assert charge.status == "PENDING"
    assert payments.supports_method("pix")
    assert payments.supports_method(PaymentMethod.CREDIT_CARD)
    assert set(payments.supported_methods()) == set(PaymentMethod)


def test_webhook_registration_defaults_to_payment_events():
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        sent.append(body)
        return httpx.Response(200, json={"id": "wh_1", "hasAuthToken": True, **body})

    hook = asaas_manager(handler).webhooks().create("https://pay.example.com/webhooks/asaas", auth_token="whsec")

    assert sent[0]["events"] == PAYMENT_EVENTS
    assert sent[0]["authToken"] == "whsec"
    assert sent[0]["sendType"] == "SEQUENTIALLY"
    assert hook.id == "wh_1"
    assert hook.has_auth_token is True


def test_create_or_update_updates_existing_registration():
    url = "https://pay.example.com/webhooks/asaas"
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            hooks = [
                {"id": "wh_old", "url": "https://old.example.com/hook"},
                {"id": "wh_1", "url": url, "enabled": False},
            ]
            return httpx.Response(200, json={"data": hooks})
        return httpx.Response(200, json={"id": "wh_1", "url": url, **json.loads(request.content)})

    hook = asaas_manager(handler).webhooks().create_or_update(url, ALL_RECOMMENDED_EVENTS, auth_token="whsec")

    assert (seen[1].method, seen[1].url.path) == ("PUT", "/webhooks/wh_1")
    assert json.loads(seen[1].content) == {"events": ALL_RECOMMENDED_EVENTS, "enabled": True, "authToken": "whsec"}
    assert hook.enabled is True
    assert len(hook.events) == len(ALL_RECOMMENDED_EVENTS)


def test_create_or_update_registers_missing_url():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"data": []})
        return httpx.Response(200, json={"id": "wh_2", **json.loads(request.content)})

    hook = asaas_manager(handler).webhooks().create_or_update("https://pay.example.com/webhooks/asaas")

    assert (seen[1].method, seen[1].url.path) == ("POST", "/webhooks")
    assert json.loads(seen[1].content)["name"] == "PaySettle"
    assert hook.id == "wh_2"


def test_webhook_lookup_and_backoff_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"errors": [{"code": "not_found", "description": "Webhook não encontrado"}]})

    webhooks = asaas_manager(handler).webhooks()

    assert webhooks.find("wh_missing") is None
    assert webhooks.remove_backoff("wh_missing") is False
    assert webhooks.delete("wh_missing") is False


def test_webhook_management_requires_feature():
    manager = asaas_manager(lambda request: httpx.Response(200, json={}), features=frozenset({"payments"}))

    with pytest.raises(GatewayUnavailableException) as excinfo:
        manager.webhooks()

    assert excinfo.value.context == {"reason": "feature_disabled", "feature": "webhooks"}


def test_setup_script_registers_app_webhook_with_secret(capsys):
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"data": []})
        body = json.loads(request.content)
        sent.append(body)
        return httpx.Response(200, json={"id": "wh_3", "hasAuthToken": True, **body})

    url = app_webhook_url("https://pay.example.com/")
    code = setup_webhook(asaas_manager(handler).webhooks(), url, "whsec")

    assert code == 0
    assert url == "https://pay.example.com/webhooks/asaas"
    assert sent[0]["url"] == url
    assert sent[0]["events"] == ALL_RECOMMENDED_EVENTS
    assert sent[0]["authToken"] == "whsec"
    assert "auth_token=yes" in capsys.readouterr().out


def test_registry_resolves_and_caches_drivers():
    registry = GatewayRegistry(default_gateway="asaas")
    registry.extend("asaas", lambda: asaas_manager(lambda request: httpx.Response(200, json={})))

    first = registry.driver()
    assert registry.driver("asaas") is first

    registry.forget_resolved_instances()
    assert registry.driver() is not first


def test_concurrent_driver_lookups_build_one_manager():
    built = []

    def factory():
        time.sleep(0.01)
        manager = asaas_manager(lambda request: httpx.Response(200, json={}))
        built.append(manager)
        return manager

    registry = GatewayRegistry(default_gateway="asaas")
    registry.extend("asaas", factory)

    with ThreadPoolExecutor(max_workers=8) as pool:
        managers = list(pool.map(lambda _: registry.driver(), range(16)))
        services = list(pool.map(lambda _: managers[0].payments(), range(16)))

    assert len(built) == 1
    assert all(manager is built[0] for manager in managers)
    assert all(service is services[0] for service in services)


def test_registry_rejects_unknown_gateways():
    registry = GatewayRegistry(default_gateway="asaas")

    with pytest.raises(PaymentConfigurationException):
        registry.driver()
    with pytest.raises(PaymentConfigurationException):
        registry.set_default("stripe")


def test_registry_extend_and_set_default():
    registry = GatewayRegistry(default_gateway="asaas")
    registry.extend("asaas", lambda: asaas_manager(lambda request: httpx.Response(200, json={})))
    registry.extend(
        "asaas_backup",
        lambda: asaas_manager(raising(httpx.ConnectError("down")), name="asaas_backup"),
    )

    registry.set_default("asaas_backup")

    assert registry.default_gateway == "asaas_backup"
    assert registry.available_gateways() == ["asaas", "asaas_backup"]
    status = registry.gateways_status()
    assert status["asaas"].available is True
    assert status["asaas_backup"].available is False


def test_value_conversions():
    assert mappers.to_value(1999) == 19.99
    assert mappers.to_cents(19.99) == 1999
    assert mappers.to_cents("0.105") == 11
    assert mappers.to_cents(None) == 0


@pytest.mark.parametrize(
    ("key", "expected"),
    [
        ("529.982.247-25", "CPF"),
        ("11.222.333/0001-81", "CNPJ"),
        ("maria@example.com", "EMAIL"),
        ("+5511987654321", "PHONE"),
        ("6f1c7a52-4c1e-4b43-9a2f-3b1f2d9c0e11", "EVP"),
    ],
)
def test_detect_pix_key_type(key, expected):
    assert mappers.detect_pix_key_type(key) == expected


def test_customer_payload_normalizes_documents_and_phone():
    payload = mappers.customer_payload(
        CustomerData(name="Maria Silva", cpf_cnpj="529.982.247-25", phone="(11) 98765-4321", external_reference="p-1")
    )

    assert payload == {
        "name": "Maria Silva",
        "cpfCnpj": "52998224725",
        "mobilePhone": "11987654321",
        "externalReference": "p-1",
    }
    landline = mappers.customer_payload(CustomerData(name="Loja", phone="(11) 3333-4444"))
    assert landline["phone"] == "1133334444"


def test_mask_card_payload_keeps_last_four():
    payload = {"creditCard": {"number": "5162306219378829", "ccv": "318"}, "creditCardHolderInfo": {"name": "M"}}

    masked = mappers.mask_card_payload(payload)

    assert masked["creditCard"] == {"number": "************8829", "ccv": "***"}
    assert masked["creditCardHolderInfo"] == {"name": "M"}
    assert payload["creditCard"]["ccv"] == "318"


@pytest.mark.parametrize(
    ("status", "approved", "paid", "requires_action"),
    [
        ("CONFIRMED", True, True, False),
        ("RECEIVED", True, True, False),
        ("PENDING", True, False, False),
        ("AWAITING_RISK_ANALYSIS", False, False, True),
    ],
)
def test_credit_card_result_flags(status, approved, paid, requires_action):
    result = mappers.credit_card_result({"id": "pay_1", "status": status})

    assert (result.approved, result.paid, result.requires_action) == (approved, paid, requires_action)
