"""Shared fixtures: in-memory database, fake Asaas API, wired engine."""

import json
import os

os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["TRACING_ENABLED"] = "false"
os.environ["OUTBOX_PUBLISHER_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import select  # noqa: E402

from paysettle.common.config import AsaasSettings, CommonSettings  # noqa: E402
from paysettle.common.db import Base, make_engine, make_session_factory  # noqa: E402
from paysettle.gateways.registry import build_registry  # noqa: E402
from paysettle.services.payments.engine import build_engine  # noqa: E402
from paysettle.services.payments.models import Payment  # noqa: E402
from paysettle.services.wallet.models import WalletAccount  # noqa: E402
from paysettle.services.webhooks.models import WebhookEvent  # noqa: E402,F401

WEBHOOK_TOKEN = "whsec_test_token"


class FakeAsaas:
    """Minimal Asaas REST API served through `httpx.MockTransport`.

    `override(method, path, outcome)` replaces one endpoint with a fixed
    `httpx.Response` or an exception to raise.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.charges: dict[str, dict] = {}
        self.customers: dict[str, dict] = {}
        self.overrides: dict[tuple[str, str], object] = {}

    def override(self, method: str, path: str, outcome) -> None:
        self.overrides[(method, path)] = outcome

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path
        outcome = self.overrides.get((method, path))
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome

        body = json.loads(request.content) if request.content else {}
        parts = path.strip("/").split("/")
        if path == "/customers" and method == "POST":
            customer = {"id": f"cus_{len(self.customers) + 1}", **body}
            self.customers[customer["id"]] = customer
            return httpx.Response(200, json=customer)
        if path == "/customers" and method == "GET":
            reference = request.url.params.get("externalReference")
            found = [c for c in self.customers.values() if c.get("externalReference") == reference]
            return httpx.Response(200, json={"data": found, "totalCount": len(found)})
        if path == "/payments" and method == "POST":
            charge_id = f"pay_{len(self.charges) + 1}"
            charge = {
                "id": charge_id,
                "status": "PENDING",
                "invoiceUrl": f"https://sandbox.asaas.com/i/{charge_id}",
                **body,
            }
            self.charges[charge_id] = charge
            return httpx.Response(200, json=charge)
        if path == "/payments" and method == "GET":
            params = request.url.params
            found = [
                c
                for c in self.charges.values()
                if all(c.get(key) == params[key] for key in ("customer", "externalReference") if key in params)
            ]
            return httpx.Response(200, json={"data": found, "totalCount": len(found), "hasMore": False})
        if parts[0] == "payments" and len(parts) == 2 and method == "DELETE":
            self.charges[parts[1]]["deleted"] = True
            return httpx.Response(200, json={"deleted": True, "id": parts[1]})
        if parts[0] == "payments" and len(parts) == 2 and method == "GET":
            return httpx.Response(200, json=self.charges[parts[1]])
        if parts[0] == "payments" and len(parts) == 3:
            charge = self.charges[parts[1]]
            if parts[2] == "pixQrCode":
                return httpx.Response(
                    200,
                    json={
                        "encodedImage": "iVBORw0KGgo=",
                        "payload": "00020126580014br.gov.bcb.pix",
                        "expirationDate": "2026-10-22 23:59:59",
                    },
                )
            if parts[2] == "payWithCreditCard":
                charge["status"] = "CONFIRMED"
                return httpx.Response(200, json=charge)
            if parts[2] == "refund":
                charge["status"] = "REFUNDED"
                return httpx.Response(200, json=charge)
            if parts[2] == "restore":
                charge.pop("deleted", None)
                return httpx.Response(200, json=charge)
        if path == "/finance/balance":
            return httpx.Response(200, json={"balance": 0})
        return httpx.Response(404, json={"errors": [{"code": "not_found", "description": "Not found"}]})


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def test_settings():
    return CommonSettings(
        postgres_dsn="sqlite://",
        environment="test",
        tracing_enabled=False,
        outbox_publisher_enabled=False,
        asaas=AsaasSettings(
            api_key="test-api-key",
            sandbox=True,
            base_url="https://asaas.test",
            webhook_secret=WEBHOOK_TOKEN,
            retry_attempts=0,
        ),
    )


@pytest.fixture
def fake_asaas():
    return FakeAsaas()


@pytest.fixture
def engine(session_factory, fake_asaas, test_settings):
    registry = build_registry(test_settings, transport=httpx.MockTransport(fake_asaas))
    yield build_engine(session_factory, registry=registry, source=test_settings)
    registry.forget_resolved_instances()


@pytest.fixture
def fund_wallet(engine):
    def _fund(owner_id: str, amount_cents: int) -> None:
        with engine.session_factory() as db:
            engine.wallet.credit(db, owner_id, amount_cents, reference=f"seed-{owner_id}", entry_type="deposit")
            db.commit()

    return _fund


@pytest.fixture
def load_payment(engine):
    def _load(uuid: str) -> Payment:
        with engine.session_factory() as db:
            return db.execute(select(Payment).where(Payment.uuid == uuid)).scalar_one()

    return _load


@pytest.fixture
def load_wallet(engine):
    def _load(owner_id: str) -> WalletAccount | None:
        with engine.session_factory() as db:
            return db.execute(select(WalletAccount).where(WalletAccount.owner_id == owner_id)).scalar_one_or_none()

    return _load


@pytest.fixture
def checkout(engine):
    """Builder preloaded with a payer and a billable, ready for amount/method."""

    return (
        engine.checkout()
        .for_payer("user-1", name="Maria Silva", email="maria@example.com", cpf_cnpj="529.982.247-25")
        .billable("order", "order-1")
    )


@pytest.fixture
def webhook_headers():
    return {"Asaas-Access-Token": WEBHOOK_TOKEN}
