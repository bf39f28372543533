"""Wiring for the settlement engine: one object holding every collaborator.

The API builds one engine per process; tests build their own around an
in-memory database and a mocked gateway transport.
"""

from dataclasses import dataclass

from paysettle.common.config import CommonSettings, settings
from paysettle.common.outbox import OutboxPublisher, OutboxStore
from paysettle.gateways.asaas.configuration import asaas_configuration
from paysettle.gateways.registry import GatewayRegistry, build_registry
from paysettle.services.payments.billables import BillableRegistry
from paysettle.services.payments.checkout import CheckoutBuilder
from paysettle.services.payments.models import OutboxEvent
from paysettle.services.payments.refunds import RefundService
from paysettle.services.payments.settlement import SettlementService
from paysettle.services.wallet.service import WalletService
from paysettle.services.webhooks.dispatcher import WebhookDispatcher
from paysettle.services.webhooks.handlers.asaas import AsaasWebhookHandler


@dataclass
class PaymentEngine:
    session_factory: object
    settings: CommonSettings
    registry: GatewayRegistry
    wallet: WalletService
    billables: BillableRegistry
    outbox: OutboxStore
    settlement: SettlementService
    refunds: RefundService
    dispatcher: WebhookDispatcher
    publisher: OutboxPublisher

    def checkout(self) -> CheckoutBuilder:
        """Fresh builder preloaded with configured defaults."""

        return CheckoutBuilder(self.session_factory, self.registry, self.settlement, self.wallet, self.settings)


def build_engine(
    session_factory,
    registry: GatewayRegistry | None = None,
    source: CommonSettings | None = None,
) -> PaymentEngine:
    source = source or settings
    registry = registry or build_registry(source)
    service_name = source.service_name
    wallet = WalletService(currency=source.checkout_currency)
    billables = BillableRegistry()
    outbox = OutboxStore(OutboxEvent, service_name)
    settlement = SettlementService(session_factory, wallet, billables, outbox, service_name=service_name)
    refunds = RefundService(session_factory, registry, settlement)

    dispatcher = WebhookDispatcher(session_factory, outbox, service_name=service_name)
    dispatcher.register_handler(
        "asaas",
        AsaasWebhookHandler(
            session_factory,
            settlement,
            asaas_configuration(source),
            service_name=service_name,
            environment=source.environment,
        ),
    )

    return PaymentEngine(
        session_factory=session_factory,
        settings=source,
        registry=registry,
        wallet=wallet,
        billables=billables,
        outbox=outbox,
        settlement=settlement,
        refunds=refunds,
        dispatcher=dispatcher,
        publisher=OutboxPublisher(session_factory, outbox),
    )
