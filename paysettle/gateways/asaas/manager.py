"""Asaas gateway manager."""

from paysettle.gateways.asaas.services import (
    AsaasCustomerService,
    AsaasPaymentService,
    AsaasSplitService,
    AsaasSubscriptionService,
    AsaasTransferService,
    AsaasWebhookService,
)
from paysettle.gateways.base import GatewayManager


class AsaasManager(GatewayManager):
    # Cheapest authenticated endpoint Asaas exposes.
    health_path = "/finance/balance"

    def default_headers(self) -> dict[str, str]:
        return {
            "access_token": self.config.api_key or "",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def make_customer_service(self) -> AsaasCustomerService:
        return AsaasCustomerService(self.http)

    def make_payment_service(self) -> AsaasPaymentService:
        return AsaasPaymentService(self.http)

    def make_subscription_service(self) -> AsaasSubscriptionService:
        return AsaasSubscriptionService(self.http)

    def make_transfer_service(self) -> AsaasTransferService:
        return AsaasTransferService(self.http)

    def make_split_service(self) -> AsaasSplitService:
        return AsaasSplitService(self.http)

    def make_webhook_service(self) -> AsaasWebhookService:
        return AsaasWebhookService(self.http)
