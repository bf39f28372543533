"""Abstract service contracts every gateway implements.

Settlement code only talks to these interfaces; adding a provider means adding
a manager plus these services, nothing else.
"""

from abc import ABC, abstractmethod
from typing import Any

from paysettle.gateways.schemas import (
    CardHolder,
    Charge,
    ChargePage,
    ChargeRequest,
    CreditCard,
    CreditCardResult,
    Customer,
    CustomerData,
    PaymentMethod,
    PixQrCode,
    RefundResult,
    SplitRule,
    Subscription,
    SubscriptionRequest,
    Transfer,
    TransferRequest,
    WebhookSubscription,
)


class CustomerService(ABC):
    @abstractmethod
    def create(self, data: CustomerData) -> Customer: ...

    @abstractmethod
    def find(self, customer_id: str) -> Customer: ...

    @abstractmethod
    def find_by_external_reference(self, external_reference: str) -> Customer | None: ...

    def first_or_create(self, data: CustomerData) -> Customer:
        """Reuse the customer tagged with `data.external_reference`, else create it."""

        if data.external_reference:
            existing = self.find_by_external_reference(data.external_reference)
            if existing is not None:
                return existing
        return self.create(data)


class PaymentService(ABC):
    @abstractmethod
    def create_charge(self, request: ChargeRequest, payment_uuid: str | None = None) -> Charge: ...

    @abstractmethod
    def find(self, charge_id: str) -> Charge: ...

    @abstractmethod
    def find_by_external_reference(self, external_reference: str) -> Charge | None: ...

    @abstractmethod
    def get_status(self, charge_id: str) -> str: ...

    @abstractmethod
    def list_charges(self, filters: dict[str, Any] | None = None) -> ChargePage: ...

    def list_by_customer(self, customer_id: str, filters: dict[str, Any] | None = None) -> ChargePage:
        return self.list_charges({**(filters or {}), "customer": customer_id})

    @abstractmethod
    def restore(self, charge_id: str) -> Charge:
        """Bring a deleted charge back to life."""

    @abstractmethod
    def supported_methods(self) -> list[PaymentMethod]: ...

    def supports_method(self, method: PaymentMethod | str) -> bool:
        return PaymentMethod(method) in self.supported_methods()

    @abstractmethod
    def cancel(self, charge_id: str) -> bool: ...

    @abstractmethod
    def refund(
        self,
        charge_id: str,
        amount_cents: int | None = None,
        description: str | None = None,
        payment_uuid: str | None = None,
    ) -> RefundResult: ...

    @abstractmethod
    def get_pix_qr_code(self, charge_id: str) -> PixQrCode: ...

    @abstractmethod
    def pay_with_credit_card(
        self,
        charge_id: str,
        card: CreditCard,
        holder: CardHolder,
        payment_uuid: str | None = None,
    ) -> CreditCardResult: ...

    @abstractmethod
    def supports_partial_refund(self) -> bool: ...

    def request_payload(self, request: ChargeRequest) -> dict[str, Any]:
        """Wire payload for `request`, stored on the payment for auditing."""

        return request.model_dump(mode="json")


class SubscriptionService(ABC):
    @abstractmethod
    def create(self, request: SubscriptionRequest) -> Subscription: ...

    @abstractmethod
    def find(self, subscription_id: str) -> Subscription: ...

    @abstractmethod
    def cancel(self, subscription_id: str) -> bool: ...


class TransferService(ABC):
    @abstractmethod
    def create(self, request: TransferRequest) -> Transfer: ...

    @abstractmethod
    def find(self, transfer_id: str) -> Transfer: ...


class SplitService(ABC):
    @abstractmethod
    def build_rules(self, rules: list[SplitRule]) -> list[dict[str, Any]]: ...

    @abstractmethod
    def find_for_charge(self, charge_id: str) -> list[SplitRule]: ...


class WebhookService(ABC):
    """Registration of our notification endpoint at the provider."""

    @abstractmethod
    def create(
        self,
        url: str,
        events: list[str] | None = None,
        name: str | None = None,
        auth_token: str | None = None,
        email: str | None = None,
    ) -> WebhookSubscription: ...

    @abstractmethod
    def list_webhooks(self) -> list[WebhookSubscription]: ...

    @abstractmethod
    def find(self, webhook_id: str) -> WebhookSubscription | None: ...

    @abstractmethod
    def update(self, webhook_id: str, changes: dict[str, Any]) -> WebhookSubscription: ...

    @abstractmethod
    def delete(self, webhook_id: str) -> bool: ...

    @abstractmethod
    def remove_backoff(self, webhook_id: str) -> bool:
        """Lift the provider's delivery penalty after our endpoint was failing."""

    def enable(self, webhook_id: str) -> WebhookSubscription:
        return self.update(webhook_id, {"enabled": True})

    def disable(self, webhook_id: str) -> WebhookSubscription:
        return self.update(webhook_id, {"enabled": False})

    def find_by_url(self, url: str) -> WebhookSubscription | None:
        return next((hook for hook in self.list_webhooks() if hook.url == url), None)

    @abstractmethod
    def create_or_update(
        self, url: str, events: list[str] | None = None, auth_token: str | None = None
    ) -> WebhookSubscription:
        """Point the registration for `url` at `events`, creating it when missing."""
