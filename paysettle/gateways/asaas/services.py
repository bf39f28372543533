"""Asaas implementations of the gateway service contracts."""

from typing import Any

from paysettle.common.exceptions import GatewayException, GatewayUnavailableException
from paysettle.common.logging import logger
from paysettle.gateways.asaas import mappers
from paysettle.gateways.contracts import (
    CustomerService,
    PaymentService,
    SplitService,
    SubscriptionService,
    TransferService,
    WebhookService,
)
from paysettle.gateways.http import GatewayHttpClient
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


class AsaasCustomerService(CustomerService):
    def __init__(self, http: GatewayHttpClient) -> None:
        self.http = http

    def create(self, data: CustomerData) -> Customer:
        return mappers.customer_from_response(self.http.post("/customers", json=mappers.customer_payload(data)))

    def find(self, customer_id: str) -> Customer:
        return mappers.customer_from_response(self.http.get(f"/customers/{customer_id}"))

    def find_by_external_reference(self, external_reference: str) -> Customer | None:
        data = self.http.get("/customers", params={"externalReference": external_reference})
        items = data.get("data") or []
        return mappers.customer_from_response(items[0]) if items else None


class AsaasPaymentService(PaymentService):
    """Charges (`/payments` endpoints), PIX QR codes, card capture and refunds."""

    def __init__(self, http: GatewayHttpClient) -> None:
        self.http = http

    def request_payload(self, request: ChargeRequest) -> dict[str, Any]:
        return mappers.charge_payload(request)

    def create_charge(self, request: ChargeRequest, payment_uuid: str | None = None) -> Charge:
        data = self.http.post("/payments", json=mappers.charge_payload(request), payment_uuid=payment_uuid)
        return mappers.charge_from_response(data)

    def find(self, charge_id: str) -> Charge:
        return mappers.charge_from_response(self.http.get(f"/payments/{charge_id}"))

    def find_by_external_reference(self, external_reference: str) -> Charge | None:
        data = self.http.get("/payments", params={"externalReference": external_reference})
        items = data.get("data") or []
        return mappers.charge_from_response(items[0]) if items else None

    def get_status(self, charge_id: str) -> str:
        return self.http.get(f"/payments/{charge_id}/status").get("status", "")

    def list_charges(self, filters: dict[str, Any] | None = None) -> ChargePage:
        return mappers.charge_page_from_response(self.http.get("/payments", params=mappers.charge_list_params(filters)))

    def restore(self, charge_id: str) -> Charge:
        return mappers.charge_from_response(self.http.post(f"/payments/{charge_id}/restore"))

    def supported_methods(self) -> list[PaymentMethod]:
        return list(mappers.BILLING_TYPES)

    def cancel(self, charge_id: str) -> bool:
        """Delete a still-open charge; False when the provider refuses."""

        try:
            data = self.http.delete(f"/payments/{charge_id}")
        except GatewayUnavailableException:
            raise
        except GatewayException as exc:
            logger.warning("charge_cancel_rejected charge_id=%s error=%s", charge_id, exc)
            return False
        return bool(data.get("deleted", True))

    def refund(
        self,
        charge_id: str,
        amount_cents: int | None = None,
        description: str | None = None,
        payment_uuid: str | None = None,
    ) -> RefundResult:
        original = self.find(charge_id)
        payload: dict[str, Any] = {}
        if amount_cents is not None:
            payload["value"] = mappers.to_value(amount_cents)
        if description:
            payload["description"] = description
        data = self.http.post(f"/payments/{charge_id}/refund", json=payload, payment_uuid=payment_uuid)
        return mappers.refund_from_response(data, charge_id, amount_cents, original.amount_cents)

    def get_pix_qr_code(self, charge_id: str) -> PixQrCode:
        return mappers.pix_from_response(self.http.get(f"/payments/{charge_id}/pixQrCode"))

    def pay_with_credit_card(
        self,
        charge_id: str,
        card: CreditCard,
        holder: CardHolder,
        payment_uuid: str | None = None,
    ) -> CreditCardResult:
        """Capture an existing PENDING charge with card data.

        Declines come back as HTTP 400 and surface as `GatewayException`.
        """

        payload = mappers.credit_card_payload(card, holder)
        data = self.http.post(f"/payments/{charge_id}/payWithCreditCard", json=payload, payment_uuid=payment_uuid)
        return mappers.credit_card_result(data).model_copy(update={"request": mappers.mask_card_payload(payload)})

    def supports_partial_refund(self) -> bool:
        return True


class AsaasSubscriptionService(SubscriptionService):
    def __init__(self, http: GatewayHttpClient) -> None:
        self.http = http

    def create(self, request: SubscriptionRequest) -> Subscription:
        data = self.http.post("/subscriptions", json=mappers.subscription_payload(request))
        return mappers.subscription_from_response(data)

    def find(self, subscription_id: str) -> Subscription:
        return mappers.subscription_from_response(self.http.get(f"/subscriptions/{subscription_id}"))

    def cancel(self, subscription_id: str) -> bool:
        return bool(self.http.delete(f"/subscriptions/{subscription_id}").get("deleted", True))


class AsaasTransferService(TransferService):
    def __init__(self, http: GatewayHttpClient) -> None:
        self.http = http

    def create(self, request: TransferRequest) -> Transfer:
        return mappers.transfer_from_response(self.http.post("/transfers", json=mappers.transfer_payload(request)))

    def find(self, transfer_id: str) -> Transfer:
        return mappers.transfer_from_response(self.http.get(f"/transfers/{transfer_id}"))


class AsaasSplitService(SplitService):
    """Asaas splits ride on the charge payload; lookups read them back from it."""

    def __init__(self, http: GatewayHttpClient) -> None:
        self.http = http

    def build_rules(self, rules: list[SplitRule]) -> list[dict[str, Any]]:
        return mappers.split_payload(rules)

    def find_for_charge(self, charge_id: str) -> list[SplitRule]:
        data = self.http.get(f"/payments/{charge_id}")
        return mappers.split_from_response(data.get("split") or [])


PAYMENT_EVENTS = [
    "PAYMENT_CREATED",
    "PAYMENT_UPDATED",
    "PAYMENT_CONFIRMED",
    "PAYMENT_RECEIVED",
    "PAYMENT_OVERDUE",
    "PAYMENT_DELETED",
    "PAYMENT_RESTORED",
    "PAYMENT_REFUNDED",
    "PAYMENT_REFUND_IN_PROGRESS",
    "PAYMENT_CHARGEBACK_REQUESTED",
    "PAYMENT_CHARGEBACK_DISPUTE",
    "PAYMENT_AWAITING_CHARGEBACK_REVERSAL",
    "PAYMENT_PARTIALLY_REFUNDED",
]
TRANSFER_EVENTS = [
    "TRANSFER_CREATED",
    "TRANSFER_PENDING",
    "TRANSFER_IN_BANK_PROCESSING",
    "TRANSFER_BLOCKED",
    "TRANSFER_DONE",
    "TRANSFER_FAILED",
    "TRANSFER_CANCELLED",
]
SUBSCRIPTION_EVENTS = [
    "SUBSCRIPTION_CREATED",
    "SUBSCRIPTION_UPDATED",
    "SUBSCRIPTION_INACTIVATED",
    "SUBSCRIPTION_DELETED",
]
ALL_RECOMMENDED_EVENTS = PAYMENT_EVENTS + TRANSFER_EVENTS + SUBSCRIPTION_EVENTS


class AsaasWebhookService(WebhookService):
    """`/webhooks` endpoints: where Asaas sends notifications and with which token.

    Registrations without an explicit event list subscribe to payment events
    only, matching what the settlement handler acts on.
    """

    default_name = "PaySettle"

    def __init__(self, http: GatewayHttpClient) -> None:
        self.http = http

    def create(
        self,
        url: str,
        events: list[str] | None = None,
        name: str | None = None,
        auth_token: str | None = None,
        email: str | None = None,
    ) -> WebhookSubscription:
        payload = mappers.webhook_payload(url, events or PAYMENT_EVENTS, name=name, auth_token=auth_token, email=email)
        return mappers.webhook_from_response(self.http.post("/webhooks", json=payload))

    def list_webhooks(self) -> list[WebhookSubscription]:
        data = self.http.get("/webhooks")
        return [mappers.webhook_from_response(item) for item in data.get("data") or []]

    def find(self, webhook_id: str) -> WebhookSubscription | None:
        try:
            return mappers.webhook_from_response(self.http.get(f"/webhooks/{webhook_id}"))
        except GatewayUnavailableException:
            raise
        except GatewayException as exc:
            if exc.http_status_code == 404:
                return None
            raise

    def update(self, webhook_id: str, changes: dict[str, Any]) -> WebhookSubscription:
        return mappers.webhook_from_response(self.http.put(f"/webhooks/{webhook_id}", json=changes))

    def delete(self, webhook_id: str) -> bool:
        try:
            self.http.delete(f"/webhooks/{webhook_id}")
        except GatewayUnavailableException:
            raise
        except GatewayException as exc:
            logger.warning("webhook_delete_rejected webhook_id=%s error=%s", webhook_id, exc)
            return False
        return True

    def remove_backoff(self, webhook_id: str) -> bool:
        try:
            self.http.post(f"/webhooks/{webhook_id}/removeBackoff")
        except GatewayUnavailableException:
            raise
        except GatewayException as exc:
            logger.warning("webhook_backoff_not_removed webhook_id=%s error=%s", webhook_id, exc)
            return False
        return True

    def create_or_update(
        self, url: str, events: list[str] | None = None, auth_token: str | None = None
    ) -> WebhookSubscription:
        existing = self.find_by_url(url)
        if existing is None:
            logger.info("webhook_registering url=%s", url)
            return self.create(url, events, name=self.default_name, auth_token=auth_token)
        changes: dict[str, Any] = {"events": events or PAYMENT_EVENTS, "enabled": True}
        if auth_token:
            changes["authToken"] = auth_token
        logger.info("webhook_updating webhook_id=%s url=%s", existing.id, url)
        return self.update(existing.id, changes)
