"""Typed payment errors shared by gateways, settlement and webhooks.

Every error carries the payment uuid it relates to (when known) and a free-form
context dict so logs and API responses can be correlated without leaking raw
gateway payloads to end users.
"""

from typing import Any


class PaymentException(Exception):
    """Base class for every settlement-engine error."""

    status_code = 400

    def __init__(self, message: str, payment_uuid: str | None = None, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.payment_uuid = payment_uuid
        self.context = context or {}

    def with_payment(self, payment_uuid: str):
        """Attach the payment uuid once the caller knows it; returns self."""

        self.payment_uuid = payment_uuid
        return self

    @property
    def user_message(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.user_message,
            "errors": {"type": type(self).__name__, "payment_uuid": self.payment_uuid},
        }


# Asaas error codes we can explain to a payer without exposing the raw body.
USER_MESSAGES = {
    "invalid_creditCard": "The card was declined. Check the card details or use another card.",
    "invalid_creditCardHolderInfo": "The card holder details are incomplete or invalid.",
    "invalid_customer": "The payer details were rejected by the payment provider.",
    "invalid_cpfCnpj": "The CPF/CNPJ informed is invalid.",
    "invalid_value": "The payment amount is not accepted by the payment provider.",
    "invalid_action": "This operation is not allowed for the payment in its current state.",
}
DEFAULT_GATEWAY_USER_MESSAGE = "The payment provider could not process the request. Please try again later."


class GatewayException(PaymentException):
    """The provider answered with an error response."""

    status_code = 502

    def __init__(
        self,
        message: str,
        gateway: str,
        http_status_code: int | None = None,
        gateway_response: Any = None,
        payment_uuid: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, payment_uuid=payment_uuid, context=context)
        self.gateway = gateway
        self.http_status_code = http_status_code
        self.gateway_response = gateway_response

    @classmethod
    def from_response(cls, gateway: str, http_status_code: int, body: Any, payment_uuid: str | None = None):
        """Build from an error response, extracting the provider's messages."""

        message = extract_error_message(body) or f"HTTP {http_status_code}"
        return cls(
            f"{gateway} request failed: {message}",
            gateway=gateway,
            http_status_code=http_status_code,
            gateway_response=body,
            payment_uuid=payment_uuid,
        )

    @property
    def error_codes(self) -> list[str]:
        if not isinstance(self.gateway_response, dict):
            return []
        errors = self.gateway_response.get("errors") or []
        return [e["code"] for e in errors if isinstance(e, dict) and e.get("code")]

    @property
    def user_message(self) -> str:
        for code in self.error_codes:
            if code in USER_MESSAGES:
                return USER_MESSAGES[code]
        return DEFAULT_GATEWAY_USER_MESSAGE

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"].update({"gateway": self.gateway, "codes": self.error_codes})
        return data


def extract_error_message(body: Any) -> str:
    """Join provider error descriptions (`errors[].description`, `message`, `error`)."""

    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list):
            descriptions = [str(e.get("description") or e.get("code")) for e in errors if isinstance(e, dict)]
            if descriptions:
                return " | ".join(descriptions)
        for key in ("message", "error"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    if isinstance(body, str):
        return body[:200]
    return ""


class GatewayUnavailableException(GatewayException):
    """The provider cannot be reached or is not usable (credentials, features)."""

    status_code = 503

    @classmethod
    def connection_failed(cls, gateway: str, reason: str, payment_uuid: str | None = None):
        return cls(
            f"{gateway} is unreachable: {reason}",
            gateway=gateway,
            http_status_code=503,
            payment_uuid=payment_uuid,
            context={"reason": "connection_failed"},
        )

    @classmethod
    def not_configured(cls, gateway: str):
        return cls(f"{gateway} has no API credentials configured", gateway=gateway, context={"reason": "not_configured"})

    @classmethod
    def feature_disabled(cls, gateway: str, feature: str):
        return cls(
            f"{gateway} feature '{feature}' is disabled",
            gateway=gateway,
            context={"reason": "feature_disabled", "feature": feature},
        )

    @property
    def user_message(self) -> str:
        return "The payment provider is temporarily unavailable. Please try again later."


class GatewayTimeoutException(GatewayUnavailableException):
    """The request was sent but no answer arrived: the outcome is unknown."""

    status_code = 504

    @classmethod
    def read_timeout(cls, gateway: str, path: str, payment_uuid: str | None = None):
        return cls(
            f"{gateway} did not answer {path} in time",
            gateway=gateway,
            payment_uuid=payment_uuid,
            context={"reason": "timeout", "path": path},
        )

    @classmethod
    def interrupted(cls, gateway: str, path: str, reason: str, payment_uuid: str | None = None):
        return cls(
            f"{gateway} dropped the connection during {path}: {reason}",
            gateway=gateway,
            payment_uuid=payment_uuid,
            context={"reason": "interrupted", "path": path},
        )


class InvalidPaymentStateException(PaymentException):
    """A requested operation is illegal for the payment's current status."""

    status_code = 422

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        target_status: str | None = None,
        payment_uuid: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, payment_uuid=payment_uuid, context=context)
        self.current_status = current_status
        self.target_status = target_status

    @classmethod
    def cannot_transition(cls, current: str, target: str, payment_uuid: str | None = None):
        return cls(
            f"Cannot transition payment from {current} to {target}",
            current_status=current,
            target_status=target,
            payment_uuid=payment_uuid,
        )

    @classmethod
    def already_paid(cls, payment_uuid: str | None = None):
        return cls("Payment is already paid", current_status="paid", payment_uuid=payment_uuid)

    @classmethod
    def already_refunded(cls, payment_uuid: str | None = None):
        return cls("Payment is already refunded", current_status="refunded", payment_uuid=payment_uuid)

    @classmethod
    def cannot_refund(cls, current: str, payment_uuid: str | None = None):
        return cls(
            f"Payment in status {current} cannot be refunded",
            current_status=current,
            target_status="refunded",
            payment_uuid=payment_uuid,
        )


class InsufficientFundsException(PaymentException):
    """Requested amount exceeds what is available (wallet or refundable)."""

    status_code = 422

    def __init__(
        self,
        message: str,
        required_cents: int,
        available_cents: int,
        payment_uuid: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, payment_uuid=payment_uuid, context=context)
        self.required_cents = required_cents
        self.available_cents = available_cents

    @classmethod
    def for_wallet(cls, owner_id: str, required_cents: int, available_cents: int, payment_uuid: str | None = None):
        return cls(
            f"Wallet {owner_id} has {available_cents} cents available, {required_cents} required",
            required_cents=required_cents,
            available_cents=available_cents,
            payment_uuid=payment_uuid,
        )

    @classmethod
    def for_refund(cls, requested_cents: int, refundable_cents: int, payment_uuid: str | None = None):
        return cls(
            f"Refund of {requested_cents} cents exceeds refundable {refundable_cents} cents",
            required_cents=requested_cents,
            available_cents=refundable_cents,
            payment_uuid=payment_uuid,
        )


class WebhookVerificationException(PaymentException):
    """An inbound webhook failed authenticity checks."""

    status_code = 401

    def __init__(self, message: str, provider: str, reason: str) -> None:
        super().__init__(message, context={"provider": provider, "reason": reason})
        self.provider = provider
        self.reason = reason

    @classmethod
    def invalid_signature(cls, provider: str):
        return cls(f"Invalid webhook token for {provider}", provider=provider, reason="invalid_signature")

    @classmethod
    def missing_signature(cls, provider: str):
        return cls(f"Missing webhook token for {provider}", provider=provider, reason="missing_signature")

    @classmethod
    def expired_timestamp(cls, provider: str):
        return cls(f"Expired webhook timestamp for {provider}", provider=provider, reason="expired_timestamp")


class PaymentConfigurationException(PaymentException):
    """Programming or deployment error: unknown gateway, missing wiring."""

    status_code = 400

    @classmethod
    def unknown_gateway(cls, name: str):
        return cls(f"Unknown payment gateway: {name}", context={"gateway": name})

    @classmethod
    def unknown_webhook_provider(cls, name: str):
        return cls(f"No webhook handler registered for provider: {name}", context={"provider": name})
