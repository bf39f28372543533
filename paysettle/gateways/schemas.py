"""Provider-neutral DTOs exchanged with gateway services.

Money is always integer cents; every response DTO keeps the untouched provider
payload in `raw` for auditing.
"""

from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PaymentMethod(str, Enum):
    PIX = "pix"
    CREDIT_CARD = "credit_card"
    BOLETO = "boleto"


class CustomerData(BaseModel):
    """Payer details used to find or create the provider-side customer."""

    name: str
    email: str | None = None
    cpf_cnpj: str | None = None
    phone: str | None = None
    mobile_phone: str | None = None
    postal_code: str | None = None
    address_number: str | None = None
    external_reference: str | None = None


class Customer(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None
    cpf_cnpj: str | None = None
    external_reference: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class SplitRule(BaseModel):
    """Share of a charge routed to another provider wallet."""

    wallet_id: str
    fixed_value_cents: int | None = None
    percentual_value: float | None = None


class ChargeRequest(BaseModel):
    customer_id: str
    amount_cents: int = Field(gt=0)
    method: PaymentMethod
    due_date: date
    description: str | None = None
    external_reference: str | None = None
    installments: int | None = Field(default=None, ge=2)
    split: list[SplitRule] = Field(default_factory=list)


class Charge(BaseModel):
    id: str
    status: str
    amount_cents: int
    method: PaymentMethod | None = None
    due_date: date | None = None
    invoice_url: str | None = None
    external_reference: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ChargePage(BaseModel):
    """One page of a charge listing; `offset`/`limit` echo the provider's paging."""

    items: list[Charge] = Field(default_factory=list)
    total: int = 0
    limit: int = 10
    offset: int = 0
    has_more: bool = False


class PixQrCode(BaseModel):
    encoded_image: str | None = None
    payload: str | None = None
    expiration_date: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class CreditCard(BaseModel):
    holder_name: str
    number: str
    expiry_month: str
    expiry_year: str
    ccv: str

    @property
    def digits(self) -> str:
        return "".join(ch for ch in self.number if ch.isdigit())

    @property
    def last_four(self) -> str:
        return self.digits[-4:]


class CardHolder(BaseModel):
    """Billing identity and address the provider requires for card charges."""

    name: str
    email: str
    cpf_cnpj: str
    postal_code: str
    address_number: str
    phone: str | None = None


class CreditCardResult(BaseModel):
    charge_id: str
    status: str
    approved: bool
    paid: bool
    requires_action: bool = False
    request: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)


class RefundResult(BaseModel):
    charge_id: str
    status: str
    refunded_amount_cents: int
    is_partial_refund: bool
    raw: dict[str, Any] = Field(default_factory=dict)


class SubscriptionRequest(BaseModel):
    customer_id: str
    amount_cents: int = Field(gt=0)
    method: PaymentMethod
    next_due_date: date
    cycle: str = "MONTHLY"
    description: str | None = None
    external_reference: str | None = None


class Subscription(BaseModel):
    id: str
    status: str
    customer_id: str | None = None
    amount_cents: int
    cycle: str | None = None
    next_due_date: date | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TransferRequest(BaseModel):
    amount_cents: int = Field(gt=0)
    pix_address_key: str
    pix_address_key_type: str | None = None
    description: str | None = None


class Transfer(BaseModel):
    id: str
    status: str
    amount_cents: int
    raw: dict[str, Any] = Field(default_factory=dict)


class GatewayStatus(BaseModel):
    """Snapshot returned by the registry status view."""

    name: str
    enabled: bool
    sandbox: bool
    available: bool
    features: list[str]


class WebhookSubscription(BaseModel):
    """A notification endpoint registered at the provider."""

    id: str
    url: str
    name: str | None = None
    enabled: bool = True
    interrupted: bool = False
    events: list[str] = Field(default_factory=list)
    has_auth_token: bool = False
    raw: dict[str, Any] = Field(default_factory=dict)
