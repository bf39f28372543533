"""API request/response schemas for the payments HTTP surface."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from paysettle.gateways.schemas import CardHolder, CreditCard, PaymentMethod
from paysettle.services.payments.models import Payment


class PayerRequest(BaseModel):
    id: str = Field(min_length=1)
    name: str | None = None
    email: str | None = None
    cpf_cnpj: str | None = None
    phone: str | None = None


class CheckoutRequest(BaseModel):
    """Payload accepted by `POST /payments/checkout`."""

    payer: PayerRequest
    billable_type: str = Field(min_length=1)
    billable_id: str = Field(min_length=1)
    amount_cents: int = Field(gt=0)
    method: PaymentMethod | None = None
    gateway: str | None = None
    use_wallet: bool = True
    due_date: date | None = None
    description: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=5)
    installments: int | None = Field(default=None, ge=2)
    credit_card: CreditCard | None = None
    card_holder: CardHolder | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    """Payload accepted by `POST /payments/{uuid}/refund`; no amount means full refund."""

    amount_cents: int | None = Field(default=None, gt=0)
    reason: str | None = None


class TopUpRequest(BaseModel):
    amount_cents: int = Field(gt=0)
    method: PaymentMethod = PaymentMethod.PIX
    name: str | None = None
    email: str | None = None
    cpf_cnpj: str | None = None


class PaymentResponse(BaseModel):
    """Payment as returned to clients; provider payloads stay internal."""

    uuid: str
    status: str
    payer_id: str
    billable_type: str
    billable_id: str
    currency: str
    amount_cents: int
    wallet_applied_cents: int
    gateway_amount_cents: int
    refunded_cents: int
    payment_method: str | None = None
    gateway: str | None = None
    gateway_reference: str | None = None
    checkout_url: str | None = None
    due_date: date | None = None
    paid_at: datetime | None = None
    refund_at: datetime | None = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            uuid=payment.uuid,
            status=payment.status,
            payer_id=payment.payer_id,
            billable_type=payment.billable_type,
            billable_id=payment.billable_id,
            currency=payment.currency,
            amount_cents=payment.amount_cents,
            wallet_applied_cents=payment.wallet_applied_cents,
            gateway_amount_cents=payment.gateway_amount_cents,
            refunded_cents=payment.refunded_cents,
            payment_method=payment.payment_method,
            gateway=payment.gateway,
            gateway_reference=payment.gateway_reference,
            checkout_url=payment.checkout_url,
            due_date=payment.due_date,
            paid_at=payment.paid_at,
            refund_at=payment.refund_at,
        )
