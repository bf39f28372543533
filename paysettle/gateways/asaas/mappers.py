"""Translate provider-neutral DTOs to Asaas wire format and back.

Asaas expresses money as decimal reais (`value: 12.5`); everything on our side
is integer cents.
"""

import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
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

BILLING_TYPES = {
    PaymentMethod.PIX: "PIX",
    PaymentMethod.CREDIT_CARD: "CREDIT_CARD",
    PaymentMethod.BOLETO: "BOLETO",
}
PAID_STATUSES = {"CONFIRMED", "RECEIVED", "RECEIVED_IN_CASH"}
AWAITING_ACTION_STATUSES = {"AWAITING_RISK_ANALYSIS"}


def only_digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def to_value(cents: int) -> float:
    """Cents -> reais as the float Asaas expects."""

    return float(Decimal(cents) / 100)


def to_cents(value: Any) -> int:
    if value is None:
        return 0
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def billing_type(method: PaymentMethod) -> str:
    return BILLING_TYPES[method]


def method_from_billing_type(value: str | None) -> PaymentMethod | None:
    for method, name in BILLING_TYPES.items():
        if name == (value or "").upper():
            return method
    return None


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value[:10]) if value else None


def customer_payload(data: CustomerData) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": data.name}
    if data.email:
        payload["email"] = data.email
    if data.cpf_cnpj:
        payload["cpfCnpj"] = only_digits(data.cpf_cnpj)
    # Asaas keeps 11-digit numbers (DDD + 9 digits) in mobilePhone.
    phone = only_digits(data.mobile_phone or data.phone)
    if len(phone) == 11:
        payload["mobilePhone"] = phone
    elif phone:
        payload["phone"] = phone
    if data.postal_code:
        payload["postalCode"] = only_digits(data.postal_code)
    if data.address_number:
        payload["addressNumber"] = data.address_number
    if data.external_reference:
        payload["externalReference"] = data.external_reference
    return payload


def customer_from_response(data: dict[str, Any]) -> Customer:
    return Customer(
        id=str(data["id"]),
        name=data.get("name"),
        email=data.get("email"),
        cpf_cnpj=data.get("cpfCnpj"),
        external_reference=data.get("externalReference"),
        raw=data,
    )


def split_payload(rules: list[SplitRule]) -> list[dict[str, Any]]:
    payload = []
    for rule in rules:
        item: dict[str, Any] = {"walletId": rule.wallet_id}
        if rule.fixed_value_cents is not None:
            item["fixedValue"] = to_value(rule.fixed_value_cents)
        if rule.percentual_value is not None:
            item["percentualValue"] = rule.percentual_value
        payload.append(item)
    return payload


def split_from_response(items: list[dict[str, Any]]) -> list[SplitRule]:
    return [
        SplitRule(
            wallet_id=item.get("walletId", ""),
            fixed_value_cents=to_cents(item["fixedValue"]) if item.get("fixedValue") is not None else None,
            percentual_value=item.get("percentualValue"),
        )
        for item in items
    ]


def charge_payload(request: ChargeRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "customer": request.customer_id,
        "billingType": billing_type(request.method),
        "value": to_value(request.amount_cents),
        "dueDate": request.due_date.isoformat(),
    }
    if request.description:
        payload["description"] = request.description
    if request.external_reference:
        payload["externalReference"] = request.external_reference
    if request.installments:
        payload["installmentCount"] = request.installments
        payload["installmentValue"] = round(to_value(request.amount_cents) / request.installments, 2)
    if request.split:
        payload["split"] = split_payload(request.split)
    return payload


def charge_from_response(data: dict[str, Any]) -> Charge:
    return Charge(
        id=str(data["id"]),
        status=data.get("status", "PENDING"),
        amount_cents=to_cents(data.get("value")),
        method=method_from_billing_type(data.get("billingType")),
        due_date=_parse_date(data.get("dueDate")),
        invoice_url=data.get("invoiceUrl"),
        external_reference=data.get("externalReference"),
        raw=data,
    )


# Our filter names -> Asaas query parameters.
CHARGE_FILTERS = {
    "customer": "customer",
    "status": "status",
    "method": "billingType",
    "external_reference": "externalReference",
    "subscription": "subscription",
    "offset": "offset",
    "limit": "limit",
}


def charge_list_params(filters: dict[str, Any] | None) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for key, value in (filters or {}).items():
        if value is None or key not in CHARGE_FILTERS:
            continue
        if key == "method":
            value = billing_type(PaymentMethod(value))
        params[CHARGE_FILTERS[key]] = value
    return params


def charge_page_from_response(data: dict[str, Any]) -> ChargePage:
    items = [charge_from_response(item) for item in data.get("data") or []]
    return ChargePage(
        items=items,
        total=data.get("totalCount", len(items)),
        limit=data.get("limit", 10),
        offset=data.get("offset", 0),
        has_more=bool(data.get("hasMore", False)),
    )


def pix_from_response(data: dict[str, Any]) -> PixQrCode:
    return PixQrCode(
        encoded_image=data.get("encodedImage"),
        payload=data.get("payload"),
        expiration_date=data.get("expirationDate"),
        raw=data,
    )


def credit_card_payload(card: CreditCard, holder: CardHolder) -> dict[str, Any]:
    holder_info = {
        "name": holder.name,
        "email": holder.email,
        "cpfCnpj": only_digits(holder.cpf_cnpj),
        "postalCode": only_digits(holder.postal_code),
        "addressNumber": holder.address_number,
        "phone": only_digits(holder.phone) or None,
    }
    return {
        "creditCard": {
            "holderName": card.holder_name,
            "number": card.digits,
            "expiryMonth": card.expiry_month,
            "expiryYear": card.expiry_year,
            "ccv": card.ccv,
        },
        "creditCardHolderInfo": {key: value for key, value in holder_info.items() if value},
    }


def mask_card_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Copy of a card payload safe to persist: last four digits, no CCV."""

    card = dict(payload.get("creditCard", {}))
    number = card.get("number", "")
    card["number"] = "*" * max(0, len(number) - 4) + number[-4:]
    card["ccv"] = "***"
    return {**payload, "creditCard": card}


def credit_card_result(data: dict[str, Any]) -> CreditCardResult:
    status = data.get("status", "PENDING")
    return CreditCardResult(
        charge_id=str(data.get("id", "")),
        status=status,
        approved=status in PAID_STATUSES or status == "PENDING",
        paid=status in PAID_STATUSES,
        requires_action=status in AWAITING_ACTION_STATUSES,
        raw=data,
    )


def refund_from_response(
    data: dict[str, Any], charge_id: str, requested_cents: int | None, original_cents: int
) -> RefundResult:
    refunded = requested_cents if requested_cents is not None else original_cents
    return RefundResult(
        charge_id=str(data.get("id") or charge_id),
        status=data.get("status", "REFUNDED"),
        refunded_amount_cents=refunded,
        is_partial_refund=0 < original_cents and refunded < original_cents,
        raw=data,
    )


def subscription_payload(request: SubscriptionRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "customer": request.customer_id,
        "billingType": billing_type(request.method),
        "value": to_value(request.amount_cents),
        "nextDueDate": request.next_due_date.isoformat(),
        "cycle": request.cycle,
    }
    if request.description:
        payload["description"] = request.description
    if request.external_reference:
        payload["externalReference"] = request.external_reference
    return payload


def subscription_from_response(data: dict[str, Any]) -> Subscription:
    return Subscription(
        id=str(data["id"]),
        status=data.get("status", "ACTIVE"),
        customer_id=data.get("customer"),
        amount_cents=to_cents(data.get("value")),
        cycle=data.get("cycle"),
        next_due_date=_parse_date(data.get("nextDueDate")),
        raw=data,
    )


def detect_pix_key_type(key: str) -> str:
    digits = only_digits(key)
    if re.fullmatch(r"[\d.\-/]+", key):
        if len(digits) == 11:
            return "CPF"
        if len(digits) == 14:
            return "CNPJ"
    if "@" in key:
        return "EMAIL"
    if re.fullmatch(r"\+?55\d{10,11}", key):
        return "PHONE"
    return "EVP"


def transfer_payload(request: TransferRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "value": to_value(request.amount_cents),
        "pixAddressKey": request.pix_address_key,
        "pixAddressKeyType": request.pix_address_key_type or detect_pix_key_type(request.pix_address_key),
    }
    if request.description:
        payload["description"] = request.description
    return payload


def transfer_from_response(data: dict[str, Any]) -> Transfer:
    return Transfer(
        id=str(data["id"]),
        status=data.get("status", "PENDING"),
        amount_cents=to_cents(data.get("value")),
        raw=data,
    )


def webhook_payload(
    url: str,
    events: list[str],
    name: str | None = None,
    auth_token: str | None = None,
    email: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "url": url,
        "events": list(events),
        "enabled": True,
        "interrupted": False,
        "apiVersion": 3,
        "sendType": "SEQUENTIALLY",
    }
    if name:
        payload["name"] = name
    if auth_token:
        payload["authToken"] = auth_token
    if email:
        payload["email"] = email
    return payload


def webhook_from_response(data: dict[str, Any]) -> WebhookSubscription:
    return WebhookSubscription(
        id=str(data["id"]),
        url=data.get("url", ""),
        name=data.get("name"),
        enabled=bool(data.get("enabled", True)),
        interrupted=bool(data.get("interrupted", False)),
        events=list(data.get("events") or []),
        has_auth_token=bool(data.get("hasAuthToken", False)),
        raw=data,
    )
