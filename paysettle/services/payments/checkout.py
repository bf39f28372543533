"""Fluent checkout: purchase intent -> wallet hold -> gateway charge -> Payment.

Usage::

    result = (
        engine.checkout()
        .for_payer(user.id, name=user.name, email=user.email, cpf_cnpj=user.document)
        .billable("campaign", campaign.id)
        .amount(4_990)
        .pix()
        .create()
    )

Every setter returns a new builder, so a partially configured builder can be
shared and specialised safely.

Failure semantics of `create()`:

- gateway error or connection failure while creating the charge: the wallet
  hold is released and the error re-raised; nothing is persisted.
- timeout while creating the charge: the outcome is unknown, so the hold is
  kept and the payment is persisted as `draft` before the error is re-raised.
- the charge exists but the Payment row cannot be written: the charge is
  canceled and the hold released. When another checkout already claimed the
  same idempotency key, its payment is returned as reused.
"""

import copy
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from paysettle.common.config import CommonSettings, settings
from paysettle.common.exceptions import (
    GatewayException,
    GatewayTimeoutException,
    PaymentConfigurationException,
    PaymentException,
)
from paysettle.common.logging import log_context, logger
from paysettle.common.metrics import checkouts_total
from paysettle.common.state_machine import PaymentStatus
from paysettle.gateways.base import GatewayManager
from paysettle.gateways.registry import GatewayRegistry
from paysettle.gateways.schemas import (
    CardHolder,
    Charge,
    ChargeRequest,
    CreditCard,
    CreditCardResult,
    CustomerData,
    PaymentMethod,
    PixQrCode,
    SplitRule,
)
from paysettle.services.payments.models import Payment, PaymentTimeline
from paysettle.services.payments.settlement import SettlementService, payment_event_payload
from paysettle.services.wallet.service import WalletService


class CheckoutValidationError(PaymentException):
    """The checkout was configured incompletely; `errors` maps field -> message."""

    status_code = 422

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("Invalid checkout: " + "; ".join(f"{k}: {v}" for k, v in errors.items()))
        self.errors = errors

    def to_dict(self) -> dict[str, Any]:
        return {"message": "Invalid checkout", "errors": self.errors}


@dataclass
class CheckoutResult:
    payment: Payment
    status: str
    pix: PixQrCode | None = None
    card: CreditCardResult | None = None
    checkout_url: str | None = None
    requires_settlement: bool = False
    reused: bool = False
    error: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    @property
    def is_failed(self) -> bool:
        return self.status in (PaymentStatus.FAILED.value, PaymentStatus.CANCELED.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_uuid": self.payment.uuid,
            "status": self.status,
            "amount_cents": self.payment.amount_cents,
            "wallet_applied_cents": self.payment.wallet_applied_cents,
            "gateway_amount_cents": self.payment.gateway_amount_cents,
            "checkout_url": self.checkout_url,
            "pix": self.pix.model_dump(exclude={"raw"}) if self.pix else None,
            "card": {"status": self.card.status, "approved": self.card.approved} if self.card else None,
            "requires_settlement": self.requires_settlement,
            "reused": self.reused,
            "error": self.error,
        }


class CheckoutBuilder:
    """Immutable fluent builder; `create()` is the only method with side effects."""

    def __init__(
        self,
        session_factory,
        registry: GatewayRegistry,
        settlement: SettlementService,
        wallet: WalletService,
        defaults: CommonSettings | None = None,
    ) -> None:
        defaults = defaults or settings
        self.session_factory = session_factory
        self.registry = registry
        self.settlement = settlement
        self.wallet = wallet
        self._payer_id: str | None = None
        self._customer: CustomerData | None = None
        self._billable_type: str | None = None
        self._billable_id: str | None = None
        self._amount_cents: int | None = None
        self._currency = defaults.checkout_currency
        self._method = PaymentMethod(defaults.checkout_default_method)
        self._gateway: str | None = None
        self._use_wallet = True
        self._due_date: date | None = None
        self._due_days = defaults.checkout_default_due_days
        self._description: str | None = None
        self._idempotency_key: str | None = None
        self._meta: dict[str, Any] = {}
        self._split: list[SplitRule] = []
        self._installments: int | None = None
        self._card: CreditCard | None = None
        self._holder: CardHolder | None = None

    def _with(self, **changes) -> "CheckoutBuilder":
        clone = copy.copy(self)
        for key, value in changes.items():
            setattr(clone, f"_{key}", value)
        return clone

    def for_payer(
        self,
        payer_id,
        name: str | None = None,
        email: str | None = None,
        cpf_cnpj: str | None = None,
        phone: str | None = None,
    ) -> "CheckoutBuilder":
        customer = CustomerData(
            name=name or f"Payer {payer_id}",
            email=email,
            cpf_cnpj=cpf_cnpj,
            phone=phone,
            external_reference=f"payer-{payer_id}",
        )
        return self._with(payer_id=str(payer_id), customer=customer)

    def billable(self, billable_type: str, billable_id) -> "CheckoutBuilder":
        return self._with(billable_type=billable_type, billable_id=str(billable_id))

    def amount(self, cents: int) -> "CheckoutBuilder":
        return self._with(amount_cents=int(cents))

    def amount_decimal(self, value) -> "CheckoutBuilder":
        """Amount in currency units (`"49.90"`), converted to cents."""

        cents = (Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return self._with(amount_cents=int(cents))

    def currency(self, code: str) -> "CheckoutBuilder":
        return self._with(currency=code.upper())

    def method(self, method: PaymentMethod | str) -> "CheckoutBuilder":
        return self._with(method=PaymentMethod(method))

    def pix(self) -> "CheckoutBuilder":
        return self.method(PaymentMethod.PIX)

    def boleto(self) -> "CheckoutBuilder":
        return self.method(PaymentMethod.BOLETO)

    def credit_card(self, card: CreditCard | None = None, holder: CardHolder | None = None) -> "CheckoutBuilder":
        builder = self.method(PaymentMethod.CREDIT_CARD)
        if card is not None:
            builder = builder.with_credit_card(card)
        if holder is not None:
            builder = builder.with_card_holder(holder)
        return builder

    def with_credit_card(self, card: CreditCard) -> "CheckoutBuilder":
        return self._with(card=card)

    def with_card_holder(self, holder: CardHolder) -> "CheckoutBuilder":
        return self._with(holder=holder)

    def gateway(self, name: str) -> "CheckoutBuilder":
        return self._with(gateway=name)

    def use_wallet(self, enabled: bool = True) -> "CheckoutBuilder":
        return self._with(use_wallet=enabled)

    def without_wallet(self) -> "CheckoutBuilder":
        return self.use_wallet(False)

    def due_date(self, value: date) -> "CheckoutBuilder":
        return self._with(due_date=value)

    def due_days(self, days: int) -> "CheckoutBuilder":
        return self._with(due_date=None, due_days=days)

    def description(self, text: str) -> "CheckoutBuilder":
        return self._with(description=text)

    def idempotency_key(self, key: str) -> "CheckoutBuilder":
        return self._with(idempotency_key=key)

    def meta(self, **values) -> "CheckoutBuilder":
        return self._with(meta={**self._meta, **values})

    def split(self, rules: list[SplitRule]) -> "CheckoutBuilder":
        return self._with(split=list(rules))

    def installments(self, count: int) -> "CheckoutBuilder":
        return self._with(installments=count)

    def validate(self) -> None:
        errors: dict[str, str] = {}
        if not self._payer_id:
            errors["payer"] = "a payer is required"
        if not self._billable_type or not self._billable_id:
            errors["billable"] = "a billable is required"
        if not self._amount_cents or self._amount_cents <= 0:
            errors["amount"] = "amount must be greater than zero"
        if self._method == PaymentMethod.CREDIT_CARD:
            if self._card is None:
                errors["credit_card"] = "card data is required for credit card payments"
            if self._holder is None:
                errors["card_holder"] = "card holder billing details are required for credit card payments"
        if errors:
            raise CheckoutValidationError(errors)
        if not self.registry.has_gateway(self._gateway or self.registry.default_gateway):
            raise PaymentConfigurationException.unknown_gateway(self._gateway or self.registry.default_gateway)

    def create(self) -> CheckoutResult:
        self.validate()
        if self._idempotency_key:
            existing = self._find_by_idempotency_key(self._idempotency_key)
            if existing is not None:
                return self._reused(existing)

        manager = self.registry.driver(self._gateway)
        payment_uuid = str(uuid4())
        with log_context(payment_id=payment_uuid):
            result = self._create(manager, payment_uuid)
        checkouts_total.labels(service=self.settlement.service_name, gateway=manager.name, status=result.status).inc()
        return result

    def _find_by_idempotency_key(self, key: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(select(Payment).where(Payment.idempotency_key == key)).scalar_one_or_none()

    def _reused(self, existing: Payment) -> CheckoutResult:
        logger.info("checkout_reused uuid=%s key=%s", existing.uuid, self._idempotency_key)
        return CheckoutResult(
            payment=existing,
            status=existing.status,
            checkout_url=existing.checkout_url,
            reused=True,
        )

    def _lost_key_race(self, exc: Exception) -> CheckoutResult | None:
        """The winning checkout when `exc` is a concurrent insert under the same key."""

        if not isinstance(exc, IntegrityError) or not self._idempotency_key:
            return None
        with self.session_factory() as db:
            winner = db.execute(
                select(Payment).where(Payment.idempotency_key == self._idempotency_key)
            ).scalar_one_or_none()
        if winner is None:
            return None
        logger.warning("checkout_key_race_lost key=%s winner=%s", self._idempotency_key, winner.uuid)
        return self._reused(winner)

    def _create(self, manager: GatewayManager, payment_uuid: str) -> CheckoutResult:
        amount = self._amount_cents
        with self.session_factory() as db:
            wallet_applied = 0
            if self._use_wallet:
                available = self.wallet.available_balance(db, self._payer_id, lock=True)
                wallet_applied = min(amount, max(0, available))
            gateway_amount = amount - wallet_applied
            if gateway_amount:
                # Fail before holding funds when the gateway cannot take the charge.
                manager.ensure_feature_enabled("payments")
            if wallet_applied:
                self.wallet.hold(
                    db,
                    self._payer_id,
                    wallet_applied,
                    reference=payment_uuid,
                    tags={"payment_uuid": payment_uuid, "billable_type": self._billable_type},
                )
            if gateway_amount == 0:
                payment = self._new_payment(payment_uuid, PaymentStatus.PENDING, wallet_applied, 0, gateway=None)
                try:
                    self._insert(db, payment, reason="checkout_wallet_only")
                    db.commit()
                except IntegrityError as exc:
                    # The hold was staged in the same transaction and rolls back with it.
                    db.rollback()
                    reused = self._lost_key_race(exc)
                    if reused is None:
                        raise
                    return reused
                logger.info("checkout_wallet_only uuid=%s amount_cents=%s", payment_uuid, amount)
                return CheckoutResult(payment=payment, status=payment.status, requires_settlement=True)
            db.commit()

        try:
            customer_id = self._resolve_customer(manager)
            payments = manager.payments()
        except Exception:
            self._release_hold(payment_uuid, "gateway_error")
            raise

        charge_request = ChargeRequest(
            customer_id=customer_id,
            amount_cents=gateway_amount,
            method=self._method,
            due_date=self._due_date or date.today() + timedelta(days=self._due_days),
            description=self._description,
            external_reference=payment_uuid,
            installments=self._installments,
            split=self._split,
        )
        request_payload = payments.request_payload(charge_request)
        try:
            charge = payments.create_charge(charge_request, payment_uuid=payment_uuid)
        except GatewayTimeoutException as exc:
            draft = self._new_payment(payment_uuid, PaymentStatus.DRAFT, wallet_applied, gateway_amount, manager.name)
            draft.meta = {**draft.meta, "gateway": {"outcome": "unknown", "request": request_payload, "error": exc.message}}
            try:
                self._persist(draft, reason="gateway_timeout")
            except Exception as persist_exc:
                self._release_hold(payment_uuid, "persist_failed")
                reused = self._lost_key_race(persist_exc)
                if reused is None:
                    raise
                return reused
            logger.warning("checkout_outcome_unknown uuid=%s gateway=%s", payment_uuid, manager.name)
            raise exc.with_payment(payment_uuid)
        except Exception as exc:
            self._release_hold(payment_uuid, "gateway_error")
            if isinstance(exc, GatewayException):
                exc.with_payment(payment_uuid)
            raise

        pix = self._fetch_pix(manager, charge) if self._method == PaymentMethod.PIX else None
        payment = self._new_payment(payment_uuid, PaymentStatus.PENDING, wallet_applied, gateway_amount, manager.name)
        payment.gateway_reference = charge.id
        payment.checkout_url = charge.invoice_url
        payment.meta = {**payment.meta, "gateway": self._gateway_meta(charge, request_payload, pix)}
        try:
            self._persist(payment, reason="checkout_created")
        except Exception as exc:
            self._abandon_charge(manager, payment_uuid, charge)
            reused = self._lost_key_race(exc)
            if reused is None:
                raise
            return reused
        logger.info(
            "checkout_created uuid=%s gateway=%s charge_id=%s wallet_applied_cents=%s gateway_amount_cents=%s",
            payment_uuid,
            manager.name,
            charge.id,
            wallet_applied,
            gateway_amount,
        )

        if self._method == PaymentMethod.CREDIT_CARD:
            return self._capture_card(manager, payment, charge)
        return CheckoutResult(payment=payment, status=payment.status, pix=pix, checkout_url=payment.checkout_url)

    def _resolve_customer(self, manager: GatewayManager) -> str:
        if not manager.supports_feature("customers"):
            return self._payer_id
        return manager.customers().first_or_create(self._customer).id

    def _fetch_pix(self, manager: GatewayManager, charge: Charge) -> PixQrCode | None:
        # The charge already exists; a missing QR code is recoverable from the invoice URL.
        try:
            return manager.payments().get_pix_qr_code(charge.id)
        except GatewayException as exc:
            logger.warning("pix_qr_code_unavailable charge_id=%s error=%s", charge.id, exc)
            return None

    def _capture_card(self, manager: GatewayManager, payment: Payment, charge: Charge) -> CheckoutResult:
        try:
            card_result = manager.payments().pay_with_credit_card(
                charge.id, self._card, self._holder, payment_uuid=payment.uuid
            )
        except GatewayTimeoutException as exc:
            logger.warning("card_capture_outcome_unknown uuid=%s", payment.uuid)
            return CheckoutResult(
                payment=payment,
                status=payment.status,
                checkout_url=payment.checkout_url,
                error=exc.user_message,
            )
        except GatewayException as exc:
            failed = self.settlement.mark_failed(
                payment,
                reason="declined",
                context={"error": exc.message, "codes": exc.error_codes},
            )
            return CheckoutResult(payment=failed, status=failed.status, error=exc.user_message)

        context = {"source": "credit_card", "gateway_status": card_result.status, "card_request": card_result.request}
        if card_result.paid:
            payment = self.settlement.mark_paid(payment, context=context)
        elif card_result.requires_action:
            payment = self.settlement.mark_requires_action(payment, context=context)
        return CheckoutResult(
            payment=payment,
            status=payment.status,
            card=card_result,
            checkout_url=payment.checkout_url,
        )

    def _gateway_meta(self, charge: Charge, request_payload: dict[str, Any], pix: PixQrCode | None) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "charge_id": charge.id,
            "status": charge.status,
            "invoice_url": charge.invoice_url,
            "request": request_payload,
            "response": charge.raw,
        }
        if pix is not None:
            meta["pix"] = pix.model_dump(exclude={"raw"})
        if self._card is not None:
            meta["card"] = {
                "holder_name": self._card.holder_name,
                "last_four": self._card.last_four,
                "expiry_month": self._card.expiry_month,
                "expiry_year": self._card.expiry_year,
            }
        return meta

    def _new_payment(
        self,
        payment_uuid: str,
        status: PaymentStatus,
        wallet_applied: int,
        gateway_amount: int,
        gateway: str | None,
    ) -> Payment:
        meta = dict(self._meta)
        if self._description:
            meta["description"] = self._description
        return Payment(
            uuid=payment_uuid,
            payer_id=self._payer_id,
            billable_type=self._billable_type,
            billable_id=self._billable_id,
            currency=self._currency,
            amount_cents=self._amount_cents,
            wallet_applied_cents=wallet_applied,
            gateway_amount_cents=gateway_amount,
            status=status.value,
            payment_method=self._method.value if gateway else None,
            gateway=gateway,
            idempotency_key=self._idempotency_key,
            due_date=self._due_date or date.today() + timedelta(days=self._due_days),
            meta=meta,
        )

    def _insert(self, db, payment: Payment, reason: str) -> None:
        db.add(payment)
        db.flush()
        db.add(PaymentTimeline(payment_id=payment.id, from_state=None, to_state=payment.status, reason=reason))
        self.settlement.outbox.enqueue(db, "payments.created", "payment", payment.uuid, payment_event_payload(payment))

    def _persist(self, payment: Payment, reason: str) -> Payment:
        with self.session_factory() as db:
            self._insert(db, payment, reason)
            db.commit()
        return payment

    def _abandon_charge(self, manager: GatewayManager, payment_uuid: str, charge: Charge) -> None:
        """Undo a charge that has no Payment row: cancel it at the gateway and free the hold."""

        try:
            canceled = manager.payments().cancel(charge.id)
        except GatewayException as exc:
            canceled = False
            logger.error("orphan_charge_cancel_failed uuid=%s charge_id=%s error=%s", payment_uuid, charge.id, exc)
        if not canceled:
            logger.error("orphan_charge_left_open uuid=%s charge_id=%s", payment_uuid, charge.id)
        self._release_hold(payment_uuid, "persist_failed")

    def _release_hold(self, payment_uuid: str, reason: str) -> None:
        with self.session_factory() as db:
            self.wallet.release_hold(db, payment_uuid, reason)
            db.commit()
