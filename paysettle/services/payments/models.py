"""Payment database models.

`payments` is the source of truth for settlement state; `payment_timeline`
keeps the audit trail and `outbox_events` the domain events waiting for Kafka.
"""

from datetime import date, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from paysettle.common.db import Base, JSONType
from paysettle.common.state_machine import PaymentStatus


class Payment(Base):
    """One purchase intent and its money movement across wallet and gateway."""

    __tablename__ = "payments"
    # Load server defaults (created_at) on insert so detached rows stay readable.
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, index=True, default=lambda: str(uuid4()))
    payer_id: Mapped[str] = mapped_column(String, index=True)
    billable_type: Mapped[str] = mapped_column(String)
    billable_id: Mapped[str] = mapped_column(String)
    currency: Mapped[str] = mapped_column(String(3), default="BRL")
    amount_cents: Mapped[int] = mapped_column(Integer)
    wallet_applied_cents: Mapped[int] = mapped_column(Integer, default=0)
    gateway_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String, index=True)
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    checkout_url: Mapped[str | None] = mapped_column(String, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def refunded_cents(self) -> int:
        return int((self.meta or {}).get("refund", {}).get("refunded_cents", 0))

    @property
    def refundable_cents(self) -> int:
        """Gateway-settled amount not yet returned to the payer."""

        return max(0, self.gateway_amount_cents - self.refunded_cents)

    def merge_meta(self, key: str, values: dict[str, Any]) -> None:
        # Reassign so the JSON column change is detected.
        meta = dict(self.meta or {})
        meta[key] = {**meta.get(key, {}), **values}
        self.meta = meta

    def drop_meta(self, key: str) -> None:
        meta = dict(self.meta or {})
        meta.pop(key, None)
        self.meta = meta


class PaymentTimeline(Base):
    """Immutable audit trail of every status transition."""

    __tablename__ = "payment_timeline"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Domain events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
