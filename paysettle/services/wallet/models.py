"""Wallet ledger models.

`balance_cents` counts confirmed funds; `held_cents` is the part of it reserved
by in-flight checkouts. Entries are append-only and keyed by an idempotency key
derived from the payment they belong to.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from paysettle.common.db import Base, JSONType


class WalletAccount(Base):
    __tablename__ = "wallet_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    currency: Mapped[str] = mapped_column(String(3), default="BRL")
    balance_cents: Mapped[int] = mapped_column(Integer, default=0)
    held_cents: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def available_cents(self) -> int:
        return self.balance_cents - self.held_cents


class WalletEntry(Base):
    """One HOLD / RELEASE / DEBIT / CREDIT movement."""

    __tablename__ = "wallet_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("wallet_accounts.id"), index=True)
    kind: Mapped[str] = mapped_column(String)
    entry_type: Mapped[str] = mapped_column(String, default="payment")
    amount_cents: Mapped[int] = mapped_column(Integer)
    confirmed: Mapped[bool] = mapped_column(Boolean, default=True)
    reference: Mapped[str] = mapped_column(String, index=True)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    tags: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
