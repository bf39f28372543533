"""Wallet ledger operations used by checkout, settlement and refunds.

Every method works inside the caller's session (the caller commits) and locks
the owner's account row before touching balances. Entry idempotency keys are
derived from the payment uuid, so replaying an operation for the same payment
returns the existing entry instead of moving money twice.
"""

from typing import Any
from uuid import uuid4

from sqlalchemy import select

from paysettle.common.exceptions import InsufficientFundsException, PaymentException
from paysettle.common.logging import logger
from paysettle.services.wallet.models import WalletAccount, WalletEntry

HOLD = "HOLD"
RELEASE = "RELEASE"
DEBIT = "DEBIT"
CREDIT = "CREDIT"


class WalletService:
    def __init__(self, currency: str = "BRL") -> None:
        self.currency = currency

    def _lock_account(self, db, owner_id: str) -> WalletAccount:
        account = db.execute(
            select(WalletAccount).where(WalletAccount.owner_id == owner_id).with_for_update()
        ).scalar_one_or_none()
        if account is None:
            account = WalletAccount(owner_id=owner_id, currency=self.currency, balance_cents=0, held_cents=0)
            db.add(account)
            db.flush()
        return account

    def _lock_account_by_id(self, db, account_id: int) -> WalletAccount:
        return db.execute(select(WalletAccount).where(WalletAccount.id == account_id).with_for_update()).scalar_one()

    def _entry(self, db, idempotency_key: str) -> WalletEntry | None:
        return db.execute(select(WalletEntry).where(WalletEntry.idempotency_key == idempotency_key)).scalar_one_or_none()

    def _add_entry(
        self,
        db,
        account: WalletAccount,
        kind: str,
        amount_cents: int,
        reference: str,
        idempotency_key: str,
        entry_type: str = "payment",
        confirmed: bool = True,
        tags: dict[str, Any] | None = None,
    ) -> WalletEntry:
        entry = WalletEntry(
            account_id=account.id,
            kind=kind,
            entry_type=entry_type,
            amount_cents=amount_cents,
            confirmed=confirmed,
            reference=reference,
            idempotency_key=idempotency_key,
            tags=tags or {},
        )
        db.add(entry)
        db.flush()
        logger.info(
            "wallet_entry kind=%s owner=%s amount_cents=%s reference=%s",
            kind,
            account.owner_id,
            amount_cents,
            reference,
        )
        return entry

    def available_balance(self, db, owner_id: str, lock: bool = False) -> int:
        if lock:
            return self._lock_account(db, owner_id).available_cents
        account = db.execute(select(WalletAccount).where(WalletAccount.owner_id == owner_id)).scalar_one_or_none()
        return account.available_cents if account else 0

    def get_account(self, db, owner_id: str) -> WalletAccount | None:
        return db.execute(select(WalletAccount).where(WalletAccount.owner_id == owner_id)).scalar_one_or_none()

    def hold(
        self, db, owner_id: str, amount_cents: int, reference: str, tags: dict[str, Any] | None = None
    ) -> WalletEntry | None:
        """Reserve funds for an in-flight payment."""

        if amount_cents <= 0:
            return None
        existing = self._entry(db, f"hold:{reference}")
        if existing is not None:
            return existing
        account = self._lock_account(db, owner_id)
        if account.available_cents < amount_cents:
            raise InsufficientFundsException.for_wallet(
                owner_id, amount_cents, account.available_cents, payment_uuid=reference
            )
        account.held_cents += amount_cents
        return self._add_entry(db, account, HOLD, amount_cents, reference, f"hold:{reference}", tags=tags)

    def release_hold(self, db, reference: str, reason: str) -> WalletEntry | None:
        """Give a hold back to the available balance; no-op once released or debited."""

        hold = self._entry(db, f"hold:{reference}")
        if hold is None:
            return None
        if self._entry(db, f"release:{reference}") or self._entry(db, f"debit:{reference}"):
            return None
        account = self._lock_account_by_id(db, hold.account_id)
        account.held_cents -= hold.amount_cents
        return self._add_entry(
            db,
            account,
            RELEASE,
            hold.amount_cents,
            reference,
            f"release:{reference}",
            tags={"reason": reason},
        )

    def debit(
        self,
        db,
        owner_id: str,
        amount_cents: int,
        reference: str,
        from_hold: bool = True,
        tags: dict[str, Any] | None = None,
    ) -> WalletEntry:
        """Take funds out of the wallet, consuming the payment's hold when present."""

        existing = self._entry(db, f"debit:{reference}")
        if existing is not None:
            return existing
        account = self._lock_account(db, owner_id)
        if from_hold:
            hold = self._entry(db, f"hold:{reference}")
            if hold is not None and self._entry(db, f"release:{reference}") is None:
                account.held_cents -= hold.amount_cents
        if account.available_cents < amount_cents:
            raise InsufficientFundsException.for_wallet(
                owner_id, amount_cents, account.available_cents, payment_uuid=reference
            )
        account.balance_cents -= amount_cents
        return self._add_entry(db, account, DEBIT, amount_cents, reference, f"debit:{reference}", tags=tags)

    def credit(
        self,
        db,
        owner_id: str,
        amount_cents: int,
        reference: str,
        entry_type: str = "refund",
        confirmed: bool = True,
        tags: dict[str, Any] | None = None,
    ) -> WalletEntry:
        """Add funds; unconfirmed credits (deposits) only count once confirmed."""

        key = f"credit:{entry_type}:{reference}"
        existing = self._entry(db, key)
        if existing is not None:
            return existing
        account = self._lock_account(db, owner_id)
        if confirmed:
            account.balance_cents += amount_cents
        return self._add_entry(
            db,
            account,
            CREDIT,
            amount_cents,
            reference,
            key,
            entry_type=entry_type,
            confirmed=confirmed,
            tags=tags,
        )

    def create_deposit(self, db, owner_id: str, amount_cents: int) -> WalletEntry:
        """Unconfirmed top-up credit, confirmed when its payment settles."""

        return self.credit(
            db,
            owner_id,
            amount_cents,
            reference=f"deposit-{uuid4()}",
            entry_type="deposit",
            confirmed=False,
        )

    def confirm_credit(self, db, entry_id: int) -> WalletEntry:
        entry = db.get(WalletEntry, entry_id)
        if entry is None or entry.kind != CREDIT:
            raise PaymentException(f"Wallet credit {entry_id} not found")
        if entry.confirmed:
            return entry
        account = self._lock_account_by_id(db, entry.account_id)
        account.balance_cents += entry.amount_cents
        entry.confirmed = True
        db.flush()
        logger.info("wallet_credit_confirmed entry_id=%s amount_cents=%s", entry.id, entry.amount_cents)
        return entry
