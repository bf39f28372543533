"""Polymorphic references to the thing a payment pays for.

A payment stores `(billable_type, billable_id)`; the owning domain registers a
resolver for its type and returns an object exposing `on_payment_paid`.
"""

from typing import Callable, Protocol, runtime_checkable

from paysettle.common.logging import logger

WALLET_TOPUP = "wallet_topup"


@runtime_checkable
class Billable(Protocol):
    def on_payment_paid(self, payment, db) -> None: ...


BillableResolver = Callable[[object, str], object | None]


class BillableRegistry:
    """Maps a billable type tag to the resolver that loads it."""

    def __init__(self) -> None:
        self._resolvers: dict[str, BillableResolver] = {}

    def register(self, billable_type: str, resolver: BillableResolver) -> None:
        self._resolvers[billable_type] = resolver

    def has(self, billable_type: str) -> bool:
        return billable_type in self._resolvers

    def resolve(self, db, billable_type: str, billable_id: str) -> object | None:
        resolver = self._resolvers.get(billable_type)
        if resolver is None:
            return None
        return resolver(db, billable_id)

    def notify_paid(self, db, payment) -> bool:
        """Call `on_payment_paid` on the payment's billable; False when none applies."""

        billable = self.resolve(db, payment.billable_type, payment.billable_id)
        if not isinstance(billable, Billable):
            logger.info(
                "billable_without_fulfilment type=%s id=%s",
                payment.billable_type,
                payment.billable_id,
            )
            return False
        billable.on_payment_paid(payment, db)
        return True
