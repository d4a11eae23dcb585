"""
Collaborator protocols consumed by the billing core.

The domain services never reach for wall-clock time, storage, balances or
user messaging directly; they receive these collaborators instead.
"""

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..domain.payment import Payment
    from ..domain.subscription import Subscription
    from ..events import Effect, OutboxEntry
    from ..money_utils import Money


class AggregateKind(str, Enum):
    """Aggregate roots that can be locked and persisted."""

    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


@runtime_checkable
class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock:
    """Manually driven clock for tests and replays."""

    def __init__(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=UTC)
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current = self.current + delta
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current


@runtime_checkable
class LockedAggregate(Protocol):
    """
    Exclusive scope over one aggregate.

    ``aggregate`` is a private copy loaded after the lock was acquired.
    ``save`` stages the new state together with its effects; both are
    written when the scope exits without an exception and discarded otherwise.
    """

    aggregate: Any

    async def save(self, aggregate: Any, effects: Sequence["Effect"] = ()) -> None: ...


@runtime_checkable
class AggregateStore(Protocol):
    """Persistence for payments, subscriptions and the effect outbox."""

    async def add_payment(self, payment: "Payment", effects: Sequence["Effect"] = ()) -> None: ...

    async def get_payment(self, payment_id: str) -> "Payment | None": ...

    async def list_payments(self, status: str | None = None) -> list["Payment"]: ...

    async def add_subscription(
        self, subscription: "Subscription", effects: Sequence["Effect"] = ()
    ) -> None: ...

    async def get_subscription(self, subscription_id: str) -> "Subscription | None": ...

    async def list_subscriptions(
        self, statuses: Sequence[str] | None = None
    ) -> list["Subscription"]: ...

    def lock(
        self, kind: AggregateKind, aggregate_id: str
    ) -> AbstractAsyncContextManager[LockedAggregate]: ...

    async def pending_effects(
        self, limit: int = 100, aggregate_id: str | None = None
    ) -> list["OutboxEntry"]: ...

    async def mark_dispatched(self, entry_ids: Sequence[str]) -> None: ...


@runtime_checkable
class BalanceLedger(Protocol):
    """User wallet credited when a payment completes."""

    async def credit(self, user_id: str, amount: "Money", idempotency_key: str) -> bool:
        """Credit once per key. Returns False when the key was already applied."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Outbound user messaging (Telegram in production)."""

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None: ...


__all__ = [
    "AggregateKind",
    "Clock",
    "SystemClock",
    "FixedClock",
    "LockedAggregate",
    "AggregateStore",
    "BalanceLedger",
    "NotificationSink",
]
