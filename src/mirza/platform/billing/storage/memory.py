"""
In-memory aggregate store, balance ledger and notification sink.

Used by tests and local development. Aggregates are deep-copied on the way
in and out so callers never share state with the store.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog

from ..core.interfaces import AggregateKind
from ..domain.payment import Payment
from ..domain.subscription import Subscription
from ..events import Effect, OutboxEntry
from ..exceptions import (
    BillingError,
    PaymentNotFoundError,
    SubscriptionNotFoundError,
    ValidationError,
)
from ..money_utils import Money
from .locks import AggregateLocks

logger = structlog.get_logger(__name__)


def not_found(kind: AggregateKind, aggregate_id: str) -> BillingError:
    if kind == AggregateKind.PAYMENT:
        return PaymentNotFoundError(f"Payment {aggregate_id} not found", payment_id=aggregate_id)
    return SubscriptionNotFoundError(
        f"Subscription {aggregate_id} not found", subscription_id=aggregate_id
    )


class _MemoryLockScope:
    """Staged changes for one locked aggregate."""

    def __init__(self, aggregate: Any) -> None:
        self.aggregate = aggregate
        self.staged: Any = None
        self.effects: list[Effect] = []

    async def save(self, aggregate: Any, effects: Sequence[Effect] = ()) -> None:
        if aggregate.id != self.aggregate.id:
            raise ValidationError("Cannot save a different aggregate inside this lock")
        self.staged = aggregate.model_copy(deep=True)
        self.effects.extend(effects)


class InMemoryAggregateStore:
    """Dict-backed AggregateStore with one asyncio.Lock per aggregate."""

    def __init__(self, lock_timeout: float | None = 10.0) -> None:
        self.lock_timeout = lock_timeout
        self._payments: dict[str, Payment] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._outbox: dict[str, OutboxEntry] = {}
        self._locks = AggregateLocks(lock_timeout)

    # ==================== Payments ====================

    async def add_payment(self, payment: Payment, effects: Sequence[Effect] = ()) -> None:
        if payment.id in self._payments:
            raise ValidationError(f"Payment {payment.id} already exists", field="id")
        self._payments[payment.id] = payment.model_copy(deep=True)
        self._append_outbox(effects)

    async def get_payment(self, payment_id: str) -> Payment | None:
        payment = self._payments.get(payment_id)
        return payment.model_copy(deep=True) if payment else None

    async def list_payments(self, status: str | None = None) -> list[Payment]:
        return [
            p.model_copy(deep=True)
            for p in self._payments.values()
            if status is None or p.status.value == status
        ]

    # ==================== Subscriptions ====================

    async def add_subscription(
        self, subscription: Subscription, effects: Sequence[Effect] = ()
    ) -> None:
        if subscription.id in self._subscriptions:
            raise ValidationError(f"Subscription {subscription.id} already exists", field="id")
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        self._append_outbox(effects)

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        subscription = self._subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def list_subscriptions(self, statuses: Sequence[str] | None = None) -> list[Subscription]:
        return [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if statuses is None or s.status.value in statuses
        ]

    # ==================== Locking ====================

    @asynccontextmanager
    async def lock(self, kind: AggregateKind, aggregate_id: str) -> AsyncIterator[_MemoryLockScope]:
        async with self._locks.hold(kind, aggregate_id):
            table = self._table(kind)
            current = table.get(aggregate_id)
            if current is None:
                raise not_found(kind, aggregate_id)

            scope = _MemoryLockScope(current.model_copy(deep=True))
            yield scope

            if scope.staged is not None:
                table[aggregate_id] = scope.staged
                self._append_outbox(scope.effects)

    def _table(self, kind: AggregateKind) -> dict[str, Any]:
        return self._payments if kind == AggregateKind.PAYMENT else self._subscriptions

    # ==================== Outbox ====================

    def _append_outbox(self, effects: Sequence[Effect]) -> None:
        for effect in effects:
            self._outbox[effect.id] = OutboxEntry(effect=effect, created_at=effect.occurred_at)

    async def pending_effects(
        self, limit: int = 100, aggregate_id: str | None = None
    ) -> list[OutboxEntry]:
        pending = [
            entry
            for entry in self._outbox.values()
            if entry.dispatched_at is None
            and (aggregate_id is None or entry.effect.aggregate_id == aggregate_id)
        ]
        return pending[:limit]

    async def mark_dispatched(self, entry_ids: Sequence[str]) -> None:
        now = datetime.now(UTC)
        for entry_id in entry_ids:
            entry = self._outbox.get(entry_id)
            if entry is not None and entry.dispatched_at is None:
                self._outbox[entry_id] = entry.model_copy(update={"dispatched_at": now})

    def outbox(self) -> list[OutboxEntry]:
        return list(self._outbox.values())


class InMemoryBalanceLedger:
    """BalanceLedger keeping one credit per idempotency key."""

    def __init__(self) -> None:
        self.entries: dict[str, tuple[str, Money]] = {}

    async def credit(self, user_id: str, amount: Money, idempotency_key: str) -> bool:
        if idempotency_key in self.entries:
            return False
        self.entries[idempotency_key] = (user_id, amount)
        return True

    def balance(self, user_id: str, currency: str) -> int:
        """Credited minor units for a user in one currency."""
        return sum(
            money.minor_units
            for owner, money in self.entries.values()
            if owner == user_id and money.currency == currency
        )


class RecordingNotificationSink:
    """NotificationSink that keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        self.sent.append((user_id, event, payload))
        logger.debug("billing.notification.recorded", user_id=user_id, notification_event=event)

    def events(self) -> list[str]:
        return [event for _, event, _ in self.sent]


__all__ = [
    "InMemoryAggregateStore",
    "InMemoryBalanceLedger",
    "RecordingNotificationSink",
    "not_found",
]
