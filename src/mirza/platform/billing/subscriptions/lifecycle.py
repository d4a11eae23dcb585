"""
Subscription lifecycle jobs.

Periodic sweep moving lapsed subscriptions into the grace period and
then to expired, plus locked entry points for usage reported by VPN panels.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from ..config import BillingConfig
from ..core.data_limit import DataLimit
from ..core.enums import SubscriptionStatus
from ..core.interfaces import AggregateKind, AggregateStore
from ..domain.subscription import Subscription
from ..domain.transitions import Transition
from ..events import EffectDispatcher
from .service import SubscriptionService

logger = structlog.get_logger(__name__)


@dataclass
class LifecycleReport:
    """Subscription ids moved by one sweep."""

    entered_grace_period: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.entered_grace_period) + len(self.expired)


class SubscriptionLifecycle:
    """Time-driven and panel-driven subscription changes."""

    def __init__(
        self,
        store: AggregateStore,
        subscription_service: SubscriptionService,
        dispatcher: EffectDispatcher | None = None,
        config: BillingConfig | None = None,
    ) -> None:
        self.store = store
        self.service = subscription_service
        self.dispatcher = dispatcher
        self.config = config or subscription_service.config

    async def sweep(self) -> LifecycleReport:
        """
        Advance lapsed subscriptions.

        Active subscriptions past ``expires_at`` enter the grace period (or
        expire directly when no grace period is configured); grace-period
        subscriptions past ``grace_period_ends_at`` expire.
        """
        report = LifecycleReport()
        candidates = await self.store.list_subscriptions(
            statuses=[SubscriptionStatus.ACTIVE.value, SubscriptionStatus.GRACE_PERIOD.value]
        )

        for candidate in candidates:
            now = self.service.clock.now()
            if not self._is_due(candidate, now):
                continue

            transition = await self._apply(candidate.id, self._advance)
            if not transition.changed:
                continue
            if transition.aggregate.status == SubscriptionStatus.GRACE_PERIOD:
                report.entered_grace_period.append(candidate.id)
            else:
                report.expired.append(candidate.id)

        logger.info(
            "subscription.lifecycle.sweep",
            entered_grace_period=len(report.entered_grace_period),
            expired=len(report.expired),
        )
        return report

    async def expiring_soon(self, days: int | None = None) -> list[Subscription]:
        """Active subscriptions expiring within the reminder window."""
        window = self.config.renewal_reminder_days if days is None else days
        active = await self.store.list_subscriptions(statuses=[SubscriptionStatus.ACTIVE.value])
        return [s for s in active if self.service.is_subscription_expiring_soon(s, window)]

    async def record_data_usage(
        self,
        subscription_id: str,
        amount: DataLimit,
        source: str,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        """Record panel-reported traffic under the subscription lock."""
        transition = await self._apply(
            subscription_id,
            lambda s: self.service.record_data_usage(s, amount, source, source_id, metadata),
        )
        return transition.aggregate

    async def renew(
        self,
        subscription_id: str,
        new_expires_at: datetime,
        renewal_price: Any = None,
    ) -> Subscription:
        transition = await self._apply(
            subscription_id,
            lambda s: self.service.renew_subscription(s, new_expires_at, renewal_price),
        )
        return transition.aggregate

    # ==================== Helpers ====================

    def _is_due(self, subscription: Subscription, now: datetime) -> bool:
        if subscription.status == SubscriptionStatus.ACTIVE:
            return subscription.is_expired(now)
        if subscription.status == SubscriptionStatus.GRACE_PERIOD:
            ends_at = subscription.grace_period_ends_at or subscription.expires_at
            return now >= ends_at
        return False

    def _advance(self, subscription: Subscription) -> Transition[Subscription]:
        now = self.service.clock.now()
        if not self._is_due(subscription, now):
            return Transition.unchanged(subscription)

        if subscription.status == SubscriptionStatus.ACTIVE:
            grace_ends = subscription.expires_at + self.config.grace_period
            if grace_ends > now:
                return self.service.put_in_grace_period(subscription, grace_ends)
        return self.service.expire_subscription(subscription)

    async def _apply(
        self,
        subscription_id: str,
        change: Callable[[Subscription], Transition[Subscription]],
    ) -> Transition[Subscription]:
        async with self.store.lock(AggregateKind.SUBSCRIPTION, subscription_id) as scope:
            transition = change(scope.aggregate)
            if transition.changed:
                await scope.save(transition.aggregate, transition.effects)

        if self.dispatcher is not None and transition.effects:
            await self.dispatcher.deliver(self.store, transition.effects)
        return transition


__all__ = ["SubscriptionLifecycle", "LifecycleReport"]
