"""
Subscription domain service.

Validates creation parameters, enforces the subscription status table and
records usage. Like the payment service it never mutates its argument:
each call returns the new state and its effects in a ``Transition``.
"""

from calendar import isleap
from datetime import datetime, timedelta
from typing import Any

import structlog

from ..config import BillingConfig, get_billing_config
from ..core.data_limit import DataLimit
from ..core.enums import SubscriptionStatus, SubscriptionType, UsageKind
from ..core.interfaces import Clock, SystemClock
from ..domain.subscription import Subscription, Usage
from ..domain.transitions import Transition
from ..events import BillingEvents, Effect
from ..exceptions import SubscriptionStateError, ValidationError
from ..money_utils import Money

logger = structlog.get_logger(__name__)

DATA_LIMIT_EXCEEDED_REASON = "Data limit exceeded"


def add_years(moment: datetime, years: int) -> datetime:
    """Same calendar date ``years`` later; Feb 29 falls back to Feb 28."""
    target_year = moment.year + years
    if moment.month == 2 and moment.day == 29 and not isleap(target_year):
        return moment.replace(year=target_year, day=28)
    return moment.replace(year=target_year)


class SubscriptionService:
    """
    Subscription business rules.

    Handles:
    - Creation with date, price and device-limit validation
    - Lifecycle transitions (activate, suspend, cancel, expire, grace period)
    - Renewal bounds and pricing
    - Data, time and feature usage recording with automatic suspension
    """

    def __init__(self, config: BillingConfig | None = None, clock: Clock | None = None):
        self.config = config or get_billing_config()
        self.clock = clock or SystemClock()

    # ==================== Creation ====================

    def create_subscription(
        self,
        user_id: str,
        panel_id: str,
        type: SubscriptionType,
        price: Money,
        starts_at: datetime,
        expires_at: datetime,
        data_limit: DataLimit | None = None,
        device_limit: int | None = None,
        features: set[str] | None = None,
    ) -> Transition[Subscription]:
        """
        Create a pending subscription.

        Raises:
            ValidationError: invalid date range, price for the type, or
                device limit
        """
        self._validate_dates(starts_at, expires_at)
        self._validate_price(price, type)
        self._validate_limits(device_limit, type)

        now = self.clock.now()
        subscription = Subscription(
            user_id=user_id,
            panel_id=panel_id,
            type=type,
            price=price,
            starts_at=starts_at,
            expires_at=expires_at,
            data_limit=data_limit,
            device_limit=device_limit,
            features=set(features or ()),
            created_at=now,
            updated_at=now,
        )

        logger.info(
            "subscription.created",
            subscription_id=subscription.id,
            user_id=user_id,
            type=type.value,
            expires_at=expires_at.isoformat(),
        )
        return Transition(
            aggregate=subscription,
            effects=(
                Effect.for_subscription(BillingEvents.SUBSCRIPTION_CREATED, subscription, now),
            ),
        )

    # ==================== Lifecycle ====================
    # Status changes are no-ops when the subscription already has the target status.

    def activate_subscription(self, subscription: Subscription) -> Transition[Subscription]:
        if subscription.status == SubscriptionStatus.ACTIVE:
            return Transition.unchanged(subscription)
        self._require(
            subscription,
            subscription.status.can_be_activated,
            "Only pending or suspended subscriptions can be activated",
            "activate",
        )
        now = self.clock.now()
        working = subscription.model_copy(deep=True)
        working.activate(now)

        logger.info("subscription.activated", subscription_id=working.id)
        return self._result(working, BillingEvents.SUBSCRIPTION_ACTIVATED, now)

    def suspend_subscription(
        self, subscription: Subscription, reason: str
    ) -> Transition[Subscription]:
        if subscription.status == SubscriptionStatus.SUSPENDED:
            return Transition.unchanged(subscription)
        self._require(
            subscription,
            subscription.status.can_be_suspended,
            "Only active or grace-period subscriptions can be suspended",
            "suspend",
        )
        now = self.clock.now()
        working = subscription.model_copy(deep=True)
        working.suspend(reason, now)

        logger.info("subscription.suspended", subscription_id=working.id, reason=reason)
        return self._result(working, BillingEvents.SUBSCRIPTION_SUSPENDED, now, reason=reason)

    def cancel_subscription(
        self, subscription: Subscription, reason: str
    ) -> Transition[Subscription]:
        if subscription.status == SubscriptionStatus.CANCELLED:
            return Transition.unchanged(subscription)
        self._require(
            subscription,
            subscription.status.can_be_cancelled,
            "Expired or cancelled subscriptions cannot be cancelled",
            "cancel",
        )
        now = self.clock.now()
        working = subscription.model_copy(deep=True)
        working.cancel(reason, now)

        logger.info("subscription.cancelled", subscription_id=working.id, reason=reason)
        return self._result(working, BillingEvents.SUBSCRIPTION_CANCELLED, now, reason=reason)

    def expire_subscription(self, subscription: Subscription) -> Transition[Subscription]:
        if subscription.status == SubscriptionStatus.EXPIRED:
            return Transition.unchanged(subscription)
        self._require(
            subscription,
            subscription.status.can_be_expired,
            "Only active or grace-period subscriptions can expire",
            "expire",
        )
        now = self.clock.now()
        working = subscription.model_copy(deep=True)
        working.expire(now)

        logger.info("subscription.expired", subscription_id=working.id)
        return self._result(working, BillingEvents.SUBSCRIPTION_EXPIRED, now)

    def put_in_grace_period(
        self, subscription: Subscription, grace_period_ends: datetime
    ) -> Transition[Subscription]:
        """Start the grace period; no-op when it already started."""
        if subscription.status == SubscriptionStatus.GRACE_PERIOD:
            return Transition.unchanged(subscription)
        self._require(
            subscription,
            subscription.status.can_enter_grace_period,
            "Only active subscriptions can be put in grace period",
            "enter grace period",
        )
        now = self.clock.now()
        if grace_period_ends <= now:
            raise ValidationError(
                "Grace period end must be in the future", field="grace_period_ends"
            )

        working = subscription.model_copy(deep=True)
        working.enter_grace_period(grace_period_ends, now)

        logger.info(
            "subscription.grace_period",
            subscription_id=working.id,
            grace_period_ends=grace_period_ends.isoformat(),
        )
        return self._result(
            working,
            BillingEvents.SUBSCRIPTION_GRACE_PERIOD,
            now,
            grace_period_ends_at=grace_period_ends.isoformat(),
        )

    def renew_subscription(
        self,
        subscription: Subscription,
        new_expires_at: datetime,
        renewal_price: Money | None = None,
    ) -> Transition[Subscription]:
        """
        Extend the expiry date; a grace-period subscription becomes active again.

        Raises:
            SubscriptionStateError: subscription is not active or in grace period
            ValidationError: new expiry not after the current one, or more
                than the renewal window beyond it
        """
        self._require(
            subscription,
            subscription.status.can_be_renewed,
            "Only active or grace-period subscriptions can be renewed",
            "renew",
        )
        self._validate_renewal_date(subscription, new_expires_at)
        if renewal_price is not None:
            self._validate_price(renewal_price, subscription.type)

        now = self.clock.now()
        working = subscription.model_copy(deep=True)
        working.renew(new_expires_at, now, renewal_price)

        logger.info(
            "subscription.renewed",
            subscription_id=working.id,
            previous_expires_at=subscription.expires_at.isoformat(),
            expires_at=new_expires_at.isoformat(),
        )
        return self._result(
            working,
            BillingEvents.SUBSCRIPTION_RENEWED,
            now,
            previous_expires_at=subscription.expires_at.isoformat(),
        )

    # ==================== Usage ====================

    def record_data_usage(
        self,
        subscription: Subscription,
        amount: DataLimit,
        source: str,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transition[Subscription]:
        """
        Record transferred bytes.

        When consumption reaches a finite data limit the same call suspends
        the subscription. The usage record is kept either way.
        """
        if amount.is_unlimited or not amount.is_positive():
            raise ValidationError("Data usage amount must be a positive byte count", field="amount")

        working, now = self._append_usage(
            subscription,
            UsageKind.BYTES,
            amount.byte_count,
            source,
            source_id=source_id,
            metadata=metadata,
        )
        effects: list[Effect] = []

        if working.has_exceeded_data_limit() and working.status.can_be_suspended:
            working.suspend(DATA_LIMIT_EXCEEDED_REASON, now)
            logger.warning(
                "subscription.data_limit_exceeded",
                subscription_id=working.id,
                used=working.used_data().format(),
                limit=working.effective_data_limit.format(),
            )
            effects.append(
                Effect.for_subscription(
                    BillingEvents.SUBSCRIPTION_DATA_LIMIT_EXCEEDED,
                    working,
                    now,
                    used_bytes=working.used_data().byte_count,
                )
            )
            effects.append(
                Effect.for_subscription(
                    BillingEvents.SUBSCRIPTION_SUSPENDED,
                    working,
                    now,
                    reason=DATA_LIMIT_EXCEEDED_REASON,
                )
            )

        return Transition(aggregate=working, effects=tuple(effects))

    def record_time_usage(
        self,
        subscription: Subscription,
        minutes: int,
        source: str,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transition[Subscription]:
        if minutes <= 0:
            raise ValidationError("Time usage must be positive", field="minutes")

        working, _ = self._append_usage(
            subscription, UsageKind.MINUTES, minutes, source, source_id=source_id, metadata=metadata
        )
        return Transition(aggregate=working)

    def record_feature_usage(
        self,
        subscription: Subscription,
        feature: str,
        count: int = 1,
        source: str = "system",
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transition[Subscription]:
        if count <= 0:
            raise ValidationError("Feature usage count must be positive", field="count")
        if not feature:
            raise ValidationError("Feature name is required", field="feature")

        working, _ = self._append_usage(
            subscription,
            UsageKind.FEATURE,
            count,
            source,
            feature=feature,
            source_id=source_id,
            metadata=metadata,
        )
        return Transition(aggregate=working)

    # ==================== Queries ====================

    def is_subscription_expired(self, subscription: Subscription) -> bool:
        return subscription.is_expired(self.clock.now())

    def is_subscription_expiring_soon(self, subscription: Subscription, days: int = 7) -> bool:
        return subscription.is_expiring_soon(self.clock.now(), days)

    def has_exceeded_data_limit(self, subscription: Subscription) -> bool:
        return subscription.has_exceeded_data_limit()

    def get_used_data(self, subscription: Subscription) -> DataLimit:
        return subscription.used_data()

    def get_remaining_data(self, subscription: Subscription) -> DataLimit:
        return subscription.remaining_data()

    def get_data_usage_percentage(self, subscription: Subscription) -> float:
        return subscription.data_usage_percentage()

    def get_time_usage(self, subscription: Subscription) -> int:
        return subscription.time_usage()

    def get_feature_usage(self, subscription: Subscription, feature: str) -> int:
        return subscription.feature_usage(feature)

    def get_remaining_time(self, subscription: Subscription) -> timedelta:
        return subscription.remaining_time(self.clock.now())

    def calculate_renewal_price(
        self, subscription: Subscription, new_type: SubscriptionType | None = None
    ) -> Money:
        """Base price of the (possibly changed) subscription type, in USD."""
        subscription_type = new_type or subscription.type
        return self.config.currency_table.money(subscription_type.base_price, "USD")

    # ==================== Helpers ====================

    def _require(
        self, subscription: Subscription, allowed: bool, rule: str, action: str
    ) -> None:
        if not allowed:
            raise SubscriptionStateError(
                f"{rule} (current status: {subscription.status.value})",
                current_state=subscription.status.value,
                attempted_action=action,
                subscription_id=subscription.id,
            )

    def _result(
        self, working: Subscription, event_type: str, now: datetime, **payload: Any
    ) -> Transition[Subscription]:
        return Transition(
            aggregate=working,
            effects=(Effect.for_subscription(event_type, working, now, **payload),),
        )

    def _append_usage(
        self,
        subscription: Subscription,
        kind: UsageKind,
        amount: int,
        source: str,
        feature: str | None = None,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Subscription, datetime]:
        self._require(
            subscription,
            subscription.status.is_usable,
            "Cannot record usage for a subscription that is not active or in grace period",
            "record usage",
        )
        now = self.clock.now()
        working = subscription.model_copy(deep=True)
        working.add_usage(
            Usage(
                subscription_id=working.id,
                kind=kind,
                feature=feature,
                amount=amount,
                source=source,
                source_id=source_id,
                metadata=dict(metadata or {}),
                recorded_at=now,
            )
        )
        return working, now

    def _validate_dates(self, starts_at: datetime, expires_at: datetime) -> None:
        if starts_at >= expires_at:
            raise ValidationError(
                "Subscription start date must be before expiration date", field="expires_at"
            )
        if expires_at < starts_at + timedelta(days=self.config.min_subscription_days):
            raise ValidationError(
                f"Subscription duration must be at least {self.config.min_subscription_days} day(s)",
                field="expires_at",
            )
        if expires_at > add_years(starts_at, self.config.max_subscription_years):
            raise ValidationError(
                f"Subscription duration cannot exceed {self.config.max_subscription_years} years",
                field="expires_at",
            )

    def _validate_price(self, price: Money, subscription_type: SubscriptionType) -> None:
        if price.is_negative():
            raise ValidationError("Subscription price cannot be negative", field="price")
        if subscription_type.is_free and not price.is_zero():
            raise ValidationError("Free subscription type must have zero price", field="price")
        if subscription_type.is_paid and price.is_zero():
            raise ValidationError("Paid subscription type must have non-zero price", field="price")

    def _validate_limits(self, device_limit: int | None, subscription_type: SubscriptionType) -> None:
        if device_limit is None:
            return
        if device_limit < 1:
            raise ValidationError("Device limit must be at least 1", field="device_limit")
        if device_limit > self.config.max_device_limit:
            raise ValidationError(
                f"Device limit cannot exceed {self.config.max_device_limit}", field="device_limit"
            )
        max_devices = subscription_type.max_devices
        if max_devices is not None and device_limit > max_devices:
            raise ValidationError(
                f"Device limit cannot exceed {max_devices} for {subscription_type.value} subscription",
                field="device_limit",
            )

    def _validate_renewal_date(self, subscription: Subscription, new_expires_at: datetime) -> None:
        current = subscription.expires_at
        if new_expires_at <= current:
            raise ValidationError(
                "New expiration date must be after current expiration date",
                field="new_expires_at",
            )
        if new_expires_at > add_years(current, self.config.max_renewal_years):
            raise ValidationError(
                f"Renewal cannot extend subscription more than "
                f"{self.config.max_renewal_years} years from current expiration",
                field="new_expires_at",
            )


__all__ = ["SubscriptionService", "DATA_LIMIT_EXCEEDED_REASON", "add_years"]
