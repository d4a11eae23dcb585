"""
Subscription aggregate.

Tracks a VPN subscription from purchase to expiry. Usage records are
append-only; data consumption is derived from them rather than stored as a
counter.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..core.data_limit import DataLimit
from ..core.enums import SubscriptionStatus, SubscriptionType, UsageKind
from ..exceptions import SubscriptionStateError
from ..money_utils import Money
from .transitions import TransitionCheck


class Usage(BaseModel):
    """Single usage record: bytes transferred, minutes connected or a feature hit."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    subscription_id: str
    kind: UsageKind
    feature: str | None = None
    amount: int = Field(gt=0)
    source: str
    source_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime


class Subscription(BaseModel):
    """Subscription aggregate root."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    panel_id: str
    type: SubscriptionType
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    price: Money
    starts_at: datetime
    expires_at: datetime
    data_limit: DataLimit | None = None
    device_limit: int | None = None
    features: set[str] = Field(default_factory=set)
    usages: list[Usage] = Field(default_factory=list)
    activated_at: datetime | None = None
    suspended_at: datetime | None = None
    suspension_reason: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    expired_at: datetime | None = None
    grace_period_ends_at: datetime | None = None
    renewed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    # ------------------------------------------------------------------
    # Transition rules
    # ------------------------------------------------------------------

    def check_transition(self, target: SubscriptionStatus) -> TransitionCheck:
        if self.status.can_transition_to(target):
            return TransitionCheck.ok()
        if self.status == target:
            return TransitionCheck.deny(f"Subscription is already {target.value}")
        if self.status.is_final:
            return TransitionCheck.deny(
                f"Subscription is {self.status.value} and cannot change status"
            )
        return TransitionCheck.deny(
            f"Subscription cannot move from {self.status.value} to {target.value}"
        )

    def _transition(self, target: SubscriptionStatus, now: datetime, action: str) -> None:
        check = self.check_transition(target)
        if not check.allowed:
            raise SubscriptionStateError(
                check.reason or "Illegal subscription transition",
                current_state=self.status.value,
                attempted_action=action,
                subscription_id=self.id,
            )
        self.status = target
        self.updated_at = now

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def activate(self, now: datetime) -> None:
        self._transition(SubscriptionStatus.ACTIVE, now, "activate")
        self.activated_at = now
        self.suspended_at = None
        self.suspension_reason = None

    def suspend(self, reason: str, now: datetime) -> None:
        self._transition(SubscriptionStatus.SUSPENDED, now, "suspend")
        self.suspended_at = now
        self.suspension_reason = reason

    def cancel(self, reason: str, now: datetime) -> None:
        self._transition(SubscriptionStatus.CANCELLED, now, "cancel")
        self.cancelled_at = now
        self.cancellation_reason = reason

    def expire(self, now: datetime) -> None:
        self._transition(SubscriptionStatus.EXPIRED, now, "expire")
        self.expired_at = now
        self.grace_period_ends_at = None

    def enter_grace_period(self, ends_at: datetime, now: datetime) -> None:
        self._transition(SubscriptionStatus.GRACE_PERIOD, now, "enter grace period")
        self.grace_period_ends_at = ends_at

    def renew(self, new_expires_at: datetime, now: datetime, price: Money | None = None) -> None:
        if self.status == SubscriptionStatus.GRACE_PERIOD:
            self._transition(SubscriptionStatus.ACTIVE, now, "renew")
        self.expires_at = new_expires_at
        self.grace_period_ends_at = None
        self.renewed_at = now
        self.updated_at = now
        if price is not None:
            self.price = price

    def add_usage(self, usage: Usage) -> None:
        self.usages.append(usage)
        self.updated_at = usage.recorded_at

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def effective_data_limit(self) -> DataLimit:
        return self.data_limit if self.data_limit is not None else DataLimit.unlimited()

    def used_data(self) -> DataLimit:
        used = sum(u.amount for u in self.usages if u.kind == UsageKind.BYTES)
        return DataLimit.from_bytes(used)

    def remaining_data(self) -> DataLimit:
        return self.effective_data_limit.subtract(self.used_data())

    def has_exceeded_data_limit(self) -> bool:
        return self.used_data().exceeds(self.effective_data_limit)

    def data_usage_percentage(self) -> float:
        return self.used_data().percentage_of(self.effective_data_limit)

    def time_usage(self) -> int:
        """Connected minutes recorded so far."""
        return sum(u.amount for u in self.usages if u.kind == UsageKind.MINUTES)

    def feature_usage(self, feature: str) -> int:
        return sum(
            u.amount for u in self.usages if u.kind == UsageKind.FEATURE and u.feature == feature
        )

    def remaining_time(self, now: datetime) -> timedelta:
        return max(self.expires_at - now, timedelta(0))

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_expiring_soon(self, now: datetime, days: int = 7) -> bool:
        return not self.is_expired(now) and self.expires_at - now <= timedelta(days=days)

    def to_read_model(self, now: datetime) -> dict[str, Any]:
        """Read model consumed by messaging and panel provisioning."""
        remaining = self.remaining_time(now)
        return {
            "id": self.id,
            "user_id": self.user_id,
            "panel_id": self.panel_id,
            "type": self.type.value,
            "status": self.status.value,
            "status_display": self.status.display_name,
            "is_usable": self.status.is_usable,
            "expires_at": self.expires_at.isoformat(),
            "remaining_days": remaining.days,
            "remaining_seconds": int(remaining.total_seconds()),
            "data_limit": self.effective_data_limit.format(),
            "data_used": self.used_data().format(),
            "data_remaining": self.remaining_data().format(),
            "data_usage_percentage": round(self.data_usage_percentage(), 2),
            "device_limit": self.device_limit,
            "grace_period_ends_at": (
                self.grace_period_ends_at.isoformat() if self.grace_period_ends_at else None
            ),
        }


__all__ = ["Subscription", "Usage"]
