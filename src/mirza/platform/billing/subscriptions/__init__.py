"""Subscription domain service and lifecycle jobs."""

from .lifecycle import LifecycleReport, SubscriptionLifecycle
from .service import SubscriptionService

__all__ = ["SubscriptionService", "SubscriptionLifecycle", "LifecycleReport"]
