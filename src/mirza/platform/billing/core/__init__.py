"""Billing core: enumerations, value objects and collaborator protocols."""

from .data_limit import DataLimit
from .enums import (
    PaymentStatus,
    SubscriptionStatus,
    SubscriptionType,
    TransactionStatus,
    TransactionType,
    UsageKind,
)
from .interfaces import (
    AggregateKind,
    AggregateStore,
    BalanceLedger,
    Clock,
    FixedClock,
    LockedAggregate,
    NotificationSink,
    SystemClock,
)

__all__ = [
    "DataLimit",
    "PaymentStatus",
    "SubscriptionStatus",
    "SubscriptionType",
    "TransactionStatus",
    "TransactionType",
    "UsageKind",
    "AggregateKind",
    "AggregateStore",
    "BalanceLedger",
    "Clock",
    "FixedClock",
    "LockedAggregate",
    "NotificationSink",
    "SystemClock",
]
