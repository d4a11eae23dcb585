"""Aggregate persistence: in-memory and SQLAlchemy implementations."""

from .memory import InMemoryAggregateStore, InMemoryBalanceLedger, RecordingNotificationSink
from .sql import SQLAggregateStore, SQLBalanceLedger

__all__ = [
    "InMemoryAggregateStore",
    "InMemoryBalanceLedger",
    "RecordingNotificationSink",
    "SQLAggregateStore",
    "SQLBalanceLedger",
]
