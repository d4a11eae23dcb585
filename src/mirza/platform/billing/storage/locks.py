"""
Per-aggregate asyncio locks.

One lock per aggregate key, created on first use and dropped again once no
task holds or waits for it, so the table only ever holds keys in use.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from ..core.interfaces import AggregateKind
from ..exceptions import BillingError

LockKey = tuple[AggregateKind, str]


def lock_timeout_error(kind: AggregateKind, aggregate_id: str) -> BillingError:
    return BillingError(
        f"Timed out waiting for {kind.value} {aggregate_id}",
        "LOCK_TIMEOUT",
        status_code=503,
        context={"aggregate_kind": kind.value, "aggregate_id": aggregate_id},
        recovery_hint="Retry the request",
    )


class AggregateLocks:
    """Reference-counted table of asyncio locks keyed by aggregate."""

    def __init__(self, timeout: float | None = 10.0) -> None:
        self.timeout = timeout
        self._locks: dict[LockKey, asyncio.Lock] = {}
        self._users: dict[LockKey, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: object) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(self, kind: AggregateKind, aggregate_id: str) -> AsyncIterator[None]:
        """
        Hold the aggregate's lock for the duration of the block.

        Raises:
            BillingError: LOCK_TIMEOUT when the lock is not acquired in time
        """
        key = (kind, aggregate_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except TimeoutError:
                raise lock_timeout_error(kind, aggregate_id)

            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


__all__ = ["AggregateLocks", "lock_timeout_error"]
