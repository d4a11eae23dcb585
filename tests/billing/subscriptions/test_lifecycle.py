"""
Tests for the subscription lifecycle sweep and locked usage entry points.
"""

import asyncio
from datetime import timedelta

import pytest

from mirza.platform.billing.core import DataLimit, SubscriptionStatus
from mirza.platform.billing.exceptions import SubscriptionNotFoundError, SubscriptionStateError

pytestmark = pytest.mark.unit


async def _stored(store, make_subscription, **overrides):
    subscription = make_subscription(**overrides)
    await store.add_subscription(subscription)
    return subscription


class TestSweep:
    """Test time-driven transitions."""

    async def test_nothing_due(self, lifecycle, store, make_subscription):
        """Test current subscriptions are left alone"""
        await _stored(store, make_subscription)

        report = await lifecycle.sweep()

        assert report.total == 0

    async def test_lapsed_subscription_enters_grace_then_expires(
        self, lifecycle, store, make_subscription, clock, sink
    ):
        """Test active -> grace period -> expired"""
        subscription = await _stored(store, make_subscription)

        clock.advance(timedelta(days=30, minutes=1))
        report = await lifecycle.sweep()

        assert report.entered_grace_period == [subscription.id]
        in_grace = await store.get_subscription(subscription.id)
        assert in_grace.status == SubscriptionStatus.GRACE_PERIOD
        assert in_grace.grace_period_ends_at == subscription.expires_at + timedelta(days=3)

        clock.advance(timedelta(days=1))
        assert (await lifecycle.sweep()).total == 0

        clock.advance(timedelta(days=2))
        report = await lifecycle.sweep()

        assert report.expired == [subscription.id]
        assert (await store.get_subscription(subscription.id)).status == SubscriptionStatus.EXPIRED
        assert sink.events() == ["subscription.grace_period", "subscription.expired"]

    async def test_long_lapsed_subscription_expires_directly(
        self, lifecycle, store, make_subscription, clock
    ):
        """Test a subscription past its whole grace window expires in one sweep"""
        subscription = await _stored(store, make_subscription)

        clock.advance(timedelta(days=40))
        report = await lifecycle.sweep()

        assert report.expired == [subscription.id]
        assert report.entered_grace_period == []

    async def test_candidate_renewed_before_lock_is_skipped(
        self, lifecycle, store, make_subscription, clock, sink, monkeypatch
    ):
        """Test a stale lapsed candidate renewed in the meantime is left untouched"""
        subscription = await _stored(store, make_subscription)
        clock.advance(timedelta(days=30, minutes=1))
        stale = await store.get_subscription(subscription.id)
        renewed = await lifecycle.renew(subscription.id, clock.now() + timedelta(days=30))

        async def stale_listing(statuses=None):
            return [stale]

        monkeypatch.setattr(store, "list_subscriptions", stale_listing)
        report = await lifecycle.sweep()

        assert report.total == 0
        stored = await store.get_subscription(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.expires_at == renewed.expires_at
        assert sink.events() == ["subscription.renewed"]

    async def test_expiring_soon(self, lifecycle, store, make_subscription, clock):
        """Test the renewal reminder window"""
        soon = await _stored(store, make_subscription, expires_at=clock.now() + timedelta(days=3))
        await _stored(store, make_subscription)

        assert [s.id for s in await lifecycle.expiring_soon()] == [soon.id]


class TestLockedOperations:
    """Test usage and renewal through the store lock."""

    async def test_concurrent_usage_is_serialised(self, lifecycle, store, make_subscription, sink):
        """Test concurrent panel reports neither lose usage nor double-suspend"""
        subscription = await _stored(store, make_subscription)
        two_gb = DataLimit.from_gigabytes(2)

        results = await asyncio.gather(
            *(lifecycle.record_data_usage(subscription.id, two_gb, "panel") for _ in range(3)),
            return_exceptions=True,
        )

        stored = await store.get_subscription(subscription.id)
        assert len(stored.usages) == 3
        assert stored.status == SubscriptionStatus.SUSPENDED
        assert sum(1 for r in results if isinstance(r, Exception)) == 0
        assert sink.events().count("subscription.suspended") == 1

    async def test_usage_after_suspension_is_rejected(self, lifecycle, store, make_subscription):
        """Test a fourth report after suspension is refused"""
        subscription = await _stored(
            store, make_subscription, data_limit=DataLimit.from_gigabytes(1)
        )
        await lifecycle.record_data_usage(subscription.id, DataLimit.from_gigabytes(1), "panel")

        with pytest.raises(SubscriptionStateError) as exc_info:
            await lifecycle.record_data_usage(subscription.id, DataLimit.from_gigabytes(1), "panel")

        assert exc_info.value.status_code == 409
        assert len((await store.get_subscription(subscription.id)).usages) == 1

    async def test_renew(self, lifecycle, store, make_subscription, sink):
        """Test renewal through the lifecycle"""
        subscription = await _stored(store, make_subscription)
        new_expiry = subscription.expires_at + timedelta(days=30)

        renewed = await lifecycle.renew(subscription.id, new_expiry)

        assert renewed.expires_at == new_expiry
        assert (await store.get_subscription(subscription.id)).expires_at == new_expiry
        assert sink.events() == ["subscription.renewed"]

    async def test_unknown_subscription(self, lifecycle):
        """Test locking an unknown subscription"""
        with pytest.raises(SubscriptionNotFoundError):
            await lifecycle.record_data_usage("missing", DataLimit.from_gigabytes(1), "panel")
