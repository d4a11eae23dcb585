"""
Tests for wiring billing into an application.
"""

from datetime import timedelta

import pytest
import structlog
from fastapi import FastAPI

from mirza.platform.billing.core import PaymentStatus
from mirza.platform.billing.integration import BillingIntegration, LoggingNotificationSink
from tests.billing.factories import usd

pytestmark = pytest.mark.unit


@pytest.fixture
def billing(store, ledger, sink, gateways, clock):
    return BillingIntegration.create(
        store=store, ledger=ledger, notifier=sink, gateways=gateways, clock=clock
    )


class TestBillingIntegration:
    """Test BillingIntegration."""

    def test_components_share_store_and_clock(self, billing, store, clock):
        """Test every service works on the same store and clock"""
        assert billing.checkout.store is store
        assert billing.lifecycle.store is store
        assert billing.webhooks.store is store
        assert billing.payments.clock is clock
        assert billing.subscriptions.clock is clock
        assert billing.checkout.callback_url("nowpayments") == (
            "https://example.com/billing/webhooks/nowpayments"
        )

    def test_install(self, billing):
        """Test install exposes billing and mounts the webhook route"""
        app = FastAPI()

        billing.install(app)

        assert app.state.billing is billing
        assert app.state.webhook_reconciler is billing.webhooks
        assert structlog.is_configured()
        assert "/billing/webhooks/{gateway}" in {route.path for route in app.routes}

    def test_install_can_leave_logging_to_the_host(self, billing):
        """Test install does not touch logging when the host configures it"""
        billing.install(FastAPI(), configure_logging=False)

        assert not structlog.is_configured()

    async def test_run_maintenance(self, billing, store, ledger, payment_service, clock):
        """Test one pass expires stale payments and relays undelivered effects"""
        stale = payment_service.create_payment("user-1", usd("5.00"), "nowpayments").aggregate
        await store.add_payment(stale)
        pending = payment_service.create_payment("user-2", usd("42.10"), "nowpayments")
        completed = payment_service.complete_payment(pending.aggregate, "np-tx-9")
        await store.add_payment(completed.aggregate, completed.effects)
        clock.advance(timedelta(minutes=31))

        report = await billing.run_maintenance()

        assert report.expired_payments == [stale.id]
        assert report.relayed_effects == 1
        assert report.lifecycle.total == 0
        assert (await store.get_payment(stale.id)).status == PaymentStatus.EXPIRED
        assert ledger.balance("user-2", "USD") == 4210
        assert await store.pending_effects() == []

    async def test_checkout_end_to_end(self, billing, ledger, sink, nowpayments_api):
        """Test checkout then status refresh credits the balance"""
        result = await billing.checkout.start_checkout("user-1", usd("42.10"), "nowpayments")
        nowpayments_api.payment_status = "finished"

        payment = await billing.checkout.refresh_status(result.payment.id)

        assert payment.status.value == "completed"
        assert ledger.balance("user-1", "USD") == 4210
        assert sink.events() == ["payment.created", "payment.completed"]

    async def test_close(self, billing, nowpayments):
        """Test closing billing closes gateway clients"""
        await nowpayments.get_exchange_rate("USD", "TRX")

        await billing.close()

        assert nowpayments._client is None


class TestLoggingNotificationSink:
    """Test the default notification sink."""

    async def test_notify(self):
        """Test notifications are accepted without a messaging backend"""
        await LoggingNotificationSink().notify("user-1", "payment.completed", {"amount": "1"})
