"""
Billing test fixtures.

Provides a fixed clock, the default billing configuration, in-memory
collaborators and a scripted NowPayments API.
"""

from datetime import timedelta
from typing import Any

import httpx
import pytest

from mirza.platform.billing.config import BillingConfig
from mirza.platform.billing.core import DataLimit, FixedClock, SubscriptionType
from mirza.platform.billing.events import EffectDispatcher
from mirza.platform.billing.gateways import GatewayRegistry, NowPaymentsGateway
from mirza.platform.billing.payments import CheckoutService, PaymentService
from mirza.platform.billing.storage import (
    InMemoryAggregateStore,
    InMemoryBalanceLedger,
    RecordingNotificationSink,
)
from mirza.platform.billing.subscriptions import SubscriptionLifecycle, SubscriptionService
from mirza.platform.billing.webhooks import WebhookReconciler
from tests.billing.factories import API_KEY, IPN_SECRET, NOW, FakeNowPaymentsAPI, usd


@pytest.fixture
def clock():
    """Clock frozen at a known instant."""
    return FixedClock(NOW)


@pytest.fixture
def billing_config():
    """Default billing configuration."""
    return BillingConfig()


@pytest.fixture
def payment_service(billing_config, clock):
    return PaymentService(config=billing_config, clock=clock)


@pytest.fixture
def subscription_service(billing_config, clock):
    return SubscriptionService(config=billing_config, clock=clock)


@pytest.fixture
def store():
    return InMemoryAggregateStore(lock_timeout=1.0)


@pytest.fixture
def ledger():
    return InMemoryBalanceLedger()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def dispatcher(ledger, sink):
    return EffectDispatcher(ledger, sink)


@pytest.fixture
def nowpayments_api():
    return FakeNowPaymentsAPI()


@pytest.fixture
def nowpayments(nowpayments_api, billing_config):
    """NowPayments adapter wired to the scripted API."""
    return NowPaymentsGateway(
        api_key=API_KEY,
        ipn_secret=IPN_SECRET,
        public_base_url="https://bot.example.com",
        billing_config=billing_config,
        transport=httpx.MockTransport(nowpayments_api.handler),
    )


@pytest.fixture
def gateways(nowpayments, billing_config):
    return GatewayRegistry([nowpayments], billing_config=billing_config)


@pytest.fixture
def checkout(store, gateways, payment_service, dispatcher):
    return CheckoutService(
        store,
        gateways,
        payment_service,
        dispatcher=dispatcher,
        callback_base_url="https://bot.example.com",
    )


@pytest.fixture
def reconciler(store, gateways, payment_service, dispatcher):
    return WebhookReconciler(store, gateways, payment_service, dispatcher=dispatcher)


@pytest.fixture
def lifecycle(store, subscription_service, dispatcher):
    return SubscriptionLifecycle(store, subscription_service, dispatcher=dispatcher)


@pytest.fixture
def pending_payment(payment_service):
    """Pending 42.10 USD NowPayments payment."""
    return payment_service.create_payment("user-1", usd("42.10"), "nowpayments").aggregate


@pytest.fixture
def completed_payment(payment_service, pending_payment):
    return payment_service.complete_payment(pending_payment, "np-tx-1").aggregate


@pytest.fixture
def make_subscription(subscription_service, clock):
    """Build an active subscription; basic, 30 days, 5 GB unless overridden."""

    def _build(**overrides: Any):
        params: dict[str, Any] = {
            "user_id": "user-1",
            "panel_id": "panel-1",
            "type": SubscriptionType.BASIC,
            "price": usd("10.00"),
            "starts_at": clock.now(),
            "expires_at": clock.now() + timedelta(days=30),
            "data_limit": DataLimit.from_gigabytes(5),
            "device_limit": 1,
        }
        params.update(overrides)
        created = subscription_service.create_subscription(**params).aggregate
        return subscription_service.activate_subscription(created).aggregate

    return _build
