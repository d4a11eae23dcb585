"""
Tests for checkout orchestration against the NowPayments adapter.
"""

import json
from datetime import timedelta

import pytest

from mirza.platform.billing.core import PaymentStatus
from mirza.platform.billing.exceptions import (
    BillingConfigurationError,
    ExternalServiceError,
    GatewayNotFoundError,
    PaymentNotFoundError,
    ValidationError,
)
from mirza.platform.billing.money_utils import DEFAULT_CURRENCY_TABLE
from tests.billing.factories import usd

pytestmark = pytest.mark.unit


class TestStartCheckout:
    """Test creating a payment and its provider counterpart."""

    async def test_successful_checkout(self, checkout, store, nowpayments_api, sink):
        """Test the local payment stores the provider reference and pay details"""
        result = await checkout.start_checkout("user-1", usd("42.10"), "nowpayments")

        stored = await store.get_payment(result.payment.id)
        assert stored.status == PaymentStatus.PENDING
        assert stored.gateway_reference == "5077125051"
        assert stored.metadata["pay_address"] == "TXYZaddress"
        assert stored.metadata["pay_amount"] == {"amount": "442.05000000", "currency": "TRX"}
        assert result.gateway_payment.payment_url.startswith("https://nowpayments.io/")
        assert sink.events() == ["payment.created"]

        create_request = nowpayments_api.requests[-1]
        body = json.loads(create_request.content)
        assert body["order_id"] == result.payment.id
        assert body["price_currency"] == "usd"
        assert body["ipn_callback_url"] == "https://bot.example.com/billing/webhooks/nowpayments"

    async def test_payment_persisted_before_gateway_call(self, checkout, store, nowpayments_api):
        """Test a gateway timeout leaves a failed, retryable local payment"""
        nowpayments_api.timeout = True

        with pytest.raises(ExternalServiceError) as exc_info:
            await checkout.start_checkout("user-1", usd("42.10"), "nowpayments")

        assert exc_info.value.retryable
        [payment] = await store.list_payments()
        assert payment.status == PaymentStatus.FAILED
        assert payment.metadata["retryable"] is True
        assert payment.failure_reason.startswith("Gateway error")

    async def test_client_error_is_not_retryable(self, checkout, store, nowpayments_api):
        """Test 4xx responses mark the failed payment as not retryable"""
        nowpayments_api.fail_with = 400

        with pytest.raises(ExternalServiceError):
            await checkout.start_checkout("user-1", usd("42.10"), "nowpayments")

        [payment] = await store.list_payments()
        assert payment.metadata["retryable"] is False

    async def test_unknown_gateway(self, checkout, store):
        """Test unregistered gateways are rejected before anything is stored"""
        with pytest.raises(GatewayNotFoundError):
            await checkout.start_checkout("user-1", usd("42.10"), "stripe")

        assert await store.list_payments() == []

    async def test_invalid_amount(self, checkout, store):
        """Test validation runs before persistence"""
        with pytest.raises(ValidationError):
            await checkout.start_checkout("user-1", usd("0.10"), "nowpayments")

        assert await store.list_payments() == []

    async def test_unsupported_currency_is_rejected_up_front(
        self, checkout, store, nowpayments_api
    ):
        """Test a price the gateway cannot take never leaves a pending payment"""
        gbp = DEFAULT_CURRENCY_TABLE.money("20.00", "GBP")

        with pytest.raises(ValidationError) as exc_info:
            await checkout.start_checkout("user-1", gbp, "nowpayments")

        assert exc_info.value.status_code == 422
        assert await store.list_payments() == []
        assert nowpayments_api.requests == []

    @pytest.mark.parametrize(
        "error",
        [
            ValidationError("Provider rejected the order", field="order_id"),
            BillingConfigurationError("Gateway is not configured", config_key="api_key"),
        ],
    )
    async def test_gateway_refusal_fails_the_payment(
        self, checkout, store, nowpayments, monkeypatch, error
    ):
        """Test any billing error from the gateway call leaves no pending payment"""

        async def refuse(**kwargs):
            raise error

        monkeypatch.setattr(nowpayments, "create_payment", refuse)

        with pytest.raises(type(error)):
            await checkout.start_checkout("user-1", usd("42.10"), "nowpayments")

        [payment] = await store.list_payments()
        assert payment.status == PaymentStatus.FAILED
        assert payment.metadata["retryable"] is False
        assert error.message in payment.failure_reason


class TestRefreshAndExpiry:
    """Test polling and the expiry sweep."""

    async def test_refresh_status_completes_payment(
        self, checkout, store, nowpayments_api, ledger
    ):
        """Test polling a finished payment completes it and credits the balance"""
        result = await checkout.start_checkout("user-1", usd("42.10"), "nowpayments")
        nowpayments_api.payment_status = "finished"

        payment = await checkout.refresh_status(result.payment.id)

        assert payment.status == PaymentStatus.COMPLETED
        assert ledger.balance("user-1", "USD") == 4210

    async def test_refresh_status_still_waiting(self, checkout, nowpayments_api):
        """Test a waiting provider status changes nothing"""
        result = await checkout.start_checkout("user-1", usd("42.10"), "nowpayments")

        payment = await checkout.refresh_status(result.payment.id)

        assert payment.status == PaymentStatus.PENDING

    async def test_refresh_unknown_payment(self, checkout):
        """Test polling an unknown payment"""
        with pytest.raises(PaymentNotFoundError):
            await checkout.refresh_status("missing")

    async def test_expire_stale_payments(self, checkout, store, clock, sink):
        """Test pending payments past the window expire"""
        result = await checkout.start_checkout("user-1", usd("42.10"), "nowpayments")
        fresh = await checkout.start_checkout("user-2", usd("5.00"), "nowpayments")

        clock.advance(timedelta(minutes=20))
        assert await checkout.expire_stale_payments() == []

        clock.advance(timedelta(minutes=11))
        expired = await checkout.expire_stale_payments()

        assert set(expired) == {result.payment.id, fresh.payment.id}
        assert (await store.get_payment(result.payment.id)).status == PaymentStatus.EXPIRED
        assert sink.events().count("payment.expired") == 2
