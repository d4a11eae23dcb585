"""
Tests for billing configuration.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from mirza.platform.billing.config import (
    AmountLimits,
    BillingConfig,
    get_billing_config,
    set_billing_config,
)
from mirza.platform.settings import Settings


@pytest.mark.unit
class TestBillingConfig:
    """Test BillingConfig defaults and lookups."""

    def test_defaults(self):
        """Test default windows"""
        config = BillingConfig()

        assert config.default_currency == "USD"
        assert config.payment_expiry == timedelta(minutes=30)
        assert config.grace_period == timedelta(days=3)

    def test_gateway_allow_list(self):
        """Test gateway names are matched case-insensitively"""
        config = BillingConfig()

        assert config.is_gateway_allowed("NowPayments")
        assert not config.is_gateway_allowed("bitpay")

    def test_fee_lookup_falls_back(self):
        """Test unknown gateways use the default fee"""
        config = BillingConfig()

        assert config.fee_for("paypal").fixed == Decimal("0.30")
        assert config.fee_for("unknown").percentage == Decimal("2.0")

    def test_amount_limits_per_currency(self):
        """Test per-currency limits override the default"""
        config = BillingConfig(
            currency_amount_limits={
                "IRR": AmountLimits(minimum=Decimal("10000"), maximum=Decimal("500000000"))
            }
        )

        minimum, maximum = config.amount_limits_for("IRR")
        assert minimum.amount == Decimal("10000")
        assert maximum.currency == "IRR"

        usd_min, _ = config.amount_limits_for("USD")
        assert usd_min.amount == Decimal("1.00")

    def test_config_is_immutable(self):
        """Test configuration cannot be mutated after load"""
        config = BillingConfig()

        with pytest.raises(Exception):
            config.grace_period_days = 10  # type: ignore[misc]

    def test_from_settings(self):
        """Test building from platform settings"""
        settings = Settings(
            billing={
                "default_currency": "eur",
                "allowed_gateways": ["NowPayments", "stripe"],
                "min_payment_amount": "2.50",
                "grace_period_days": 5,
            }
        )

        config = BillingConfig.from_settings(settings)

        assert config.default_currency == "EUR"
        assert config.allowed_gateways == ("nowpayments", "stripe")
        assert config.default_amount_limits.minimum == Decimal("2.50")
        assert config.grace_period_days == 5

    def test_global_override(self):
        """Test the process-wide config can be replaced"""
        custom = BillingConfig(payment_expiry_minutes=5)
        set_billing_config(custom)

        assert get_billing_config() is custom
