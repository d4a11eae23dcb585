"""
Billing module configuration
"""

from datetime import timedelta
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .money_utils import CurrencyTable, Money


class GatewayFee(BaseModel):
    """Gateway fee: percentage of the amount plus a fixed part"""

    model_config = ConfigDict(frozen=True)

    percentage: Decimal = Field(Decimal("0"), ge=0, description="Percentage fee")
    fixed: Decimal = Field(
        Decimal("0"), ge=0, description="Fixed fee, expressed in the payment currency"
    )


class AmountLimits(BaseModel):
    """Accepted payment amount range for one currency"""

    model_config = ConfigDict(frozen=True)

    minimum: Decimal = Field(Decimal("1.00"), gt=0)
    maximum: Decimal = Field(Decimal("10000.00"), gt=0)


def _default_gateway_fees() -> dict[str, GatewayFee]:
    """Create default gateway fee table"""
    return {
        "zarinpal": GatewayFee(percentage=Decimal("1.5"), fixed=Decimal("0")),
        "paypal": GatewayFee(percentage=Decimal("2.9"), fixed=Decimal("0.30")),
        "stripe": GatewayFee(percentage=Decimal("2.9"), fixed=Decimal("0.30")),
        "nowpayments": GatewayFee(percentage=Decimal("0.5"), fixed=Decimal("0")),
        "aqayepardakht": GatewayFee(percentage=Decimal("2.0"), fixed=Decimal("0")),
        "crypto": GatewayFee(percentage=Decimal("1.0"), fixed=Decimal("0")),
    }


DEFAULT_ALLOWED_GATEWAYS: tuple[str, ...] = (
    "zarinpal",
    "paypal",
    "stripe",
    "nowpayments",
    "aqayepardakht",
    "crypto",
)


class BillingConfig(BaseModel):
    """Main billing configuration, immutable once loaded"""

    model_config = ConfigDict(frozen=True)

    default_currency: str = Field("USD", description="Default currency code")
    currency_table: CurrencyTable = Field(default_factory=CurrencyTable)

    # Gateways
    allowed_gateways: tuple[str, ...] = Field(DEFAULT_ALLOWED_GATEWAYS)
    gateway_fees: dict[str, GatewayFee] = Field(default_factory=_default_gateway_fees)
    default_fee: GatewayFee = Field(
        default_factory=lambda: GatewayFee(percentage=Decimal("2.0"), fixed=Decimal("0")),
        description="Fee applied to gateways missing from the fee table",
    )

    # Amount limits (in the payment's own currency unless overridden)
    default_amount_limits: AmountLimits = Field(default_factory=AmountLimits)
    currency_amount_limits: dict[str, AmountLimits] = Field(default_factory=dict)

    # Lifecycle windows
    payment_expiry_minutes: int = Field(30, gt=0, description="Pending payment lifetime")
    grace_period_days: int = Field(3, ge=0, description="Grace period after expiry")
    renewal_reminder_days: int = Field(7, ge=0, description="Expiring-soon window")

    # Subscription bounds
    min_subscription_days: int = Field(1, gt=0)
    max_subscription_years: int = Field(5, gt=0)
    max_renewal_years: int = Field(5, gt=0)
    max_device_limit: int = Field(100, gt=0)

    @property
    def payment_expiry(self) -> timedelta:
        return timedelta(minutes=self.payment_expiry_minutes)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    def is_gateway_allowed(self, gateway: str) -> bool:
        return gateway.lower() in self.allowed_gateways

    def fee_for(self, gateway: str) -> GatewayFee:
        return self.gateway_fees.get(gateway.lower(), self.default_fee)

    def amount_limits_for(self, currency: str) -> tuple[Money, Money]:
        """Minimum and maximum accepted payment in ``currency``."""
        limits = self.currency_amount_limits.get(currency.upper(), self.default_amount_limits)
        return (
            self.currency_table.money(limits.minimum, currency),
            self.currency_table.money(limits.maximum, currency),
        )

    @classmethod
    def from_settings(cls, settings: Any = None) -> "BillingConfig":
        """Create configuration from the platform settings"""
        if settings is None:
            from mirza.platform.settings import get_settings

            settings = get_settings()

        billing = settings.billing
        return cls(
            default_currency=billing.default_currency.upper(),
            allowed_gateways=tuple(g.lower() for g in billing.allowed_gateways),
            default_amount_limits=AmountLimits(
                minimum=Decimal(billing.min_payment_amount),
                maximum=Decimal(billing.max_payment_amount),
            ),
            payment_expiry_minutes=billing.payment_expiry_minutes,
            grace_period_days=billing.grace_period_days,
            renewal_reminder_days=billing.renewal_reminder_days,
        )


# Global config instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get billing configuration singleton"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_settings()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set billing configuration (useful for testing)"""
    global _billing_config
    _billing_config = config


__all__ = [
    "GatewayFee",
    "AmountLimits",
    "BillingConfig",
    "DEFAULT_ALLOWED_GATEWAYS",
    "get_billing_config",
    "set_billing_config",
]
