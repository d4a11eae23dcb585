"""
Payment gateway abstraction.

Adapters translate between the billing core and a provider API. Their
results are plain value objects; provider payloads never leak into the
payment aggregate beyond the ``gateway_response`` snapshot.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from ..config import BillingConfig, get_billing_config
from ..core.enums import PaymentStatus
from ..exceptions import UnsupportedOperationError
from ..money_utils import Money


class GatewayPayment(BaseModel):
    """Payment created on the provider side."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    payment_url: str | None = None
    pay_address: str | None = None
    pay_amount: str | None = None
    pay_currency: str | None = None
    qr_code: str | None = None
    expiration_estimate_date: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class GatewayVerification(BaseModel):
    """Authenticated provider notification."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    provider_payment_id: str | None = None
    provider_status: str
    status: PaymentStatus
    amount: Money | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class GatewayStatusSnapshot(BaseModel):
    """Provider-side payment status fetched on demand."""

    model_config = ConfigDict(frozen=True)

    provider_payment_id: str
    provider_status: str
    status: PaymentStatus
    amount: Money | None = None
    updated_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class GatewayRefund(BaseModel):
    """Refund issued by a provider."""

    model_config = ConfigDict(frozen=True)

    refund_id: str
    amount: Money
    status: PaymentStatus


class PaymentGateway(ABC):
    """Base class for payment provider adapters."""

    name: ClassVar[str]
    signature_header: ClassVar[str | None] = None
    STATUS_MAP: ClassVar[dict[str, PaymentStatus]] = {}

    def __init__(self, billing_config: BillingConfig | None = None) -> None:
        self.billing_config = billing_config or get_billing_config()

    @property
    @abstractmethod
    def is_enabled(self) -> bool:
        """True when the adapter has the credentials it needs."""

    @property
    @abstractmethod
    def supported_currencies(self) -> frozenset[str]:
        """Currencies accepted as the price currency."""

    @abstractmethod
    async def create_payment(
        self,
        order_id: str,
        amount: Money,
        description: str,
        callback_url: str,
        metadata: dict[str, Any] | None = None,
    ) -> GatewayPayment:
        """Create the provider-side payment for a local pending payment."""

    @abstractmethod
    async def verify_payment(
        self, payment_id: str | None, payload: bytes, signature: str | None
    ) -> GatewayVerification:
        """
        Authenticate and parse a provider notification.

        Raises:
            AuthenticationError: missing or mismatching signature
            ValidationError: payload is not a usable notification
        """

    @abstractmethod
    async def get_payment_status(self, payment_id: str) -> GatewayStatusSnapshot:
        """Fetch the current provider status of a payment."""

    async def refund_payment(
        self, payment_id: str, amount: Money | None = None, reason: str = ""
    ) -> GatewayRefund:
        raise UnsupportedOperationError(
            f"{self.name} does not support automatic refunds",
            provider=self.name,
            operation="refund",
        )

    def map_status(self, provider_status: str | None) -> PaymentStatus:
        """Map a provider status; anything unrecognised becomes UNKNOWN."""
        if not provider_status:
            return PaymentStatus.UNKNOWN
        return self.STATUS_MAP.get(provider_status.strip().lower(), PaymentStatus.UNKNOWN)

    def calculate_fee(self, amount: Money) -> Money:
        fee = self.billing_config.fee_for(self.name)
        fixed = self.billing_config.currency_table.money(fee.fixed, amount.currency)
        return amount.percentage(fee.percentage).add(fixed)

    def get_minimum_amount(self, currency: str | None = None) -> Money:
        minimum, _ = self.billing_config.amount_limits_for(
            currency or self.billing_config.default_currency
        )
        return minimum

    def get_maximum_amount(self, currency: str | None = None) -> Money:
        _, maximum = self.billing_config.amount_limits_for(
            currency or self.billing_config.default_currency
        )
        return maximum

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        return None


__all__ = [
    "GatewayPayment",
    "GatewayVerification",
    "GatewayStatusSnapshot",
    "GatewayRefund",
    "PaymentGateway",
]
