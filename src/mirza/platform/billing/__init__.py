"""
Billing system module.

Provides billing capabilities for the VPN bot backend including:
- Exact, currency-aware money arithmetic
- Payment lifecycle with refunds, disputes and chargebacks
- Subscription lifecycle with data, time and feature usage
- Gateway adapters (NowPayments) and webhook reconciliation
- Effect dispatch to the balance ledger and notifications
"""

from mirza.platform.billing.exceptions import (
    AuthenticationError,
    BillingConfigurationError,
    BillingError,
    CurrencyMismatchError,
    EffectDeliveryError,
    ExternalServiceError,
    GatewayNotFoundError,
    InvalidStateError,
    NotFoundError,
    PaymentNotFoundError,
    PaymentStateError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    UnsupportedOperationError,
    ValidationError,
)
from mirza.platform.billing.money_utils import CurrencyTable, Money, create_money

__all__ = [
    "Money",
    "CurrencyTable",
    "create_money",
    "BillingError",
    "ValidationError",
    "CurrencyMismatchError",
    "InvalidStateError",
    "PaymentStateError",
    "SubscriptionStateError",
    "AuthenticationError",
    "NotFoundError",
    "PaymentNotFoundError",
    "SubscriptionNotFoundError",
    "GatewayNotFoundError",
    "ExternalServiceError",
    "UnsupportedOperationError",
    "BillingConfigurationError",
    "EffectDeliveryError",
]
