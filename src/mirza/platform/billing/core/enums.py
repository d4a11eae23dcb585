"""
Billing enumerations.

Closed status sets for payments and subscriptions, their transition tables,
and the subscription type catalogue (device caps, base prices, data quotas).
"""

from decimal import Decimal
from enum import Enum

from ..exceptions import ValidationError


class PaymentStatus(str, Enum):
    """Payment status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    EXPIRED = "expired"
    DISPUTED = "disputed"
    CHARGEBACK = "chargeback"
    # Only produced by gateway status mapping, never stored on a payment
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value: str) -> "PaymentStatus":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid payment status: {value}", field="status")

    def allowed_transitions(self) -> frozenset["PaymentStatus"]:
        return _PAYMENT_TRANSITIONS.get(self, frozenset())

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        return target in self.allowed_transitions()

    @property
    def is_final(self) -> bool:
        return self in _PAYMENT_FINAL

    @property
    def is_successful(self) -> bool:
        return self == PaymentStatus.COMPLETED

    @property
    def is_unsuccessful(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED)

    @property
    def is_refundable(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)

    @property
    def requires_action(self) -> bool:
        return self in (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.DISPUTED)

    @property
    def can_be_processed(self) -> bool:
        return self == PaymentStatus.PENDING

    @property
    def can_be_completed(self) -> bool:
        return self in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

    @property
    def can_be_failed(self) -> bool:
        return self in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

    @property
    def can_be_cancelled(self) -> bool:
        return self in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

    @property
    def can_be_refunded(self) -> bool:
        return self.is_refundable

    @property
    def can_be_disputed(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)

    @property
    def can_be_expired(self) -> bool:
        return self == PaymentStatus.PENDING

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.PROCESSING,
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.EXPIRED,
        }
    ),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset(
        {
            PaymentStatus.REFUNDED,
            PaymentStatus.PARTIALLY_REFUNDED,
            PaymentStatus.DISPUTED,
            PaymentStatus.CHARGEBACK,
        }
    ),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(
        {
            PaymentStatus.REFUNDED,
            PaymentStatus.PARTIALLY_REFUNDED,
            PaymentStatus.DISPUTED,
            PaymentStatus.CHARGEBACK,
        }
    ),
    PaymentStatus.DISPUTED: frozenset({PaymentStatus.COMPLETED, PaymentStatus.CHARGEBACK}),
}

_PAYMENT_FINAL = frozenset(
    {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.REFUNDED,
        PaymentStatus.EXPIRED,
        PaymentStatus.CHARGEBACK,
    }
)


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "SubscriptionStatus":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid subscription status: {value}", field="status")

    def allowed_transitions(self) -> frozenset["SubscriptionStatus"]:
        return _SUBSCRIPTION_TRANSITIONS.get(self, frozenset())

    def can_transition_to(self, target: "SubscriptionStatus") -> bool:
        return target in self.allowed_transitions()

    @property
    def is_final(self) -> bool:
        return self in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)

    @property
    def is_usable(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD)

    @property
    def can_be_activated(self) -> bool:
        return self in (SubscriptionStatus.PENDING, SubscriptionStatus.SUSPENDED)

    @property
    def can_be_suspended(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD)

    @property
    def can_be_cancelled(self) -> bool:
        return not self.is_final

    @property
    def can_be_expired(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD)

    @property
    def can_enter_grace_period(self) -> bool:
        return self == SubscriptionStatus.ACTIVE

    @property
    def can_be_renewed(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD)

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


_SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.SUSPENDED,
            SubscriptionStatus.GRACE_PERIOD,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.CANCELLED,
        }
    ),
    SubscriptionStatus.GRACE_PERIOD: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.SUSPENDED,
            SubscriptionStatus.CANCELLED,
        }
    ),
    SubscriptionStatus.SUSPENDED: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}
    ),
}


class SubscriptionType(str, Enum):
    """Subscription plan type."""

    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"
    TRIAL = "trial"
    CUSTOM = "custom"
    UNLIMITED = "unlimited"
    LIMITED = "limited"
    FAMILY = "family"
    STUDENT = "student"
    BUSINESS = "business"

    @classmethod
    def from_string(cls, value: str) -> "SubscriptionType":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid subscription type: {value}", field="type")

    @property
    def is_free(self) -> bool:
        return self == SubscriptionType.TRIAL

    @property
    def is_paid(self) -> bool:
        return not self.is_free

    @property
    def max_devices(self) -> int | None:
        """Device cap for the type, None when uncapped."""
        return _MAX_DEVICES.get(self)

    @property
    def base_price(self) -> Decimal:
        """Base renewal price in USD."""
        return _BASE_PRICES[self]

    @property
    def default_data_limit_gb(self) -> int | None:
        """Default data quota in GB, None for unlimited."""
        return _DEFAULT_DATA_LIMITS_GB.get(self)

    @property
    def display_name(self) -> str:
        return self.value.title()


_MAX_DEVICES: dict[SubscriptionType, int] = {
    SubscriptionType.BASIC: 1,
    SubscriptionType.TRIAL: 1,
    SubscriptionType.STUDENT: 2,
    SubscriptionType.LIMITED: 3,
    SubscriptionType.PREMIUM: 5,
    SubscriptionType.FAMILY: 10,
    SubscriptionType.BUSINESS: 25,
}

_BASE_PRICES: dict[SubscriptionType, Decimal] = {
    SubscriptionType.BASIC: Decimal("10.00"),
    SubscriptionType.PREMIUM: Decimal("25.00"),
    SubscriptionType.ENTERPRISE: Decimal("50.00"),
    SubscriptionType.TRIAL: Decimal("0.00"),
    SubscriptionType.CUSTOM: Decimal("15.00"),
    SubscriptionType.UNLIMITED: Decimal("100.00"),
    SubscriptionType.LIMITED: Decimal("5.00"),
    SubscriptionType.FAMILY: Decimal("40.00"),
    SubscriptionType.STUDENT: Decimal("8.00"),
    SubscriptionType.BUSINESS: Decimal("75.00"),
}

_DEFAULT_DATA_LIMITS_GB: dict[SubscriptionType, int] = {
    SubscriptionType.BASIC: 10,
    SubscriptionType.TRIAL: 5,
    SubscriptionType.STUDENT: 20,
    SubscriptionType.LIMITED: 15,
}


class TransactionType(str, Enum):
    """Payment transaction type."""

    CHARGE = "charge"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    CHARGEBACK = "chargeback"


class TransactionStatus(str, Enum):
    """Payment transaction status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class UsageKind(str, Enum):
    """What a subscription usage record measures."""

    BYTES = "bytes"
    MINUTES = "minutes"
    FEATURE = "feature"


__all__ = [
    "PaymentStatus",
    "SubscriptionStatus",
    "SubscriptionType",
    "TransactionType",
    "TransactionStatus",
    "UsageKind",
]
