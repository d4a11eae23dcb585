"""
Billing system exceptions.

Custom exceptions for billing operations with clear error messages.
Provides comprehensive error handling with status codes, context, and recovery hints.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }

    def to_public_dict(self) -> dict[str, Any]:
        """Stable error code and message only, safe to show to end users."""
        return {"error_code": self.error_code, "message": self.message}


class ValidationError(BillingError):
    """Invalid input to a creation or update call."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        context = dict(context or {})
        if field:
            context["field"] = field
        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint=recovery_hint or "Correct the input and retry the request",
        )


class CurrencyMismatchError(ValidationError):
    """Arithmetic or comparison between different currencies."""

    def __init__(self, left: str, right: str) -> None:
        super().__init__(
            f"Currency mismatch: {left} != {right}",
            context={"left_currency": left, "right_currency": right},
            recovery_hint="Convert amounts to the same currency before combining them",
        )
        self.error_code = "CURRENCY_MISMATCH"


class InvalidStateError(BillingError):
    """Illegal state transition attempted."""

    def __init__(
        self,
        message: str,
        current_state: str,
        attempted_action: str,
        aggregate_id: str | None = None,
    ):
        context: dict[str, Any] = {
            "current_state": current_state,
            "attempted_action": attempted_action,
        }
        if aggregate_id:
            context["aggregate_id"] = aggregate_id
        super().__init__(
            message,
            "INVALID_STATE",
            status_code=409,
            context=context,
            recovery_hint=f"Cannot {attempted_action} from {current_state}. Check the current status first.",
        )
        self.current_state = current_state
        self.attempted_action = attempted_action


class PaymentStateError(InvalidStateError):
    """Invalid payment state transition error."""

    def __init__(
        self, message: str, current_state: str, attempted_action: str, payment_id: str | None = None
    ) -> None:
        super().__init__(message, current_state, attempted_action, aggregate_id=payment_id)
        self.error_code = "INVALID_PAYMENT_STATE"


class SubscriptionStateError(InvalidStateError):
    """Invalid subscription state transition error."""

    def __init__(
        self,
        message: str,
        current_state: str,
        attempted_action: str,
        subscription_id: str | None = None,
    ) -> None:
        super().__init__(message, current_state, attempted_action, aggregate_id=subscription_id)
        self.error_code = "INVALID_SUBSCRIPTION_STATE"


class AuthenticationError(BillingError):
    """Webhook signature verification failed."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        context = {}
        if provider:
            context["provider"] = provider

        super().__init__(
            message,
            "AUTHENTICATION_FAILED",
            status_code=401,
            context=context,
            recovery_hint="Check the gateway shared secret; the request was not processed",
        )


class NotFoundError(BillingError):
    """Unresolvable aggregate or resource reference."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint=recovery_hint or "Verify the identifier and ensure the resource exists",
        )


class PaymentNotFoundError(NotFoundError):
    """Payment not found error."""

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        context = {}
        if payment_id:
            context["payment_id"] = payment_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the payment ID; stale or duplicate webhooks reference unknown orders",
        )
        self.error_code = "PAYMENT_NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found error."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"


class GatewayNotFoundError(NotFoundError):
    """Payment gateway not registered or not enabled."""

    def __init__(self, message: str, gateway: str | None = None) -> None:
        context = {}
        if gateway:
            context["gateway"] = gateway

        super().__init__(
            message,
            context=context,
            recovery_hint="Enable the gateway in billing configuration",
        )
        self.error_code = "GATEWAY_NOT_FOUND"


class ExternalServiceError(BillingError):
    """Gateway timeout, transport failure or provider-side error."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retryable: bool = True,
        upstream_status: int | None = None,
    ):
        context: dict[str, Any] = {"retryable": retryable}
        if provider:
            context["provider"] = provider
        if upstream_status is not None:
            context["upstream_status"] = upstream_status

        super().__init__(
            message,
            "EXTERNAL_SERVICE_ERROR",
            status_code=502,
            context=context,
            recovery_hint="Retry with backoff" if retryable else "Check the request sent to the provider",
        )
        self.retryable = retryable


class UnsupportedOperationError(BillingError):
    """Gateway lacks a capability, e.g. automatic refunds."""

    def __init__(self, message: str, provider: str | None = None, operation: str | None = None):
        context = {}
        if provider:
            context["provider"] = provider
        if operation:
            context["operation"] = operation

        super().__init__(
            message,
            "UNSUPPORTED_OPERATION",
            status_code=501,
            context=context,
            recovery_hint="Perform the operation manually in the provider dashboard",
        )


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )


class EffectDeliveryError(BillingError):
    """Committed effects could not be delivered; they stay in the outbox."""

    def __init__(self, message: str, effect_ids: list[str] | None = None) -> None:
        super().__init__(
            message,
            "EFFECT_DELIVERY_FAILED",
            status_code=500,
            context={"effect_ids": list(effect_ids or [])},
            recovery_hint="Retry the request; delivery is idempotent",
        )
        self.effect_ids = list(effect_ids or [])


__all__ = [
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
