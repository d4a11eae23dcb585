"""Payment gateway adapters."""

from .base import (
    GatewayPayment,
    GatewayRefund,
    GatewayStatusSnapshot,
    GatewayVerification,
    PaymentGateway,
)
from .nowpayments import NowPaymentsGateway
from .registry import GatewayRegistry

__all__ = [
    "GatewayPayment",
    "GatewayRefund",
    "GatewayStatusSnapshot",
    "GatewayVerification",
    "PaymentGateway",
    "NowPaymentsGateway",
    "GatewayRegistry",
]
