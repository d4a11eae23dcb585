"""Payment domain service and checkout orchestration."""

from .checkout import CheckoutResult, CheckoutService
from .service import PaymentService

__all__ = ["PaymentService", "CheckoutService", "CheckoutResult"]
