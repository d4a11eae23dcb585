"""Billing aggregates and transition result types."""

from .payment import Payment, Transaction
from .subscription import Subscription, Usage
from .transitions import Transition, TransitionCheck

__all__ = ["Payment", "Transaction", "Subscription", "Usage", "Transition", "TransitionCheck"]
