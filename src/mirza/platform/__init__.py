"""
Mirza Platform - billing core for the VPN subscription reseller bot.

This package provides:
- Payment and subscription aggregates with explicit state machines
- Domain services enforcing fees, refund limits, quotas and grace periods
- Payment gateway adapters (NowPayments) and webhook reconciliation
- Aggregate storage with per-aggregate locking

Telegram transport and VPN panel provisioning live outside this package and
consume the read models and effects emitted here.
"""

__version__ = "1.0.0"
__author__ = "Mirza Team"


def get_version() -> str:
    """Get platform version."""
    return __version__


__all__ = ["__version__", "get_version"]
