"""Gateway webhook intake and reconciliation."""

from .reconciliation import ReconciliationOutcome, ReconciliationResult, WebhookReconciler
from .router import get_webhook_reconciler, router

__all__ = [
    "WebhookReconciler",
    "ReconciliationResult",
    "ReconciliationOutcome",
    "router",
    "get_webhook_reconciler",
]
