"""
Gateway webhook router.

One endpoint per gateway name. The raw request body is passed through
untouched so signatures are checked against exactly what the gateway sent.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from ..exceptions import BillingError
from .reconciliation import WebhookReconciler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["Billing Webhooks"])


def get_webhook_reconciler(request: Request) -> WebhookReconciler:
    """Dependency to get the WebhookReconciler installed on the app."""
    reconciler = getattr(request.app.state, "webhook_reconciler", None)
    if reconciler is None:
        raise RuntimeError("Billing is not installed on this application")
    return reconciler


@router.post("/{gateway}")
async def receive_webhook(
    gateway: str,
    request: Request,
    reconciler: Annotated[WebhookReconciler, Depends(get_webhook_reconciler)],
) -> JSONResponse:
    """
    Receive a payment notification from a gateway.

    Responds 200 when the notification was applied or was a duplicate,
    202 when it was accepted but deferred, and the error's status code
    otherwise (401 bad signature, 404 unknown gateway or payment,
    409 illegal transition, 422 amount mismatch, 500 when a committed
    change could not be delivered and the gateway should retry).
    """
    body = await request.body()
    try:
        header = reconciler.signature_header(gateway)
        signature = request.headers.get(header) if header else None
        result = await reconciler.handle(gateway, body, signature)
    except BillingError as e:
        if e.status_code >= 500:
            logger.error("billing.webhook.failed", gateway=gateway, error_code=e.error_code)
        return JSONResponse(
            status_code=e.status_code,
            content={"status": "failed", **e.to_public_dict()},
        )
    except Exception:
        logger.exception("billing.webhook.unhandled_error", gateway=gateway)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": "failed",
                "error_code": "INTERNAL_ERROR",
                "message": "Webhook could not be processed",
            },
        )

    return JSONResponse(status_code=result.http_status, content=result.to_response())


__all__ = ["router", "get_webhook_reconciler"]
