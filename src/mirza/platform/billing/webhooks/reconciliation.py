"""
Webhook reconciliation.

Turns an authenticated gateway notification into at most one payment
state change. Duplicate and out-of-order deliveries are absorbed: the
second delivery of the same status finds the payment already there and
does nothing.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from mirza.platform.logging import log_security_event

from ..core.enums import PaymentStatus
from ..core.interfaces import AggregateKind, AggregateStore
from ..domain.payment import Payment
from ..events import Effect, EffectDispatcher
from ..exceptions import (
    AuthenticationError,
    EffectDeliveryError,
    InvalidStateError,
    PaymentNotFoundError,
    ValidationError,
)
from ..gateways.base import GatewayVerification
from ..gateways.registry import GatewayRegistry
from ..payments.service import PaymentService

logger = structlog.get_logger(__name__)


class ReconciliationOutcome(str, Enum):
    """What a webhook delivery did to the payment."""

    APPLIED = "applied"
    NOOP = "noop"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one webhook delivery."""

    outcome: ReconciliationOutcome
    payment_id: str
    payment_status: PaymentStatus
    provider_status: str
    http_status: int = 200
    effects: tuple[Effect, ...] = field(default_factory=tuple)

    def to_response(self) -> dict[str, Any]:
        return {
            "status": self.outcome.value,
            "payment_id": self.payment_id,
            "payment_status": self.payment_status.value,
        }


class WebhookReconciler:
    """
    Apply gateway webhooks to payments.

    Steps:
    1. Verify the signature (AuthenticationError, nothing changes)
    2. Resolve the payment named by the notification
    3. Map the provider status; pending and unknown statuses are deferred
    4. Under the payment lock, apply the status through PaymentService
    5. Save the payment with its effects, then dispatch the effects; a
       failed dispatch fails the webhook so the provider retries, and the
       retry redelivers what is still pending in the outbox
    """

    def __init__(
        self,
        store: AggregateStore,
        gateways: GatewayRegistry,
        payment_service: PaymentService,
        dispatcher: EffectDispatcher | None = None,
    ) -> None:
        self.store = store
        self.gateways = gateways
        self.payment_service = payment_service
        self.dispatcher = dispatcher

    def signature_header(self, gateway: str) -> str | None:
        """Request header carrying the gateway's signature."""
        return self.gateways.get(gateway).signature_header

    async def handle(
        self, gateway: str, body: bytes, signature: str | None
    ) -> ReconciliationResult:
        """
        Reconcile one webhook delivery.

        Raises:
            GatewayNotFoundError: gateway unknown or disabled
            AuthenticationError: signature missing or invalid
            PaymentNotFoundError: notification names an unknown payment
            ValidationError: notified amount differs from the payment amount
            InvalidStateError: reported status is not reachable from the
                payment's current status
            EffectDeliveryError: the payment changed (or had changed on an
                earlier delivery) but its effects are still undelivered
        """
        adapter = self.gateways.get(gateway)

        try:
            verification = await adapter.verify_payment(None, body, signature)
        except AuthenticationError as e:
            log_security_event(
                "billing.webhook.signature_rejected",
                gateway=adapter.name,
                reason=e.message,
            )
            raise

        log = logger.bind(
            gateway=adapter.name,
            payment_id=verification.order_id,
            provider_status=verification.provider_status,
        )

        payment = await self.store.get_payment(verification.order_id)
        if payment is None:
            log.warning("billing.webhook.unknown_payment")
            raise PaymentNotFoundError(
                f"Payment {verification.order_id} not found", payment_id=verification.order_id
            )

        if verification.status == PaymentStatus.UNKNOWN:
            log.warning("billing.webhook.deferred", reason="unknown provider status")
            return self._result(ReconciliationOutcome.DEFERRED, payment, verification, 202)
        if verification.status == PaymentStatus.PENDING:
            log.info("billing.webhook.deferred", reason="payment still pending at provider")
            return self._result(ReconciliationOutcome.DEFERRED, payment, verification, 200)

        self._check_amount(payment, verification)

        try:
            async with self.store.lock(AggregateKind.PAYMENT, payment.id) as scope:
                transition = self.payment_service.apply_gateway_status(
                    scope.aggregate,
                    verification.status,
                    transaction_id=verification.provider_payment_id,
                    gateway_response=verification.payload,
                )
                if transition.changed:
                    await scope.save(transition.aggregate, transition.effects)
        except InvalidStateError as e:
            log.warning(
                "billing.webhook.illegal_transition",
                current_state=e.current_state,
                attempted_action=e.attempted_action,
            )
            raise

        if not transition.changed:
            # A retry of an applied notification finishes any delivery left behind.
            await self._redeliver_pending(transition.aggregate.id)
            log.info("billing.webhook.noop", payment_status=transition.aggregate.status.value)
            return self._result(ReconciliationOutcome.NOOP, transition.aggregate, verification)

        log.info("billing.webhook.applied", payment_status=transition.aggregate.status.value)
        await self._deliver(transition.effects)

        return self._result(
            ReconciliationOutcome.APPLIED,
            transition.aggregate,
            verification,
            effects=transition.effects,
        )

    async def _deliver(self, effects: tuple[Effect, ...] | list[Effect]) -> None:
        """
        Deliver committed effects.

        Raises:
            EffectDeliveryError: some effects stayed undelivered in the outbox
        """
        if self.dispatcher is None or not effects:
            return
        delivered = set(await self.dispatcher.deliver(self.store, effects))
        undelivered = [effect.id for effect in effects if effect.id not in delivered]
        if undelivered:
            raise EffectDeliveryError(
                "Payment was updated but its effects could not be delivered",
                effect_ids=undelivered,
            )

    async def _redeliver_pending(self, payment_id: str) -> None:
        if self.dispatcher is None:
            return
        entries = await self.store.pending_effects(aggregate_id=payment_id)
        if entries:
            logger.info(
                "billing.webhook.redelivering", payment_id=payment_id, pending=len(entries)
            )
            await self._deliver([entry.effect for entry in entries])

    def _check_amount(self, payment: Payment, verification: GatewayVerification) -> None:
        notified = verification.amount
        if notified is None:
            return
        if notified.currency != payment.amount.currency or not notified.equals(payment.amount):
            logger.warning(
                "billing.webhook.amount_mismatch",
                payment_id=payment.id,
                expected=str(payment.amount),
                notified=str(notified),
            )
            raise ValidationError(
                "Notified amount does not match the payment amount",
                field="price_amount",
                context={"payment_id": payment.id},
            )

    def _result(
        self,
        outcome: ReconciliationOutcome,
        payment: Payment,
        verification: GatewayVerification,
        http_status: int = 200,
        effects: tuple[Effect, ...] = (),
    ) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=outcome,
            payment_id=payment.id,
            payment_status=payment.status,
            provider_status=verification.provider_status,
            http_status=http_status,
            effects=effects,
        )


__all__ = ["WebhookReconciler", "ReconciliationResult", "ReconciliationOutcome"]
