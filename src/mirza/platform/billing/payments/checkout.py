"""
Checkout orchestration.

Creates the local pending payment, persists it, and only then asks the
gateway for a provider-side payment. A failed gateway call leaves a failed
local record behind instead of an orphaned provider payment.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from ..core.enums import PaymentStatus
from ..core.interfaces import AggregateKind, AggregateStore
from ..domain.payment import Payment
from ..events import EffectDispatcher
from ..exceptions import (
    BillingError,
    ExternalServiceError,
    PaymentNotFoundError,
    ValidationError,
)
from ..gateways.base import GatewayPayment
from ..gateways.registry import GatewayRegistry
from ..money_utils import Money
from .service import PaymentService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    """Local payment plus the provider-side details shown to the user."""

    payment: Payment
    gateway_payment: GatewayPayment


class CheckoutService:
    """Drive payments through their gateway outside of webhooks."""

    def __init__(
        self,
        store: AggregateStore,
        gateways: GatewayRegistry,
        payment_service: PaymentService,
        dispatcher: EffectDispatcher | None = None,
        callback_base_url: str = "",
    ) -> None:
        self.store = store
        self.gateways = gateways
        self.payment_service = payment_service
        self.dispatcher = dispatcher
        self.callback_base_url = callback_base_url.rstrip("/")

    def callback_url(self, gateway: str) -> str:
        return f"{self.callback_base_url}/billing/webhooks/{gateway}"

    async def start_checkout(
        self,
        user_id: str,
        amount: Money,
        gateway: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CheckoutResult:
        """
        Create a payment and its provider-side counterpart.

        Raises:
            ValidationError: invalid amount, gateway or currency
            GatewayNotFoundError: gateway not enabled
            BillingError: the gateway call failed or was refused; the local
                payment is marked failed with ``metadata["retryable"]`` set
                (true only for retryable ExternalServiceError)
        """
        adapter = self.gateways.get(gateway)
        if amount.currency not in adapter.supported_currencies:
            raise ValidationError(
                f"Payment gateway '{adapter.name}' does not accept {amount.currency}",
                field="currency",
                context={"supported": sorted(adapter.supported_currencies)},
            )

        created = self.payment_service.create_payment(
            user_id, amount, gateway, description=description, metadata=metadata
        )
        payment = created.aggregate
        await self.store.add_payment(payment, created.effects)
        await self._dispatch(created.effects)

        try:
            gateway_payment = await adapter.create_payment(
                order_id=payment.id,
                amount=amount,
                description=description or f"Payment {payment.id}",
                callback_url=self.callback_url(adapter.name),
                metadata=metadata,
            )
        except BillingError as e:
            await self._fail_after_gateway_error(payment.id, e)
            raise

        async with self.store.lock(AggregateKind.PAYMENT, payment.id) as scope:
            working = scope.aggregate
            now = self.payment_service.clock.now()
            working.update_gateway_reference(gateway_payment.transaction_id, now)
            if gateway_payment.payment_url:
                working.add_metadata("payment_url", gateway_payment.payment_url, now)
            if gateway_payment.pay_address:
                working.add_metadata("pay_address", gateway_payment.pay_address, now)
            if gateway_payment.pay_amount:
                working.add_metadata(
                    "pay_amount",
                    {"amount": gateway_payment.pay_amount, "currency": gateway_payment.pay_currency},
                    now,
                )
            await scope.save(working)

        logger.info(
            "checkout.started",
            payment_id=payment.id,
            gateway=adapter.name,
            provider_payment_id=gateway_payment.transaction_id,
        )
        return CheckoutResult(payment=working, gateway_payment=gateway_payment)

    async def _fail_after_gateway_error(self, payment_id: str, error: BillingError) -> None:
        retryable = isinstance(error, ExternalServiceError) and error.retryable
        async with self.store.lock(AggregateKind.PAYMENT, payment_id) as scope:
            transition = self.payment_service.fail_payment(
                scope.aggregate,
                reason=f"Gateway error: {error.message}",
            )
            working = transition.aggregate
            working.add_metadata("retryable", retryable, self.payment_service.clock.now())
            await scope.save(working, transition.effects)

        logger.warning(
            "checkout.gateway_failed",
            payment_id=payment_id,
            retryable=retryable,
            error_code=error.error_code,
            error=error.message,
        )
        await self._dispatch(transition.effects)

    async def refresh_status(self, payment_id: str) -> Payment:
        """
        Poll the gateway and apply its status to a pending payment.

        Raises:
            PaymentNotFoundError: unknown payment
            ExternalServiceError: gateway unreachable
            PaymentStateError: reported status is not reachable
        """
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        if payment.status.is_final or not payment.gateway_reference:
            return payment

        adapter = self.gateways.get(payment.gateway)
        snapshot = await adapter.get_payment_status(payment.gateway_reference)

        async with self.store.lock(AggregateKind.PAYMENT, payment_id) as scope:
            transition = self.payment_service.apply_gateway_status(
                scope.aggregate,
                snapshot.status,
                transaction_id=snapshot.provider_payment_id,
                gateway_response=snapshot.raw,
            )
            if transition.changed:
                await scope.save(transition.aggregate, transition.effects)

        logger.info(
            "checkout.status_refreshed",
            payment_id=payment_id,
            provider_status=snapshot.provider_status,
            status=transition.aggregate.status.value,
            changed=transition.changed,
        )
        await self._dispatch(transition.effects)
        return transition.aggregate

    async def expire_stale_payments(self) -> list[str]:
        """Expire pending payments older than the configured window."""
        expired: list[str] = []
        for candidate in await self.store.list_payments(status=PaymentStatus.PENDING.value):
            if not self.payment_service.is_payment_expired(candidate):
                continue

            async with self.store.lock(AggregateKind.PAYMENT, candidate.id) as scope:
                current = scope.aggregate
                if not self.payment_service.is_payment_expired(current):
                    continue
                transition = self.payment_service.expire_payment(current)
                await scope.save(transition.aggregate, transition.effects)

            expired.append(candidate.id)
            await self._dispatch(transition.effects)

        if expired:
            logger.info("checkout.expired_stale_payments", count=len(expired))
        return expired

    async def _dispatch(self, effects: Any) -> None:
        if self.dispatcher is not None and effects:
            await self.dispatcher.deliver(self.store, effects)


__all__ = ["CheckoutService", "CheckoutResult"]
