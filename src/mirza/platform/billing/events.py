"""
Billing effect types and effect dispatch.

Domain services never publish anything themselves. Each mutating call
returns the effects it produced; callers persist them next to the
aggregate (outbox) and hand them to the EffectDispatcher after commit.
"""

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .core.interfaces import AggregateKind, AggregateStore, BalanceLedger, NotificationSink
from .money_utils import DEFAULT_CURRENCY_TABLE, CurrencyTable, Money

logger = structlog.get_logger(__name__)


# ============================================================================
# Billing Event Types
# ============================================================================


class BillingEvents:
    """Billing effect type constants."""

    # Payment events
    PAYMENT_CREATED = "payment.created"
    PAYMENT_PROCESSING = "payment.processing"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_EXPIRED = "payment.expired"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_DISPUTED = "payment.disputed"
    PAYMENT_CHARGEBACK = "payment.chargeback"

    # Subscription events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_SUSPENDED = "subscription.suspended"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_GRACE_PERIOD = "subscription.grace_period"
    SUBSCRIPTION_USAGE_RECORDED = "subscription.usage_recorded"
    SUBSCRIPTION_DATA_LIMIT_EXCEEDED = "subscription.data_limit_exceeded"


class Effect(BaseModel):
    """Something that must happen outside the aggregate after a state change."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    aggregate_kind: AggregateKind
    aggregate_id: str
    user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_payment(
        cls,
        event_type: str,
        payment: Any,
        occurred_at: datetime,
        idempotency_key: str | None = None,
        **payload: Any,
    ) -> "Effect":
        return cls(
            type=event_type,
            aggregate_kind=AggregateKind.PAYMENT,
            aggregate_id=payment.id,
            user_id=payment.user_id,
            payload={"status": payment.status.value, "amount": payment.amount.to_dict(), **payload},
            idempotency_key=idempotency_key or f"{event_type}:{payment.id}",
            occurred_at=occurred_at,
        )

    @classmethod
    def for_subscription(
        cls,
        event_type: str,
        subscription: Any,
        occurred_at: datetime,
        idempotency_key: str | None = None,
        **payload: Any,
    ) -> "Effect":
        return cls(
            type=event_type,
            aggregate_kind=AggregateKind.SUBSCRIPTION,
            aggregate_id=subscription.id,
            user_id=subscription.user_id,
            payload={
                "status": subscription.status.value,
                "panel_id": subscription.panel_id,
                "expires_at": subscription.expires_at.isoformat(),
                **payload,
            },
            idempotency_key=idempotency_key
            or f"{event_type}:{subscription.id}:{occurred_at.isoformat()}",
            occurred_at=occurred_at,
        )


class OutboxEntry(BaseModel):
    """Effect persisted atomically with its aggregate, awaiting dispatch."""

    model_config = ConfigDict(frozen=True)

    effect: Effect
    created_at: datetime
    dispatched_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.effect.id


# ============================================================================
# Effect Dispatch
# ============================================================================


class EffectDispatcher:
    """
    Deliver committed effects to the balance ledger and notification sink.

    ``payment.completed`` credits the user's balance keyed by the payment id,
    so redelivering the same effect never credits twice. Every effect is also
    forwarded to the notification sink, which drives user messaging and
    panel provisioning.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        notifier: NotificationSink,
        currency_table: CurrencyTable | None = None,
    ) -> None:
        self.ledger = ledger
        self.notifier = notifier
        self.currency_table = currency_table or DEFAULT_CURRENCY_TABLE

    async def dispatch(self, effects: Sequence[Effect]) -> list[str]:
        """Dispatch effects in order. Returns ids of the effects delivered."""
        delivered: list[str] = []
        for effect in effects:
            try:
                await self._deliver(effect)
            except Exception:
                # Left undelivered in the outbox; relay() picks it up again.
                logger.exception(
                    "billing.effect.dispatch_failed",
                    effect_id=effect.id,
                    effect_type=effect.type,
                    aggregate_id=effect.aggregate_id,
                )
                continue
            delivered.append(effect.id)
        return delivered

    async def deliver(self, store: AggregateStore, effects: Sequence[Effect]) -> list[str]:
        """Dispatch freshly committed effects and mark them in the outbox."""
        delivered = await self.dispatch(effects)
        if delivered:
            await store.mark_dispatched(delivered)
        return delivered

    async def relay(self, store: AggregateStore, limit: int = 100) -> int:
        """Dispatch outbox entries left behind by earlier failures."""
        entries = await store.pending_effects(limit=limit)
        if not entries:
            return 0
        delivered = await self.dispatch([entry.effect for entry in entries])
        await store.mark_dispatched(delivered)
        logger.info("billing.outbox.relayed", pending=len(entries), delivered=len(delivered))
        return len(delivered)

    async def _deliver(self, effect: Effect) -> None:
        if effect.type == BillingEvents.PAYMENT_COMPLETED:
            amount = self._money(effect.payload["amount"])
            credited = await self.ledger.credit(
                effect.user_id, amount, idempotency_key=effect.aggregate_id
            )
            logger.info(
                "billing.balance.credited" if credited else "billing.balance.already_credited",
                payment_id=effect.aggregate_id,
                user_id=effect.user_id,
                amount=str(amount),
            )

        await self.notifier.notify(effect.user_id, effect.type, dict(effect.payload))
        logger.info(
            "billing.effect.dispatched",
            effect_type=effect.type,
            aggregate_id=effect.aggregate_id,
        )

    def _money(self, data: dict[str, Any]) -> Money:
        return self.currency_table.from_dict(data)


__all__ = ["BillingEvents", "Effect", "OutboxEntry", "EffectDispatcher"]
