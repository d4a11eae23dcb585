"""
SQLAlchemy-backed aggregate store and balance ledger.

Aggregates are stored as JSON snapshots next to a few indexed columns.
``lock`` opens a transaction and selects the row ``FOR UPDATE``; the
aggregate and its outbox entries are written in that same transaction.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import JSON, BigInteger, DateTime, Integer, String, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from mirza.platform.db import Base, TimestampMixin, get_session_maker

from ..core.interfaces import AggregateKind
from ..domain.payment import Payment
from ..domain.subscription import Subscription
from ..events import Effect, OutboxEntry
from ..exceptions import ValidationError
from ..money_utils import Money
from .locks import AggregateLocks
from .memory import not_found

logger = structlog.get_logger(__name__)


# ==========================================
# Tables
# ==========================================


class PaymentRecord(Base, TimestampMixin):
    """Payment snapshot."""

    __tablename__ = "billing_payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    gateway: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class SubscriptionRecord(Base, TimestampMixin):
    """Subscription snapshot."""

    __tablename__ = "billing_subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class OutboxRecord(Base):
    """Effect awaiting dispatch."""

    __tablename__ = "billing_outbox"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    aggregate_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    effect_type: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )


class BalanceEntryRecord(Base):
    """Balance credit, unique per idempotency key."""

    __tablename__ = "billing_balance_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


_RECORDS: dict[AggregateKind, type[PaymentRecord] | type[SubscriptionRecord]] = {
    AggregateKind.PAYMENT: PaymentRecord,
    AggregateKind.SUBSCRIPTION: SubscriptionRecord,
}


def _to_domain(kind: AggregateKind, data: dict[str, Any]) -> Any:
    if kind == AggregateKind.PAYMENT:
        return Payment.model_validate(data)
    return Subscription.model_validate(data)


def _outbox_rows(effects: Sequence[Effect]) -> list[OutboxRecord]:
    return [
        OutboxRecord(
            id=effect.id,
            aggregate_kind=effect.aggregate_kind.value,
            aggregate_id=effect.aggregate_id,
            effect_type=effect.type,
            data=effect.model_dump(mode="json"),
            created_at=effect.occurred_at,
        )
        for effect in effects
    ]


class _SQLLockScope:
    """Row-locked aggregate inside an open transaction."""

    def __init__(self, session: AsyncSession, record: Any, aggregate: Any) -> None:
        self.session = session
        self.record = record
        self.aggregate = aggregate

    async def save(self, aggregate: Any, effects: Sequence[Effect] = ()) -> None:
        if aggregate.id != self.record.id:
            raise ValidationError("Cannot save a different aggregate inside this lock")
        self.record.data = aggregate.model_dump(mode="json")
        self.record.status = aggregate.status.value
        self.record.version = self.record.version + 1
        self.session.add_all(_outbox_rows(effects))
        await self.session.flush()


class SQLAggregateStore:
    """AggregateStore on SQLAlchemy async sessions."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        lock_timeout: float | None = 10.0,
    ) -> None:
        self.session_maker = session_maker or get_session_maker()
        self.lock_timeout = lock_timeout
        # SQLite ignores FOR UPDATE, so writers in this process also queue locally.
        self._local_locks = AggregateLocks(lock_timeout)

    # ==================== Payments ====================

    async def add_payment(self, payment: Payment, effects: Sequence[Effect] = ()) -> None:
        record = PaymentRecord(
            id=payment.id,
            user_id=payment.user_id,
            gateway=payment.gateway,
            status=payment.status.value,
            version=1,
            data=payment.model_dump(mode="json"),
        )
        await self._insert(record, effects)

    async def get_payment(self, payment_id: str) -> Payment | None:
        return await self._get(AggregateKind.PAYMENT, payment_id)

    async def list_payments(self, status: str | None = None) -> list[Payment]:
        stmt = select(PaymentRecord).order_by(PaymentRecord.created_at)
        if status is not None:
            stmt = stmt.where(PaymentRecord.status == status)
        async with self.session_maker() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [Payment.model_validate(r.data) for r in records]

    # ==================== Subscriptions ====================

    async def add_subscription(
        self, subscription: Subscription, effects: Sequence[Effect] = ()
    ) -> None:
        record = SubscriptionRecord(
            id=subscription.id,
            user_id=subscription.user_id,
            status=subscription.status.value,
            version=1,
            data=subscription.model_dump(mode="json"),
        )
        await self._insert(record, effects)

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        return await self._get(AggregateKind.SUBSCRIPTION, subscription_id)

    async def list_subscriptions(self, statuses: Sequence[str] | None = None) -> list[Subscription]:
        stmt = select(SubscriptionRecord).order_by(SubscriptionRecord.created_at)
        if statuses is not None:
            stmt = stmt.where(SubscriptionRecord.status.in_(list(statuses)))
        async with self.session_maker() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [Subscription.model_validate(r.data) for r in records]

    # ==================== Locking ====================

    @asynccontextmanager
    async def lock(self, kind: AggregateKind, aggregate_id: str) -> AsyncIterator[_SQLLockScope]:
        async with self._local_locks.hold(kind, aggregate_id):
            model = _RECORDS[kind]
            async with self.session_maker() as session:
                async with session.begin():
                    stmt = select(model).where(model.id == aggregate_id).with_for_update()
                    record = (await session.execute(stmt)).scalar_one_or_none()
                    if record is None:
                        raise not_found(kind, aggregate_id)

                    yield _SQLLockScope(session, record, _to_domain(kind, record.data))

    # ==================== Outbox ====================

    async def pending_effects(
        self, limit: int = 100, aggregate_id: str | None = None
    ) -> list[OutboxEntry]:
        stmt = select(OutboxRecord).where(OutboxRecord.dispatched_at.is_(None))
        if aggregate_id is not None:
            stmt = stmt.where(OutboxRecord.aggregate_id == aggregate_id)
        stmt = stmt.order_by(OutboxRecord.created_at).limit(limit)
        async with self.session_maker() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [
            OutboxEntry(effect=Effect.model_validate(r.data), created_at=r.created_at)
            for r in records
        ]

    async def mark_dispatched(self, entry_ids: Sequence[str]) -> None:
        if not entry_ids:
            return
        async with self.session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(OutboxRecord)
                    .where(OutboxRecord.id.in_(list(entry_ids)))
                    .where(OutboxRecord.dispatched_at.is_(None))
                    .values(dispatched_at=datetime.now(UTC))
                )

    # ==================== Helpers ====================

    async def _insert(self, record: Any, effects: Sequence[Effect]) -> None:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    session.add(record)
                    session.add_all(_outbox_rows(effects))
        except IntegrityError as e:
            raise ValidationError(f"Aggregate {record.id} already exists", field="id") from e

    async def _get(self, kind: AggregateKind, aggregate_id: str) -> Any:
        async with self.session_maker() as session:
            record = await session.get(_RECORDS[kind], aggregate_id)
        return _to_domain(kind, record.data) if record is not None else None


class SQLBalanceLedger:
    """BalanceLedger backed by ``billing_balance_entries``."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None) -> None:
        self.session_maker = session_maker or get_session_maker()

    async def credit(self, user_id: str, amount: Money, idempotency_key: str) -> bool:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    session.add(
                        BalanceEntryRecord(
                            user_id=user_id,
                            idempotency_key=idempotency_key,
                            amount_minor=amount.minor_units,
                            currency=amount.currency,
                        )
                    )
        except IntegrityError:
            logger.info("billing.balance.duplicate_credit", idempotency_key=idempotency_key)
            return False
        return True

    async def balance(self, user_id: str, currency: str) -> int:
        """Credited minor units for a user in one currency."""
        stmt = select(BalanceEntryRecord.amount_minor).where(
            BalanceEntryRecord.user_id == user_id, BalanceEntryRecord.currency == currency
        )
        async with self.session_maker() as session:
            amounts = (await session.execute(stmt)).scalars().all()
        return sum(amounts)


__all__ = [
    "PaymentRecord",
    "SubscriptionRecord",
    "OutboxRecord",
    "BalanceEntryRecord",
    "SQLAggregateStore",
    "SQLBalanceLedger",
]
