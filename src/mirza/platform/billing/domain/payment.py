"""
Payment aggregate.

A payment moves through ``PaymentStatus`` only via the mark_* methods,
which refuse illegal transitions before touching any field. Child
transactions are append-only and keep insertion order.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..core.enums import PaymentStatus, TransactionStatus, TransactionType
from ..exceptions import InvalidStateError, PaymentStateError
from ..money_utils import Money
from .transitions import TransitionCheck

_REFUND_TYPES = (TransactionType.REFUND, TransactionType.PARTIAL_REFUND)


class Transaction(BaseModel):
    """Money movement recorded against a payment."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    payment_id: str
    type: TransactionType
    amount: Money
    status: TransactionStatus = TransactionStatus.PENDING
    gateway_transaction_id: str | None = None
    gateway_response: dict[str, Any] | None = None
    description: str | None = None
    processed_at: datetime | None = None
    created_at: datetime

    def complete(
        self,
        now: datetime,
        gateway_transaction_id: str | None = None,
        gateway_response: dict[str, Any] | None = None,
    ) -> None:
        self._settle(TransactionStatus.COMPLETED, now, gateway_response)
        if gateway_transaction_id:
            self.gateway_transaction_id = gateway_transaction_id

    def fail(self, now: datetime, gateway_response: dict[str, Any] | None = None) -> None:
        self._settle(TransactionStatus.FAILED, now, gateway_response)

    def _settle(
        self,
        target: TransactionStatus,
        now: datetime,
        gateway_response: dict[str, Any] | None,
    ) -> None:
        if self.status != TransactionStatus.PENDING:
            raise InvalidStateError(
                f"Transaction is already {self.status.value}",
                current_state=self.status.value,
                attempted_action=f"mark {target.value}",
                aggregate_id=self.id,
            )
        self.status = target
        self.processed_at = now
        if gateway_response is not None:
            self.gateway_response = gateway_response

    @property
    def is_refund(self) -> bool:
        return self.type in _REFUND_TYPES


class Payment(BaseModel):
    """Payment aggregate root."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    amount: Money
    gateway: str
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_transaction_id: str | None = None
    gateway_reference: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    paid_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    refunded_at: datetime | None = None
    expired_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    transactions: list[Transaction] = Field(default_factory=list)

    @classmethod
    def create(
        cls,
        user_id: str,
        amount: Money,
        gateway: str,
        now: datetime,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        payment_id: str | None = None,
    ) -> "Payment":
        return cls(
            id=payment_id or str(uuid4()),
            user_id=user_id,
            amount=amount,
            gateway=gateway.lower(),
            description=description,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Transition rules
    # ------------------------------------------------------------------

    def check_transition(self, target: PaymentStatus) -> TransitionCheck:
        if target == PaymentStatus.UNKNOWN:
            return TransitionCheck.deny("Unknown status cannot be applied to a payment")
        if self.status.can_transition_to(target):
            return TransitionCheck.ok()
        if self.status == target:
            return TransitionCheck.deny(f"Payment is already {target.value}")
        if self.status.is_final and not self.status.allowed_transitions():
            return TransitionCheck.deny(f"Payment is {self.status.value} and cannot change status")
        return TransitionCheck.deny(
            f"Payment cannot move from {self.status.value} to {target.value}"
        )

    def _transition(self, target: PaymentStatus, now: datetime, action: str) -> PaymentStatus:
        check = self.check_transition(target)
        if not check.allowed:
            raise PaymentStateError(
                check.reason or "Illegal payment transition",
                current_state=self.status.value,
                attempted_action=action,
                payment_id=self.id,
            )
        previous = self.status
        self.status = target
        self.updated_at = now
        return previous

    def _add_transaction(
        self,
        transaction_type: TransactionType,
        amount: Money,
        now: datetime,
        description: str | None = None,
        gateway_transaction_id: str | None = None,
        gateway_response: dict[str, Any] | None = None,
    ) -> Transaction:
        transaction = Transaction(
            payment_id=self.id,
            type=transaction_type,
            amount=amount,
            description=description,
            created_at=now,
        )
        transaction.complete(now, gateway_transaction_id, gateway_response)
        self.transactions.append(transaction)
        return transaction

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def mark_processing(self, now: datetime) -> None:
        self._transition(PaymentStatus.PROCESSING, now, "process")

    def mark_completed(
        self,
        transaction_id: str,
        now: datetime,
        gateway_response: dict[str, Any] | None = None,
    ) -> None:
        previous = self._transition(PaymentStatus.COMPLETED, now, "complete")
        if previous == PaymentStatus.DISPUTED:
            # Dispute resolved in the merchant's favour; the charge already exists.
            return
        self.gateway_transaction_id = transaction_id
        if self.paid_at is None:
            self.paid_at = now
        self._add_transaction(
            TransactionType.CHARGE,
            self.amount,
            now,
            description="Payment charge",
            gateway_transaction_id=transaction_id,
            gateway_response=gateway_response,
        )

    def mark_failed(
        self,
        reason: str,
        now: datetime,
        gateway_response: dict[str, Any] | None = None,
    ) -> None:
        self._transition(PaymentStatus.FAILED, now, "fail")
        if self.failed_at is None:
            self.failed_at = now
        self.failure_reason = reason
        if gateway_response is not None:
            self.metadata["gateway_response"] = gateway_response

    def mark_cancelled(self, reason: str, now: datetime) -> None:
        self._transition(PaymentStatus.CANCELLED, now, "cancel")
        self.cancelled_at = now
        self.cancellation_reason = reason

    def mark_expired(self, now: datetime) -> None:
        self._transition(PaymentStatus.EXPIRED, now, "expire")
        self.expired_at = now

    def apply_refund(
        self,
        amount: Money,
        reason: str,
        now: datetime,
        full: bool,
        refund_transaction_id: str | None = None,
    ) -> Transaction:
        target = PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED
        self._transition(target, now, "refund")
        if full:
            self.refunded_at = now
        return self._add_transaction(
            TransactionType.REFUND if full else TransactionType.PARTIAL_REFUND,
            amount,
            now,
            description=reason,
            gateway_transaction_id=refund_transaction_id,
        )

    def mark_disputed(self, reason: str, now: datetime) -> None:
        self._transition(PaymentStatus.DISPUTED, now, "dispute")
        self.metadata["dispute_reason"] = reason

    def mark_chargeback(self, amount: Money, reason: str, now: datetime) -> Transaction:
        self._transition(PaymentStatus.CHARGEBACK, now, "chargeback")
        return self._add_transaction(TransactionType.CHARGEBACK, amount, now, description=reason)

    def update_gateway_reference(self, reference: str, now: datetime) -> None:
        self.gateway_reference = reference
        self.updated_at = now

    def add_metadata(self, key: str, value: Any, now: datetime) -> None:
        self.metadata[key] = value
        self.updated_at = now

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def refunded_total(self) -> Money:
        total = Money(minor_units=0, currency=self.amount.currency, precision=self.amount.precision)
        for transaction in self.transactions:
            if transaction.is_refund and transaction.status == TransactionStatus.COMPLETED:
                total = total.add(transaction.amount)
        return total

    def refundable_amount(self) -> Money:
        return self.amount.subtract(self.refunded_total())

    def is_expired(self, now: datetime, window: timedelta) -> bool:
        return self.status == PaymentStatus.PENDING and now > self.created_at + window

    def to_read_model(self) -> dict[str, Any]:
        """Read model consumed by user-facing messaging."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "status_display": self.status.display_name,
            "amount": self.amount.to_dict(),
            "gateway": self.gateway,
            "gateway_reference": self.gateway_reference,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "refunded": self.refunded_total().to_dict(),
            "requires_action": self.status.requires_action,
            "created_at": self.created_at.isoformat(),
        }


__all__ = ["Payment", "Transaction"]
