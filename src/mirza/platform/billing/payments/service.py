"""
Payment domain service.

Stateless rules for creating payments and moving them between statuses.
Every call works on a private copy of the payment, so the caller's
instance is never modified; the new state comes back in a ``Transition``.
"""

from typing import Any

import structlog

from ..config import BillingConfig, get_billing_config
from ..core.enums import PaymentStatus
from ..core.interfaces import Clock, SystemClock
from ..domain.payment import Payment
from ..domain.transitions import Transition
from ..events import BillingEvents, Effect
from ..exceptions import PaymentStateError, ValidationError
from ..money_utils import Money

logger = structlog.get_logger(__name__)

# Statuses a payment can only reach after it was completed
_SETTLED_AFTER_COMPLETION = frozenset(
    {
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
        PaymentStatus.DISPUTED,
        PaymentStatus.CHARGEBACK,
    }
)


class PaymentService:
    """
    Payment business rules.

    Handles:
    - Creation with amount and gateway validation
    - Status transitions (processing, completion, failure, cancellation, expiry)
    - Full and partial refunds, disputes and chargebacks
    - Gateway fee calculation
    """

    def __init__(self, config: BillingConfig | None = None, clock: Clock | None = None):
        self.config = config or get_billing_config()
        self.clock = clock or SystemClock()

    # ==================== Creation ====================

    def create_payment(
        self,
        user_id: str,
        amount: Money,
        gateway: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transition[Payment]:
        """
        Create a pending payment.

        Raises:
            ValidationError: amount not positive, outside configured limits,
                or gateway not in the allow-list
        """
        if not amount.is_positive():
            raise ValidationError("Payment amount must be positive", field="amount")

        minimum, maximum = self.config.amount_limits_for(amount.currency)
        if amount < minimum:
            raise ValidationError(
                f"Payment amount is below minimum threshold of {minimum}",
                field="amount",
                context={"minimum": minimum.to_dict()},
            )
        if amount > maximum:
            raise ValidationError(
                f"Payment amount exceeds maximum threshold of {maximum}",
                field="amount",
                context={"maximum": maximum.to_dict()},
            )

        if not self.config.is_gateway_allowed(gateway):
            raise ValidationError(f"Payment gateway '{gateway}' is not supported", field="gateway")

        now = self.clock.now()
        payment = Payment.create(
            user_id=user_id,
            amount=amount,
            gateway=gateway,
            now=now,
            description=description,
            metadata=metadata,
        )

        logger.info(
            "payment.created",
            payment_id=payment.id,
            user_id=user_id,
            amount=str(amount),
            gateway=payment.gateway,
        )
        return Transition(
            aggregate=payment,
            effects=(Effect.for_payment(BillingEvents.PAYMENT_CREATED, payment, now),),
        )

    # ==================== Transitions ====================

    def mark_processing(self, payment: Payment) -> Transition[Payment]:
        if payment.status == PaymentStatus.PROCESSING:
            return Transition.unchanged(payment)

        now = self.clock.now()
        working = payment.model_copy(deep=True)
        working.mark_processing(now)
        return Transition(
            aggregate=working,
            effects=(Effect.for_payment(BillingEvents.PAYMENT_PROCESSING, working, now),),
        )

    def complete_payment(
        self,
        payment: Payment,
        transaction_id: str,
        gateway_response: dict[str, Any] | None = None,
    ) -> Transition[Payment]:
        """Complete a pending or processing payment; no-op when already completed."""
        if payment.status == PaymentStatus.COMPLETED:
            return Transition.unchanged(payment)
        if not payment.status.can_be_completed:
            raise PaymentStateError(
                f"Payment cannot be completed from {payment.status.value}",
                current_state=payment.status.value,
                attempted_action="complete",
                payment_id=payment.id,
            )

        now = self.clock.now()
        working = payment.model_copy(deep=True)
        working.mark_completed(transaction_id, now, gateway_response)

        logger.info(
            "payment.completed",
            payment_id=working.id,
            transaction_id=transaction_id,
            amount=str(working.amount),
        )
        return Transition(
            aggregate=working,
            effects=(
                Effect.for_payment(
                    BillingEvents.PAYMENT_COMPLETED,
                    working,
                    now,
                    transaction_id=transaction_id,
                ),
            ),
        )

    def fail_payment(
        self,
        payment: Payment,
        reason: str,
        gateway_response: dict[str, Any] | None = None,
    ) -> Transition[Payment]:
        """Fail a pending or processing payment; no-op when already unsuccessful."""
        if payment.status.is_unsuccessful:
            return Transition.unchanged(payment)
        if not payment.status.can_be_failed:
            raise PaymentStateError(
                f"Payment cannot fail from {payment.status.value}",
                current_state=payment.status.value,
                attempted_action="fail",
                payment_id=payment.id,
            )

        now = self.clock.now()
        working = payment.model_copy(deep=True)
        working.mark_failed(reason, now, gateway_response)

        logger.warning("payment.failed", payment_id=working.id, reason=reason)
        return Transition(
            aggregate=working,
            effects=(Effect.for_payment(BillingEvents.PAYMENT_FAILED, working, now, reason=reason),),
        )

    def cancel_payment(self, payment: Payment, reason: str) -> Transition[Payment]:
        """
        Cancel a pending payment on the user's request.

        Once the gateway is processing the payment only the gateway itself
        can cancel it (see ``apply_gateway_status``).
        """
        if payment.status == PaymentStatus.CANCELLED:
            return Transition.unchanged(payment)
        if payment.status != PaymentStatus.PENDING:
            raise PaymentStateError(
                "Only pending payments can be cancelled",
                current_state=payment.status.value,
                attempted_action="cancel",
                payment_id=payment.id,
            )
        return self._cancel(payment, reason)

    def _cancel(self, payment: Payment, reason: str) -> Transition[Payment]:
        if not payment.status.can_be_cancelled:
            raise PaymentStateError(
                f"Payment cannot be cancelled from {payment.status.value}",
                current_state=payment.status.value,
                attempted_action="cancel",
                payment_id=payment.id,
            )

        now = self.clock.now()
        working = payment.model_copy(deep=True)
        working.mark_cancelled(reason, now)

        logger.info("payment.cancelled", payment_id=working.id, reason=reason)
        return Transition(
            aggregate=working,
            effects=(
                Effect.for_payment(BillingEvents.PAYMENT_CANCELLED, working, now, reason=reason),
            ),
        )

    def expire_payment(self, payment: Payment) -> Transition[Payment]:
        """Expire a pending payment."""
        if payment.status == PaymentStatus.EXPIRED:
            return Transition.unchanged(payment)
        if not payment.status.can_be_expired:
            raise PaymentStateError(
                "Only pending payments can expire",
                current_state=payment.status.value,
                attempted_action="expire",
                payment_id=payment.id,
            )

        now = self.clock.now()
        working = payment.model_copy(deep=True)
        working.mark_expired(now)

        logger.info("payment.expired", payment_id=working.id)
        return Transition(
            aggregate=working,
            effects=(Effect.for_payment(BillingEvents.PAYMENT_EXPIRED, working, now),),
        )

    def refund_payment(
        self,
        payment: Payment,
        refund_amount: Money,
        reason: str,
        refund_transaction_id: str | None = None,
    ) -> Transition[Payment]:
        """
        Refund all or part of a completed payment.

        The payment becomes ``refunded`` once cumulative refunds reach the
        original amount, ``partially_refunded`` otherwise.

        Raises:
            PaymentStateError: payment is not completed or partially refunded
            ValidationError: amount not positive, wrong currency or above
                the refundable remainder
        """
        if not payment.status.can_be_refunded:
            raise PaymentStateError(
                f"Payment cannot be refunded from {payment.status.value}",
                current_state=payment.status.value,
                attempted_action="refund",
                payment_id=payment.id,
            )
        if not refund_amount.is_positive():
            raise ValidationError("Refund amount must be positive", field="refund_amount")

        refundable = payment.refundable_amount()
        # CurrencyMismatchError surfaces from the comparison
        if refund_amount > refundable:
            raise ValidationError(
                f"Refund amount {refund_amount} exceeds refundable amount {refundable}",
                field="refund_amount",
                context={"refundable": refundable.to_dict()},
            )

        full = refund_amount.equals(refundable)
        now = self.clock.now()
        working = payment.model_copy(deep=True)
        transaction = working.apply_refund(
            refund_amount, reason, now, full=full, refund_transaction_id=refund_transaction_id
        )

        logger.info(
            "payment.refunded",
            payment_id=working.id,
            amount=str(refund_amount),
            full=full,
            refunded_total=str(working.refunded_total()),
        )
        return Transition(
            aggregate=working,
            effects=(
                Effect.for_payment(
                    BillingEvents.PAYMENT_REFUNDED,
                    working,
                    now,
                    idempotency_key=f"{BillingEvents.PAYMENT_REFUNDED}:{transaction.id}",
                    refund_amount=refund_amount.to_dict(),
                    full=full,
                    reason=reason,
                ),
            ),
        )

    def dispute_payment(self, payment: Payment, reason: str) -> Transition[Payment]:
        if payment.status == PaymentStatus.DISPUTED:
            return Transition.unchanged(payment)
        if not payment.status.can_be_disputed:
            raise PaymentStateError(
                f"Payment cannot be disputed from {payment.status.value}",
                current_state=payment.status.value,
                attempted_action="dispute",
                payment_id=payment.id,
            )

        now = self.clock.now()
        working = payment.model_copy(deep=True)
        working.mark_disputed(reason, now)

        logger.warning("payment.disputed", payment_id=working.id, reason=reason)
        return Transition(
            aggregate=working,
            effects=(
                Effect.for_payment(BillingEvents.PAYMENT_DISPUTED, working, now, reason=reason),
            ),
        )

    def resolve_dispute(self, payment: Payment) -> Transition[Payment]:
        """Close a dispute in the merchant's favour (disputed -> completed)."""
        if payment.status != PaymentStatus.DISPUTED:
            raise PaymentStateError(
                "Only disputed payments can be resolved",
                current_state=payment.status.value,
                attempted_action="resolve dispute",
                payment_id=payment.id,
            )

        now = self.clock.now()
        working = payment.model_copy(deep=True)
        working.mark_completed(payment.gateway_transaction_id or payment.id, now)

        logger.info("payment.dispute_resolved", payment_id=working.id)
        return Transition(aggregate=working, effects=())

    def chargeback_payment(
        self, payment: Payment, amount: Money, reason: str
    ) -> Transition[Payment]:
        if payment.status == PaymentStatus.CHARGEBACK:
            return Transition.unchanged(payment)
        check = payment.check_transition(PaymentStatus.CHARGEBACK)
        if not check.allowed:
            raise PaymentStateError(
                check.reason or "Chargeback not allowed",
                current_state=payment.status.value,
                attempted_action="chargeback",
                payment_id=payment.id,
            )
        if not amount.is_positive():
            raise ValidationError("Chargeback amount must be positive", field="amount")
        if amount > payment.amount:
            raise ValidationError("Chargeback amount exceeds payment amount", field="amount")

        now = self.clock.now()
        working = payment.model_copy(deep=True)
        working.mark_chargeback(amount, reason, now)

        logger.warning(
            "payment.chargeback", payment_id=working.id, amount=str(amount), reason=reason
        )
        return Transition(
            aggregate=working,
            effects=(
                Effect.for_payment(
                    BillingEvents.PAYMENT_CHARGEBACK,
                    working,
                    now,
                    chargeback_amount=amount.to_dict(),
                    reason=reason,
                ),
            ),
        )

    # ==================== Gateway status ====================

    def apply_gateway_status(
        self,
        payment: Payment,
        status: PaymentStatus,
        transaction_id: str | None = None,
        gateway_response: dict[str, Any] | None = None,
    ) -> Transition[Payment]:
        """
        Move a payment to a status reported by its gateway.

        Statuses that carry no decision (pending, unknown) and statuses the
        payment has already reached or moved past leave it unchanged.

        Raises:
            PaymentStateError: the reported status is not reachable
        """
        if status in (PaymentStatus.PENDING, PaymentStatus.UNKNOWN):
            return Transition.unchanged(payment)
        if payment.status == status:
            return Transition.unchanged(payment)
        if status == PaymentStatus.COMPLETED and payment.status in _SETTLED_AFTER_COMPLETION:
            return Transition.unchanged(payment)

        if status == PaymentStatus.PROCESSING:
            return self.mark_processing(payment)
        if status == PaymentStatus.COMPLETED:
            return self.complete_payment(
                payment, transaction_id or payment.gateway_reference or payment.id, gateway_response
            )
        if status == PaymentStatus.FAILED:
            return self.fail_payment(payment, "Payment failed at gateway", gateway_response)
        if status == PaymentStatus.CANCELLED:
            return self._cancel(payment, "Payment cancelled at gateway")
        if status == PaymentStatus.EXPIRED:
            return self.expire_payment(payment)
        if status == PaymentStatus.REFUNDED:
            if not payment.status.can_be_refunded:
                raise PaymentStateError(
                    f"Payment cannot be refunded from {payment.status.value}",
                    current_state=payment.status.value,
                    attempted_action="refund",
                    payment_id=payment.id,
                )
            return self.refund_payment(
                payment, payment.refundable_amount(), "Refunded at gateway", transaction_id
            )

        raise PaymentStateError(
            f"Gateway status {status.value} cannot be applied automatically",
            current_state=payment.status.value,
            attempted_action=status.value,
            payment_id=payment.id,
        )

    # ==================== Queries ====================

    def is_payment_expired(self, payment: Payment) -> bool:
        """Pending for longer than the configured expiry window."""
        return payment.is_expired(self.clock.now(), self.config.payment_expiry)

    def calculate_payment_fee(self, amount: Money, gateway: str) -> Money:
        """Percentage plus fixed fee for the gateway, in the payment currency."""
        fee = self.config.fee_for(gateway)
        percentage_fee = amount.percentage(fee.percentage)
        fixed_fee = self.config.currency_table.money(fee.fixed, amount.currency)
        return percentage_fee.add(fixed_fee)

    def refunded_total(self, payment: Payment) -> Money:
        return payment.refunded_total()

    def refundable_amount(self, payment: Payment) -> Money:
        return payment.refundable_amount()


__all__ = ["PaymentService"]
