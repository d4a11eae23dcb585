"""
Tests for webhook reconciliation.
"""

import asyncio

import pytest

from mirza.platform.billing.core import PaymentStatus
from mirza.platform.billing.exceptions import (
    AuthenticationError,
    EffectDeliveryError,
    GatewayNotFoundError,
    PaymentNotFoundError,
    PaymentStateError,
    ValidationError,
)
from mirza.platform.billing.events import EffectDispatcher
from mirza.platform.billing.webhooks import ReconciliationOutcome, WebhookReconciler
from tests.billing.factories import FlakyLedger, ipn_body, signed_ipn

pytestmark = pytest.mark.unit


@pytest.fixture
async def stored_payment(store, pending_payment):
    await store.add_payment(pending_payment)
    return pending_payment


class TestWebhookReconciler:
    """Test applying gateway notifications to payments."""

    async def test_finished_webhook_completes_payment(
        self, reconciler, store, ledger, sink, stored_payment
    ):
        """Test a signed finished notification completes and credits once"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))

        result = await reconciler.handle("nowpayments", body, signature)

        assert result.outcome == ReconciliationOutcome.APPLIED
        assert result.http_status == 200
        assert result.to_response() == {
            "status": "applied",
            "payment_id": stored_payment.id,
            "payment_status": "completed",
        }
        payment = await store.get_payment(stored_payment.id)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.gateway_transaction_id == "5077125051"
        assert ledger.balance("user-1", "USD") == 4210
        assert sink.events() == ["payment.completed"]
        assert await store.pending_effects() == []

    async def test_duplicate_webhook_credits_once(self, reconciler, store, ledger, stored_payment):
        """Test the same notification delivered twice"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))

        first = await reconciler.handle("nowpayments", body, signature)
        second = await reconciler.handle("nowpayments", body, signature)

        assert first.outcome == ReconciliationOutcome.APPLIED
        assert second.outcome == ReconciliationOutcome.NOOP
        assert second.http_status == 200
        assert ledger.balance("user-1", "USD") == 4210
        assert len((await store.get_payment(stored_payment.id)).transactions) == 1

    async def test_concurrent_duplicates_credit_once(
        self, reconciler, store, ledger, stored_payment
    ):
        """Test racing deliveries of the same notification"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))

        results = await asyncio.gather(
            *(reconciler.handle("nowpayments", body, signature) for _ in range(5))
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["applied", "noop", "noop", "noop", "noop"]
        assert ledger.balance("user-1", "USD") == 4210
        assert len((await store.get_payment(stored_payment.id)).transactions) == 1

    async def test_bad_signature_changes_nothing(self, reconciler, store, ledger, stored_payment):
        """Test a forged notification is rejected without side effects"""
        body, _ = signed_ipn(ipn_body(stored_payment.id))

        with pytest.raises(AuthenticationError) as exc_info:
            await reconciler.handle("nowpayments", body, "0" * 128)

        assert exc_info.value.status_code == 401
        assert (await store.get_payment(stored_payment.id)).status == PaymentStatus.PENDING
        assert ledger.entries == {}

    async def test_unknown_status_is_deferred(self, reconciler, store, stored_payment):
        """Test unmapped provider statuses are accepted but not applied"""
        body, signature = signed_ipn(ipn_body(stored_payment.id, status="on_hold"))

        result = await reconciler.handle("nowpayments", body, signature)

        assert result.outcome == ReconciliationOutcome.DEFERRED
        assert result.http_status == 202
        assert (await store.get_payment(stored_payment.id)).status == PaymentStatus.PENDING

    async def test_waiting_status_is_deferred(self, reconciler, stored_payment):
        """Test in-progress provider statuses acknowledge with 200"""
        body, signature = signed_ipn(ipn_body(stored_payment.id, status="confirming"))

        result = await reconciler.handle("nowpayments", body, signature)

        assert result.outcome == ReconciliationOutcome.DEFERRED
        assert result.http_status == 200

    async def test_unknown_order(self, reconciler):
        """Test notifications for unknown payments"""
        body, signature = signed_ipn(ipn_body("no-such-order"))

        with pytest.raises(PaymentNotFoundError):
            await reconciler.handle("nowpayments", body, signature)

    async def test_amount_mismatch(self, reconciler, store, stored_payment):
        """Test a notification for a different price is refused"""
        body, signature = signed_ipn(ipn_body(stored_payment.id, price_amount=1.0))

        with pytest.raises(ValidationError) as exc_info:
            await reconciler.handle("nowpayments", body, signature)

        assert exc_info.value.status_code == 422
        assert (await store.get_payment(stored_payment.id)).status == PaymentStatus.PENDING

    async def test_failed_after_completion_conflicts(self, reconciler, store, stored_payment):
        """Test an impossible transition is reported as a conflict"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))
        await reconciler.handle("nowpayments", body, signature)

        body, signature = signed_ipn(ipn_body(stored_payment.id, status="failed"))
        with pytest.raises(PaymentStateError) as exc_info:
            await reconciler.handle("nowpayments", body, signature)

        assert exc_info.value.status_code == 409
        assert (await store.get_payment(stored_payment.id)).status == PaymentStatus.COMPLETED

    async def test_refund_webhook(self, reconciler, store, sink, stored_payment):
        """Test a provider refund after completion"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))
        await reconciler.handle("nowpayments", body, signature)

        body, signature = signed_ipn(ipn_body(stored_payment.id, status="refunded"))
        result = await reconciler.handle("nowpayments", body, signature)

        assert result.payment_status == PaymentStatus.REFUNDED
        assert sink.events() == ["payment.completed", "payment.refunded"]

        late_finish, signature = signed_ipn(ipn_body(stored_payment.id))
        late = await reconciler.handle("nowpayments", late_finish, signature)
        assert late.outcome == ReconciliationOutcome.NOOP

    async def test_unknown_gateway(self, reconciler):
        """Test webhooks for gateways that are not enabled"""
        with pytest.raises(GatewayNotFoundError):
            await reconciler.handle("zarinpal", b"{}", "sig")


class TestEffectDeliveryFailure:
    """Test webhooks whose committed effects cannot be delivered."""

    @pytest.fixture
    def flaky_ledger(self):
        return FlakyLedger(failures=1)

    @pytest.fixture
    def flaky_reconciler(self, store, gateways, payment_service, flaky_ledger, sink):
        dispatcher = EffectDispatcher(flaky_ledger, sink)
        return WebhookReconciler(store, gateways, payment_service, dispatcher=dispatcher)

    async def test_failed_credit_fails_the_webhook(
        self, flaky_reconciler, store, flaky_ledger, sink, stored_payment
    ):
        """Test a ledger outage is reported instead of acknowledged"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))

        with pytest.raises(EffectDeliveryError) as exc_info:
            await flaky_reconciler.handle("nowpayments", body, signature)

        assert exc_info.value.status_code == 500
        assert exc_info.value.error_code == "EFFECT_DELIVERY_FAILED"
        assert (await store.get_payment(stored_payment.id)).status == PaymentStatus.COMPLETED
        pending = await store.pending_effects(aggregate_id=stored_payment.id)
        assert [entry.effect.type for entry in pending] == ["payment.completed"]
        assert exc_info.value.effect_ids == [pending[0].id]
        assert flaky_ledger.balance("user-1", "USD") == 0
        assert sink.events() == []

    async def test_retry_delivers_the_credit(
        self, flaky_reconciler, store, flaky_ledger, sink, stored_payment
    ):
        """Test the provider's retry credits the balance exactly once"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))
        with pytest.raises(EffectDeliveryError):
            await flaky_reconciler.handle("nowpayments", body, signature)

        retry = await flaky_reconciler.handle("nowpayments", body, signature)
        again = await flaky_reconciler.handle("nowpayments", body, signature)

        assert retry.outcome == ReconciliationOutcome.NOOP
        assert again.outcome == ReconciliationOutcome.NOOP
        assert flaky_ledger.balance("user-1", "USD") == 4210
        assert sink.events() == ["payment.completed"]
        assert await store.pending_effects() == []

    async def test_retry_while_ledger_still_down(
        self, store, gateways, payment_service, sink, stored_payment
    ):
        """Test a retry keeps failing until the credit lands"""
        ledger = FlakyLedger(failures=2)
        reconciler = WebhookReconciler(
            store, gateways, payment_service, dispatcher=EffectDispatcher(ledger, sink)
        )
        body, signature = signed_ipn(ipn_body(stored_payment.id))

        for _ in range(2):
            with pytest.raises(EffectDeliveryError):
                await reconciler.handle("nowpayments", body, signature)
        result = await reconciler.handle("nowpayments", body, signature)

        assert result.outcome == ReconciliationOutcome.NOOP
        assert ledger.balance("user-1", "USD") == 4210
