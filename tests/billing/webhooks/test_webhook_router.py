"""
Tests for the billing webhook endpoint.
"""

import httpx
import pytest
from fastapi import FastAPI

from mirza.platform.billing.core import PaymentStatus
from mirza.platform.billing.integration import BillingIntegration
from mirza.platform.billing.webhooks import router as webhook_router
from tests.billing.factories import FlakyLedger, ipn_body, signed_ipn

pytestmark = pytest.mark.integration

WEBHOOK_URL = "/billing/webhooks/nowpayments"


@pytest.fixture
def billing(store, ledger, sink, gateways, clock):
    return BillingIntegration.create(
        store=store, ledger=ledger, notifier=sink, gateways=gateways, clock=clock
    )


@pytest.fixture
def app(billing):
    application = FastAPI()
    billing.install(application)
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def stored_payment(store, pending_payment):
    await store.add_payment(pending_payment)
    return pending_payment


def _headers(signature: str) -> dict[str, str]:
    return {"x-nowpayments-sig": signature, "content-type": "application/json"}


class TestWebhookEndpoint:
    """Test POST /billing/webhooks/{gateway}."""

    async def test_applied(self, client, store, ledger, stored_payment):
        """Test a valid notification completes the payment"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))

        response = await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))

        assert response.status_code == 200
        assert response.json() == {
            "status": "applied",
            "payment_id": stored_payment.id,
            "payment_status": "completed",
        }
        assert (await store.get_payment(stored_payment.id)).status == PaymentStatus.COMPLETED
        assert ledger.balance("user-1", "USD") == 4210

    async def test_duplicate_is_noop(self, client, ledger, stored_payment):
        """Test redelivery of the same notification"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))

        await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))
        response = await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))

        assert response.status_code == 200
        assert response.json()["status"] == "noop"
        assert ledger.balance("user-1", "USD") == 4210

    async def test_bad_signature(self, client, store, stored_payment):
        """Test forged notifications are rejected with 401"""
        body, _ = signed_ipn(ipn_body(stored_payment.id))

        response = await client.post(WEBHOOK_URL, content=body, headers=_headers("f" * 128))

        assert response.status_code == 401
        data = response.json()
        assert data["status"] == "failed"
        assert data["error_code"] == "AUTHENTICATION_FAILED"
        assert stored_payment.id not in response.text
        assert (await store.get_payment(stored_payment.id)).status == PaymentStatus.PENDING

    async def test_missing_signature(self, client, stored_payment):
        """Test notifications without a signature header"""
        body, _ = signed_ipn(ipn_body(stored_payment.id))

        response = await client.post(WEBHOOK_URL, content=body)

        assert response.status_code == 401

    async def test_unknown_status_accepted(self, client, stored_payment):
        """Test unmapped provider statuses answer 202"""
        body, signature = signed_ipn(ipn_body(stored_payment.id, status="on_hold"))

        response = await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))

        assert response.status_code == 202
        assert response.json()["status"] == "deferred"
        assert response.json()["payment_status"] == "pending"

    async def test_unknown_payment(self, client):
        """Test notifications for unknown orders answer 404"""
        body, signature = signed_ipn(ipn_body("no-such-order"))

        response = await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))

        assert response.status_code == 404
        assert response.json()["error_code"] == "PAYMENT_NOT_FOUND"

    async def test_unknown_gateway(self, client):
        """Test gateways that are not enabled answer 404"""
        response = await client.post("/billing/webhooks/zarinpal", content=b"{}")

        assert response.status_code == 404
        assert response.json()["error_code"] == "GATEWAY_NOT_FOUND"

    async def test_amount_mismatch(self, client, stored_payment):
        """Test a mismatched price answers 422"""
        body, signature = signed_ipn(ipn_body(stored_payment.id, price_amount=1.0))

        response = await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))

        assert response.status_code == 422

    async def test_illegal_transition(self, client, stored_payment):
        """Test a failure reported after completion answers 409"""
        body, signature = signed_ipn(ipn_body(stored_payment.id))
        await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))

        body, signature = signed_ipn(ipn_body(stored_payment.id, status="failed"))
        response = await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))

        assert response.status_code == 409

    async def test_undelivered_credit_asks_for_retry(
        self, store, sink, gateways, clock, stored_payment
    ):
        """Test a ledger outage answers 500 and the retry credits once"""
        ledger = FlakyLedger(failures=1)
        billing = BillingIntegration.create(
            store=store, ledger=ledger, notifier=sink, gateways=gateways, clock=clock
        )
        application = FastAPI()
        billing.install(application, configure_logging=False)
        body, signature = signed_ipn(ipn_body(stored_payment.id))

        transport = httpx.ASGITransport(app=application)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            failed = await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))
            retried = await client.post(WEBHOOK_URL, content=body, headers=_headers(signature))

        assert failed.status_code == 500
        assert failed.json()["status"] == "failed"
        assert failed.json()["error_code"] == "EFFECT_DELIVERY_FAILED"
        assert retried.status_code == 200
        assert retried.json()["status"] == "noop"
        assert ledger.balance("user-1", "USD") == 4210


class TestWebhookRouterWithoutBilling:
    """Test the router on an app where billing was never installed."""

    async def test_returns_server_error(self):
        """Test the dependency refuses to run without a reconciler"""
        application = FastAPI()
        application.include_router(webhook_router)
        transport = httpx.ASGITransport(app=application, raise_app_exceptions=False)

        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.post(WEBHOOK_URL, content=b"{}")

        assert response.status_code == 500
