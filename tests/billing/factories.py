"""
Shared builders for billing tests.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import httpx

from mirza.platform.billing.gateways.nowpayments import sign_payload
from mirza.platform.billing.money_utils import DEFAULT_CURRENCY_TABLE, Money
from mirza.platform.billing.storage import InMemoryBalanceLedger

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
IPN_SECRET = "ipn-test-secret"
API_KEY = "np-test-key"


def usd(amount: str | int | Decimal) -> Money:
    """USD Money from a major-unit amount."""
    return DEFAULT_CURRENCY_TABLE.money(amount, "USD")


def ipn_body(order_id: str, status: str = "finished", **overrides: Any) -> dict[str, Any]:
    """NowPayments IPN payload for a 42.10 USD order."""
    body: dict[str, Any] = {
        "payment_id": 5077125051,
        "payment_status": status,
        "pay_address": "TXYZaddress",
        "price_amount": 42.1,
        "price_currency": "usd",
        "pay_amount": 442.05,
        "actually_paid": 442.05,
        "pay_currency": "trx",
        "order_id": order_id,
        "order_description": "VPN balance top-up",
        "outcome_amount": 440.1,
        "outcome_currency": "trx",
    }
    body.update(overrides)
    return body


def signed_ipn(body: dict[str, Any], secret: str = IPN_SECRET) -> tuple[bytes, str]:
    """Raw request body and its IPN signature."""
    return json.dumps(body).encode("utf-8"), sign_payload(body, secret)


class FakeNowPaymentsAPI:
    """Scripted NowPayments HTTP API for httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.rate = "10.5"
        self.payment_status = "waiting"
        self.fail_with: int | None = None
        self.timeout = False
        self.next_payment_id = 5077125051

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"message": "upstream says no"})

        if request.url.path.endswith("/exchange-rates"):
            return httpx.Response(
                200,
                json={
                    "rates": [
                        {"currency_from": "usd", "currency_to": "trx", "rate": self.rate},
                        {"currency_from": "eur", "currency_to": "trx", "rate": "11.2"},
                    ]
                },
            )
        if request.method == "POST" and request.url.path.endswith("/payment"):
            body = json.loads(request.content)
            return httpx.Response(
                201,
                json={
                    "payment_id": self.next_payment_id,
                    "payment_status": "waiting",
                    "pay_address": "TXYZaddress",
                    "price_amount": body["price_amount"],
                    "price_currency": body["price_currency"],
                    "pay_amount": body["pay_amount"],
                    "pay_currency": body["pay_currency"],
                    "order_id": body["order_id"],
                    "invoice_url": "https://nowpayments.io/payment/?iid=5077125051",
                },
            )
        if request.method == "GET" and "/payment/" in request.url.path:
            return httpx.Response(
                200,
                json={
                    "payment_id": int(request.url.path.rsplit("/", 1)[-1]),
                    "payment_status": self.payment_status,
                    "price_amount": 42.1,
                    "price_currency": "usd",
                    "updated_at": "2026-03-10T12:05:00.000Z",
                },
            )
        return httpx.Response(404, json={"message": "not found"})


class FlakyLedger(InMemoryBalanceLedger):
    """Ledger whose first ``failures`` credits raise."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def credit(self, user_id: str, amount: Money, idempotency_key: str) -> bool:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("ledger unavailable")
        return await super().credit(user_id, amount, idempotency_key)
