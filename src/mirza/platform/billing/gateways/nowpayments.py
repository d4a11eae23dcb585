"""
NowPayments gateway adapter.

Creates crypto invoices through the NowPayments REST API and authenticates
IPN callbacks. IPN signatures are an HMAC-SHA512 over the callback body
re-serialized with recursively sorted keys and compact separators.
"""

import hashlib
import hmac
import json
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, ClassVar

import httpx
import structlog

from ..config import BillingConfig
from ..core.enums import PaymentStatus
from ..exceptions import (
    AuthenticationError,
    BillingConfigurationError,
    ExternalServiceError,
    ValidationError,
)
from ..money_utils import Money
from .base import GatewayPayment, GatewayStatusSnapshot, GatewayVerification, PaymentGateway

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.nowpayments.io/v1"
PAY_AMOUNT_QUANTUM = Decimal("0.00000001")


def canonical_json(data: Any) -> bytes:
    """Key-sorted compact JSON used for IPN signatures."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def sign_payload(data: Any, secret: str) -> str:
    """Hex HMAC-SHA512 signature of ``data`` as NowPayments computes it."""
    return hmac.new(secret.encode("utf-8"), canonical_json(data), hashlib.sha512).hexdigest()


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class NowPaymentsGateway(PaymentGateway):
    """NowPayments API client."""

    name: ClassVar[str] = "nowpayments"
    signature_header: ClassVar[str | None] = "x-nowpayments-sig"

    STATUS_MAP: ClassVar[dict[str, PaymentStatus]] = {
        "waiting": PaymentStatus.PENDING,
        "confirming": PaymentStatus.PENDING,
        "confirmed": PaymentStatus.PENDING,
        "sending": PaymentStatus.PENDING,
        "partially_paid": PaymentStatus.PENDING,
        "finished": PaymentStatus.COMPLETED,
        "failed": PaymentStatus.FAILED,
        "refunded": PaymentStatus.REFUNDED,
        "expired": PaymentStatus.EXPIRED,
    }

    SUPPORTED_CURRENCIES: ClassVar[frozenset[str]] = frozenset(
        {"USD", "EUR", "BTC", "ETH", "LTC", "TRX", "USDT"}
    )

    def __init__(
        self,
        api_key: str,
        ipn_secret: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        pay_currency: str = "TRX",
        timeout: float = 30.0,
        public_base_url: str = "",
        billing_config: BillingConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize NowPayments client.

        Args:
            api_key: NowPayments API key
            ipn_secret: IPN secret; the API key signs callbacks when unset
            base_url: API base URL
            pay_currency: Cryptocurrency requested from the payer
            timeout: Request timeout in seconds
            public_base_url: Bot backend URL used for success/cancel links
            billing_config: Fee and amount-limit configuration
            transport: Optional httpx transport (tests use MockTransport)
        """
        super().__init__(billing_config)
        self.api_key = api_key
        self.ipn_secret = ipn_secret or api_key
        self.base_url = base_url.rstrip("/")
        self.pay_currency = pay_currency.upper()
        self.timeout = timeout
        self.public_base_url = public_base_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Any = None,
        billing_config: BillingConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "NowPaymentsGateway":
        if settings is None:
            from mirza.platform.settings import get_settings

            settings = get_settings()

        np_settings = settings.nowpayments
        return cls(
            api_key=np_settings.api_key,
            ipn_secret=np_settings.ipn_secret or None,
            base_url=np_settings.base_url,
            pay_currency=np_settings.pay_currency,
            timeout=np_settings.timeout_seconds,
            public_base_url=settings.base_url,
            billing_config=billing_config,
            transport=transport,
        )

    @property
    def is_enabled(self) -> bool:
        return bool(self.api_key)

    @property
    def supported_currencies(self) -> frozenset[str]:
        return self.SUPPORTED_CURRENCIES

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "x-api-key": self.api_key,
                },
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """
        Make an HTTP request to the NowPayments API.

        Raises:
            ExternalServiceError: timeout, transport failure or error status;
                4xx responses are not retryable
        """
        client = await self._get_client()

        try:
            response = await client.request(method=method, url=path, json=data)
        except httpx.TimeoutException as e:
            logger.error("NowPayments request timeout", path=path, error=str(e))
            raise ExternalServiceError(
                f"NowPayments request timed out: {path}", provider=self.name
            ) from e
        except httpx.RequestError as e:
            logger.error("NowPayments request failed", path=path, error=str(e))
            raise ExternalServiceError(
                f"NowPayments request failed: {path}", provider=self.name
            ) from e

        if response.status_code >= 400:
            detail = response.text
            try:
                detail = response.json().get("message", detail)
            except (ValueError, AttributeError):
                pass

            retryable = response.status_code >= 500 or response.status_code == 429
            logger.warning(
                "NowPayments API error",
                path=path,
                status_code=response.status_code,
                retryable=retryable,
            )
            raise ExternalServiceError(
                f"NowPayments API error: {detail}",
                provider=self.name,
                retryable=retryable,
                upstream_status=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"NowPayments returned a non-JSON response: {path}", provider=self.name
            ) from e

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Current rate (``to_currency`` units per ``from_currency`` unit)."""
        data = await self._request("GET", "/exchange-rates")
        rates = data.get("rates", data.get("data", [])) if isinstance(data, dict) else data

        for entry in rates or []:
            if (
                str(entry.get("currency_from", "")).upper() == from_currency.upper()
                and str(entry.get("currency_to", "")).upper() == to_currency.upper()
            ):
                rate = _decimal(entry.get("rate"))
                if rate is not None and rate > 0:
                    return rate

        raise ExternalServiceError(
            f"Exchange rate not found for {from_currency} to {to_currency}",
            provider=self.name,
            retryable=False,
        )

    async def create_payment(
        self,
        order_id: str,
        amount: Money,
        description: str,
        callback_url: str,
        metadata: dict[str, Any] | None = None,
    ) -> GatewayPayment:
        if not self.is_enabled:
            raise BillingConfigurationError(
                "NowPayments gateway is not configured", config_key="nowpayments.api_key"
            )
        if amount.currency not in self.supported_currencies:
            raise ValidationError(
                f"NowPayments does not accept {amount.currency} prices", field="currency"
            )

        rate = await self.get_exchange_rate(amount.currency, self.pay_currency)
        pay_amount = (amount.amount * rate).quantize(PAY_AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)

        request_data = {
            "price_amount": float(amount.amount),
            "price_currency": amount.currency.lower(),
            "pay_currency": self.pay_currency.lower(),
            "pay_amount": float(pay_amount),
            "order_id": order_id,
            "order_description": description,
            "ipn_callback_url": callback_url,
            "success_url": f"{self.public_base_url}/payment/success",
            "cancel_url": f"{self.public_base_url}/payment/cancel",
        }
        data = await self._request("POST", "/payment", request_data)

        payment_id = data.get("payment_id")
        if payment_id is None:
            raise ExternalServiceError(
                "NowPayments response is missing payment_id", provider=self.name
            )

        logger.info(
            "NowPayments payment created",
            order_id=order_id,
            provider_payment_id=str(payment_id),
            pay_amount=str(pay_amount),
            pay_currency=self.pay_currency,
        )
        return GatewayPayment(
            transaction_id=str(payment_id),
            payment_url=data.get("payment_url") or data.get("invoice_url"),
            pay_address=data.get("pay_address"),
            pay_amount=str(pay_amount),
            pay_currency=self.pay_currency,
            qr_code=data.get("qr_code"),
            expiration_estimate_date=data.get("expiration_estimate_date"),
            raw=data,
        )

    async def verify_payment(
        self, payment_id: str | None, payload: bytes, signature: str | None
    ) -> GatewayVerification:
        if not signature:
            raise AuthenticationError("Missing IPN signature", provider=self.name)
        if not self.ipn_secret:
            raise AuthenticationError("IPN secret is not configured", provider=self.name)

        try:
            data = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise AuthenticationError("IPN body is not valid JSON", provider=self.name) from e
        if not isinstance(data, dict):
            raise AuthenticationError("IPN body must be a JSON object", provider=self.name)

        expected = sign_payload(data, self.ipn_secret)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise AuthenticationError("Invalid IPN signature", provider=self.name)

        order_id = str(data.get("order_id") or "")
        if not order_id:
            raise ValidationError("IPN payload is missing order_id", field="order_id")
        if payment_id is not None and order_id != payment_id:
            raise ValidationError("IPN order_id does not match payment", field="order_id")

        provider_status = str(data.get("payment_status") or "")
        return GatewayVerification(
            order_id=order_id,
            provider_payment_id=(
                str(data["payment_id"]) if data.get("payment_id") is not None else None
            ),
            provider_status=provider_status,
            status=self.map_status(provider_status),
            amount=self._price(data),
            payload=data,
        )

    async def get_payment_status(self, payment_id: str) -> GatewayStatusSnapshot:
        data = await self._request("GET", f"/payment/{payment_id}")
        provider_status = str(data.get("payment_status") or "")

        updated_at = None
        raw_updated = data.get("updated_at")
        if raw_updated:
            try:
                updated_at = datetime.fromisoformat(str(raw_updated).replace("Z", "+00:00"))
            except ValueError:
                updated_at = None

        return GatewayStatusSnapshot(
            provider_payment_id=str(data.get("payment_id", payment_id)),
            provider_status=provider_status,
            status=self.map_status(provider_status),
            amount=self._price(data),
            updated_at=updated_at,
            raw=data,
        )

    def _price(self, data: dict[str, Any]) -> Money | None:
        """Price amount/currency from a provider payload, when both are present."""
        amount = _decimal(data.get("price_amount"))
        currency = str(data.get("price_currency") or "").upper()
        if amount is None or not currency:
            return None
        table = self.billing_config.currency_table
        if not table.supports(currency):
            return None
        return table.money(amount, currency)


__all__ = ["NowPaymentsGateway", "canonical_json", "sign_payload", "DEFAULT_BASE_URL"]
