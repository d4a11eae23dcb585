"""
Gateway registry.

Which gateways exist is configuration data: the allow-list comes from
billing settings and each adapter registers itself when its credentials
are present.
"""

from collections.abc import Iterable
from typing import Any

import httpx
import structlog

from ..config import BillingConfig, get_billing_config
from ..exceptions import GatewayNotFoundError
from .base import PaymentGateway
from .nowpayments import NowPaymentsGateway

logger = structlog.get_logger(__name__)


class GatewayRegistry:
    """Enabled payment gateway adapters, looked up by name."""

    def __init__(
        self,
        gateways: Iterable[PaymentGateway] = (),
        billing_config: BillingConfig | None = None,
    ) -> None:
        self.billing_config = billing_config or get_billing_config()
        self._gateways: dict[str, PaymentGateway] = {}
        for gateway in gateways:
            self.register(gateway)

    def register(self, gateway: PaymentGateway) -> None:
        self._gateways[gateway.name.lower()] = gateway
        logger.info("billing.gateway.registered", gateway=gateway.name, enabled=gateway.is_enabled)

    def get(self, name: str) -> PaymentGateway:
        """
        Resolve an enabled, allow-listed gateway.

        Raises:
            GatewayNotFoundError: unknown, not allow-listed or disabled gateway
        """
        key = name.lower()
        gateway = self._gateways.get(key)
        if gateway is None or not self.billing_config.is_gateway_allowed(key):
            raise GatewayNotFoundError(f"Payment gateway '{name}' is not available", gateway=name)
        if not gateway.is_enabled:
            raise GatewayNotFoundError(f"Payment gateway '{name}' is not enabled", gateway=name)
        return gateway

    def names(self) -> list[str]:
        return sorted(
            name
            for name, gateway in self._gateways.items()
            if gateway.is_enabled and self.billing_config.is_gateway_allowed(name)
        )

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self.names()

    async def close(self) -> None:
        for gateway in self._gateways.values():
            await gateway.close()

    @classmethod
    def from_settings(
        cls,
        settings: Any = None,
        billing_config: BillingConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "GatewayRegistry":
        """Build the registry from platform settings."""
        if settings is None:
            from mirza.platform.settings import get_settings

            settings = get_settings()

        config = billing_config or BillingConfig.from_settings(settings)
        registry = cls(billing_config=config)

        if config.is_gateway_allowed(NowPaymentsGateway.name) and settings.nowpayments.api_key:
            registry.register(
                NowPaymentsGateway.from_settings(
                    settings, billing_config=config, transport=transport
                )
            )

        return registry


__all__ = ["GatewayRegistry"]
