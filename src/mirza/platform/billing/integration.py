"""
Billing integration.

Wires stores, gateways, domain services and effect dispatch into one
object the host application creates at startup, and mounts the webhook
router on a FastAPI app.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from fastapi import FastAPI

from mirza.platform.logging import setup_logging
from mirza.platform.settings import Settings, get_settings

from .config import BillingConfig
from .core.interfaces import AggregateStore, BalanceLedger, Clock, NotificationSink, SystemClock
from .events import EffectDispatcher
from .gateways.registry import GatewayRegistry
from .payments.checkout import CheckoutService
from .payments.service import PaymentService
from .storage.sql import SQLAggregateStore, SQLBalanceLedger
from .subscriptions.lifecycle import LifecycleReport, SubscriptionLifecycle
from .subscriptions.service import SubscriptionService
from .webhooks.reconciliation import WebhookReconciler
from .webhooks.router import router as webhook_router

logger = structlog.get_logger(__name__)


class LoggingNotificationSink:
    """NotificationSink that only logs; used until a messaging sink is configured."""

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        logger.info("billing.notification", user_id=user_id, billing_event=event)


@dataclass
class MaintenanceReport:
    """What one maintenance pass did."""

    expired_payments: list[str] = field(default_factory=list)
    lifecycle: LifecycleReport = field(default_factory=LifecycleReport)
    relayed_effects: int = 0


@dataclass
class BillingIntegration:
    """Billing components sharing one store, config and clock."""

    config: BillingConfig
    store: AggregateStore
    gateways: GatewayRegistry
    dispatcher: EffectDispatcher
    payments: PaymentService
    subscriptions: SubscriptionService
    checkout: CheckoutService
    lifecycle: SubscriptionLifecycle
    webhooks: WebhookReconciler

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        store: AggregateStore | None = None,
        ledger: BalanceLedger | None = None,
        notifier: NotificationSink | None = None,
        gateways: GatewayRegistry | None = None,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "BillingIntegration":
        """
        Build billing from settings.

        Defaults to the SQL store and ledger on the configured database and
        to gateways built from settings. Pass explicit components to
        override any of them.
        """
        settings = settings or get_settings()
        config = BillingConfig.from_settings(settings)
        clock = clock or SystemClock()

        if store is None:
            store = SQLAggregateStore(lock_timeout=settings.database.lock_timeout_seconds)
        if ledger is None:
            ledger = SQLBalanceLedger()
        gateways = gateways or GatewayRegistry.from_settings(
            settings, billing_config=config, transport=transport
        )
        dispatcher = EffectDispatcher(
            ledger, notifier or LoggingNotificationSink(), currency_table=config.currency_table
        )

        payments = PaymentService(config=config, clock=clock)
        subscriptions = SubscriptionService(config=config, clock=clock)

        logger.info(
            "billing.integration.created",
            gateways=gateways.names(),
            default_currency=config.default_currency,
        )

        return cls(
            config=config,
            store=store,
            gateways=gateways,
            dispatcher=dispatcher,
            payments=payments,
            subscriptions=subscriptions,
            checkout=CheckoutService(
                store,
                gateways,
                payments,
                dispatcher=dispatcher,
                callback_base_url=settings.base_url,
            ),
            lifecycle=SubscriptionLifecycle(
                store, subscriptions, dispatcher=dispatcher, config=config
            ),
            webhooks=WebhookReconciler(store, gateways, payments, dispatcher=dispatcher),
        )

    def install(self, app: FastAPI, configure_logging: bool = True) -> None:
        """
        Mount the webhook router and expose the reconciler to it.

        Also configures structlog from settings unless the host application
        has its own logging setup.
        """
        if configure_logging:
            setup_logging()
        app.state.billing = self
        app.state.webhook_reconciler = self.webhooks
        app.include_router(webhook_router)

    async def run_maintenance(self) -> MaintenanceReport:
        """
        Periodic billing jobs.

        Expires stale pending payments, advances lapsed subscriptions and
        relays outbox effects whose delivery failed earlier. The host
        application schedules it.
        """
        report = MaintenanceReport(
            expired_payments=await self.checkout.expire_stale_payments(),
            lifecycle=await self.lifecycle.sweep(),
            relayed_effects=await self.dispatcher.relay(self.store),
        )
        logger.info(
            "billing.maintenance.completed",
            expired_payments=len(report.expired_payments),
            subscriptions_changed=report.lifecycle.total,
            relayed_effects=report.relayed_effects,
        )
        return report

    async def close(self) -> None:
        await self.gateways.close()


__all__ = ["BillingIntegration", "MaintenanceReport", "LoggingNotificationSink"]
