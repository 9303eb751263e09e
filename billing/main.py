"""Service wiring and FastAPI application factory."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from billing.clock import Clock, SystemClock
from billing.config import Settings
from billing.crypto import SecretCipher
from billing.ledger.repository import TransactionRepository
from billing.ledger.routes import router as transactions_router
from billing.ledger.routes import webhook_router
from billing.ledger.service import TransactionLedger
from billing.notifications.service import BillingNotifier, build_notifier
from billing.payments.gateway import PaymentGatewayAdapter
from billing.payments.paystack import PaystackGateway
from billing.payments.retry import RetryPolicy
from billing.plans.repository import PlanRepository
from billing.plans.routes import router as plans_router
from billing.plans.service import PlanCatalog
from billing.scheduler.renewal import RenewalScheduler
from billing.security.rate_limit import RateLimiter
from billing.subscription.repository import SubscriptionRepository
from billing.subscription.routes import router as subscriptions_router
from billing.subscription.service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: Settings
    clock: Clock
    cipher: SecretCipher
    gateway: PaymentGatewayAdapter
    notifier: BillingNotifier
    plan_repo: PlanRepository
    subscription_repo: SubscriptionRepository
    transaction_repo: TransactionRepository
    catalog: PlanCatalog
    ledger: TransactionLedger
    manager: SubscriptionLifecycleManager
    scheduler: RenewalScheduler


def build_services(
    settings: Settings,
    *,
    gateway: Optional[PaymentGatewayAdapter] = None,
    clock: Optional[Clock] = None,
    notifier: Optional[BillingNotifier] = None,
) -> BillingServices:
    """Construct every billing component from ``settings``.

    ``gateway``, ``clock`` and ``notifier`` may be supplied to replace the
    production instances.
    """

    clock = clock or SystemClock()
    cipher = SecretCipher(settings.cipher_secret)
    if gateway is None:
        gateway = PaystackGateway(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            callback_url=settings.paystack_callback_url,
            currency=settings.currency,
        )
    notifier = notifier or build_notifier(settings.notify_webhook_url)

    plan_repo = PlanRepository(settings.database_path)
    subscription_repo = SubscriptionRepository(settings.database_path)
    transaction_repo = TransactionRepository(settings.database_path)

    retry_policy = RetryPolicy(
        attempts=settings.retry_attempts,
        base_delay=settings.retry_base_delay,
        timeout=settings.gateway_timeout_seconds,
    )
    catalog = PlanCatalog(plan_repo, subscription_repo, clock=clock, currency=settings.currency)
    ledger = TransactionLedger(
        transaction_repo,
        gateway,
        cipher,
        retry_policy=retry_policy,
        clock=clock,
        currency=settings.currency,
    )
    manager = SubscriptionLifecycleManager(
        subscription_repo,
        catalog,
        ledger,
        notifier=notifier,
        clock=clock,
        grace_days=settings.grace_days,
    )
    scheduler = RenewalScheduler(
        subscription_repo,
        manager,
        notifier=notifier,
        clock=clock,
        reminder_days=settings.reminder_days,
    )
    return BillingServices(
        settings=settings,
        clock=clock,
        cipher=cipher,
        gateway=gateway,
        notifier=notifier,
        plan_repo=plan_repo,
        subscription_repo=subscription_repo,
        transaction_repo=transaction_repo,
        catalog=catalog,
        ledger=ledger,
        manager=manager,
        scheduler=scheduler,
    )


def create_app(services: Optional[BillingServices] = None) -> FastAPI:
    """Build the ASGI application; ``create_app`` doubles as an app factory for ASGI servers."""

    if services is None:
        services = build_services(Settings.from_env())

    app = FastAPI(title="Subscription Billing Engine")
    app.state.services = services
    app.state.plan_catalog = services.catalog
    app.state.subscription_manager = services.manager
    app.state.transaction_ledger = services.ledger
    app.state.webhook_secret = services.settings.paystack_webhook_secret or services.settings.paystack_secret_key
    app.state.webhook_rate_limiter = RateLimiter(limit=services.settings.webhook_rate_limit, window_seconds=60.0)

    app.include_router(plans_router)
    app.include_router(subscriptions_router)
    app.include_router(transactions_router)
    app.include_router(webhook_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    logger.info("Billing API ready", extra={"database": services.settings.database_path})
    return app
