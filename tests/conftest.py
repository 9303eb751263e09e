import asyncio
import inspect
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from billing.clock import FrozenClock
from billing.config import Settings
from billing.errors import GatewayError
from billing.main import build_services, create_app
from billing.payments.models import (
    CardDetails,
    CardVerification,
    ChargeResult,
    ChargeVerification,
    GatewayCard,
    PaymentMethod,
    RefundResult,
    TransactionStatus,
)
from billing.plans.models import PlanDefinition

NOW = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)


class FakeGateway:
    """Scriptable gateway: queue statuses or exceptions per operation."""

    name = "fake"

    def __init__(self):
        self.charge_outcomes = []
        self.verify_outcomes = []
        self.refund_outcomes = []
        self.card_outcomes = []
        self.charges = []
        self.verifications = []
        self.refunds = []
        self.card_checks = []

    @staticmethod
    def _next(queue, default):
        outcome = queue.pop(0) if queue else default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def initialize_charge(self, amount, payment_method, idempotency_key):
        self.charges.append((amount, payment_method, idempotency_key))
        status = self._next(self.charge_outcomes, TransactionStatus.SUCCESSFUL)
        return ChargeResult(
            status=status,
            provider_ref=f"PSK-{idempotency_key}",
            card=GatewayCard(
                authorization_code=f"AUTH_{len(self.charges)}",
                last4="4081",
                brand="visa",
                reusable=True,
            ),
            raw={"status": status.value, "reference": idempotency_key},
        )

    async def verify_charge(self, reference):
        self.verifications.append(reference)
        status = self._next(self.verify_outcomes, TransactionStatus.SUCCESSFUL)
        return ChargeVerification(status=status, amount=Decimal("0"), raw={"status": status.value})

    async def refund(self, reference, amount, reason):
        self.refunds.append((reference, amount, reason))
        status = self._next(self.refund_outcomes, TransactionStatus.PENDING)
        return RefundResult(status=status, refund_ref=f"RFD-{reference}", amount=amount, raw={"status": "pending"})

    async def calculate_fee(self, amount):
        return (Decimal(amount) * Decimal("0.015")).quantize(Decimal("0.01"))

    async def verify_card(self, payment_method, reference):
        self.card_checks.append((payment_method, reference))
        status = self._next(self.card_outcomes, TransactionStatus.SUCCESSFUL)
        return CardVerification(
            status=status,
            reference=f"verify_{reference}",
            card=GatewayCard(
                authorization_code="AUTH_VERIFIED",
                last4=payment_method.card.last4,
                brand="mastercard",
                reusable=True,
            ),
            raw={"status": status.value},
        )


class RecordingNotifier:
    def __init__(self):
        self.notifications = []

    def notify(self, notification):
        self.notifications.append(notification)

    async def drain(self):
        return None

    def kinds(self):
        return [notification.kind.value for notification in self.notifications]


def transient(message="gateway timeout"):
    return GatewayError(message, retryable=True)


def declined(message="insufficient funds"):
    return GatewayError(message, retryable=False)


@pytest.fixture()
def clock():
    return FrozenClock(NOW)


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        cipher_secret="test-cipher-secret",
        database_path=str(tmp_path / "billing.sqlite3"),
        paystack_webhook_secret="test-webhook-secret",
        retry_base_delay=0.0,
    )


@pytest.fixture()
def services(settings, gateway, clock, notifier):
    return build_services(settings, gateway=gateway, clock=clock, notifier=notifier)


@pytest.fixture()
def card_method():
    return PaymentMethod(
        email="ada@example.com",
        type="card",
        card=CardDetails(number="4084084084084081", cvv="408", expiry_month="12", expiry_year="2030"),
    )


@pytest.fixture()
def make_plan(services):
    async def _make_plan(name="Basic", monthly="10.00", yearly="100.00", **extra):
        result = await services.catalog.create_plan(
            PlanDefinition(name=name, monthly_price=Decimal(monthly), yearly_price=Decimal(yearly), **extra)
        )
        assert result.ok, result.message
        return result.data

    return _make_plan


@pytest.fixture()
def client(services):
    """Provide a FastAPI TestClient bound to the test services."""

    return TestClient(create_app(services))


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run async test functions without requiring pytest-asyncio plugin."""

    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        parameters = inspect.signature(test_func).parameters
        kwargs = {name: value for name, value in pyfuncitem.funcargs.items() if name in parameters}
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(test_func(**kwargs))
        finally:
            loop.close()
        return True
    return None
