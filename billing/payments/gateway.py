"""Contract every payment processor adapter implements."""

from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from .models import (
    CardVerification,
    ChargeResult,
    ChargeVerification,
    PaymentMethod,
    RefundResult,
)


class PaymentGatewayAdapter(Protocol):
    """Async interface to a third-party card processor.

    Adapters raise :class:`billing.errors.GatewayError` for failures, with
    ``retryable=True`` only for transient conditions. A declined charge is not
    an exception: it comes back as a result whose status is ``FAILED``.
    """

    name: str

    async def initialize_charge(
        self, amount: Decimal, payment_method: PaymentMethod, idempotency_key: str
    ) -> ChargeResult:
        """Start a charge for ``amount`` (major units) under ``idempotency_key``."""

    async def verify_charge(self, reference: str) -> ChargeVerification:
        """Fetch the processor's current view of a charge."""

    async def refund(self, reference: str, amount: Decimal, reason: str) -> RefundResult:
        """Refund ``amount`` of the charge identified by ``reference``."""

    async def calculate_fee(self, amount: Decimal) -> Decimal:
        """Return the processor fee for charging ``amount``."""

    async def verify_card(self, payment_method: PaymentMethod, reference: str) -> CardVerification:
        """Verify a card with a minimal authorization."""
