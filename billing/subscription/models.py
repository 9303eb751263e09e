"""Data models for subscription lifecycle management."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from billing.payments.models import CardDetails, PaymentMethod
from billing.plans.models import BillingFrequency, Plan
from billing.storage import from_iso, to_decimal, to_iso

DEFAULT_GRACE_DAYS = 7

_CENTS = Decimal("0.01")


class SubscriptionStatus(str, Enum):
    """Lifecycle status for a subscription; ``cancelled`` and ``expired`` are terminal."""

    trial = "trial"
    active = "active"
    cancelled = "cancelled"
    expired = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.cancelled, SubscriptionStatus.expired)


LIVE_STATUSES = (SubscriptionStatus.trial, SubscriptionStatus.active)


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""

    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_years(moment: datetime, years: int) -> datetime:
    year = moment.year + years
    day = min(moment.day, calendar.monthrange(year, moment.month)[1])
    return moment.replace(year=year, day=day)


@dataclass(slots=True)
class BillingPeriod:
    """Amount and dates of one billing cycle."""

    amount: Decimal
    start_date: datetime
    due_date: datetime
    grace_date: datetime
    frequency: BillingFrequency
    paid_date: Optional[datetime] = None

    @classmethod
    def for_plan(
        cls,
        plan: Plan,
        frequency: BillingFrequency,
        start: datetime,
        *,
        grace_days: int = DEFAULT_GRACE_DAYS,
    ) -> "BillingPeriod":
        """Compute a paid cycle from the plan's current pricing."""

        if frequency is BillingFrequency.yearly:
            due = add_years(start, 1)
        else:
            due = add_months(start, 1)
        return cls(
            amount=plan.pricing.price_for(frequency),
            start_date=start,
            due_date=due,
            grace_date=due + timedelta(days=grace_days),
            frequency=frequency,
            paid_date=start,
        )

    @classmethod
    def for_trial(
        cls,
        plan: Plan,
        frequency: BillingFrequency,
        start: datetime,
        *,
        grace_days: int = DEFAULT_GRACE_DAYS,
    ) -> "BillingPeriod":
        due = start + timedelta(days=plan.trial.days)
        return cls(
            amount=plan.pricing.price_for(frequency),
            start_date=start,
            due_date=due,
            grace_date=due + timedelta(days=grace_days),
            frequency=frequency,
            paid_date=None,
        )

    def as_payload(self) -> Dict[str, Any]:
        return {
            "amount": str(self.amount),
            "start_date": to_iso(self.start_date),
            "paid_date": to_iso(self.paid_date),
            "due_date": to_iso(self.due_date),
            "grace_date": to_iso(self.grace_date),
            "frequency": self.frequency.value,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BillingPeriod":
        return cls(
            amount=to_decimal(payload["amount"]),
            start_date=from_iso(payload["start_date"]),
            paid_date=from_iso(payload.get("paid_date")),
            due_date=from_iso(payload["due_date"]),
            grace_date=from_iso(payload["grace_date"]),
            frequency=BillingFrequency(payload["frequency"]),
        )


def prorate(
    current_price: Decimal,
    new_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> Decimal:
    """Charge for moving to ``new_price`` for the rest of the current cycle.

    ``(new - old) * days_remaining / total_days`` over whole (floored) days,
    rounded half-up to cents. Never negative.
    """

    total_days = (period_end - period_start).days
    if total_days <= 0:
        return Decimal("0.00")
    days_remaining = min(max((period_end - now).days, 0), total_days)
    difference = Decimal(new_price) - Decimal(current_price)
    amount = difference * Decimal(days_remaining) / Decimal(total_days)
    return max(amount, Decimal("0")).quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class TrialMetadata:
    started_at: datetime
    ends_at: datetime
    trial_started: bool = True
    # Plan the trial was granted on; it stays fixed if the plan is switched mid-trial.
    plan_id: Optional[str] = None

    kind = "trial"

    def as_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "trial_started": self.trial_started,
            "plan_id": self.plan_id,
            "started_at": to_iso(self.started_at),
            "ends_at": to_iso(self.ends_at),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TrialMetadata":
        return cls(
            started_at=from_iso(payload["started_at"]),
            ends_at=from_iso(payload["ends_at"]),
            trial_started=bool(payload.get("trial_started", True)),
            plan_id=payload.get("plan_id"),
        )


@dataclass(slots=True)
class CancellationMetadata:
    reason: str
    cancelled_at: datetime
    access_until: Optional[datetime] = None
    auto_renew: bool = False

    kind = "cancellation"

    def as_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "reason": self.reason,
            "cancelled_at": to_iso(self.cancelled_at),
            "access_until": to_iso(self.access_until),
            "auto_renew": self.auto_renew,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CancellationMetadata":
        return cls(
            reason=payload.get("reason") or "",
            cancelled_at=from_iso(payload["cancelled_at"]),
            access_until=from_iso(payload.get("access_until")),
            auto_renew=bool(payload.get("auto_renew", False)),
        )


@dataclass(slots=True)
class DowngradeMetadata:
    target_plan_id: str
    previous_plan_id: str
    requested_at: datetime
    effective_at: datetime

    kind = "downgrade"

    def as_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "target_plan_id": self.target_plan_id,
            "previous_plan_id": self.previous_plan_id,
            "requested_at": to_iso(self.requested_at),
            "effective_at": to_iso(self.effective_at),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DowngradeMetadata":
        return cls(
            target_plan_id=payload["target_plan_id"],
            previous_plan_id=payload["previous_plan_id"],
            requested_at=from_iso(payload["requested_at"]),
            effective_at=from_iso(payload["effective_at"]),
        )


@dataclass(slots=True)
class PaymentMethodMetadata:
    type: str
    updated_at: datetime
    last4: Optional[str] = None
    brand: Optional[str] = None

    kind = "payment_method"

    def as_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "type": self.type,
            "last4": self.last4,
            "brand": self.brand,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PaymentMethodMetadata":
        return cls(
            type=payload.get("type") or "card",
            last4=payload.get("last4"),
            brand=payload.get("brand"),
            updated_at=from_iso(payload["updated_at"]),
        )


@dataclass(slots=True)
class ReminderMetadata:
    due_date: datetime
    sent_at: datetime

    kind = "reminder"

    def as_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "due_date": to_iso(self.due_date), "sent_at": to_iso(self.sent_at)}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ReminderMetadata":
        return cls(due_date=from_iso(payload["due_date"]), sent_at=from_iso(payload["sent_at"]))


_VARIANTS = {
    variant.kind: variant
    for variant in (
        TrialMetadata,
        CancellationMetadata,
        DowngradeMetadata,
        PaymentMethodMetadata,
        ReminderMetadata,
    )
}


@dataclass(slots=True)
class SubscriptionMetadata:
    """One optional slot per reason; a transition only touches its own slot."""

    trial: Optional[TrialMetadata] = None
    cancellation: Optional[CancellationMetadata] = None
    downgrade: Optional[DowngradeMetadata] = None
    payment_method: Optional[PaymentMethodMetadata] = None
    reminder: Optional[ReminderMetadata] = None

    @property
    def trial_started(self) -> bool:
        return self.trial is not None and self.trial.trial_started

    def as_payload(self) -> List[Dict[str, Any]]:
        entries = (self.trial, self.cancellation, self.downgrade, self.payment_method, self.reminder)
        return [entry.as_payload() for entry in entries if entry is not None]

    @classmethod
    def from_payload(cls, entries: List[Dict[str, Any]]) -> "SubscriptionMetadata":
        metadata = cls()
        for entry in entries or []:
            variant = _VARIANTS.get(entry.get("kind"))
            if variant is None:
                continue
            setattr(metadata, variant.kind, variant.from_payload(entry))
        return metadata


@dataclass(slots=True)
class Subscription:
    """Database representation of a subscription."""

    id: str
    code: str
    slug: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    is_paid: bool
    billing: BillingPeriod
    transaction_ids: List[str] = field(default_factory=list)
    metadata: SubscriptionMetadata = field(default_factory=SubscriptionMetadata)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def pending_downgrade(self) -> bool:
        return self.metadata.downgrade is not None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "slug": self.slug,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "is_paid": self.is_paid,
            "pending_downgrade": self.pending_downgrade,
            "billing": self.billing.as_payload(),
            "transaction_ids": list(self.transaction_ids),
            "metadata": self.metadata.as_payload(),
            "version": self.version,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


def has_access(subscription: Subscription, now: datetime) -> bool:
    """Whether the subscriber may use the service at ``now``.

    Cancelled subscriptions keep access until the end of the period they paid for.
    """

    if subscription.status is SubscriptionStatus.active:
        return now < subscription.billing.grace_date
    if subscription.status is SubscriptionStatus.trial:
        return now < subscription.billing.due_date
    if subscription.status is SubscriptionStatus.cancelled:
        cancellation = subscription.metadata.cancellation
        if cancellation is not None and cancellation.access_until is not None:
            return now < cancellation.access_until
    return False


class CardPayload(BaseModel):
    number: str = Field(..., min_length=12, max_length=19)
    cvv: str = Field(..., min_length=3, max_length=4)
    expiry_month: str
    expiry_year: str


class PaymentMethodPayload(BaseModel):
    """Payment method as accepted over HTTP."""

    email: str
    type: str = "card"
    card: Optional[CardPayload] = None
    authorization_code: Optional[str] = None

    @field_validator("email")
    @classmethod
    def strip_email(cls, value: str) -> str:
        return value.strip()

    def to_payment_method(self) -> PaymentMethod:
        card = None
        if self.card is not None:
            card = CardDetails(
                number=self.card.number,
                cvv=self.card.cvv,
                expiry_month=self.card.expiry_month,
                expiry_year=self.card.expiry_year,
            )
        return PaymentMethod(
            email=self.email,
            type=self.type,
            card=card,
            authorization_code=self.authorization_code,
        )


class SubscriptionCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)
    frequency: BillingFrequency = BillingFrequency.monthly
    payment_method: PaymentMethodPayload


class SubscriptionRenewRequest(BaseModel):
    payment_method: Optional[PaymentMethodPayload] = None


class SubscriptionCancelRequest(BaseModel):
    reason: str = Field("", max_length=500)


class SubscriptionChangePlanRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)
    payment_method: Optional[PaymentMethodPayload] = None


class PaymentMethodUpdateRequest(BaseModel):
    payment_method: PaymentMethodPayload


class SubscriptionRefundRequest(BaseModel):
    reason: str = Field("Customer requested refund", max_length=500)
