"""Data models for the plan catalog."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class BillingFrequency(str, Enum):
    """How often a subscription is charged."""

    monthly = "monthly"
    yearly = "yearly"


@dataclass(slots=True)
class PlanPricing:
    monthly: Decimal
    yearly: Decimal

    def price_for(self, frequency: BillingFrequency) -> Decimal:
        if frequency is BillingFrequency.yearly:
            return self.yearly
        return self.monthly


@dataclass(slots=True)
class PlanTrial:
    is_active: bool = False
    days: int = 0


@dataclass(slots=True)
class Plan:
    """Database representation of a subscription plan."""

    id: str
    name: str
    slug: str
    code: str
    currency: str
    description: str
    pricing: PlanPricing
    trial: PlanTrial
    is_enabled: bool
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def offers_trial(self) -> bool:
        return self.trial.is_active and self.trial.days > 0

    def as_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "code": self.code,
            "currency": self.currency,
            "description": self.description,
            "pricing": {
                "monthly": str(self.pricing.monthly),
                "yearly": str(self.pricing.yearly),
            },
            "trial": {"is_active": self.trial.is_active, "days": self.trial.days},
            "is_enabled": self.is_enabled,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class PlanDefinition:
    """Administrator input for a new plan."""

    name: str
    monthly_price: Decimal
    yearly_price: Decimal
    currency: str = "NGN"
    description: str = ""
    slug: Optional[str] = None
    code: Optional[str] = None
    trial_active: bool = False
    trial_days: int = 0
    is_enabled: bool = True


@dataclass(slots=True)
class PlanPatch:
    """Partial update of a plan; ``None`` leaves the field untouched."""

    name: Optional[str] = None
    slug: Optional[str] = None
    code: Optional[str] = None
    description: Optional[str] = None
    monthly_price: Optional[Decimal] = None
    yearly_price: Optional[Decimal] = None
    trial_active: Optional[bool] = None
    trial_days: Optional[int] = None
    is_enabled: Optional[bool] = None


class TrialEligibilityReason(str, Enum):
    no_trial_available = "no_trial_available"
    previous_trial_used = "previous_trial_used"
    eligible = "eligible"


@dataclass(slots=True)
class TrialEligibility:
    is_eligible: bool
    reason: TrialEligibilityReason
    trial_days: int = 0

    def as_payload(self) -> Dict[str, Any]:
        return {
            "is_eligible": self.is_eligible,
            "reason": self.reason.value,
            "trial_days": self.trial_days,
        }


@dataclass(slots=True)
class PlanComparison:
    base_plan_id: str
    other_plan_id: str
    monthly_difference: Decimal
    yearly_difference: Decimal
    monthly_percentage: Optional[Decimal] = None
    yearly_percentage: Optional[Decimal] = None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "base_plan_id": self.base_plan_id,
            "other_plan_id": self.other_plan_id,
            "monthly_difference": str(self.monthly_difference),
            "yearly_difference": str(self.yearly_difference),
            "monthly_percentage": None if self.monthly_percentage is None else str(self.monthly_percentage),
            "yearly_percentage": None if self.yearly_percentage is None else str(self.yearly_percentage),
        }


@dataclass(slots=True)
class PlanStats:
    plan_id: str
    name: str
    active: int = 0
    trial: int = 0
    total: int = 0

    def as_payload(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "name": self.name,
            "active": self.active,
            "trial": self.trial,
            "total": self.total,
        }


class PlanCreateRequest(BaseModel):
    """Request payload for creating a plan."""

    name: str = Field(..., description="Display name of the plan")
    monthly_price: Decimal = Field(..., description="Monthly price in major units")
    yearly_price: Decimal = Field(..., description="Yearly price in major units")
    currency: str = Field("NGN", description="ISO currency code")
    description: str = ""
    slug: Optional[str] = None
    code: Optional[str] = None
    trial_active: bool = False
    trial_days: int = 0
    is_enabled: bool = True

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, value: str) -> str:
        return value.upper()

    def to_definition(self) -> PlanDefinition:
        return PlanDefinition(**self.model_dump())


class PlanUpdateRequest(BaseModel):
    """Request payload for patching a plan."""

    name: Optional[str] = None
    slug: Optional[str] = None
    code: Optional[str] = None
    description: Optional[str] = None
    monthly_price: Optional[Decimal] = None
    yearly_price: Optional[Decimal] = None
    trial_active: Optional[bool] = None
    trial_days: Optional[int] = None
    is_enabled: Optional[bool] = None

    def to_patch(self) -> PlanPatch:
        return PlanPatch(**self.model_dump())
