"""Plan catalog: definitions, versioning, enablement and trial eligibility."""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import uuid4

from billing.clock import Clock, SystemClock
from billing.errors import ConflictError, NotFoundError, ValidationError, operation_result
from billing.subscription.models import LIVE_STATUSES, SubscriptionStatus
from billing.subscription.repository import SubscriptionRepository

from .models import (
    Plan,
    PlanComparison,
    PlanDefinition,
    PlanPatch,
    PlanPricing,
    PlanStats,
    PlanTrial,
    TrialEligibility,
    TrialEligibilityReason,
)
from .repository import PlanRepository

logger = logging.getLogger(__name__)

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_CENTS = Decimal("0.01")


def slugify(name: str) -> str:
    """Lowercase ``name`` and collapse non-alphanumeric runs into single hyphens."""

    return _SLUG_PATTERN.sub("-", name.lower()).strip("-")


def _price(value: Any, field_name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a number") from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field_name} must be a non-negative amount")
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def _trial_days(value: int) -> int:
    if value is None or int(value) < 0:
        raise ValidationError("trial_days must be zero or more")
    return int(value)


def _percentage(difference: Decimal, base: Decimal) -> Optional[Decimal]:
    if base == 0:
        return None
    return (difference / base * 100).quantize(_CENTS, rounding=ROUND_HALF_UP)


class PlanCatalog:
    """Administrator-facing plan management plus read helpers for the lifecycle manager."""

    def __init__(
        self,
        plans: PlanRepository,
        subscriptions: SubscriptionRepository,
        *,
        clock: Clock | None = None,
        currency: str = "NGN",
    ) -> None:
        self._plans = plans
        self._subscriptions = subscriptions
        self._clock = clock or SystemClock()
        self._currency = currency

    # Internal helpers used by other services; these raise instead of returning results.

    def fetch_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    def fetch_enabled_plan(self, plan_id: str) -> Plan:
        plan = self.fetch_plan(plan_id)
        if not plan.is_enabled:
            raise ValidationError(f"Plan {plan.name} is not available")
        return plan

    def evaluate_trial_eligibility(self, user_id: str, plan: Plan) -> TrialEligibility:
        if not plan.offers_trial:
            return TrialEligibility(False, TrialEligibilityReason.no_trial_available)
        if self._subscriptions.has_trial_history(user_id, plan.id):
            return TrialEligibility(False, TrialEligibilityReason.previous_trial_used)
        return TrialEligibility(True, TrialEligibilityReason.eligible, plan.trial.days)

    # Public operations

    @operation_result("Plans retrieved successfully")
    async def list_plans(self, include_disabled: bool = False) -> List[Dict[str, Any]]:
        return [plan.as_payload() for plan in self._plans.all(include_disabled=include_disabled)]

    @operation_result("Plan retrieved successfully")
    async def get_plan(self, plan_id: str) -> Dict[str, Any]:
        return self.fetch_plan(plan_id).as_payload()

    @operation_result("Plan created successfully")
    async def create_plan(self, definition: PlanDefinition) -> Dict[str, Any]:
        name = (definition.name or "").strip()
        if not name:
            raise ValidationError("Plan name is required")
        monthly = _price(definition.monthly_price, "monthly_price")
        yearly = _price(definition.yearly_price, "yearly_price")
        trial_days = _trial_days(definition.trial_days)

        slug = slugify(definition.slug or name)
        if not slug:
            raise ValidationError("Plan name must contain letters or digits")
        code = (definition.code or slug.replace("-", "_")).upper()

        now = self._clock.now()
        plan = Plan(
            id=uuid4().hex,
            name=name,
            slug=slug,
            code=code,
            currency=(definition.currency or self._currency).upper(),
            description=definition.description or "",
            pricing=PlanPricing(monthly=monthly, yearly=yearly),
            trial=PlanTrial(is_active=bool(definition.trial_active), days=trial_days),
            is_enabled=bool(definition.is_enabled),
            version=1,
            created_at=now,
            updated_at=now,
        )
        self._plans.create(plan)
        logger.info("Plan created", extra={"plan_id": plan.id, "slug": plan.slug})
        return plan.as_payload()

    @operation_result("Plan updated successfully")
    async def update_plan(self, plan_id: str, patch: PlanPatch) -> Dict[str, Any]:
        plan = self.fetch_plan(plan_id)
        updated = replace(plan)

        if patch.name is not None:
            if not patch.name.strip():
                raise ValidationError("Plan name is required")
            updated.name = patch.name.strip()
        if patch.description is not None:
            updated.description = patch.description
        if patch.monthly_price is not None or patch.yearly_price is not None:
            updated.pricing = PlanPricing(
                monthly=_price(patch.monthly_price, "monthly_price")
                if patch.monthly_price is not None
                else plan.pricing.monthly,
                yearly=_price(patch.yearly_price, "yearly_price")
                if patch.yearly_price is not None
                else plan.pricing.yearly,
            )
        if patch.trial_active is not None or patch.trial_days is not None:
            updated.trial = PlanTrial(
                is_active=plan.trial.is_active if patch.trial_active is None else bool(patch.trial_active),
                days=plan.trial.days if patch.trial_days is None else _trial_days(patch.trial_days),
            )
        if patch.slug is not None:
            updated.slug = slugify(patch.slug)
            if not updated.slug:
                raise ValidationError("Plan slug must contain letters or digits")
        if patch.code is not None:
            updated.code = patch.code.strip().upper()
            if not updated.code:
                raise ValidationError("Plan code must not be empty")

        if (updated.slug, updated.code) != (plan.slug, plan.code):
            if self._subscriptions.count_for_plan(plan.id) > 0:
                raise ConflictError("Plan identity cannot change once subscriptions reference it")

        if patch.is_enabled is not None and patch.is_enabled != plan.is_enabled:
            if not patch.is_enabled:
                self._ensure_not_live(plan)
            updated.is_enabled = patch.is_enabled

        updated.version = plan.version + 1
        updated.updated_at = self._clock.now()
        self._plans.update(updated, expected_version=plan.version)
        logger.info("Plan updated", extra={"plan_id": plan.id, "version": updated.version})
        return updated.as_payload()

    @operation_result("Plan disabled successfully")
    async def disable_plan(self, plan_id: str) -> Dict[str, Any]:
        plan = self.fetch_plan(plan_id)
        self._ensure_not_live(plan)
        return self._set_enabled(plan, False).as_payload()

    @operation_result("Plan enabled successfully")
    async def enable_plan(self, plan_id: str) -> Dict[str, Any]:
        plan = self.fetch_plan(plan_id)
        return self._set_enabled(plan, True).as_payload()

    @operation_result("Plan deleted successfully")
    async def delete_plan(self, plan_id: str) -> Dict[str, Any]:
        plan = self.fetch_plan(plan_id)
        if self._subscriptions.count_for_plan(plan.id) > 0:
            raise ConflictError("Plan cannot be deleted while subscriptions reference it")
        self._plans.delete(plan.id)
        logger.info("Plan deleted", extra={"plan_id": plan.id})
        return {"id": plan.id}

    @operation_result("Trial eligibility checked")
    async def check_trial_eligibility(self, user_id: str, plan_id: str) -> Dict[str, Any]:
        plan = self.fetch_enabled_plan(plan_id)
        return self.evaluate_trial_eligibility(user_id, plan).as_payload()

    @operation_result("Trial plans retrieved successfully")
    async def list_trial_plans(self) -> List[Dict[str, Any]]:
        return [plan.as_payload() for plan in self._plans.all() if plan.offers_trial]

    @operation_result("Plans compared successfully")
    async def compare_plans(self, base_plan_id: str, other_plan_id: str) -> Dict[str, Any]:
        base = self.fetch_plan(base_plan_id)
        other = self.fetch_plan(other_plan_id)
        monthly = other.pricing.monthly - base.pricing.monthly
        yearly = other.pricing.yearly - base.pricing.yearly
        comparison = PlanComparison(
            base_plan_id=base.id,
            other_plan_id=other.id,
            monthly_difference=monthly,
            yearly_difference=yearly,
            monthly_percentage=_percentage(monthly, base.pricing.monthly),
            yearly_percentage=_percentage(yearly, base.pricing.yearly),
        )
        return comparison.as_payload()

    @operation_result("Plan statistics retrieved successfully")
    async def plan_stats(self) -> List[Dict[str, Any]]:
        counts = self._subscriptions.counts_by_plan()
        stats = []
        for plan in self._plans.all(include_disabled=True):
            by_status = counts.get(plan.id, {})
            stats.append(
                PlanStats(
                    plan_id=plan.id,
                    name=plan.name,
                    active=by_status.get(SubscriptionStatus.active.value, 0),
                    trial=by_status.get(SubscriptionStatus.trial.value, 0),
                    total=sum(by_status.values()),
                ).as_payload()
            )
        return stats

    def _ensure_not_live(self, plan: Plan) -> None:
        if self._subscriptions.count_for_plan(plan.id, LIVE_STATUSES) > 0:
            raise ConflictError("Plan cannot be disabled while active or trial subscriptions reference it")

    def _set_enabled(self, plan: Plan, enabled: bool) -> Plan:
        if plan.is_enabled == enabled:
            return plan
        updated = replace(plan, is_enabled=enabled, version=plan.version + 1, updated_at=self._clock.now())
        self._plans.update(updated, expected_version=plan.version)
        logger.info("Plan enablement changed", extra={"plan_id": plan.id, "enabled": enabled})
        return updated
