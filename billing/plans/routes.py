"""FastAPI routes for the plan catalog."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from billing.http import state_attr, unwrap

from .models import PlanCreateRequest, PlanUpdateRequest
from .service import PlanCatalog

router = APIRouter(prefix="/api/v1/billing/plans", tags=["plans"])


def _get_catalog(request: Request) -> PlanCatalog:
    return state_attr(request, "plan_catalog")


@router.get("")
async def list_plans(include_disabled: bool = False, catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.list_plans(include_disabled=include_disabled))


@router.post("", status_code=201)
async def create_plan(payload: PlanCreateRequest, catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.create_plan(payload.to_definition()))


@router.get("/trials")
async def list_trial_plans(catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.list_trial_plans())


@router.get("/stats")
async def plan_stats(catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.plan_stats())


@router.get("/compare")
async def compare_plans(base: str, other: str, catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.compare_plans(base, other))


@router.get("/{plan_id}")
async def get_plan(plan_id: str, catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.get_plan(plan_id))


@router.patch("/{plan_id}")
async def update_plan(
    plan_id: str, payload: PlanUpdateRequest, catalog: PlanCatalog = Depends(_get_catalog)
) -> dict[str, Any]:
    return unwrap(await catalog.update_plan(plan_id, payload.to_patch()))


@router.post("/{plan_id}/disable")
async def disable_plan(plan_id: str, catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.disable_plan(plan_id))


@router.post("/{plan_id}/enable")
async def enable_plan(plan_id: str, catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.enable_plan(plan_id))


@router.delete("/{plan_id}")
async def delete_plan(plan_id: str, catalog: PlanCatalog = Depends(_get_catalog)) -> dict[str, Any]:
    return unwrap(await catalog.delete_plan(plan_id))


@router.get("/{plan_id}/trial-eligibility/{user_id}")
async def check_trial_eligibility(
    plan_id: str, user_id: str, catalog: PlanCatalog = Depends(_get_catalog)
) -> dict[str, Any]:
    return unwrap(await catalog.check_trial_eligibility(user_id, plan_id))
