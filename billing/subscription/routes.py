"""FastAPI routes for subscription lifecycle operations."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from billing.http import state_attr, unwrap

from .models import (
    PaymentMethodUpdateRequest,
    SubscriptionCancelRequest,
    SubscriptionChangePlanRequest,
    SubscriptionCreateRequest,
    SubscriptionRefundRequest,
    SubscriptionRenewRequest,
)
from .service import SubscriptionLifecycleManager

router = APIRouter(prefix="/api/v1/billing/subscriptions", tags=["subscriptions"])


def _get_manager(request: Request) -> SubscriptionLifecycleManager:
    return state_attr(request, "subscription_manager")


@router.post("", status_code=201)
async def create_subscription(
    payload: SubscriptionCreateRequest,
    manager: SubscriptionLifecycleManager = Depends(_get_manager),
) -> dict[str, Any]:
    result = await manager.create_subscription(
        payload.user_id,
        payload.plan_id,
        payload.payment_method.to_payment_method(),
        payload.frequency,
    )
    return unwrap(result)


@router.get("/users/{user_id}")
async def list_user_subscriptions(
    user_id: str,
    include_inactive: bool = False,
    manager: SubscriptionLifecycleManager = Depends(_get_manager),
) -> dict[str, Any]:
    return unwrap(await manager.list_user_subscriptions(user_id, include_inactive=include_inactive))


@router.get("/users/{user_id}/active")
async def has_active_subscription(
    user_id: str, manager: SubscriptionLifecycleManager = Depends(_get_manager)
) -> dict[str, Any]:
    return unwrap(await manager.has_active_subscription(user_id))


@router.get("/{subscription_id}")
async def get_subscription(
    subscription_id: str, manager: SubscriptionLifecycleManager = Depends(_get_manager)
) -> dict[str, Any]:
    return unwrap(await manager.get_subscription(subscription_id))


@router.get("/{subscription_id}/access")
async def subscription_access(
    subscription_id: str, manager: SubscriptionLifecycleManager = Depends(_get_manager)
) -> dict[str, Any]:
    return unwrap(await manager.has_access(subscription_id))


@router.post("/{subscription_id}/renew")
async def renew_subscription(
    subscription_id: str,
    payload: SubscriptionRenewRequest,
    manager: SubscriptionLifecycleManager = Depends(_get_manager),
) -> dict[str, Any]:
    payment_method = payload.payment_method.to_payment_method() if payload.payment_method else None
    return unwrap(await manager.renew_subscription(subscription_id, payment_method))


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    payload: SubscriptionCancelRequest,
    manager: SubscriptionLifecycleManager = Depends(_get_manager),
) -> dict[str, Any]:
    return unwrap(await manager.cancel_subscription(subscription_id, payload.reason))


@router.post("/{subscription_id}/change-plan")
async def change_plan(
    subscription_id: str,
    payload: SubscriptionChangePlanRequest,
    manager: SubscriptionLifecycleManager = Depends(_get_manager),
) -> dict[str, Any]:
    payment_method = payload.payment_method.to_payment_method() if payload.payment_method else None
    return unwrap(await manager.change_plan(subscription_id, payload.plan_id, payment_method))


@router.put("/{subscription_id}/payment-method")
async def update_payment_method(
    subscription_id: str,
    payload: PaymentMethodUpdateRequest,
    manager: SubscriptionLifecycleManager = Depends(_get_manager),
) -> dict[str, Any]:
    result = await manager.update_payment_method(subscription_id, payload.payment_method.to_payment_method())
    return unwrap(result)


@router.post("/{subscription_id}/refund")
async def refund_subscription(
    subscription_id: str,
    payload: SubscriptionRefundRequest,
    manager: SubscriptionLifecycleManager = Depends(_get_manager),
) -> dict[str, Any]:
    return unwrap(await manager.process_refund(subscription_id, payload.reason))
