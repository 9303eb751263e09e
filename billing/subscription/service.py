"""Subscription lifecycle state machine."""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from weakref import WeakValueDictionary
from uuid import uuid4

from billing.clock import Clock, SystemClock, start_of_day
from billing.errors import (
    BillingError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
    operation_result,
)
from billing.ledger.models import TransactionType, TransactionView
from billing.ledger.service import TransactionLedger
from billing.metrics import record_transition
from billing.notifications.event_bus import BillingNotification, NotificationKind
from billing.notifications.service import Notifier
from billing.payments.models import PaymentMethod, TransactionStatus
from billing.plans.models import BillingFrequency, Plan
from billing.plans.service import PlanCatalog

from .models import (
    DEFAULT_GRACE_DAYS,
    BillingPeriod,
    CancellationMetadata,
    DowngradeMetadata,
    PaymentMethodMetadata,
    ReminderMetadata,
    Subscription,
    SubscriptionMetadata,
    SubscriptionStatus,
    TrialMetadata,
    has_access as grants_access,
    prorate,
)
from .repository import SubscriptionRepository

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def _parse_frequency(frequency: Any) -> BillingFrequency:
    try:
        return BillingFrequency(frequency)
    except ValueError as exc:
        raise ValidationError(f"Unsupported billing frequency {frequency!r}") from exc


class SubscriptionLifecycleManager:
    """Owns every subscription transition.

    Operations on the same subscription are serialized by a per-record
    ``asyncio.Lock``; every write is additionally version-checked in storage.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        catalog: PlanCatalog,
        ledger: TransactionLedger,
        *,
        notifier: Optional[Notifier] = None,
        clock: Clock | None = None,
        grace_days: int = DEFAULT_GRACE_DAYS,
    ) -> None:
        self._subscriptions = subscriptions
        self._catalog = catalog
        self._ledger = ledger
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._grace_days = grace_days
        self._locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    # Lifecycle operations

    @operation_result("Subscription created successfully")
    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        payment_method: Optional[PaymentMethod],
        frequency: BillingFrequency | str = BillingFrequency.monthly,
    ) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("user_id is required")
        frequency = _parse_frequency(frequency)
        plan = self._catalog.fetch_enabled_plan(plan_id)

        async with self._lock(f"{user_id}:{plan.id}"):
            if self._subscriptions.find_live(user_id, plan.id) is not None:
                raise ConflictError("You already have an active subscription to this plan")

            now = self._clock.now()
            subscription_id = uuid4().hex
            eligibility = self._catalog.evaluate_trial_eligibility(user_id, plan)

            if eligibility.is_eligible:
                billing = BillingPeriod.for_trial(plan, frequency, now, grace_days=self._grace_days)
                subscription = self._new_subscription(
                    subscription_id,
                    user_id,
                    plan,
                    status=SubscriptionStatus.trial,
                    is_paid=False,
                    billing=billing,
                    now=now,
                )
                subscription.metadata.trial = TrialMetadata(
                    started_at=now, ends_at=billing.due_date, plan_id=plan.id
                )
                self._subscriptions.create(subscription)
                record_transition("create_trial")
                logger.info(
                    "Trial subscription created",
                    extra={"subscription_id": subscription.id, "user_id": user_id, "plan_id": plan.id},
                )
                return subscription.as_payload()

            billing = BillingPeriod.for_plan(plan, frequency, now, grace_days=self._grace_days)
            charge = await self._charge(
                subscription_id=subscription_id,
                user_id=user_id,
                amount=billing.amount,
                type=TransactionType.subscription,
                payment_method=payment_method,
                description=f"Subscription to {plan.name} ({frequency.value})",
                metadata={"plan_id": plan.id, "frequency": frequency.value},
            )
            subscription = self._new_subscription(
                subscription_id,
                user_id,
                plan,
                status=SubscriptionStatus.active,
                is_paid=True,
                billing=billing,
                now=now,
            )
            if charge is not None:
                subscription.transaction_ids.append(charge.id)
            try:
                self._subscriptions.create(subscription)
            except ConflictError:
                await self._compensate(charge, "Duplicate subscription")
                raise
            record_transition("create_active")
            logger.info(
                "Subscription created",
                extra={"subscription_id": subscription.id, "user_id": user_id, "plan_id": plan.id},
            )
            return subscription.as_payload()

    @operation_result("Subscription renewed successfully")
    async def renew_subscription(
        self, subscription_id: str, payment_method: Optional[PaymentMethod] = None
    ) -> Dict[str, Any]:
        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            if subscription.status is SubscriptionStatus.active:
                raise ConflictError("Subscription is already active")
            plan = self._catalog.fetch_enabled_plan(subscription.plan_id)
            live = self._subscriptions.find_live(subscription.user_id, plan.id)
            if live is not None and live.id != subscription.id:
                raise ConflictError("You already have an active subscription to this plan")

            now = self._clock.now()
            billing = BillingPeriod.for_plan(plan, subscription.billing.frequency, now, grace_days=self._grace_days)
            charge = await self._charge(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=billing.amount,
                type=TransactionType.subscription,
                payment_method=payment_method,
                description=f"Renewal of {plan.name} ({billing.frequency.value})",
                metadata={"plan_id": plan.id, "frequency": billing.frequency.value, "renewal": True},
            )
            updated = self._activate(subscription, billing, charge)
            await self._commit_paid(updated, subscription.version, charge, "renew")
            return updated.as_payload()

    @operation_result("Subscription renewed successfully")
    async def renew_due_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Charge the method on file for an ACTIVE subscription due today."""

        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            if subscription.status is not SubscriptionStatus.active:
                raise ConflictError("Only active subscriptions are renewed by the scheduler")
            self._ensure_due_today(subscription)
            plan = self._catalog.fetch_plan(subscription.plan_id)

            billing = BillingPeriod.for_plan(
                plan,
                subscription.billing.frequency,
                subscription.billing.due_date,
                grace_days=self._grace_days,
            )
            billing.paid_date = self._clock.now()
            charge = await self._charge(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=billing.amount,
                type=TransactionType.subscription,
                payment_method=None,
                description=f"Renewal of {plan.name} ({billing.frequency.value})",
                metadata={"plan_id": plan.id, "frequency": billing.frequency.value, "renewal": True},
            )
            updated = self._activate(subscription, billing, charge)
            await self._commit_paid(updated, subscription.version, charge, "renew_due")
            return updated.as_payload()

    @operation_result("Trial converted successfully")
    async def convert_trial(self, subscription_id: str) -> Dict[str, Any]:
        """Charge the method on file for a trial that ends today."""

        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            if subscription.status is not SubscriptionStatus.trial:
                raise ConflictError("Only trial subscriptions can be converted")
            self._ensure_due_today(subscription)
            if self._ledger.stored_payment_method(subscription.id) is None:
                raise ValidationError("No payment method on file to convert the trial")
            plan = self._catalog.fetch_plan(subscription.plan_id)

            billing = BillingPeriod.for_plan(
                plan,
                subscription.billing.frequency,
                subscription.billing.due_date,
                grace_days=self._grace_days,
            )
            billing.paid_date = self._clock.now()
            charge = await self._charge(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=billing.amount,
                type=TransactionType.subscription,
                payment_method=None,
                description=f"Subscription to {plan.name} ({billing.frequency.value})",
                metadata={"plan_id": plan.id, "frequency": billing.frequency.value, "trial_conversion": True},
            )
            updated = self._activate(subscription, billing, charge)
            await self._commit_paid(updated, subscription.version, charge, "convert_trial")
            return updated.as_payload()

    @operation_result("Scheduled downgrade applied")
    async def apply_scheduled_downgrade(self, subscription_id: str) -> Dict[str, Any]:
        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            downgrade = subscription.metadata.downgrade
            if subscription.status is not SubscriptionStatus.active or downgrade is None:
                raise ConflictError("Subscription has no pending downgrade")
            target = self._catalog.fetch_plan(downgrade.target_plan_id)

            updated = replace(
                subscription,
                plan_id=target.id,
                billing=replace(subscription.billing, amount=target.pricing.price_for(subscription.billing.frequency)),
                metadata=replace(subscription.metadata, downgrade=None),
            )
            self._commit(updated, subscription.version, "downgrade")
            logger.info(
                "Downgrade applied",
                extra={"subscription_id": subscription.id, "plan_id": target.id},
            )
            return updated.as_payload()

    @operation_result("Subscription expired")
    async def expire_subscription(self, subscription_id: str, reason: str = "") -> Dict[str, Any]:
        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            if subscription.status.is_terminal:
                raise ConflictError(f"Subscription is already {subscription.status.value}")
            updated = replace(
                subscription,
                status=SubscriptionStatus.expired,
                metadata=replace(subscription.metadata, downgrade=None),
            )
            self._commit(updated, subscription.version, "expire")
            logger.info("Subscription expired", extra={"subscription_id": subscription.id, "reason": reason})
            return updated.as_payload()

    @operation_result("Renewal reminder recorded")
    async def record_reminder(self, subscription_id: str) -> Dict[str, Any]:
        """Mark the current due date as reminded; at most one reminder per billing cycle."""

        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            if subscription.status is not SubscriptionStatus.active:
                raise ConflictError(f"Cannot remind a {subscription.status.value} subscription")
            reminder = subscription.metadata.reminder
            if reminder is not None and reminder.due_date == subscription.billing.due_date:
                raise ConflictError("Renewal reminder already sent for this billing cycle")
            updated = replace(
                subscription,
                metadata=replace(
                    subscription.metadata,
                    reminder=ReminderMetadata(due_date=subscription.billing.due_date, sent_at=self._clock.now()),
                ),
            )
            self._commit(updated, subscription.version, "reminder")
            return updated.as_payload()

    @operation_result("Subscription cancelled successfully")
    async def cancel_subscription(self, subscription_id: str, reason: str = "") -> Dict[str, Any]:
        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            if subscription.status.is_terminal:
                raise ConflictError(f"Subscription is already {subscription.status.value}")

            now = self._clock.now()
            access_until: Optional[datetime] = None
            if subscription.status is SubscriptionStatus.active:
                access_until = subscription.billing.due_date
            updated = replace(
                subscription,
                status=SubscriptionStatus.cancelled,
                metadata=replace(
                    subscription.metadata,
                    cancellation=CancellationMetadata(
                        reason=reason,
                        cancelled_at=now,
                        access_until=access_until,
                        auto_renew=False,
                    ),
                    downgrade=None,
                ),
            )
            self._commit(updated, subscription.version, "cancel")
            logger.info("Subscription cancelled", extra={"subscription_id": subscription.id})
            return updated.as_payload()

    @operation_result("Subscription plan changed successfully")
    async def change_plan(
        self,
        subscription_id: str,
        new_plan_id: str,
        payment_method: Optional[PaymentMethod] = None,
    ) -> Dict[str, Any]:
        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            if subscription.status.is_terminal:
                raise ConflictError(f"Cannot change the plan of a {subscription.status.value} subscription")
            new_plan = self._catalog.fetch_enabled_plan(new_plan_id)
            if new_plan.id == subscription.plan_id:
                raise ValidationError("Subscription is already on this plan")
            if self._subscriptions.find_live(subscription.user_id, new_plan.id) is not None:
                raise ConflictError("You already have an active subscription to this plan")

            frequency = subscription.billing.frequency
            now = self._clock.now()

            if subscription.status is SubscriptionStatus.trial:
                updated = replace(
                    subscription,
                    plan_id=new_plan.id,
                    billing=replace(subscription.billing, amount=new_plan.pricing.price_for(frequency)),
                )
                self._commit(updated, subscription.version, "trial_plan_change")
                return updated.as_payload()

            current_plan = self._catalog.fetch_plan(subscription.plan_id)
            current_price = current_plan.pricing.price_for(frequency)
            new_price = new_plan.pricing.price_for(frequency)

            if new_price <= current_price:
                updated = replace(
                    subscription,
                    metadata=replace(
                        subscription.metadata,
                        downgrade=DowngradeMetadata(
                            target_plan_id=new_plan.id,
                            previous_plan_id=current_plan.id,
                            requested_at=now,
                            effective_at=subscription.billing.due_date,
                        ),
                    ),
                )
                self._commit(updated, subscription.version, "downgrade_scheduled")
                logger.info(
                    "Downgrade scheduled",
                    extra={"subscription_id": subscription.id, "target_plan_id": new_plan.id},
                )
                return updated.as_payload()

            prorated = prorate(
                current_price,
                new_price,
                subscription.billing.start_date,
                subscription.billing.due_date,
                now,
            )
            charge = await self._charge(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=prorated,
                type=TransactionType.upgrade,
                payment_method=payment_method,
                description=f"Upgrade from {current_plan.name} to {new_plan.name}",
                metadata={
                    "previous_plan_id": current_plan.id,
                    "new_plan_id": new_plan.id,
                    "prorated_amount": str(prorated),
                },
            )
            billing = BillingPeriod.for_plan(new_plan, frequency, now, grace_days=self._grace_days)
            updated = self._activate(subscription, billing, charge)
            updated.plan_id = new_plan.id
            await self._commit_paid(updated, subscription.version, charge, "upgrade")
            return updated.as_payload()

    @operation_result("Payment method updated successfully")
    async def update_payment_method(self, subscription_id: str, payment_method: Optional[PaymentMethod]) -> Dict[str, Any]:
        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            if subscription.status.is_terminal:
                raise ConflictError(f"Cannot update the payment method of a {subscription.status.value} subscription")

            verification = await self._ledger.execute_card_verification(
                user_id=subscription.user_id,
                payment_method=payment_method,
                description="Payment method update",
                metadata={"subscription_id": subscription.id},
                subscription_id=subscription.id,
            )
            last4 = verification.card.last4 if verification.card else None
            brand = verification.card.brand if verification.card else None
            if last4 is None and payment_method is not None and payment_method.card is not None:
                last4 = payment_method.card.last4

            updated = replace(
                subscription,
                transaction_ids=[*subscription.transaction_ids, verification.id],
                metadata=replace(
                    subscription.metadata,
                    payment_method=PaymentMethodMetadata(
                        type=payment_method.type,
                        last4=last4,
                        brand=brand,
                        updated_at=self._clock.now(),
                    ),
                ),
            )
            self._commit(updated, subscription.version, "payment_method_update")
            return updated.as_payload()

    @operation_result("Refund processed successfully")
    async def process_refund(self, subscription_id: str, reason: str = "") -> Dict[str, Any]:
        async with self._lock(subscription_id):
            subscription = self._fetch(subscription_id)
            charge = self._ledger.latest_successful_charge(subscription.id)
            if charge is None:
                raise ValidationError("No successful payment found for this subscription")

            refund = await self._ledger.execute_refund(charge.id, reason)
            now = self._clock.now()
            updated = replace(
                subscription,
                status=SubscriptionStatus.cancelled,
                transaction_ids=[*subscription.transaction_ids, refund.id],
                metadata=replace(
                    subscription.metadata,
                    cancellation=CancellationMetadata(reason=reason, cancelled_at=now, auto_renew=False),
                    downgrade=None,
                ),
            )
            self._commit(updated, subscription.version, "refund")
            self._notify(
                NotificationKind.refund,
                updated,
                {"amount": str(refund.amount), "currency": refund.currency, "reference": refund.reference},
            )
            return {"subscription": updated.as_payload(), "refund": refund.as_payload()}

    # Reads

    @operation_result("Subscription retrieved successfully")
    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._fetch(subscription_id).as_payload()

    @operation_result("Subscriptions retrieved successfully")
    async def list_user_subscriptions(self, user_id: str, include_inactive: bool = False) -> List[Dict[str, Any]]:
        return [
            subscription.as_payload()
            for subscription in self._subscriptions.list_for_user(user_id, include_inactive=include_inactive)
        ]

    @operation_result("Subscription status checked")
    async def has_active_subscription(self, user_id: str) -> Dict[str, Any]:
        now = self._clock.now()
        subscriptions = self._subscriptions.list_for_user(user_id, include_inactive=True)
        return {"user_id": user_id, "has_active_subscription": any(grants_access(item, now) for item in subscriptions)}

    @operation_result("Subscription access checked")
    async def has_access(self, subscription_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        subscription = self._fetch(subscription_id)
        moment = now or self._clock.now()
        return {"subscription_id": subscription.id, "has_access": grants_access(subscription, moment)}

    # Internals

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _fetch(self, subscription_id: str) -> Subscription:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def _ensure_due_today(self, subscription: Subscription) -> None:
        today = start_of_day(self._clock.now())
        due_day = start_of_day(subscription.billing.due_date.astimezone(today.tzinfo))
        if due_day != today:
            raise ConflictError("Subscription is not due today")

    def _new_subscription(
        self,
        subscription_id: str,
        user_id: str,
        plan: Plan,
        *,
        status: SubscriptionStatus,
        is_paid: bool,
        billing: BillingPeriod,
        now: datetime,
    ) -> Subscription:
        stamp = _base36(int(now.timestamp() * 1000))
        suffix = secrets.token_hex(3)
        return Subscription(
            id=subscription_id,
            code=f"SUB-{user_id[:5]}-{plan.id[:5]}-{stamp}-{suffix}".upper(),
            slug=f"{user_id}-{plan.slug}-{stamp}-{suffix}",
            user_id=user_id,
            plan_id=plan.id,
            status=status,
            is_paid=is_paid,
            billing=billing,
            transaction_ids=[],
            metadata=SubscriptionMetadata(),
            version=1,
            created_at=now,
            updated_at=now,
        )

    async def _charge(
        self,
        *,
        subscription_id: str,
        user_id: str,
        amount: Decimal,
        type: TransactionType,
        payment_method: Optional[PaymentMethod],
        description: str,
        metadata: Dict[str, Any],
    ) -> Optional[TransactionView]:
        """Charge ``amount`` and insist on a settled payment; zero amounts are free."""

        if amount <= 0:
            return None
        if payment_method is not None:
            view = await self._ledger.execute_charge(
                user_id=user_id,
                amount=amount,
                payment_method=payment_method,
                type=type,
                description=description,
                metadata=metadata,
                subscription_id=subscription_id,
            )
        else:
            view = await self._ledger.execute_stored_charge(
                subscription_id=subscription_id,
                user_id=user_id,
                amount=amount,
                type=type,
                description=description,
                metadata=metadata,
            )
        if view.status is not TransactionStatus.SUCCESSFUL:
            raise GatewayError(f"Payment was not completed ({view.status.value})")
        return view

    @staticmethod
    def _activate(
        subscription: Subscription, billing: BillingPeriod, charge: Optional[TransactionView]
    ) -> Subscription:
        transaction_ids = list(subscription.transaction_ids)
        if charge is not None:
            transaction_ids.append(charge.id)
        return replace(
            subscription,
            status=SubscriptionStatus.active,
            is_paid=True,
            billing=billing,
            transaction_ids=transaction_ids,
            metadata=replace(subscription.metadata, cancellation=None, downgrade=None),
        )

    def _commit(self, subscription: Subscription, expected_version: int, transition: str) -> None:
        subscription.version = expected_version + 1
        subscription.updated_at = self._clock.now()
        self._subscriptions.save(subscription, expected_version=expected_version)
        record_transition(transition)

    async def _commit_paid(
        self,
        subscription: Subscription,
        expected_version: int,
        charge: Optional[TransactionView],
        transition: str,
    ) -> None:
        try:
            self._commit(subscription, expected_version, transition)
        except ConflictError:
            await self._compensate(charge, f"{transition} could not be recorded")
            raise
        logger.info(
            "Subscription charged",
            extra={
                "subscription_id": subscription.id,
                "transition": transition,
                "reference": charge.reference if charge else None,
            },
        )

    async def _compensate(self, charge: Optional[TransactionView], reason: str) -> None:
        if charge is None:
            return
        try:
            await self._ledger.execute_refund(charge.id, reason)
        except BillingError:
            logger.exception("Compensating refund failed", extra={"reference": charge.reference})

    def _notify(self, kind: NotificationKind, subscription: Subscription, payload: Dict[str, Any]) -> None:
        if self._notifier is None:
            return
        self._notifier.notify(
            BillingNotification(
                kind=kind,
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                payload=payload,
                created_at=self._clock.now(),
            )
        )
