"""Periodic renewal sweep over due, past-due, reminder and trial windows."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from billing.clock import Clock, SystemClock, start_of_day
from billing.errors import OperationResult
from billing.metrics import record_sweep_duration, record_sweep_outcome
from billing.notifications.event_bus import BillingNotification, NotificationKind
from billing.notifications.service import Notifier
from billing.subscription.models import Subscription, SubscriptionStatus
from billing.subscription.repository import SubscriptionRepository
from billing.subscription.service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_DAYS = 3

_SKIPPED_CODES = {"conflict", "stale_record"}


@dataclass(slots=True)
class SweepOutcome:
    subscription_id: str
    action: str
    detail: str = ""

    def as_payload(self) -> Dict[str, Any]:
        return {"subscription_id": self.subscription_id, "action": self.action, "detail": self.detail}


@dataclass(slots=True)
class SweepReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[SweepOutcome] = field(default_factory=list)
    system_error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return 1 if self.system_error else 0

    def count(self, action: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.action == action)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcomes": [outcome.as_payload() for outcome in self.outcomes],
            "system_error": self.system_error,
        }


class RenewalScheduler:
    """Reconcile subscriptions against the calendar.

    Partitions run in a fixed order: scheduled downgrades, renewals due today,
    expiry of past-due subscriptions, reminders, trials ending today, then
    trials whose last day was missed by an earlier sweep.
    Each subscription is handled in isolation; only a failure to query a
    partition is a system error.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        manager: SubscriptionLifecycleManager,
        *,
        notifier: Optional[Notifier] = None,
        clock: Clock | None = None,
        reminder_days: int = DEFAULT_REMINDER_DAYS,
    ) -> None:
        self._subscriptions = subscriptions
        self._manager = manager
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._reminder_days = reminder_days

    async def run_sweep(self) -> SweepReport:
        started = time.perf_counter()
        report = SweepReport(started_at=self._clock.now())
        today = start_of_day(report.started_at)
        tomorrow = today + timedelta(days=1)

        partitions: List[tuple[str, Callable[[], List[Subscription]], Callable[[Subscription, SweepReport], Any]]] = [
            (
                "downgrades",
                lambda: self._subscriptions.due_between(
                    today, tomorrow, status=SubscriptionStatus.active, pending_downgrade=True
                ),
                self._apply_downgrade,
            ),
            (
                "renewals",
                lambda: self._subscriptions.due_between(today, tomorrow, status=SubscriptionStatus.active),
                self._renew,
            ),
            (
                "past_due",
                lambda: self._subscriptions.due_before(today, status=SubscriptionStatus.active),
                self._expire_past_due,
            ),
            (
                "reminders",
                lambda: self._subscriptions.due_between(
                    today + timedelta(days=self._reminder_days),
                    today + timedelta(days=self._reminder_days + 1),
                    status=SubscriptionStatus.active,
                ),
                self._remind,
            ),
            (
                "trials",
                lambda: self._subscriptions.due_between(today, tomorrow, status=SubscriptionStatus.trial),
                self._convert_trial,
            ),
            (
                "lapsed_trials",
                lambda: self._subscriptions.due_before(today, status=SubscriptionStatus.trial),
                self._expire_lapsed_trial,
            ),
        ]

        for name, query, handler in partitions:
            try:
                batch = query()
            except Exception as exc:
                logger.exception("Sweep partition query failed", extra={"partition": name})
                if report.system_error is None:
                    report.system_error = f"{name}: {exc}"
                continue
            for subscription in batch:
                try:
                    await handler(subscription, report)
                except Exception as exc:
                    logger.exception(
                        "Sweep item failed",
                        extra={"partition": name, "subscription_id": subscription.id},
                    )
                    self._record(report, subscription, "error", str(exc))

        report.finished_at = self._clock.now()
        record_sweep_duration(time.perf_counter() - started)
        logger.info(
            "Renewal sweep finished",
            extra={
                "renewed": report.count("renewed"),
                "expired": report.count("expired"),
                "downgraded": report.count("downgraded"),
                "reminders": report.count("reminder-sent"),
                "system_error": report.system_error,
            },
        )
        return report

    async def _apply_downgrade(self, subscription: Subscription, report: SweepReport) -> None:
        result = await self._manager.apply_scheduled_downgrade(subscription.id)
        if result.ok:
            self._record(report, subscription, "downgraded", result.data["plan_id"])
        else:
            self._record(report, subscription, self._failure_action(result), result.message)

    async def _renew(self, subscription: Subscription, report: SweepReport) -> None:
        result = await self._manager.renew_due_subscription(subscription.id)
        if result.ok:
            self._record(report, subscription, "renewed")
            self._notify(NotificationKind.renewal_success, subscription, {"due_date": result.data["billing"]["due_date"]})
            return
        if result.error_code in _SKIPPED_CODES:
            self._record(report, subscription, "skipped", result.message)
            return
        await self._expire(subscription, report, result.message)
        self._notify(NotificationKind.renewal_failure, subscription, {"reason": result.message})

    async def _expire_past_due(self, subscription: Subscription, report: SweepReport) -> None:
        await self._expire(subscription, report, "Payment overdue")

    async def _expire_lapsed_trial(self, subscription: Subscription, report: SweepReport) -> None:
        await self._expire(subscription, report, "Trial ended")

    async def _remind(self, subscription: Subscription, report: SweepReport) -> None:
        reminder = subscription.metadata.reminder
        if reminder is not None and reminder.due_date == subscription.billing.due_date:
            return
        result = await self._manager.record_reminder(subscription.id)
        if not result.ok:
            self._record(report, subscription, self._failure_action(result), result.message)
            return
        self._notify(
            NotificationKind.expiry_reminder,
            subscription,
            {
                "due_date": subscription.billing.due_date.isoformat(),
                "amount": str(subscription.billing.amount),
                "days_remaining": self._reminder_days,
            },
        )
        self._record(report, subscription, "reminder-sent")

    async def _convert_trial(self, subscription: Subscription, report: SweepReport) -> None:
        result = await self._manager.convert_trial(subscription.id)
        if result.ok:
            self._record(report, subscription, "renewed", "trial converted")
            self._notify(NotificationKind.renewal_success, subscription, {"due_date": result.data["billing"]["due_date"]})
            return
        if result.error_code in _SKIPPED_CODES:
            self._record(report, subscription, "skipped", result.message)
            return
        await self._expire(subscription, report, result.message)

    async def _expire(self, subscription: Subscription, report: SweepReport, reason: str) -> None:
        result = await self._manager.expire_subscription(subscription.id, reason)
        if result.ok:
            self._record(report, subscription, "expired", reason)
        else:
            self._record(report, subscription, self._failure_action(result), result.message)

    @staticmethod
    def _failure_action(result: OperationResult) -> str:
        return "skipped" if result.error_code in _SKIPPED_CODES else "error"

    @staticmethod
    def _record(report: SweepReport, subscription: Subscription, action: str, detail: str = "") -> None:
        report.outcomes.append(SweepOutcome(subscription_id=subscription.id, action=action, detail=detail))
        record_sweep_outcome(action)

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
