"""Notifier used by the lifecycle manager and renewal scheduler."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from billing.metrics import record_notification

from .alerts import WebhookSink
from .event_bus import BillingNotification, EventBus

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """One-way, fire-and-forget notification emitter."""

    def notify(self, notification: BillingNotification) -> None:
        """Emit ``notification`` without waiting for delivery."""


def log_sink(notification: BillingNotification) -> None:
    logger.info(
        "Billing notification",
        extra={
            "kind": notification.kind.value,
            "user_id": notification.user_id,
            "subscription_id": notification.subscription_id,
        },
    )


def metrics_sink(notification: BillingNotification) -> None:
    record_notification(notification.kind.value)


class BillingNotifier:
    """Publishes notifications on an :class:`EventBus`."""

    def __init__(self, bus: Optional[EventBus] = None) -> None:
        self.bus = bus or EventBus()

    def notify(self, notification: BillingNotification) -> None:
        self.bus.publish_nowait(notification)

    async def drain(self) -> None:
        await self.bus.drain()


def build_notifier(webhook_url: Optional[str] = None) -> BillingNotifier:
    """Wire the default sinks: log, metrics and the optional webhook."""

    bus = EventBus()
    bus.subscribe(log_sink)
    bus.subscribe(metrics_sink)
    if webhook_url:
        bus.subscribe(WebhookSink(webhook_url))
    return BillingNotifier(bus)
