"""Billing notification events and their delivery sinks."""

from .event_bus import BillingNotification, EventBus, NotificationKind
from .service import BillingNotifier, Notifier, build_notifier

__all__ = [
    "BillingNotification",
    "BillingNotifier",
    "EventBus",
    "NotificationKind",
    "Notifier",
    "build_notifier",
]
