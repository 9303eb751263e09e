"""In-process publish/subscribe bus for billing notifications."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    renewal_success = "renewal-success"
    renewal_failure = "renewal-failure"
    refund = "refund"
    expiry_reminder = "expiry-reminder"


@dataclass(frozen=True)
class BillingNotification:
    """Envelope describing something the subscriber should be told about."""

    kind: NotificationKind
    user_id: str
    subscription_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def as_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "payload": dict(self.payload),
            "created_at": self.created_at.isoformat(),
        }


NotificationHandler = Callable[[BillingNotification], Optional[Awaitable[None]] | None]


class EventBus:
    """Event bus with async-aware handlers; a failing handler never affects the publisher."""

    def __init__(self) -> None:
        self._subscribers: List[NotificationHandler] = []
        self._pending: Set[asyncio.Task[None]] = set()

    def subscribe(self, handler: NotificationHandler) -> None:
        self._subscribers.append(handler)

    async def publish(self, notification: BillingNotification) -> None:
        handlers: Iterable[NotificationHandler] = list(self._subscribers)
        for handler in handlers:
            try:
                result = handler(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Notification handler failed",
                    extra={"kind": notification.kind.value, "subscription_id": notification.subscription_id},
                )

    def publish_nowait(self, notification: BillingNotification) -> None:
        """Schedule delivery without awaiting subscribers."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.publish(notification))
            return

        task = loop.create_task(self.publish(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every delivery scheduled so far."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
