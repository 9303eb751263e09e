"""Webhook delivery of billing notifications."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request

from .event_bus import BillingNotification

logger = logging.getLogger(__name__)


class WebhookSink:
    """POST each notification as JSON to a configured URL.

    Delivery runs in a worker thread so the event loop never blocks on it.
    Failures are logged; the notification is not retried.
    """

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout

    async def __call__(self, notification: BillingNotification) -> None:
        body = json.dumps({"event": notification.kind.value, "payload": notification.as_payload()}).encode("utf-8")
        delivered = await asyncio.to_thread(self._send, body, notification)
        logger.info(
            "Notification webhook %s",
            "delivered" if delivered else "failed",
            extra={"kind": notification.kind.value, "subscription_id": notification.subscription_id},
        )

    def _send(self, body: bytes, notification: BillingNotification) -> bool:
        request = urllib.request.Request(
            self._url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout):  # nosec: B310 - trusted config
                return True
        except urllib.error.URLError:
            logger.exception("Failed to deliver notification", extra={"kind": notification.kind.value})
            return False
