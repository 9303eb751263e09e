"""Non-blocking retry policy for payment gateway calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from billing.errors import GatewayError
from billing.metrics import record_gateway_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2 ** (attempt - 1)`` between attempts.

    With the defaults the waits are 1s, 2s, 4s. Each attempt is bounded by
    ``timeout``; a timeout counts as a transient gateway error.
    """

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 10.0

    async def call(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> T:
        """Run ``func`` until it succeeds, fails permanently or attempts run out."""

        def _before_sleep(state: RetryCallState) -> None:
            record_gateway_retry(operation)
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Retrying gateway call",
                extra={
                    "operation": operation,
                    "attempt": state.attempt_number,
                    "wait_seconds": state.next_action.sleep if state.next_action else None,
                    "error": str(exc) if exc else None,
                },
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception(_is_transient),
            before_sleep=_before_sleep,
            sleep=sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._bounded(operation, func)
        except GatewayError as exc:
            if exc.retryable:
                raise GatewayError(
                    f"{operation} failed after {self.attempts} attempts: {exc.message}",
                    retryable=True,
                ) from exc
            raise
        raise GatewayError(f"{operation} did not run", retryable=True)  # pragma: no cover

    async def _bounded(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(func(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayError(f"{operation} timed out after {self.timeout}s", retryable=True) from exc
