"""Error taxonomy and structured results for billing operations."""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for every expected billing failure."""

    status_code = 500
    code = "billing_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Raised when input is malformed (bad amount, incomplete payment method)."""

    status_code = 400
    code = "validation_error"


class NotFoundError(BillingError):
    """Raised when a plan, subscription or transaction does not exist."""

    status_code = 404
    code = "not_found"


class ConflictError(BillingError):
    """Raised on duplicate subscriptions, references or unsafe plan changes."""

    status_code = 409
    code = "conflict"


class StaleRecordError(ConflictError):
    """Raised when an optimistic update loses against a concurrent writer."""

    code = "stale_record"


class GatewayError(BillingError):
    """Raised when the payment processor fails or declines.

    ``retryable`` marks transient failures (timeouts, transport errors, 5xx)
    that the retry policy may attempt again.
    """

    status_code = 502
    code = "gateway_error"

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class EncryptionError(BillingError):
    """Raised when a sensitive payload cannot be encrypted or decrypted."""

    status_code = 500
    code = "encryption_error"


@dataclass
class OperationResult:
    """Structured outcome returned by every public billing operation."""

    error: bool
    message: str
    code: int
    data: Any = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.error

    @classmethod
    def success(cls, message: str, data: Any = None) -> "OperationResult":
        return cls(error=False, message=message, code=200, data=data)

    @classmethod
    def failure(cls, exc: BillingError, data: Any = None) -> "OperationResult":
        return cls(
            error=True,
            message=exc.message,
            code=exc.status_code,
            data=data,
            error_code=exc.code,
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "error": self.error,
            "message": self.message,
            "code": self.code,
            "error_code": self.error_code,
        }


T = TypeVar("T")


def operation_result(
    message: str,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[OperationResult]]]:
    """Wrap an async service method so billing errors become failed results.

    The wrapped coroutine returns its payload; the wrapper packs it into
    ``OperationResult.success(message, payload)``. Anything that is not a
    :class:`BillingError` propagates unchanged.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[OperationResult]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> OperationResult:
            try:
                data = await func(*args, **kwargs)
            except BillingError as exc:
                logger.info(
                    "Billing operation failed",
                    extra={"operation": func.__name__, "error_code": exc.code, "reason": exc.message},
                )
                return OperationResult.failure(exc)
            return OperationResult.success(message, data)

        return wrapper

    return decorator
