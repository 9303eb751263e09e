"""Runtime configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_PAYSTACK_URL = "https://api.paystack.co"


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative")
    return value


@dataclass(frozen=True)
class Settings:
    """Billing engine settings."""

    cipher_secret: str
    database_path: str = "data/billing.sqlite3"
    paystack_secret_key: str = ""
    paystack_base_url: str = DEFAULT_PAYSTACK_URL
    paystack_callback_url: Optional[str] = None
    paystack_webhook_secret: str = ""
    currency: str = "NGN"
    gateway_timeout_seconds: float = 10.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    reminder_days: int = 3
    grace_days: int = 7
    webhook_rate_limit: int = 60
    notify_webhook_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        secret = os.getenv("BILLING_CIPHER_SECRET", "").strip()
        if not secret:
            raise ValueError("BILLING_CIPHER_SECRET must be configured")

        return cls(
            cipher_secret=secret,
            database_path=os.getenv("BILLING_DB_PATH", cls.database_path),
            paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY", ""),
            paystack_base_url=os.getenv("PAYSTACK_BASE_URL", DEFAULT_PAYSTACK_URL).rstrip("/"),
            paystack_callback_url=os.getenv("PAYSTACK_CALLBACK_URL") or None,
            paystack_webhook_secret=os.getenv("PAYSTACK_WEBHOOK_SECRET", ""),
            currency=os.getenv("BILLING_CURRENCY", "NGN").upper(),
            gateway_timeout_seconds=_env_float("BILLING_GATEWAY_TIMEOUT", 10.0),
            retry_attempts=_env_int("BILLING_RETRY_ATTEMPTS", 3, minimum=1),
            retry_base_delay=_env_float("BILLING_RETRY_BASE_DELAY", 1.0),
            reminder_days=_env_int("BILLING_REMINDER_DAYS", 3),
            grace_days=_env_int("BILLING_GRACE_DAYS", 7),
            webhook_rate_limit=_env_int("BILLING_WEBHOOK_RATE_LIMIT", 60, minimum=1),
            notify_webhook_url=os.getenv("BILLING_NOTIFY_WEBHOOK") or None,
        )
