"""Time sources injected into billing services."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything able to report the current UTC time."""

    def now(self) -> datetime:
        """Return the current timezone-aware UTC datetime."""


class SystemClock:
    """Wall clock used in production."""

    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)


class FrozenClock:
    """Manually advanced clock for deterministic runs and tests."""

    def __init__(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current

    def now(self) -> datetime:
        return self._current

    def advance(self, **delta: float) -> datetime:
        self._current = self._current + timedelta(**delta)
        return self._current

    def set(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current


def start_of_day(moment: datetime) -> datetime:
    """Truncate ``moment`` to midnight in its own timezone."""

    return moment.replace(hour=0, minute=0, second=0, microsecond=0)
