"""SQLite connection helpers shared by the billing repositories."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open a connection usable from the event loop thread and worker threads."""

    if str(db_path) != ":memory:":
        path = Path(db_path)
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(db_path), check_same_thread=False)
    connection.row_factory = sqlite3.Row
    return connection


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def to_decimal(value: object) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))
