"""Persistence layer for subscriptions."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence

from billing.errors import ConflictError, StaleRecordError
from billing.storage import connect, from_iso

from .models import (
    LIVE_STATUSES,
    BillingPeriod,
    Subscription,
    SubscriptionMetadata,
    SubscriptionStatus,
)

_COLUMNS = (
    "id, code, slug, user_id, plan_id, status, is_paid, billing, transaction_ids, metadata, "
    "due_date, trial_started, trial_plan_id, pending_downgrade, version, created_at, updated_at"
)


def _utc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


class SubscriptionRepository:
    """SQLite-backed repository for subscriptions.

    ``due_date``, ``trial_started``, ``trial_plan_id`` and ``pending_downgrade`` are denormalized
    from the JSON columns so the scheduler windows can be queried directly.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._connection = connect(db_path)
        self._lock = Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._connection:
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    code TEXT NOT NULL UNIQUE,
                    slug TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    plan_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    is_paid INTEGER NOT NULL DEFAULT 0,
                    billing TEXT NOT NULL,
                    transaction_ids TEXT NOT NULL DEFAULT '[]',
                    metadata TEXT NOT NULL DEFAULT '[]',
                    due_date TEXT NOT NULL,
                    trial_started INTEGER NOT NULL DEFAULT 0,
                    trial_plan_id TEXT,
                    pending_downgrade INTEGER NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._connection.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_subscriptions_live_user_plan
                ON subscriptions (user_id, plan_id)
                WHERE status IN ('trial', 'active')
                """
            )
            self._connection.execute(
                "CREATE INDEX IF NOT EXISTS ix_subscriptions_status_due ON subscriptions (status, due_date)"
            )

    def create(self, subscription: Subscription) -> Subscription:
        try:
            with self._lock, self._connection:
                self._connection.execute(
                    f"INSERT INTO subscriptions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        subscription.id,
                        subscription.code,
                        subscription.slug,
                        subscription.user_id,
                        subscription.plan_id,
                        *self._mutable_params(subscription),
                        subscription.version,
                        _utc(subscription.created_at),
                        _utc(subscription.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"User {subscription.user_id} already has a live subscription to plan {subscription.plan_id}"
            ) from exc
        return subscription

    def save(self, subscription: Subscription, *, expected_version: int) -> Subscription:
        """Write every mutable field at once, guarded by ``expected_version``."""

        try:
            with self._lock, self._connection:
                cursor = self._connection.execute(
                    """
                    UPDATE subscriptions
                    SET status = ?, is_paid = ?, billing = ?, transaction_ids = ?, metadata = ?,
                        due_date = ?, trial_started = ?, trial_plan_id = ?, pending_downgrade = ?,
                        plan_id = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    (
                        *self._mutable_params(subscription),
                        subscription.plan_id,
                        subscription.version,
                        _utc(subscription.updated_at),
                        subscription.id,
                        expected_version,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"User {subscription.user_id} already has a live subscription to plan {subscription.plan_id}"
            ) from exc
        if cursor.rowcount == 0:
            raise StaleRecordError(f"Subscription {subscription.id} was modified concurrently")
        return subscription

    def get(self, subscription_id: str) -> Optional[Subscription]:
        cursor = self._connection.execute(
            f"SELECT {_COLUMNS} FROM subscriptions WHERE id = ?",
            (subscription_id,),
        )
        row = cursor.fetchone()
        return self._from_row(row) if row else None

    def find_live(self, user_id: str, plan_id: str) -> Optional[Subscription]:
        cursor = self._connection.execute(
            f"""
            SELECT {_COLUMNS} FROM subscriptions
            WHERE user_id = ? AND plan_id = ? AND status IN (?, ?)
            """,
            (user_id, plan_id, *[status.value for status in LIVE_STATUSES]),
        )
        row = cursor.fetchone()
        return self._from_row(row) if row else None

    def has_trial_history(self, user_id: str, plan_id: str) -> bool:
        """True if ``user_id`` ever started a trial on ``plan_id``, even one since moved to another plan."""

        cursor = self._connection.execute(
            """
            SELECT 1 FROM subscriptions
            WHERE user_id = ? AND trial_started = 1 AND (plan_id = ? OR trial_plan_id = ?)
            LIMIT 1
            """,
            (user_id, plan_id, plan_id),
        )
        return cursor.fetchone() is not None

    def list_for_user(self, user_id: str, *, include_inactive: bool = False) -> List[Subscription]:
        query = f"SELECT {_COLUMNS} FROM subscriptions WHERE user_id = ?"
        params: List[object] = [user_id]
        if not include_inactive:
            query += " AND status IN (?, ?)"
            params.extend(status.value for status in LIVE_STATUSES)
        query += " ORDER BY created_at DESC"
        cursor = self._connection.execute(query, params)
        return [self._from_row(row) for row in cursor.fetchall()]

    def count_for_plan(
        self, plan_id: str, statuses: Optional[Sequence[SubscriptionStatus]] = None
    ) -> int:
        query = "SELECT COUNT(*) FROM subscriptions WHERE plan_id = ?"
        params: List[object] = [plan_id]
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(status.value for status in statuses)
        cursor = self._connection.execute(query, params)
        (count,) = cursor.fetchone()
        return int(count)

    def counts_by_plan(self) -> Dict[str, Dict[str, int]]:
        cursor = self._connection.execute(
            "SELECT plan_id, status, COUNT(*) AS total FROM subscriptions GROUP BY plan_id, status"
        )
        counts: Dict[str, Dict[str, int]] = {}
        for row in cursor.fetchall():
            counts.setdefault(row["plan_id"], {})[row["status"]] = int(row["total"])
        return counts

    def due_between(
        self,
        start: datetime,
        end: datetime,
        *,
        status: SubscriptionStatus,
        pending_downgrade: Optional[bool] = None,
    ) -> List[Subscription]:
        """Subscriptions in ``status`` whose due date falls in ``[start, end)``."""

        query = f"SELECT {_COLUMNS} FROM subscriptions WHERE status = ? AND due_date >= ? AND due_date < ?"
        params: List[object] = [status.value, _utc(start), _utc(end)]
        if pending_downgrade is not None:
            query += " AND pending_downgrade = ?"
            params.append(int(pending_downgrade))
        query += " ORDER BY due_date ASC"
        cursor = self._connection.execute(query, params)
        return [self._from_row(row) for row in cursor.fetchall()]

    def due_before(self, moment: datetime, *, status: SubscriptionStatus) -> List[Subscription]:
        cursor = self._connection.execute(
            f"SELECT {_COLUMNS} FROM subscriptions WHERE status = ? AND due_date < ? ORDER BY due_date ASC",
            (status.value, _utc(moment)),
        )
        return [self._from_row(row) for row in cursor.fetchall()]

    def all(self) -> Iterable[Subscription]:
        cursor = self._connection.execute(f"SELECT {_COLUMNS} FROM subscriptions")
        for row in cursor.fetchall():
            yield self._from_row(row)

    def reset(self) -> None:
        with self._lock, self._connection:
            self._connection.execute("DELETE FROM subscriptions")

    @staticmethod
    def _mutable_params(subscription: Subscription) -> tuple:
        return (
            subscription.status.value,
            int(subscription.is_paid),
            json.dumps(subscription.billing.as_payload()),
            json.dumps(list(subscription.transaction_ids)),
            json.dumps(subscription.metadata.as_payload()),
            _utc(subscription.billing.due_date),
            int(subscription.metadata.trial_started),
            subscription.metadata.trial.plan_id if subscription.metadata.trial else None,
            int(subscription.pending_downgrade),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            code=row["code"],
            slug=row["slug"],
            user_id=row["user_id"],
            plan_id=row["plan_id"],
            status=SubscriptionStatus(row["status"]),
            is_paid=bool(row["is_paid"]),
            billing=BillingPeriod.from_payload(json.loads(row["billing"])),
            transaction_ids=list(json.loads(row["transaction_ids"] or "[]")),
            metadata=SubscriptionMetadata.from_payload(json.loads(row["metadata"] or "[]")),
            version=int(row["version"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )
