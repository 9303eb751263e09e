"""Persistence layer for subscription plans."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock
from typing import Iterable, List, Optional

from billing.errors import ConflictError, StaleRecordError
from billing.storage import connect, from_iso, to_decimal

from .models import Plan, PlanPricing, PlanTrial

_COLUMNS = (
    "id, name, slug, code, currency, description, monthly_price, yearly_price, "
    "trial_active, trial_days, is_enabled, version, created_at, updated_at"
)


class PlanRepository:
    """SQLite-backed repository for plans."""

    def __init__(self, db_path: str | Path) -> None:
        self._connection = connect(db_path)
        self._lock = Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._connection:
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS plans (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    code TEXT NOT NULL UNIQUE,
                    currency TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    monthly_price TEXT NOT NULL,
                    yearly_price TEXT NOT NULL,
                    trial_active INTEGER NOT NULL DEFAULT 0,
                    trial_days INTEGER NOT NULL DEFAULT 0,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def create(self, plan: Plan) -> Plan:
        try:
            with self._lock, self._connection:
                self._connection.execute(
                    f"INSERT INTO plans ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._params(plan),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"A plan with slug '{plan.slug}' or code '{plan.code}' already exists") from exc
        return plan

    def update(self, plan: Plan, *, expected_version: int) -> Plan:
        """Persist ``plan`` only if the stored row is still at ``expected_version``."""

        try:
            with self._lock, self._connection:
                cursor = self._connection.execute(
                    """
                    UPDATE plans
                    SET name = ?, slug = ?, code = ?, currency = ?, description = ?,
                        monthly_price = ?, yearly_price = ?, trial_active = ?, trial_days = ?,
                        is_enabled = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    (
                        plan.name,
                        plan.slug,
                        plan.code,
                        plan.currency,
                        plan.description,
                        str(plan.pricing.monthly),
                        str(plan.pricing.yearly),
                        int(plan.trial.is_active),
                        plan.trial.days,
                        int(plan.is_enabled),
                        plan.version,
                        plan.updated_at.isoformat(),
                        plan.id,
                        expected_version,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"A plan with slug '{plan.slug}' or code '{plan.code}' already exists") from exc
        if cursor.rowcount == 0:
            raise StaleRecordError(f"Plan {plan.id} was modified concurrently")
        return plan

    def delete(self, plan_id: str) -> bool:
        with self._lock, self._connection:
            cursor = self._connection.execute("DELETE FROM plans WHERE id = ?", (plan_id,))
        return cursor.rowcount > 0

    def get(self, plan_id: str) -> Optional[Plan]:
        cursor = self._connection.execute(f"SELECT {_COLUMNS} FROM plans WHERE id = ?", (plan_id,))
        row = cursor.fetchone()
        return self._from_row(row) if row else None

    def get_by_slug(self, slug: str) -> Optional[Plan]:
        cursor = self._connection.execute(f"SELECT {_COLUMNS} FROM plans WHERE slug = ?", (slug,))
        row = cursor.fetchone()
        return self._from_row(row) if row else None

    def all(self, *, include_disabled: bool = False) -> List[Plan]:
        query = f"SELECT {_COLUMNS} FROM plans"
        if not include_disabled:
            query += " WHERE is_enabled = 1"
        cursor = self._connection.execute(query)
        plans = [self._from_row(row) for row in cursor.fetchall()]
        plans.sort(key=lambda plan: (plan.pricing.monthly, plan.name))
        return plans

    def count(self) -> int:
        cursor = self._connection.execute("SELECT COUNT(*) FROM plans")
        (count,) = cursor.fetchone()
        return int(count)

    def reset(self) -> None:
        with self._lock, self._connection:
            self._connection.execute("DELETE FROM plans")

    @staticmethod
    def _params(plan: Plan) -> Iterable[object]:
        return (
            plan.id,
            plan.name,
            plan.slug,
            plan.code,
            plan.currency,
            plan.description,
            str(plan.pricing.monthly),
            str(plan.pricing.yearly),
            int(plan.trial.is_active),
            plan.trial.days,
            int(plan.is_enabled),
            plan.version,
            plan.created_at.isoformat(),
            plan.updated_at.isoformat(),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Plan:
        return Plan(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            code=row["code"],
            currency=row["currency"],
            description=row["description"] or "",
            pricing=PlanPricing(
                monthly=to_decimal(row["monthly_price"]),
                yearly=to_decimal(row["yearly_price"]),
            ),
            trial=PlanTrial(is_active=bool(row["trial_active"]), days=int(row["trial_days"] or 0)),
            is_enabled=bool(row["is_enabled"]),
            version=int(row["version"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )
