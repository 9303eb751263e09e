"""Persistence layer for ledger transactions."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from threading import Lock
from typing import List, Optional, Sequence

from billing.errors import ConflictError, StaleRecordError
from billing.payments.models import TransactionStatus
from billing.storage import connect, from_iso, to_decimal

from .models import Transaction, TransactionType

_COLUMNS = (
    "id, type, reference, user_id, subscription_id, amount, unit_amount, fee, unit_fee, currency, "
    "status, description, metadata, encrypted_payload, version, created_at, updated_at"
)


class TransactionRepository:
    """SQLite-backed repository for transactions.

    A reference is claimed by inserting a PENDING row before the gateway is
    called, so two attempts with the same idempotency key cannot both charge.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._connection = connect(db_path)
        self._lock = Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._connection:
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    reference TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    subscription_id TEXT,
                    amount TEXT NOT NULL,
                    unit_amount INTEGER NOT NULL,
                    fee TEXT NOT NULL DEFAULT '0.00',
                    unit_fee INTEGER NOT NULL DEFAULT 0,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    encrypted_payload TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._connection.execute(
                "CREATE INDEX IF NOT EXISTS ix_transactions_subscription ON transactions (subscription_id, created_at)"
            )

    def reserve(self, transaction: Transaction) -> Transaction:
        """Claim ``transaction.reference``.

        A FAILED row holding the same reference is re-armed in place when the
        type, user, subscription, amount and currency match, keeping its
        encrypted history. Any other existing row raises :class:`ConflictError`.
        """

        with self._lock, self._connection:
            try:
                self._connection.execute(
                    f"""
                    INSERT INTO transactions ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        transaction.id,
                        transaction.type.value,
                        transaction.reference,
                        transaction.user_id,
                        transaction.subscription_id,
                        str(transaction.amount),
                        transaction.unit_amount,
                        str(transaction.fee),
                        transaction.unit_fee,
                        transaction.currency,
                        transaction.status.value,
                        transaction.description,
                        json.dumps(transaction.metadata, default=str),
                        transaction.encrypted_payload,
                        transaction.version,
                        transaction.created_at.isoformat(),
                        transaction.updated_at.isoformat(),
                    ),
                )
                return transaction
            except sqlite3.IntegrityError:
                pass

            # Economic fields are immutable: a retry must repeat the failed attempt exactly.
            cursor = self._connection.execute(
                """
                UPDATE transactions
                SET status = ?, description = ?, metadata = ?, version = version + 1, updated_at = ?
                WHERE reference = ? AND status = ?
                  AND type = ? AND user_id = ? AND subscription_id IS ? AND unit_amount = ? AND currency = ?
                """,
                (
                    transaction.status.value,
                    transaction.description,
                    json.dumps(transaction.metadata, default=str),
                    transaction.updated_at.isoformat(),
                    transaction.reference,
                    TransactionStatus.FAILED.value,
                    transaction.type.value,
                    transaction.user_id,
                    transaction.subscription_id,
                    transaction.unit_amount,
                    transaction.currency,
                ),
            )
            if cursor.rowcount == 0:
                raise ConflictError(f"Duplicate transaction reference {transaction.reference}")

        rearmed = self.get_by_reference(transaction.reference)
        if rearmed is None:
            raise StaleRecordError(f"Transaction {transaction.reference} vanished while being re-armed")
        return rearmed

    def update(self, transaction: Transaction, *, expected_version: int) -> Transaction:
        """Persist the mutable fields: status, fee, sealed payload and timestamp."""

        with self._lock, self._connection:
            cursor = self._connection.execute(
                """
                UPDATE transactions
                SET status = ?, fee = ?, unit_fee = ?, encrypted_payload = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (
                    transaction.status.value,
                    str(transaction.fee),
                    transaction.unit_fee,
                    transaction.encrypted_payload,
                    transaction.version,
                    transaction.updated_at.isoformat(),
                    transaction.id,
                    expected_version,
                ),
            )
        if cursor.rowcount == 0:
            raise StaleRecordError(f"Transaction {transaction.reference} was modified concurrently")
        return transaction

    def get(self, transaction_id: str) -> Optional[Transaction]:
        cursor = self._connection.execute(
            f"SELECT {_COLUMNS} FROM transactions WHERE id = ?",
            (transaction_id,),
        )
        row = cursor.fetchone()
        return self._from_row(row) if row else None

    def get_by_reference(self, reference: str) -> Optional[Transaction]:
        cursor = self._connection.execute(
            f"SELECT {_COLUMNS} FROM transactions WHERE reference = ?",
            (reference,),
        )
        row = cursor.fetchone()
        return self._from_row(row) if row else None

    def list(self, transaction_ids: Sequence[str]) -> List[Transaction]:
        """Return the transactions for ``transaction_ids`` in the given order."""

        if not transaction_ids:
            return []
        placeholders = ", ".join("?" for _ in transaction_ids)
        cursor = self._connection.execute(
            f"SELECT {_COLUMNS} FROM transactions WHERE id IN ({placeholders})",
            list(transaction_ids),
        )
        by_id = {row["id"]: self._from_row(row) for row in cursor.fetchall()}
        return [by_id[transaction_id] for transaction_id in transaction_ids if transaction_id in by_id]

    def latest_for_subscription(
        self,
        subscription_id: str,
        *,
        types: Sequence[TransactionType],
        status: TransactionStatus = TransactionStatus.SUCCESSFUL,
    ) -> Optional[Transaction]:
        placeholders = ", ".join("?" for _ in types)
        cursor = self._connection.execute(
            f"""
            SELECT {_COLUMNS} FROM transactions
            WHERE subscription_id = ? AND status = ? AND type IN ({placeholders})
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (subscription_id, status.value, *[item.value for item in types]),
        )
        row = cursor.fetchone()
        return self._from_row(row) if row else None

    def reset(self) -> None:
        with self._lock, self._connection:
            self._connection.execute("DELETE FROM transactions")

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            type=TransactionType(row["type"]),
            reference=row["reference"],
            user_id=row["user_id"],
            subscription_id=row["subscription_id"],
            amount=to_decimal(row["amount"]),
            unit_amount=int(row["unit_amount"]),
            fee=to_decimal(row["fee"]),
            unit_fee=int(row["unit_fee"]),
            currency=row["currency"],
            status=TransactionStatus(row["status"]),
            description=row["description"] or "",
            metadata=json.loads(row["metadata"] or "{}"),
            encrypted_payload=row["encrypted_payload"],
            version=int(row["version"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )
