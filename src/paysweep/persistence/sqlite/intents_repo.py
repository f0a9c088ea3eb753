from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from paysweep.domain.intent import (
    OVERRIDE_TRANSITION,
    IntentStatus,
    PaymentIntent,
    ensure_transition,
)
from paysweep.persistence.interfaces.intents_repo import IntentEvent
from paysweep.persistence.sqlite.sqlite_connection import ensure_intent_schema

logger = logging.getLogger(__name__)

_FILTER_COLUMNS = {
    "intent_id",
    "destination_address",
    "status",
    "memo",
    "external_transaction_id",
    "consolidation_transaction_id",
    "order_id",
}
_MUTABLE_COLUMNS = {
    "status",
    "external_transaction_id",
    "consolidation_transaction_id",
    "pending_consolidation_tx_id",
    "account_activated",
    "activation_attempts",
    "consolidation_attempts",
    "last_error",
}
_SET_ONCE_COLUMNS = {"external_transaction_id", "consolidation_transaction_id"}
_COUNTER_COLUMNS = {"activation_attempts", "consolidation_attempts"}


def _utc_now_text() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _to_db(value: object) -> object:
    if isinstance(value, IntentStatus):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat(timespec="microseconds")
    return value


def _opt_str(value: object) -> str | None:
    return str(value) if value is not None else None


class SqliteIntentsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_intent_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "intents"}})
            raise PermissionError("UnitOfWork is read-only; intent writes are blocked")

    def _row_to_intent(self, row: sqlite3.Row) -> PaymentIntent:
        return PaymentIntent(
            intent_id=str(row["intent_id"]),
            destination_address=str(row["destination_address"]),
            expected_amount=Decimal(str(row["expected_amount"])),
            status=IntentStatus(str(row["status"])),
            created_at=datetime.fromisoformat(str(row["created_at"])),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
            memo=_opt_str(row["memo"]),
            source_credential=_opt_str(row["source_credential"]),
            external_transaction_id=_opt_str(row["external_transaction_id"]),
            consolidation_transaction_id=_opt_str(row["consolidation_transaction_id"]),
            pending_consolidation_tx_id=_opt_str(row["pending_consolidation_tx_id"]),
            account_activated=bool(row["account_activated"]),
            activation_attempts=int(row["activation_attempts"]),
            consolidation_attempts=int(row["consolidation_attempts"]),
            order_id=_opt_str(row["order_id"]),
            description=_opt_str(row["description"]),
            callback_url=_opt_str(row["callback_url"]),
            last_error=_opt_str(row["last_error"]),
        )

    def insert(self, intent: PaymentIntent) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO payment_intents(
                intent_id, destination_address, expected_amount, memo, status,
                source_credential, external_transaction_id, consolidation_transaction_id,
                pending_consolidation_tx_id, account_activated, activation_attempts,
                consolidation_attempts, order_id, description, callback_url, last_error,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                intent.intent_id,
                intent.destination_address,
                str(intent.expected_amount),
                intent.memo,
                intent.status.value,
                intent.source_credential,
                intent.external_transaction_id,
                intent.consolidation_transaction_id,
                intent.pending_consolidation_tx_id,
                int(intent.account_activated),
                intent.activation_attempts,
                intent.consolidation_attempts,
                intent.order_id,
                intent.description,
                intent.callback_url,
                intent.last_error,
                _to_db(intent.created_at),
                _to_db(intent.updated_at),
            ),
        )

    def get(self, intent_id: str) -> PaymentIntent | None:
        return self.find_one(intent_id=intent_id)

    def find_one(self, **filters: object) -> PaymentIntent | None:
        if not filters:
            raise ValueError("find_one requires at least one filter")
        unknown = set(filters) - _FILTER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported intent filters: {sorted(unknown)}")
        clauses = [f"{column} = ?" for column in filters]
        row = self._conn.execute(
            f"SELECT * FROM payment_intents WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at ASC, intent_id ASC LIMIT 1",
            tuple(_to_db(value) for value in filters.values()),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_intent(row)

    def find_many(
        self,
        *,
        statuses: Iterable[IntentStatus] | None = None,
        destination_address: str | None = None,
        limit: int | None = None,
    ) -> list[PaymentIntent]:
        clauses: list[str] = []
        params: list[object] = []
        if statuses is not None:
            status_values = [IntentStatus(status).value for status in statuses]
            if not status_values:
                return []
            placeholders = ",".join("?" for _ in status_values)
            clauses.append(f"status IN ({placeholders})")
            params.extend(status_values)
        if destination_address is not None:
            clauses.append("destination_address = ?")
            params.append(destination_address)
        sql = "SELECT * FROM payment_intents"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, intent_id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        rows = self._conn.execute(sql, tuple(params)).fetchall()
        return [self._row_to_intent(row) for row in rows]

    def external_transaction_ids(self, transaction_ids: Iterable[str]) -> set[str]:
        candidates = sorted(set(transaction_ids))
        if not candidates:
            return set()
        placeholders = ",".join("?" for _ in candidates)
        rows = self._conn.execute(
            "SELECT external_transaction_id FROM payment_intents "
            f"WHERE external_transaction_id IN ({placeholders})",
            tuple(candidates),
        ).fetchall()
        return {str(row["external_transaction_id"]) for row in rows}

    def consolidation_transaction_ids(self, transaction_ids: Iterable[str]) -> set[str]:
        candidates = sorted(set(transaction_ids))
        if not candidates:
            return set()
        placeholders = ",".join("?" for _ in candidates)
        rows = self._conn.execute(
            "SELECT consolidation_transaction_id AS tx_id FROM payment_intents "
            f"WHERE consolidation_transaction_id IN ({placeholders}) "
            "UNION SELECT pending_consolidation_tx_id AS tx_id FROM payment_intents "
            f"WHERE pending_consolidation_tx_id IN ({placeholders})",
            tuple(candidates) * 2,
        ).fetchall()
        return {str(row["tx_id"]) for row in rows}

    def intake_addresses(self, addresses: Iterable[str], *, exclude: str | None = None) -> set[str]:
        """Addresses among `addresses` that were handed out as some intent's destination."""

        candidates = sorted(set(addresses) - {exclude})
        if not candidates:
            return set()
        placeholders = ",".join("?" for _ in candidates)
        rows = self._conn.execute(
            "SELECT DISTINCT destination_address FROM payment_intents "
            f"WHERE destination_address IN ({placeholders})",
            tuple(candidates),
        ).fetchall()
        return {str(row["destination_address"]) for row in rows}

    def update_conditional(
        self,
        intent_id: str,
        expected_status: IntentStatus,
        patch: Mapping[str, object],
        *,
        increment: Mapping[str, int] | None = None,
        allow_override: bool = False,
    ) -> bool:
        """Apply ``patch`` only while the stored status still equals ``expected_status``.

        Returns False when another writer got there first (status moved, or a
        set-once column already holds a different value). Illegal status
        transitions raise before touching the database.
        """

        self._ensure_writable()
        increment = dict(increment or {})
        unknown = (set(patch) - _MUTABLE_COLUMNS) | (set(increment) - _COUNTER_COLUMNS)
        if unknown:
            raise ValueError(f"columns cannot be updated: {sorted(unknown)}")

        if "status" in patch:
            target = IntentStatus(str(patch["status"]))
            if target != expected_status:
                override = (expected_status, target) == OVERRIDE_TRANSITION
                if not (allow_override and override):
                    ensure_transition(expected_status, target)

        assignments: list[str] = []
        params: list[object] = []
        for column, value in patch.items():
            if column in _SET_ONCE_COLUMNS and value is None:
                raise ValueError(f"{column} cannot be cleared once set")
            assignments.append(f"{column} = ?")
            params.append(_to_db(value))
        for column, delta in increment.items():
            assignments.append(f"{column} = {column} + ?")
            params.append(int(delta))
        assignments.append("updated_at = ?")
        params.append(_utc_now_text())

        where = ["intent_id = ?", "status = ?"]
        params.extend([intent_id, expected_status.value])
        for column in sorted(_SET_ONCE_COLUMNS & set(patch)):
            where.append(f"({column} IS NULL OR {column} = ?)")
            params.append(_to_db(patch[column]))

        try:
            cursor = self._conn.execute(
                f"UPDATE payment_intents SET {', '.join(assignments)} WHERE {' AND '.join(where)}",
                tuple(params),
            )
        except sqlite3.IntegrityError:
            logger.warning(
                "intent_update_conflict",
                extra={"extra": {"intent_id": intent_id, "columns": sorted(patch)}},
            )
            return False
        return cursor.rowcount == 1

    def record_event(self, intent_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        self._ensure_writable()
        self._conn.execute(
            "INSERT INTO intent_events(intent_id, event_type, payload_json, ts) VALUES (?, ?, ?, ?)",
            (intent_id, event_type, json.dumps(dict(payload), sort_keys=True, default=str), _utc_now_text()),
        )

    def list_events(self, intent_id: str) -> list[IntentEvent]:
        rows = self._conn.execute(
            "SELECT * FROM intent_events WHERE intent_id = ? ORDER BY id ASC",
            (intent_id,),
        ).fetchall()
        return [
            IntentEvent(
                intent_id=str(row["intent_id"]),
                event_type=str(row["event_type"]),
                payload=json.loads(str(row["payload_json"])),
                ts=datetime.fromisoformat(str(row["ts"])),
            )
            for row in rows
        ]
