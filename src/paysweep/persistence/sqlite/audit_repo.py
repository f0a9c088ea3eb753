from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Mapping
from datetime import UTC, datetime

from paysweep.persistence.interfaces.intents_repo import UnmatchedTransferRecord
from paysweep.persistence.sqlite.sqlite_connection import ensure_audit_schema

logger = logging.getLogger(__name__)


class SqliteAuditRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_audit_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "audit"}})
            raise PermissionError("UnitOfWork is read-only; audit writes are blocked")

    def record_unmatched(
        self, *, transaction_id: str, to_address: str, atomic_amount: int, memo: str | None
    ) -> int:
        """Upsert an unmatched transfer sighting and return how often it has been seen."""

        self._ensure_writable()
        now = datetime.now(UTC).isoformat(timespec="microseconds")
        self._conn.execute(
            """
            INSERT INTO unmatched_transfers(
                transaction_id, to_address, atomic_amount, memo, seen_count, first_seen_at, last_seen_at
            )
            VALUES (?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(transaction_id) DO UPDATE SET
                seen_count = unmatched_transfers.seen_count + 1,
                last_seen_at = excluded.last_seen_at
            """,
            (transaction_id, to_address, int(atomic_amount), memo, now, now),
        )
        row = self._conn.execute(
            "SELECT seen_count FROM unmatched_transfers WHERE transaction_id = ?",
            (transaction_id,),
        ).fetchone()
        return int(row["seen_count"]) if row is not None else 0

    def clear_unmatched(self, transaction_id: str) -> None:
        self._ensure_writable()
        self._conn.execute(
            "DELETE FROM unmatched_transfers WHERE transaction_id = ?", (transaction_id,)
        )

    def list_unmatched(self) -> list[UnmatchedTransferRecord]:
        rows = self._conn.execute(
            "SELECT * FROM unmatched_transfers ORDER BY first_seen_at ASC"
        ).fetchall()
        return [
            UnmatchedTransferRecord(
                transaction_id=str(row["transaction_id"]),
                to_address=str(row["to_address"]),
                atomic_amount=int(row["atomic_amount"]),
                memo=str(row["memo"]) if row["memo"] is not None else None,
                seen_count=int(row["seen_count"]),
                first_seen_at=datetime.fromisoformat(str(row["first_seen_at"])),
                last_seen_at=datetime.fromisoformat(str(row["last_seen_at"])),
            )
            for row in rows
        ]

    def record_cycle(self, cycle_id: str, counts: Mapping[str, int], errors: list[str]) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO cycle_audit(cycle_id, ts, counts_json, errors_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(cycle_id) DO UPDATE SET
                ts=excluded.ts,
                counts_json=excluded.counts_json,
                errors_json=excluded.errors_json
            """,
            (
                cycle_id,
                datetime.now(UTC).isoformat(),
                json.dumps(dict(counts), sort_keys=True),
                json.dumps(errors),
            ),
        )

    def load_cycle(self, cycle_id: str) -> dict[str, object] | None:
        row = self._conn.execute(
            "SELECT * FROM cycle_audit WHERE cycle_id = ?", (cycle_id,)
        ).fetchone()
        if row is None:
            return None
        return {
            "cycle_id": str(row["cycle_id"]),
            "ts": str(row["ts"]),
            "counts": json.loads(str(row["counts_json"])),
            "errors": json.loads(str(row["errors_json"])),
        }

    def claim_admin_trigger(self, name: str, now: datetime, min_interval_seconds: float) -> float | None:
        """Stamp ``name`` as triggered at ``now``; returns seconds to wait instead when too soon."""

        self._ensure_writable()
        row = self._conn.execute(
            "SELECT last_triggered_at FROM admin_triggers WHERE name = ?", (name,)
        ).fetchone()
        if row is not None:
            elapsed = (now - datetime.fromisoformat(str(row["last_triggered_at"]))).total_seconds()
            # a clock that stepped backwards does not lock the trigger out
            if 0 <= elapsed < min_interval_seconds:
                return min_interval_seconds - elapsed
        self._conn.execute(
            """
            INSERT INTO admin_triggers(name, last_triggered_at) VALUES (?, ?)
            ON CONFLICT(name) DO UPDATE SET last_triggered_at=excluded.last_triggered_at
            """,
            (name, now.isoformat()),
        )
        return None
