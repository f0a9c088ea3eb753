from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_intent_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payment_intents (
            intent_id TEXT PRIMARY KEY,
            destination_address TEXT NOT NULL,
            expected_amount TEXT NOT NULL,
            memo TEXT,
            status TEXT NOT NULL,
            source_credential TEXT,
            external_transaction_id TEXT,
            consolidation_transaction_id TEXT,
            pending_consolidation_tx_id TEXT,
            account_activated INTEGER NOT NULL DEFAULT 0,
            activation_attempts INTEGER NOT NULL DEFAULT 0,
            consolidation_attempts INTEGER NOT NULL DEFAULT 0,
            order_id TEXT,
            description TEXT,
            callback_url TEXT,
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_payment_intents_external_tx_unique
        ON payment_intents(external_transaction_id)
        WHERE external_transaction_id IS NOT NULL
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_payment_intents_status_created
        ON payment_intents(status, created_at)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_payment_intents_destination
        ON payment_intents(destination_address)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS intent_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            intent_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            ts TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_intent_events_intent ON intent_events(intent_id)")


def ensure_audit_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS unmatched_transfers (
            transaction_id TEXT PRIMARY KEY,
            to_address TEXT NOT NULL,
            atomic_amount INTEGER NOT NULL,
            memo TEXT,
            seen_count INTEGER NOT NULL DEFAULT 1,
            first_seen_at TEXT NOT NULL,
            last_seen_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cycle_audit (
            cycle_id TEXT PRIMARY KEY,
            ts TEXT NOT NULL,
            counts_json TEXT NOT NULL,
            errors_json TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS admin_triggers (
            name TEXT PRIMARY KEY,
            last_triggered_at TEXT NOT NULL
        )
        """
    )


def ensure_min_schema(conn: sqlite3.Connection) -> None:
    ensure_intent_schema(conn)
    ensure_audit_schema(conn)
