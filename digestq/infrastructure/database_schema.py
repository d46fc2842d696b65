"""
Database schema for DigestQ.

Logical collections and their keys:
- events            (recipient_id, content_hash) unique -> idempotent insert
- window_claims     (recipient_id, window_key) primary key -> claim CAS on state
- prepared_windows  (recipient_id, window_key) primary key -> pipeline output
- summaries         (recipient_id, window_key, granularity) unique
- outbox            summary-ready notifications (at-least-once handoff)
- delivery_records  (summary_id, channel) primary key
- recipient_preferences (recipient_id) primary key, read-only to the core
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from digestq.observability.logging import get_logger

logger = get_logger(__name__)

EXPECTED_TABLES = (
    "events",
    "window_claims",
    "prepared_windows",
    "summaries",
    "outbox",
    "delivery_records",
    "recipient_preferences",
)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS events (
        event_id TEXT PRIMARY KEY,
        recipient_id TEXT NOT NULL,
        source_type TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        payload TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        window_key TEXT NOT NULL,
        ingested_at TEXT NOT NULL,
        archived_at TEXT,
        UNIQUE(recipient_id, content_hash)
    );

    CREATE INDEX IF NOT EXISTS idx_events_window
    ON events(recipient_id, window_key, occurred_at);

    CREATE TABLE IF NOT EXISTS window_claims (
        recipient_id TEXT NOT NULL,
        window_key TEXT NOT NULL,
        window_start TEXT NOT NULL,
        window_end TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT 'open',
        claimed_at TEXT,
        release_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (recipient_id, window_key),
        CHECK (state IN ('open', 'claimed', 'processed', 'failed'))
    );

    CREATE INDEX IF NOT EXISTS idx_window_claims_due
    ON window_claims(state, window_end);

    CREATE TABLE IF NOT EXISTS prepared_windows (
        recipient_id TEXT NOT NULL,
        window_key TEXT NOT NULL,
        body TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (recipient_id, window_key)
    );

    CREATE TABLE IF NOT EXISTS summaries (
        summary_id TEXT PRIMARY KEY,
        recipient_id TEXT NOT NULL,
        window_key TEXT NOT NULL,
        granularity TEXT NOT NULL,
        headline TEXT,
        bullets TEXT NOT NULL DEFAULT '[]',
        included_event_ids TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'pending',
        failure_reason TEXT,
        repair_attempted INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(recipient_id, window_key, granularity),
        CHECK (granularity IN ('micro', 'daily')),
        CHECK (status IN ('pending', 'ready', 'failed'))
    );

    CREATE TABLE IF NOT EXISTS outbox (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        topic TEXT NOT NULL,
        summary_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        delivered_at TEXT,
        UNIQUE(topic, summary_id)
    );

    CREATE INDEX IF NOT EXISTS idx_outbox_pending
    ON outbox(delivered_at, id);

    CREATE TABLE IF NOT EXISTS delivery_records (
        summary_id TEXT NOT NULL,
        channel TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        transport_ref TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (summary_id, channel),
        CHECK (state IN ('pending', 'sent', 'acked', 'failed', 'skipped'))
    );

    CREATE TABLE IF NOT EXISTS recipient_preferences (
        recipient_id TEXT PRIMARY KEY,
        channels TEXT NOT NULL DEFAULT '[]',
        verbosity TEXT NOT NULL DEFAULT 'standard',
        quiet_start TEXT,
        quiet_end TEXT,
        quiet_timezone TEXT NOT NULL DEFAULT 'UTC',
        updated_at TEXT NOT NULL
    );
"""


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Side Effects:
        - Creates the parent directory and the database file if missing
        - Creates tables and indexes (CREATE ... IF NOT EXISTS)
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database schema ready at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Check every expected table exists.

    Raises:
        ValueError: If tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    present = {row[0] for row in rows}
    missing = [name for name in EXPECTED_TABLES if name not in present]
    if missing:
        raise ValueError(f"Database schema missing tables: {', '.join(missing)}")
    return True
