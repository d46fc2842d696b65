"""
Recipient preferences backed by the recipient_preferences table.

Read-only to the core; save() exists for operators and tests. An unknown
recipient gets an empty channel set (nothing is delivered) and a warning.
"""

from __future__ import annotations

import json
from datetime import time
from typing import Any

from digestq.delivery.models import QuietHours, UserPreferences, Verbosity
from digestq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import counter
from digestq.utils.redaction import redact
from digestq.utils.timestamps import format_ts, utc_now

logger = get_logger(__name__)


def _preferences_from_row(row: Any) -> UserPreferences:
    quiet_hours = None
    if row["quiet_start"] and row["quiet_end"]:
        quiet_hours = QuietHours(
            start=time.fromisoformat(row["quiet_start"]),
            end=time.fromisoformat(row["quiet_end"]),
            timezone=row["quiet_timezone"] or "UTC",
        )
    return UserPreferences(
        recipient_id=row["recipient_id"],
        channels=frozenset(json.loads(row["channels"])),
        verbosity=Verbosity(row["verbosity"]),
        quiet_hours=quiet_hours,
    )


class PreferencesRepository:
    """PreferencesProvider over SQLite."""

    def get(self, recipient_id: str) -> UserPreferences:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM recipient_preferences WHERE recipient_id = ?", (recipient_id,)
            ).fetchone()
        if row is None:
            counter("preferences.missing")
            logger.warning("No preferences for recipient %s, no channels configured", redact(recipient_id))
            return UserPreferences(recipient_id=recipient_id)
        return _preferences_from_row(row)

    @retry_on_db_lock()
    def save(self, preferences: UserPreferences) -> None:
        quiet = preferences.quiet_hours
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO recipient_preferences (
                    recipient_id, channels, verbosity, quiet_start, quiet_end, quiet_timezone, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(recipient_id) DO UPDATE SET
                    channels = excluded.channels,
                    verbosity = excluded.verbosity,
                    quiet_start = excluded.quiet_start,
                    quiet_end = excluded.quiet_end,
                    quiet_timezone = excluded.quiet_timezone,
                    updated_at = excluded.updated_at
                """,
                (
                    preferences.recipient_id,
                    json.dumps(sorted(preferences.channels)),
                    preferences.verbosity.value,
                    quiet.start.isoformat() if quiet else None,
                    quiet.end.isoformat() if quiet else None,
                    quiet.timezone if quiet else "UTC",
                    format_ts(utc_now()),
                ),
            )
