"""
Summary persistence and the summary-ready outbox.

A summary row is created PENDING once per (recipient_id, window_key,
granularity) and moves to READY or FAILED exactly once, via conditional
UPDATE ... WHERE status = 'pending'. The READY transition and the outbox
insert share one transaction, so a READY summary always has a notification
waiting for the dispatcher (at-least-once handoff).
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from digestq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from digestq.observability.logging import get_logger
from digestq.storage.models import Granularity, Summary, SummaryStatus
from digestq.utils.timestamps import format_ts, parse_ts, utc_now

logger = get_logger(__name__)

SUMMARY_READY_TOPIC = "summary.ready"


@dataclass(frozen=True)
class OutboxEntry:
    id: int
    topic: str
    summary_id: str
    created_at: datetime


def _summary_from_row(row: Any) -> Summary:
    return Summary(
        summary_id=row["summary_id"],
        recipient_id=row["recipient_id"],
        window_key=row["window_key"],
        granularity=Granularity(row["granularity"]),
        headline=row["headline"],
        bullets=tuple(json.loads(row["bullets"])),
        included_event_ids=tuple(json.loads(row["included_event_ids"])),
        status=SummaryStatus(row["status"]),
        failure_reason=row["failure_reason"],
        repair_attempted=bool(row["repair_attempted"]),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


class SummaryRepository:
    """Static-style repository over the summaries and outbox tables."""

    @staticmethod
    @retry_on_db_lock()
    def get_or_create(recipient_id: str, window_key: str, granularity: Granularity) -> Summary:
        """
        Return the summary for the key, creating it PENDING if absent.

        Side Effects:
            - Inserts into summaries (INSERT OR IGNORE on the unique key)
        """
        now = format_ts(utc_now())
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO summaries (
                    summary_id, recipient_id, window_key, granularity, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 'pending', ?, ?)
                """,
                (str(uuid.uuid4()), recipient_id, window_key, granularity.value, now, now),
            )
            row = conn.execute(
                """
                SELECT * FROM summaries
                WHERE recipient_id = ? AND window_key = ? AND granularity = ?
                """,
                (recipient_id, window_key, granularity.value),
            ).fetchone()
        return _summary_from_row(row)

    @staticmethod
    def get(summary_id: str) -> Summary | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM summaries WHERE summary_id = ?", (summary_id,)).fetchone()
        return _summary_from_row(row) if row else None

    @staticmethod
    def find(recipient_id: str, window_key: str, granularity: Granularity) -> Summary | None:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM summaries
                WHERE recipient_id = ? AND window_key = ? AND granularity = ?
                """,
                (recipient_id, window_key, granularity.value),
            ).fetchone()
        return _summary_from_row(row) if row else None

    @staticmethod
    @retry_on_db_lock()
    def mark_ready(
        summary_id: str,
        headline: str,
        bullets: Sequence[str],
        included_event_ids: Sequence[str],
        repair_attempted: bool,
    ) -> Summary | None:
        """
        PENDING -> READY and enqueue the summary.ready notification, atomically.

        Returns:
            The READY summary, or None if the summary was not PENDING.
        """
        now = format_ts(utc_now())
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE summaries
                SET status = 'ready', headline = ?, bullets = ?, included_event_ids = ?,
                    repair_attempted = ?, failure_reason = NULL, updated_at = ?
                WHERE summary_id = ? AND status = 'pending'
                """,
                (
                    headline,
                    json.dumps(list(bullets)),
                    json.dumps(sorted(included_event_ids)),
                    int(repair_attempted),
                    now,
                    summary_id,
                ),
            )
            if cursor.rowcount != 1:
                return None
            conn.execute(
                "INSERT OR IGNORE INTO outbox (topic, summary_id, created_at) VALUES (?, ?, ?)",
                (SUMMARY_READY_TOPIC, summary_id, now),
            )
            row = conn.execute("SELECT * FROM summaries WHERE summary_id = ?", (summary_id,)).fetchone()
        return _summary_from_row(row)

    @staticmethod
    @retry_on_db_lock()
    def mark_failed(summary_id: str, reason: str, repair_attempted: bool) -> Summary | None:
        """PENDING -> FAILED with a reason. No content is written. None if not PENDING."""
        now = format_ts(utc_now())
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE summaries
                SET status = 'failed', failure_reason = ?, repair_attempted = ?, updated_at = ?
                WHERE summary_id = ? AND status = 'pending'
                """,
                (reason[:1000], int(repair_attempted), now, summary_id),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM summaries WHERE summary_id = ?", (summary_id,)).fetchone()
        return _summary_from_row(row)

    @staticmethod
    def list_ready_micro_for_day(recipient_id: str, day_key: str) -> list[Summary]:
        """READY micro summaries whose window starts on day_key (YYYY-MM-DD), in window order."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM summaries
                WHERE recipient_id = ? AND granularity = 'micro' AND status = 'ready'
                  AND window_key LIKE ?
                ORDER BY window_key
                """,
                (recipient_id, f"{day_key}T%"),
            ).fetchall()
        return [_summary_from_row(row) for row in rows]

    @staticmethod
    def list_recipients_for_day(day_key: str) -> list[str]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT recipient_id FROM summaries
                WHERE granularity = 'micro' AND status = 'ready' AND window_key LIKE ?
                ORDER BY recipient_id
                """,
                (f"{day_key}T%",),
            ).fetchall()
        return [row["recipient_id"] for row in rows]

    @staticmethod
    def count_by_status() -> dict[str, int]:
        with get_db_connection() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM summaries GROUP BY status").fetchall()
        return {row["status"]: row["n"] for row in rows}

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    @staticmethod
    def pending_outbox(limit: int = 100, topic: str = SUMMARY_READY_TOPIC) -> list[OutboxEntry]:
        """Undelivered notifications, oldest first."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM outbox
                WHERE delivered_at IS NULL AND topic = ?
                ORDER BY id
                LIMIT ?
                """,
                (topic, limit),
            ).fetchall()
        return [
            OutboxEntry(
                id=row["id"],
                topic=row["topic"],
                summary_id=row["summary_id"],
                created_at=parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    @staticmethod
    @retry_on_db_lock()
    def mark_outbox_delivered(entry_id: int, now: datetime | None = None) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                "UPDATE outbox SET delivered_at = ? WHERE id = ? AND delivered_at IS NULL",
                (format_ts(now or utc_now()), entry_id),
            )
            return cursor.rowcount == 1
