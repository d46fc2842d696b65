"""
Event Retention

Archives the payloads of events whose window was PROCESSED more than
RETENTION_DAYS ago.

The event row itself is kept: its (recipient_id, content_hash) fingerprint is
what makes a late re-delivery of the same event a duplicate, so only the
payload is cleared and archived_at is stamped. Windows that are still OPEN,
CLAIMED or FAILED are never touched.

Usage:
    # Archive old payloads (run daily from the host scheduler)
    report = archive_processed_events()

    # Preview only
    report = archive_processed_events(dry_run=True)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from digestq.config import RETENTION_DAYS
from digestq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import counter, log_event
from digestq.utils.timestamps import format_ts, utc_now

logger = get_logger(__name__)

ARCHIVED_PAYLOAD = "{}"

_ELIGIBLE = """
    FROM events e
    JOIN window_claims c
      ON c.recipient_id = e.recipient_id AND c.window_key = e.window_key
    WHERE c.state = 'processed'
      AND c.window_end < ?
      AND e.archived_at IS NULL
"""


@dataclass(frozen=True)
class RetentionReport:
    cutoff: str
    retention_days: int
    eligible: int
    archived: int
    dry_run: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@retry_on_db_lock()
def archive_processed_events(
    now: datetime | None = None, retention_days: int = RETENTION_DAYS, dry_run: bool = False
) -> RetentionReport:
    """
    Clear payloads of events in PROCESSED windows that ended before the cutoff.

    Side Effects:
        - Updates events.payload and events.archived_at (unless dry_run)
        - Logs the retention run and emits retention.* counters

    Args:
        now: Reference time (default: current UTC time)
        retention_days: Days a processed window's payloads are kept
        dry_run: If True, only count what would be archived

    Returns:
        RetentionReport with eligible and archived counts
    """
    if retention_days < 0:
        raise ValueError(f"retention_days must be >= 0, got {retention_days}")

    reference = now or utc_now()
    cutoff = format_ts(reference - timedelta(days=retention_days))
    prefix = "[DRY RUN] " if dry_run else ""

    if dry_run:
        with get_db_connection() as conn:
            eligible = conn.execute(f"SELECT COUNT(*) {_ELIGIBLE}", (cutoff,)).fetchone()[0]
        logger.info("%sWould archive %d event payloads older than %s", prefix, eligible, cutoff)
        return RetentionReport(cutoff, retention_days, eligible, 0, dry_run)

    archived_at = format_ts(reference)
    with db_transaction(immediate=True) as conn:
        eligible = conn.execute(f"SELECT COUNT(*) {_ELIGIBLE}", (cutoff,)).fetchone()[0]
        archived = 0
        if eligible:
            cursor = conn.execute(
                f"""
                UPDATE events
                SET payload = ?, archived_at = ?
                WHERE event_id IN (SELECT e.event_id {_ELIGIBLE})
                """,
                (ARCHIVED_PAYLOAD, archived_at, cutoff),
            )
            archived = cursor.rowcount

    counter("retention.events_archived", archived)
    log_event(
        "retention.completed",
        cutoff=cutoff,
        retention_days=retention_days,
        eligible=eligible,
        archived=archived,
    )
    return RetentionReport(cutoff, retention_days, eligible, archived, dry_run)


def get_retention_stats(now: datetime | None = None, retention_days: int = RETENTION_DAYS) -> dict[str, Any]:
    """Counts of live, archived and archivable events."""
    cutoff = format_ts((now or utc_now()) - timedelta(days=retention_days))
    with get_db_connection() as conn:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN archived_at IS NOT NULL THEN 1 ELSE 0 END) AS archived
            FROM events
            """
        ).fetchone()
        archivable = conn.execute(f"SELECT COUNT(*) {_ELIGIBLE}", (cutoff,)).fetchone()[0]

    return {
        "total_events": row["total"],
        "archived_events": row["archived"] or 0,
        "archivable_events": archivable,
        "retention_policy_days": retention_days,
    }
