"""
Event Store - events and window claims.

Every cross-worker guarantee here is a conditional write in SQLite:
- put():          INSERT OR IGNORE on UNIQUE(recipient_id, content_hash)
- claim_window(): UPDATE ... WHERE state = 'open' (compare-and-swap)
- mark_processed()/release_claim(): UPDATE ... WHERE state = 'claimed'

A lost conditional write is reported as a result value (already-present,
already-claimed), never as an exception.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from digestq.aggregation.windows import Window, redact_window_key
from digestq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from digestq.infrastructure.errors import EventConflictError
from digestq.observability.logging import get_logger
from digestq.storage.models import ClaimState, Event, PreparedWindow, WindowClaim
from digestq.utils.timestamps import format_ts, parse_ts, utc_now

logger = get_logger(__name__)

# Bound on how far a late event may roll forward; guards against a corrupt claims table
_MAX_ROLL_FORWARD = 10_000


class PutStatus(str, Enum):
    INSERTED = "inserted"
    ALREADY_PRESENT = "already-present"


@dataclass(frozen=True)
class PutResult:
    status: PutStatus
    event: Event

    @property
    def inserted(self) -> bool:
        return self.status is PutStatus.INSERTED


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already-claimed"


def _event_from_row(row: Any) -> Event:
    return Event(
        recipient_id=row["recipient_id"],
        event_id=row["event_id"],
        source_type=row["source_type"],
        occurred_at=parse_ts(row["occurred_at"]),
        payload=json.loads(row["payload"]),
        content_hash=row["content_hash"],
        window_key=row["window_key"],
        ingested_at=parse_ts(row["ingested_at"]),
    )


def _claim_from_row(row: Any) -> WindowClaim:
    return WindowClaim(
        recipient_id=row["recipient_id"],
        window_key=row["window_key"],
        window_start=parse_ts(row["window_start"]),
        window_end=parse_ts(row["window_end"]),
        state=ClaimState(row["state"]),
        claimed_at=parse_ts(row["claimed_at"]) if row["claimed_at"] else None,
        release_count=row["release_count"],
        last_error=row["last_error"],
    )


class EventStore:
    """SQLite-backed store for events, window claims and prepared windows."""

    @retry_on_db_lock()
    def put(self, event: Event, window: Window) -> PutResult:
        """
        Store an event unless one with the same (recipient_id, content_hash) exists.

        The event's window must still be OPEN (or not yet exist); if it has been
        claimed already, the event rolls forward to the next window that is not
        closed. Assignment, insert and claim creation happen inside a single
        BEGIN IMMEDIATE transaction, so they serialise against claim_window().

        Returns:
            PutResult with INSERTED and the stored event (window_key possibly
            rolled forward), or ALREADY_PRESENT and the previously stored event.

        Raises:
            EventConflictError: If event_id is taken by an event with other content

        Side Effects:
            - Inserts into events
            - Inserts an OPEN row into window_claims if absent (never overwrites)
        """
        with db_transaction(immediate=True) as conn:
            existing = conn.execute(
                "SELECT * FROM events WHERE recipient_id = ? AND content_hash = ?",
                (event.recipient_id, event.content_hash),
            ).fetchone()
            if existing is not None:
                return PutResult(PutStatus.ALREADY_PRESENT, _event_from_row(existing))

            reused = conn.execute(
                "SELECT recipient_id FROM events WHERE event_id = ?", (event.event_id,)
            ).fetchone()
            if reused is not None:
                raise EventConflictError(
                    f"event_id {event.event_id} already stored with different content", event.event_id
                )

            target = window
            for _ in range(_MAX_ROLL_FORWARD):
                row = conn.execute(
                    "SELECT state FROM window_claims WHERE recipient_id = ? AND window_key = ?",
                    (target.recipient_id, target.key),
                ).fetchone()
                if row is None or row["state"] == ClaimState.OPEN.value:
                    break
                target = target.next()
            else:
                raise RuntimeError(f"no open window found after {window.key}")

            if target.key != event.window_key:
                logger.info(
                    "Late event %s rolled forward to %s", event.event_id, redact_window_key(target.key)
                )
                event = event.model_copy(update={"window_key": target.key})

            now = format_ts(utc_now())
            conn.execute(
                """
                INSERT INTO events (
                    event_id, recipient_id, source_type, occurred_at, payload,
                    content_hash, window_key, ingested_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.recipient_id,
                    event.source_type,
                    format_ts(event.occurred_at),
                    json.dumps(event.payload, sort_keys=True, default=str),
                    event.content_hash,
                    event.window_key,
                    format_ts(event.ingested_at),
                ),
            )
            conn.execute(
                """
                INSERT OR IGNORE INTO window_claims (
                    recipient_id, window_key, window_start, window_end, state, updated_at
                ) VALUES (?, ?, ?, ?, 'open', ?)
                """,
                (
                    target.recipient_id,
                    target.key,
                    format_ts(target.start),
                    format_ts(target.end),
                    now,
                ),
            )

        return PutResult(PutStatus.INSERTED, event)

    def get_event(self, recipient_id: str, content_hash: str) -> Event | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE recipient_id = ? AND content_hash = ?",
                (recipient_id, content_hash),
            ).fetchone()
        return _event_from_row(row) if row else None

    def count_events(self, recipient_id: str) -> int:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM events WHERE recipient_id = ?", (recipient_id,)
            ).fetchone()
        return int(row[0])

    def scan_window(self, recipient_id: str, window_key: str) -> list[Event]:
        """
        Events of one window, oldest first.

        Once a window is claimed, put() no longer assigns events to it, so a scan
        taken after a successful claim_window() is a stable point-in-time snapshot.
        """
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM events
                WHERE recipient_id = ? AND window_key = ?
                ORDER BY occurred_at, event_id
                """,
                (recipient_id, window_key),
            ).fetchall()
        return [_event_from_row(row) for row in rows]

    def get_claim(self, recipient_id: str, window_key: str) -> WindowClaim | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM window_claims WHERE recipient_id = ? AND window_key = ?",
                (recipient_id, window_key),
            ).fetchone()
        return _claim_from_row(row) if row else None

    def list_due_windows(self, now: datetime, limit: int = 500) -> list[WindowClaim]:
        """OPEN windows whose end is at or before now, earliest first."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM window_claims
                WHERE state = 'open' AND window_end <= ?
                ORDER BY window_end, recipient_id
                LIMIT ?
                """,
                (format_ts(now), limit),
            ).fetchall()
        return [_claim_from_row(row) for row in rows]

    @retry_on_db_lock()
    def claim_window(
        self, recipient_id: str, window_key: str, now: datetime | None = None
    ) -> tuple[ClaimStatus, WindowClaim | None]:
        """
        Compare-and-swap OPEN -> CLAIMED. Exactly one caller wins per window.

        Returns:
            (CLAIMED, claim) for the winner; (ALREADY_CLAIMED, current claim or None)
            for everyone else.
        """
        claimed_at = format_ts(now or utc_now())
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE window_claims
                SET state = 'claimed', claimed_at = ?, updated_at = ?
                WHERE recipient_id = ? AND window_key = ? AND state = 'open'
                """,
                (claimed_at, claimed_at, recipient_id, window_key),
            )
            won = cursor.rowcount == 1
            row = conn.execute(
                "SELECT * FROM window_claims WHERE recipient_id = ? AND window_key = ?",
                (recipient_id, window_key),
            ).fetchone()

        claim = _claim_from_row(row) if row else None
        return (ClaimStatus.CLAIMED if won else ClaimStatus.ALREADY_CLAIMED), claim

    @retry_on_db_lock()
    def mark_processed(
        self, recipient_id: str, window_key: str, claimed_at: datetime | None = None
    ) -> bool:
        """
        CLAIMED -> PROCESSED. Returns False if the claim was not CLAIMED.

        When claimed_at is given, only that specific claim qualifies, so a worker
        whose claim was released by lease recovery cannot finish another's claim.
        """
        now = format_ts(utc_now())
        expected = format_ts(claimed_at) if claimed_at else None
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE window_claims SET state = 'processed', last_error = NULL, updated_at = ?
                WHERE recipient_id = ? AND window_key = ? AND state = 'claimed'
                  AND (? IS NULL OR claimed_at = ?)
                """,
                (now, recipient_id, window_key, expected, expected),
            )
            return cursor.rowcount == 1

    @retry_on_db_lock()
    def release_claim(
        self,
        recipient_id: str,
        window_key: str,
        error: str,
        max_releases: int,
        claimed_at: datetime | None = None,
    ) -> ClaimState | None:
        """
        Hand a failed claim back: CLAIMED -> OPEN while release_count < max_releases,
        otherwise CLAIMED -> FAILED.

        When claimed_at is given, only that specific claim is released (a newer
        claim of the same window by another worker is left alone).

        Returns:
            The resulting state, or None if the claim was not CLAIMED.
        """
        now = format_ts(utc_now())
        expected = format_ts(claimed_at) if claimed_at else None
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE window_claims
                SET state = CASE WHEN release_count < ? THEN 'open' ELSE 'failed' END,
                    release_count = CASE WHEN release_count < ? THEN release_count + 1
                                         ELSE release_count END,
                    claimed_at = NULL,
                    last_error = ?,
                    updated_at = ?
                WHERE recipient_id = ? AND window_key = ? AND state = 'claimed'
                  AND (? IS NULL OR claimed_at = ?)
                """,
                (
                    max_releases,
                    max_releases,
                    error[:500],
                    now,
                    recipient_id,
                    window_key,
                    expected,
                    expected,
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT state FROM window_claims WHERE recipient_id = ? AND window_key = ?",
                (recipient_id, window_key),
            ).fetchone()
        return ClaimState(row["state"])

    @retry_on_db_lock()
    def save_prepared_window(self, prepared: PreparedWindow) -> PreparedWindow:
        """
        Persist a PreparedWindow once; a second save returns the stored one.

        Side Effects:
            - Inserts into prepared_windows (INSERT OR IGNORE)
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO prepared_windows (recipient_id, window_key, body, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (prepared.recipient_id, prepared.window_key, prepared.to_json(), format_ts(utc_now())),
            )
            row = conn.execute(
                "SELECT body FROM prepared_windows WHERE recipient_id = ? AND window_key = ?",
                (prepared.recipient_id, prepared.window_key),
            ).fetchone()
        return PreparedWindow.from_json(row["body"])

    def get_prepared_window(self, recipient_id: str, window_key: str) -> PreparedWindow | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT body FROM prepared_windows WHERE recipient_id = ? AND window_key = ?",
                (recipient_id, window_key),
            ).fetchone()
        return PreparedWindow.from_json(row["body"]) if row else None

    def list_unsummarized(self, limit: int = 500) -> list[PreparedWindow]:
        """Prepared windows with no terminal micro summary yet (crash recovery)."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT p.body FROM prepared_windows p
                LEFT JOIN summaries s
                  ON s.recipient_id = p.recipient_id
                 AND s.window_key = p.window_key
                 AND s.granularity = 'micro'
                WHERE s.summary_id IS NULL OR s.status = 'pending'
                ORDER BY p.created_at
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [PreparedWindow.from_json(row["body"]) for row in rows]

    def list_stale_claims(self, claimed_before: datetime, limit: int = 100) -> list[WindowClaim]:
        """CLAIMED windows whose claim is older than claimed_before (crashed workers)."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM window_claims
                WHERE state = 'claimed' AND claimed_at <= ?
                ORDER BY claimed_at
                LIMIT ?
                """,
                (format_ts(claimed_before), limit),
            ).fetchall()
        return [_claim_from_row(row) for row in rows]
