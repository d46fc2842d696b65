"""
Delivery record persistence.

Every state change is a conditional UPDATE ... WHERE state IN (<allowed
sources>), so a record can only move forward along ALLOWED_TRANSITIONS even
if two dispatchers race on the same (summary_id, channel).
"""

from __future__ import annotations

from collections.abc import Iterable

from digestq.delivery.models import ALLOWED_TRANSITIONS, DeliveryRecord, DeliveryState
from digestq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from digestq.infrastructure.errors import InvalidTransitionError
from digestq.observability.logging import get_logger
from digestq.utils.timestamps import format_ts, utc_now

logger = get_logger(__name__)


class DeliveryRecordRepository:
    """Repository for delivery_records; all methods are static."""

    @staticmethod
    @retry_on_db_lock()
    def create_pending(summary_id: str, channel: str) -> DeliveryRecord:
        """
        Return the record for (summary_id, channel), creating it PENDING if absent.

        Side Effects:
            - Inserts into delivery_records (INSERT OR IGNORE)
        """
        now = format_ts(utc_now())
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO delivery_records (
                    summary_id, channel, state, attempts, created_at, updated_at
                ) VALUES (?, ?, 'pending', 0, ?, ?)
                """,
                (summary_id, channel, now, now),
            )
            row = conn.execute(
                "SELECT * FROM delivery_records WHERE summary_id = ? AND channel = ?",
                (summary_id, channel),
            ).fetchone()
        return DeliveryRecord.from_db_row(row)

    @staticmethod
    def get(summary_id: str, channel: str) -> DeliveryRecord | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM delivery_records WHERE summary_id = ? AND channel = ?",
                (summary_id, channel),
            ).fetchone()
        return DeliveryRecord.from_db_row(row) if row else None

    @staticmethod
    def list_for_summary(summary_id: str) -> list[DeliveryRecord]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM delivery_records WHERE summary_id = ? ORDER BY channel",
                (summary_id,),
            ).fetchall()
        return [DeliveryRecord.from_db_row(row) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def record_attempt(summary_id: str, channel: str, attempts: int, error: str) -> bool:
        """Persist a failed attempt on a PENDING record. False if no longer PENDING."""
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE delivery_records
                SET attempts = ?, last_error = ?, updated_at = ?
                WHERE summary_id = ? AND channel = ? AND state = 'pending'
                """,
                (attempts, error[:500], format_ts(utc_now()), summary_id, channel),
            )
            return cursor.rowcount == 1

    @staticmethod
    @retry_on_db_lock()
    def transition(
        summary_id: str,
        channel: str,
        from_states: Iterable[DeliveryState],
        to_state: DeliveryState,
        attempts: int | None = None,
        last_error: str | None = None,
        transport_ref: str | None = None,
    ) -> DeliveryRecord | None:
        """
        Conditionally move a record from one of from_states to to_state.

        attempts / last_error / transport_ref are only written when given.

        Returns:
            The updated record, or None if the record was not in from_states.

        Raises:
            InvalidTransitionError: If to_state is not reachable from every from_state
        """
        sources = sorted(set(from_states), key=lambda s: s.value)
        illegal = [s.value for s in sources if to_state not in ALLOWED_TRANSITIONS[s]]
        if not sources or illegal:
            raise InvalidTransitionError(f"cannot move {illegal or 'nothing'} -> {to_state.value}")

        placeholders = ", ".join("?" for _ in sources)
        with db_transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE delivery_records
                SET state = ?,
                    attempts = COALESCE(?, attempts),
                    last_error = COALESCE(?, last_error),
                    transport_ref = COALESCE(?, transport_ref),
                    updated_at = ?
                WHERE summary_id = ? AND channel = ? AND state IN ({placeholders})
                """,
                (
                    to_state.value,
                    attempts,
                    last_error[:500] if last_error else None,
                    transport_ref,
                    format_ts(utc_now()),
                    summary_id,
                    channel,
                    *[s.value for s in sources],
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT * FROM delivery_records WHERE summary_id = ? AND channel = ?",
                (summary_id, channel),
            ).fetchone()
        return DeliveryRecord.from_db_row(row)

    @staticmethod
    def count_by_state() -> dict[str, int]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n FROM delivery_records GROUP BY state"
            ).fetchall()
        return {row["state"]: row["n"] for row in rows}
