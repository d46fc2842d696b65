"""
Idempotent Ingestion Gate.

Accepts a normalized event, fingerprints its payload, assigns it to a window
and stores it at most once per (recipient_id, content_hash). Nothing downstream
is triggered from here: aggregation pulls due windows on its own timer, so a
burst of ingestion never translates into a burst of pipeline work.

Failure policy: storage problems surface as StoreUnavailableError (transient);
the caller retries according to its own transport semantics. A reused event_id
with different content is an EventConflictError, which is never retried.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from digestq.aggregation.windows import redact_window_key, window_for
from digestq.config import WINDOW_SIZE_SECONDS
from digestq.infrastructure.errors import EventConflictError, StoreUnavailableError
from digestq.infrastructure.idempotency import content_hash
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import counter, log_event, time_block
from digestq.storage.event_store import EventStore
from digestq.storage.models import Event, EventInput
from digestq.utils.redaction import redact
from digestq.utils.timestamps import utc_now

logger = get_logger(__name__)

__all__ = ["EventInput", "IngestResult", "IngestionGate"]


@dataclass(frozen=True)
class IngestResult:
    inserted: bool
    event: Event


class IngestionGate:
    def __init__(self, store: EventStore | None = None, window_size_seconds: int = WINDOW_SIZE_SECONDS):
        self.store = store or EventStore()
        self.window_size_seconds = window_size_seconds

    def ingest(self, event_input: EventInput) -> IngestResult:
        """
        Store an event once; repeated content is a successful no-op.

        Returns:
            IngestResult(inserted=True, event) for a new event, or
            IngestResult(inserted=False, event) carrying the already-stored event.

        Raises:
            ValueError: If the payload is empty
            EventConflictError: If event_id is already used by different content
            StoreUnavailableError: If the store cannot be written

        Side Effects:
            - Inserts into events and (if absent) an OPEN window_claims row
            - Increments ingest.inserted / ingest.duplicate counters
        """
        fingerprint = content_hash(event_input.payload)
        window = window_for(event_input.recipient_id, event_input.occurred_at, self.window_size_seconds)

        event = Event(
            recipient_id=event_input.recipient_id,
            event_id=event_input.event_id,
            source_type=event_input.source_type,
            occurred_at=event_input.occurred_at,
            payload=event_input.payload,
            content_hash=fingerprint,
            window_key=window.key,
            ingested_at=utc_now(),
        )

        try:
            with time_block("ingest.put.latency"):
                result = self.store.put(event, window)
        except StoreUnavailableError:
            counter("ingest.store_unavailable")
            raise
        except EventConflictError:
            counter("ingest.event_id_conflict")
            log_event(
                "ingest.event_id_conflict",
                recipient=redact(event_input.recipient_id),
                event_id=event_input.event_id,
                severity="error",
            )
            raise
        except (sqlite3.Error, FileNotFoundError, RuntimeError) as exc:
            counter("ingest.store_unavailable")
            log_event(
                "ingest.store_unavailable",
                recipient=redact(event_input.recipient_id),
                error=str(exc),
                severity="error",
            )
            raise StoreUnavailableError(f"event store unavailable: {exc}") from exc

        if result.inserted:
            counter("ingest.inserted")
            logger.debug(
                "Stored event %s in %s", result.event.event_id, redact_window_key(result.event.window_key)
            )
        else:
            counter("ingest.duplicate")
            log_event(
                "ingest.duplicate",
                recipient=redact(event_input.recipient_id),
                content_hash=fingerprint[:12],
            )

        return IngestResult(inserted=result.inserted, event=result.event)
