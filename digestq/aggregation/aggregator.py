"""
Window Aggregator - pull-based, exactly-once-per-window processing.

On each trigger the aggregator lists OPEN windows whose end has passed and, for
each, tries the OPEN -> CLAIMED compare-and-swap in the store. Only the winner
scans the window and runs the pipeline; everyone else skips silently.

Outcomes per window:
- processed: PreparedWindow persisted, claim CLAIMED -> PROCESSED
- skipped:   another worker holds (or finished) the claim, or ours was lost
             to lease recovery before it could be marked processed
- released:  pipeline or store failed, claim handed back to OPEN
- failed:    release ceiling exceeded, claim FAILED and reported
"""

from __future__ import annotations

import sqlite3
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from digestq.aggregation.windows import redact_window_key
from digestq.config import CLAIM_LEASE_SECONDS, CLAIM_MAX_RELEASES
from digestq.infrastructure.errors import StoreUnavailableError
from digestq.observability.logging import get_logger, unit_logger
from digestq.observability.telemetry import counter, log_event, time_block
from digestq.pipeline.window_pipeline import WindowPipeline, build_default_pipeline
from digestq.storage.event_store import ClaimStatus, EventStore
from digestq.storage.models import ClaimState, PreparedWindow
from digestq.utils.redaction import redact
from digestq.utils.timestamps import utc_now

logger = get_logger(__name__)


class OutcomeStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    RELEASED = "released"
    FAILED = "failed"


@dataclass(frozen=True)
class WindowOutcome:
    recipient_id: str
    window_key: str
    status: OutcomeStatus
    prepared: PreparedWindow | None = None
    error: str | None = None


class WindowAggregator:
    """
    Claims due windows and turns each into a PreparedWindow.

    Failures stay local to one window: run_due() never lets one window's error
    abort the others.
    """

    def __init__(
        self,
        store: EventStore | None = None,
        pipeline: WindowPipeline | None = None,
        max_releases: int = CLAIM_MAX_RELEASES,
        lease_seconds: int = CLAIM_LEASE_SECONDS,
    ):
        self.store = store or EventStore()
        self.pipeline = pipeline or build_default_pipeline()
        self.max_releases = max_releases
        self.lease_seconds = lease_seconds

    def run_due(self, now: datetime | None = None, limit: int = 500) -> list[WindowOutcome]:
        """
        Process every OPEN window with window_end <= now.

        Side Effects:
            - Releases claims older than the lease (crashed workers) first
            - Per window: see process_window()
        """
        now = now or utc_now()
        self.recover_stale_claims(now)

        outcomes = []
        for claim in self.store.list_due_windows(now, limit=limit):
            try:
                outcomes.append(self.process_window(claim.recipient_id, claim.window_key, now))
            except StoreUnavailableError as e:
                # The claim (if taken) stays CLAIMED and is recovered once its lease expires
                logger.error(
                    "Store unavailable while processing %s: %s", redact_window_key(claim.window_key), e
                )
                counter("aggregator.store_unavailable")
                outcomes.append(
                    WindowOutcome(claim.recipient_id, claim.window_key, OutcomeStatus.RELEASED, error=str(e))
                )

        if outcomes:
            tally = Counter(o.status.value for o in outcomes)
            logger.info("Aggregation run: %d windows %s", len(outcomes), dict(sorted(tally.items())))
        return outcomes

    def process_window(
        self, recipient_id: str, window_key: str, now: datetime | None = None
    ) -> WindowOutcome:
        """
        Claim, snapshot, reduce and persist one window.

        Raises:
            StoreUnavailableError: If the claim itself cannot be attempted

        Side Effects:
            - window_claims: OPEN -> CLAIMED -> PROCESSED (or back to OPEN / FAILED)
            - prepared_windows: one row on success
        """
        log = unit_logger(logger, window=redact_window_key(window_key))
        status, claim = self.store.claim_window(recipient_id, window_key, now=now)
        if status is not ClaimStatus.CLAIMED or claim is None:
            counter("aggregator.already_claimed")
            log.debug("Window already claimed, skipping")
            return WindowOutcome(recipient_id, window_key, OutcomeStatus.SKIPPED)

        try:
            with time_block("aggregator.window.latency"):
                events = self.store.scan_window(recipient_id, window_key)
                result = self.pipeline.run(recipient_id, window_key, events)
                if result.success and result.prepared is not None:
                    prepared = self.store.save_prepared_window(result.prepared)
                    if not self.store.mark_processed(recipient_id, window_key, claim.claimed_at):
                        counter("aggregator.claim_lost")
                        log.warning("Claim lost before completion, leaving the window to its new owner")
                        return WindowOutcome(
                            recipient_id, window_key, OutcomeStatus.SKIPPED, error="claim lost"
                        )
                    counter("aggregator.processed")
                    log.info(
                        "Window processed: %d events -> %d items",
                        len(events),
                        len(prepared.items),
                    )
                    return WindowOutcome(recipient_id, window_key, OutcomeStatus.PROCESSED, prepared)
                error = "; ".join(result.errors) or "pipeline failed"
        except (StoreUnavailableError, sqlite3.Error) as e:
            error = f"{type(e).__name__}: {e}"

        return self._release(recipient_id, window_key, error, claim.claimed_at)

    def recover_stale_claims(self, now: datetime) -> int:
        """Release CLAIMED windows whose lease expired. Returns the number released."""
        cutoff = now - timedelta(seconds=self.lease_seconds)
        released = 0
        for claim in self.store.list_stale_claims(cutoff):
            logger.warning(
                "Releasing stale claim %s (claimed at %s)",
                redact_window_key(claim.window_key),
                claim.claimed_at,
            )
            self._release(claim.recipient_id, claim.window_key, "claim lease expired", claim.claimed_at)
            released += 1
        return released

    def _release(
        self, recipient_id: str, window_key: str, error: str, claimed_at: datetime | None
    ) -> WindowOutcome:
        state = self.store.release_claim(
            recipient_id, window_key, error, self.max_releases, claimed_at=claimed_at
        )

        if state is ClaimState.FAILED:
            counter("window.permanently_failed")
            log_event(
                "window.permanently_failed",
                recipient=redact(recipient_id),
                window_start=window_key.split("#", 1)[0],
                error=error[:200],
                severity="alert",
            )
            return WindowOutcome(recipient_id, window_key, OutcomeStatus.FAILED, error=error)

        counter("window.released")
        logger.warning(
            "Released window %s after failure: %s", redact_window_key(window_key), error[:200]
        )
        return WindowOutcome(recipient_id, window_key, OutcomeStatus.RELEASED, error=error)
