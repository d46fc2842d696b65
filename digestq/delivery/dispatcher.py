"""
Delivery Dispatcher - fans a READY summary out to the recipient's channels.

Channels are isolated units of work: each gets its own DeliveryRecord, its
own retry budget and its own error handling, so one channel's failure never
blocks, delays or retries another.

Per channel:
- no transport registered        -> FAILED ("no transport configured")
- quiet hours + time-sensitive   -> SKIPPED (terminal; not deferred)
- send accepted                  -> SENT, then ACKED unless the channel confirms later
- budget exhausted / rejected    -> FAILED

Completion notifications arrive through the summaries outbox (drain());
an entry is consumed only once every channel has settled, so a crash
mid-fan-out re-dispatches and the record state machine keeps it idempotent.
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime

from digestq.config import DELIVERY_MAX_ATTEMPTS
from digestq.contracts import ChannelTransport, PreferencesProvider
from digestq.delivery.models import DeliveryRecord, DeliveryState
from digestq.delivery.repository import DeliveryRecordRepository
from digestq.delivery.retry import RetryPolicy
from digestq.infrastructure.errors import (
    InvalidTransitionError,
    RetryExhaustedError,
    StoreUnavailableError,
    TransportError,
)
from digestq.observability.logging import get_logger, unit_logger
from digestq.observability.telemetry import counter, log_event
from digestq.storage.models import Summary, SummaryStatus
from digestq.storage.summaries import SummaryRepository
from digestq.utils.redaction import redact
from digestq.utils.timestamps import utc_now

logger = get_logger(__name__)

NO_TRANSPORT = "no transport configured"
QUIET_HOURS = "suppressed by quiet hours"


@dataclass
class DrainReport:
    entries_seen: int = 0
    entries_completed: int = 0
    records: list[DeliveryRecord] = field(default_factory=list)


class DeliveryDispatcher:
    """
    Example:
        dispatcher = DeliveryDispatcher(default_transports(), PreferencesRepository())
        dispatcher.drain()                       # consume summary.ready notifications
        dispatcher.acknowledge(summary_id, "realtime")
    """

    def __init__(
        self,
        transports: Mapping[str, ChannelTransport],
        preferences: PreferencesProvider,
        repository: type[DeliveryRecordRepository] = DeliveryRecordRepository,
        summaries: type[SummaryRepository] = SummaryRepository,
        max_attempts: int = DELIVERY_MAX_ATTEMPTS,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.transports = dict(transports)
        self.preferences = preferences
        self.repository = repository
        self.summaries = summaries
        self.max_attempts = max_attempts
        self.sleep_fn = sleep_fn

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def dispatch(self, summary: Summary, now: datetime | None = None) -> list[DeliveryRecord]:
        """
        Deliver a READY summary to every configured channel.

        Returns:
            One DeliveryRecord per channel (current state). Empty for
            non-READY summaries and recipients without channels.

        Side Effects:
            - delivery_records: created and advanced per channel
            - Transport sends (with retries and backoff sleeps)
        """
        records, _ = self._fan_out(summary, now)
        return records

    def _fan_out(self, summary: Summary, now: datetime | None) -> tuple[list[DeliveryRecord], bool]:
        """Returns (records, settled): settled when every channel left PENDING."""
        if summary.status is not SummaryStatus.READY:
            logger.info("Summary %s is %s, nothing to deliver", summary.summary_id, summary.status.value)
            return [], True

        now = now or utc_now()
        prefs = self.preferences.get(summary.recipient_id)
        quiet = prefs.in_quiet_hours(now)

        records = []
        settled = True
        for channel in sorted(prefs.channels):
            try:
                record = self._deliver(summary, channel, quiet)
            except (StoreUnavailableError, sqlite3.Error) as e:
                # Record stays PENDING; the outbox entry is not consumed, so drain() retries
                counter("delivery.store_unavailable")
                logger.error("Store error delivering %s via %s: %s", summary.summary_id, channel, e)
                settled = False
                continue
            records.append(record)
            settled = settled and record.state is not DeliveryState.PENDING
        return records, settled

    def _deliver(self, summary: Summary, channel: str, quiet: bool) -> DeliveryRecord:
        log = unit_logger(logger, summary=summary.summary_id, channel=channel)
        record = self.repository.create_pending(summary.summary_id, channel)
        if record.state is not DeliveryState.PENDING:
            return record

        transport = self.transports.get(channel)
        if transport is None:
            log.warning("No transport registered")
            return self._settle(record, DeliveryState.FAILED, last_error=NO_TRANSPORT)

        if quiet and transport.suppressed_in_quiet_hours:
            counter(f"delivery.{channel}.skipped")
            log.info("Quiet hours active, send skipped")
            return self._settle(record, DeliveryState.SKIPPED, last_error=QUIET_HOURS)

        if record.attempts >= self.max_attempts:
            return self._exhausted(record, record.attempts, record.last_error or "retry budget spent")

        policy = RetryPolicy(
            stage=f"delivery.{channel}",
            max_attempts=self.max_attempts,
            sleep_fn=self.sleep_fn,
        )

        def send_once():
            result = transport.send(summary.recipient_id, summary)
            if not result.accepted:
                raise TransportError(result.reason or "rejected", retryable=result.retryable)
            return result

        def persist_failure(attempt: int, error: Exception) -> None:
            self.repository.record_attempt(summary.summary_id, channel, attempt, str(error))

        try:
            result = policy.execute(send_once, on_failure=persist_failure, first_attempt=record.attempts + 1)
        except RetryExhaustedError as e:
            return self._exhausted(record, e.attempts, str(e.last_error))
        except TransportError as e:
            current = self.repository.get(summary.summary_id, channel) or record
            return self._exhausted(record, current.attempts, str(e))

        current = self.repository.get(summary.summary_id, channel) or record
        sent = self.repository.transition(
            summary.summary_id,
            channel,
            [DeliveryState.PENDING],
            DeliveryState.SENT,
            attempts=current.attempts + 1,
            transport_ref=result.transport_ref,
        )
        if sent is None:
            return self.repository.get(summary.summary_id, channel) or record

        counter(f"delivery.{channel}.sent")
        log.info("Handed to transport after %d attempt(s)", sent.attempts)
        if not transport.requires_ack:
            # Handoff is terminal for channels without confirmation
            acked = self.repository.transition(
                summary.summary_id, channel, [DeliveryState.SENT], DeliveryState.ACKED
            )
            return acked or sent
        return sent

    def _settle(self, record: DeliveryRecord, state: DeliveryState, last_error: str) -> DeliveryRecord:
        updated = self.repository.transition(
            record.summary_id, record.channel, [DeliveryState.PENDING], state, last_error=last_error
        )
        return updated or self.repository.get(record.summary_id, record.channel) or record

    def _exhausted(self, record: DeliveryRecord, attempts: int, error: str) -> DeliveryRecord:
        counter(f"delivery.{record.channel}.failed")
        log_event(
            "delivery.failed",
            summary_id=record.summary_id,
            channel=record.channel,
            attempts=attempts,
            error=error[:200],
            severity="alert",
        )
        updated = self.repository.transition(
            record.summary_id,
            record.channel,
            [DeliveryState.PENDING],
            DeliveryState.FAILED,
            attempts=attempts,
            last_error=error,
        )
        return updated or self.repository.get(record.summary_id, record.channel) or record

    # ------------------------------------------------------------------
    # Asynchronous confirmations
    # ------------------------------------------------------------------

    def acknowledge(self, summary_id: str, channel: str) -> DeliveryRecord | None:
        """
        SENT -> ACKED on transport confirmation.

        Returns:
            The record (unchanged when already ACKED, FAILED or SKIPPED), or
            None when no such record exists.

        Raises:
            InvalidTransitionError: If the record is still PENDING
        """
        record = self.repository.get(summary_id, channel)
        if record is None:
            return None
        if record.state is DeliveryState.ACKED:
            return record
        if record.state in (DeliveryState.FAILED, DeliveryState.SKIPPED):
            counter("delivery.ack_ignored")
            logger.warning(
                "Ignoring ack for %s/%s in terminal state %s", summary_id, channel, record.state.value
            )
            return record
        if record.state is DeliveryState.PENDING:
            raise InvalidTransitionError(f"{summary_id}/{channel} has not been sent yet")

        acked = self.repository.transition(summary_id, channel, [DeliveryState.SENT], DeliveryState.ACKED)
        if acked is not None:
            counter(f"delivery.{channel}.acked")
        return acked or self.repository.get(summary_id, channel)

    def report_failure(self, summary_id: str, channel: str, reason: str) -> DeliveryRecord | None:
        """SENT -> FAILED when the transport reports the message undeliverable."""
        record = self.repository.get(summary_id, channel)
        if record is None:
            return None
        if record.state is not DeliveryState.SENT:
            logger.warning(
                "Ignoring failure report for %s/%s in state %s", summary_id, channel, record.state.value
            )
            return record
        failed = self.repository.transition(
            summary_id, channel, [DeliveryState.SENT], DeliveryState.FAILED, last_error=reason
        )
        if failed is not None:
            counter(f"delivery.{channel}.failed")
        return failed or self.repository.get(summary_id, channel)

    # ------------------------------------------------------------------
    # Outbox consumption
    # ------------------------------------------------------------------

    def drain(self, now: datetime | None = None, limit: int = 100) -> DrainReport:
        """
        Dispatch every pending summary.ready notification.

        An entry is marked delivered only when each of its channel records has
        left PENDING; otherwise it stays for the next drain (at-least-once).
        """
        report = DrainReport()
        for entry in self.summaries.pending_outbox(limit=limit):
            report.entries_seen += 1
            summary = self.summaries.get(entry.summary_id)
            if summary is None or summary.status is not SummaryStatus.READY:
                logger.warning("Outbox entry %d has no READY summary, dropping", entry.id)
                self.summaries.mark_outbox_delivered(entry.id, now)
                continue

            try:
                records, settled = self._fan_out(summary, now)
            except Exception as e:
                # Entry stays in the outbox; later entries still drain
                counter("delivery.outbox_entry_errors")
                logger.error(
                    "Dispatch of %s for %s failed, entry retained: %s",
                    summary.summary_id,
                    redact(summary.recipient_id),
                    e,
                )
                continue
            report.records.extend(records)
            if settled:
                self.summaries.mark_outbox_delivered(entry.id, now)
                report.entries_completed += 1
            else:
                log_event(
                    "delivery.outbox_retained",
                    summary_id=summary.summary_id,
                    recipient=redact(summary.recipient_id),
                )
        return report
