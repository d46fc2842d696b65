"""
DigestService - wires ingestion, aggregation, summarization and delivery.

Nothing here runs on its own: the host scheduler calls run_cycle() every few
minutes and run_daily() once per day (through the /jobs endpoints or
directly). Each step only pulls work the store says is due, so overlapping
calls from several workers are safe.

Example:
    service = DigestService.from_environment()
    service.ingest(EventInput(recipient_id="alice", source_type="ci.build", ...))
    report = service.run_cycle()
    service.run_daily("2026-10-18")
"""

from __future__ import annotations

import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from digestq.aggregation.aggregator import WindowAggregator
from digestq.aggregation.windows import redact_window_key
from digestq.delivery.dispatcher import DeliveryDispatcher
from digestq.infrastructure.errors import StoreUnavailableError
from digestq.ingestion.gate import IngestionGate, IngestResult
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import counter, log_event
from digestq.storage.event_store import EventStore
from digestq.storage.models import EventInput, SummaryStatus
from digestq.storage.retention import RetentionReport, archive_processed_events
from digestq.storage.summaries import SummaryRepository
from digestq.summarization.engine import SummarizationEngine
from digestq.utils.redaction import redact
from digestq.utils.timestamps import utc_now

logger = get_logger(__name__)


@dataclass
class CycleReport:
    windows: dict[str, int] = field(default_factory=dict)
    summaries: dict[str, int] = field(default_factory=dict)
    outbox_seen: int = 0
    outbox_completed: int = 0
    deliveries: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "windows": self.windows,
            "summaries": self.summaries,
            "outbox": {"seen": self.outbox_seen, "completed": self.outbox_completed},
            "deliveries": self.deliveries,
        }


class DigestService:
    def __init__(
        self,
        engine: SummarizationEngine,
        dispatcher: DeliveryDispatcher,
        store: EventStore | None = None,
        aggregator: WindowAggregator | None = None,
        summaries: type[SummaryRepository] = SummaryRepository,
    ):
        self.store = store or EventStore()
        self.gate = IngestionGate(self.store)
        self.aggregator = aggregator or WindowAggregator(self.store)
        self.engine = engine
        self.dispatcher = dispatcher
        self.summaries = summaries

    @classmethod
    def from_environment(cls) -> DigestService:
        """Production wiring: Gemini summarizer with retries, SMTP and webhook transports."""
        from digestq.delivery.channels import default_transports
        from digestq.delivery.preferences import PreferencesRepository
        from digestq.llm.summarizer import GeminiSummarizer, RetryingSummarizer

        preferences = PreferencesRepository()
        engine = SummarizationEngine(RetryingSummarizer(GeminiSummarizer()), preferences)
        dispatcher = DeliveryDispatcher(default_transports(), preferences)
        return cls(engine=engine, dispatcher=dispatcher)

    def ingest(self, event_input: EventInput) -> IngestResult:
        return self.gate.ingest(event_input)

    def run_cycle(self, now: datetime | None = None, limit: int = 500) -> CycleReport:
        """
        One aggregation -> summarization -> dispatch pass.

        Summarization works from the store's list of prepared windows without a
        terminal summary, so windows prepared by a worker that crashed before
        summarizing are picked up here too.

        Side Effects:
            - See WindowAggregator.run_due, SummarizationEngine.summarize_window
              and DeliveryDispatcher.drain
        """
        now = now or utc_now()
        report = CycleReport()

        outcomes = self.aggregator.run_due(now, limit=limit)
        report.windows = dict(Counter(o.status.value for o in outcomes))

        statuses: Counter[str] = Counter()
        for prepared in self.store.list_unsummarized(limit=limit):
            try:
                summary = self.engine.summarize_window(prepared)
            except (StoreUnavailableError, sqlite3.Error) as e:
                # Left without a terminal summary; the next cycle retries it
                logger.error(
                    "Store error summarizing %s: %s", redact_window_key(prepared.window_key), e
                )
                statuses["deferred"] += 1
                continue
            except Exception:
                logger.exception("Summarizing %s failed", redact_window_key(prepared.window_key))
                counter("service.summarize_errors")
                statuses["deferred"] += 1
                continue
            statuses[summary.status.value] += 1
        report.summaries = dict(statuses)

        self._drain_into(report, now)
        log_event("service.cycle", **report.to_dict())
        return report

    def run_daily(self, day_key: str, now: datetime | None = None) -> CycleReport:
        """Daily summaries for every recipient with READY micro summaries on day_key."""
        report = CycleReport()
        statuses: Counter[str] = Counter()
        for recipient_id in self.summaries.list_recipients_for_day(day_key):
            try:
                summary = self.engine.summarize_daily(recipient_id, day_key)
            except (StoreUnavailableError, sqlite3.Error) as e:
                logger.error("Store error on daily summary for %s: %s", redact(recipient_id), e)
                statuses["deferred"] += 1
                continue
            except Exception:
                logger.exception("Daily summary for %s failed", redact(recipient_id))
                counter("service.summarize_errors")
                statuses["deferred"] += 1
                continue
            if summary is None:
                continue
            statuses[summary.status.value] += 1
        report.summaries = dict(statuses)

        self._drain_into(report, now)
        log_event("service.daily", day=day_key, **report.to_dict())
        return report

    def run_retention(self, now: datetime | None = None, dry_run: bool = False) -> RetentionReport:
        return archive_processed_events(now=now, dry_run=dry_run)

    def _drain_into(self, report: CycleReport, now: datetime | None) -> None:
        drained = self.dispatcher.drain(now)
        report.outbox_seen = drained.entries_seen
        report.outbox_completed = drained.entries_completed
        report.deliveries = dict(Counter(record.state.value for record in drained.records))

    def status(self) -> dict[str, Any]:
        """Counts per summary status and delivery state (no recipient data)."""
        counts = self.summaries.count_by_status()
        return {
            "summaries": {status.value: counts.get(status.value, 0) for status in SummaryStatus},
            "deliveries": self.dispatcher.repository.count_by_state(),
        }
