"""
Summarization Engine - PreparedWindow -> Summary under a strict output contract.

Flow per (recipient_id, window_key, granularity):
1. get_or_create the summary row (PENDING). READY/FAILED rows are returned
   unchanged: a summary is generated at most once.
2. Build the request and call the summarizer.
3. Validate. On rejection issue exactly ONE repair request (invalid output +
   errors + schema) and validate again.
4. READY (+ outbox notification, same transaction) or FAILED with a reason.
   No fallback content is ever fabricated here.

Daily summaries are composed from the day's READY micro summaries, never
from raw events.
"""

from __future__ import annotations

from digestq.config import SUMMARY_MAX_RESPONSE_CHARS
from digestq.contracts import PreferencesProvider, Summarizer
from digestq.delivery.models import Verbosity
from digestq.infrastructure.errors import ContractViolationError
from digestq.observability.logging import get_logger, unit_logger
from digestq.observability.telemetry import counter, log_event, time_block
from digestq.storage.models import Granularity, PreparedWindow, Summary
from digestq.storage.summaries import SummaryRepository
from digestq.summarization.requests import (
    GenerationRequest,
    build_daily_request,
    build_micro_request,
    build_repair_request,
)
from digestq.summarization.schema import SummaryPayload, require_summary
from digestq.utils.redaction import redact

logger = get_logger(__name__)


class SummarizationEngine:
    """
    Example:
        engine = SummarizationEngine(RetryingSummarizer(GeminiSummarizer()))
        summary = engine.summarize_window(prepared)
        if summary.status is SummaryStatus.READY:
            ...  # the dispatcher picks it up from the outbox
    """

    def __init__(
        self,
        summarizer: Summarizer,
        preferences: PreferencesProvider | None = None,
        repository: type[SummaryRepository] = SummaryRepository,
        max_response_chars: int = SUMMARY_MAX_RESPONSE_CHARS,
    ):
        self.summarizer = summarizer
        self.preferences = preferences
        self.repository = repository
        self.max_response_chars = max_response_chars

    def summarize_window(
        self, prepared: PreparedWindow, verbosity: Verbosity | None = None
    ) -> Summary:
        """
        Micro summary of one prepared window.

        Returns:
            The READY or FAILED summary (existing terminal summaries unchanged)

        Side Effects:
            - summaries: row created PENDING, then READY/FAILED
            - outbox: summary.ready entry on READY
            - 1 summarizer call, 2 when a repair is needed
        """
        summary = self.repository.get_or_create(
            prepared.recipient_id, prepared.window_key, Granularity.MICRO
        )
        if summary.is_terminal():
            counter("summary.idempotent_hit")
            return summary

        if not prepared.items:
            return self._fail(summary, "prepared window has no items", repair_attempted=False)

        request = build_micro_request(prepared, verbosity or self._verbosity(prepared.recipient_id))
        return self._generate(summary, request, prepared.included_event_ids)

    def summarize_daily(
        self, recipient_id: str, day_key: str, verbosity: Verbosity | None = None
    ) -> Summary | None:
        """
        Daily summary composed from the READY micro summaries of day_key (YYYY-MM-DD).

        Returns:
            The daily summary, or None when the day has no READY micro summary.
        """
        micro = self.repository.list_ready_micro_for_day(recipient_id, day_key)
        if not micro:
            logger.info("No ready micro summaries for %s on %s", redact(recipient_id), day_key)
            return None

        summary = self.repository.get_or_create(recipient_id, day_key, Granularity.DAILY)
        if summary.is_terminal():
            counter("summary.idempotent_hit")
            return summary

        included = sorted({event_id for s in micro for event_id in s.included_event_ids})
        request = build_daily_request(day_key, micro, verbosity or self._verbosity(recipient_id))
        return self._generate(summary, request, included)

    def _verbosity(self, recipient_id: str) -> Verbosity:
        if self.preferences is None:
            return Verbosity.STANDARD
        try:
            return self.preferences.get(recipient_id).verbosity
        except Exception as e:
            counter("summary.preferences_unavailable")
            logger.warning(
                "Preferences lookup failed for %s, using standard verbosity: %s", redact(recipient_id), e
            )
            return Verbosity.STANDARD

    def _call(self, request: GenerationRequest) -> str:
        with time_block("summary.generate.latency"):
            return self.summarizer.generate(request.prompt, request.schema)

    def _generate(
        self, summary: Summary, request: GenerationRequest, included_event_ids: tuple[str, ...] | list[str]
    ) -> Summary:
        log = unit_logger(logger, summary=summary.summary_id, granularity=summary.granularity.value)
        repair_attempted = False

        try:
            raw = self._call(request)
        except Exception as e:
            log.warning("Summarizer call failed: %s", e)
            return self._fail(summary, f"summarizer call failed: {e}", repair_attempted)

        try:
            payload: SummaryPayload = require_summary(raw, self.max_response_chars)
        except ContractViolationError as first:
            repair_attempted = True
            counter("summary.repair_requested")
            log.info("Summary rejected (%s), requesting one repair", first)

            repair = build_repair_request(request, raw or "", first.errors)
            try:
                repaired_raw = self._call(repair)
            except Exception as e:
                log.warning("Summarizer repair call failed: %s", e)
                return self._fail(summary, f"summarizer repair call failed: {e}", repair_attempted)

            try:
                payload = require_summary(repaired_raw, self.max_response_chars)
            except ContractViolationError as second:
                counter("summary.contract_violation")
                log_event(
                    "summary.contract_violation",
                    recipient=redact(summary.recipient_id),
                    granularity=summary.granularity.value,
                    errors=second.errors[:5],
                    severity="alert",
                )
                return self._fail(summary, f"contract violation after repair: {second}", repair_attempted)

        ready = self.repository.mark_ready(
            summary.summary_id,
            payload.headline,
            payload.bullets,
            included_event_ids,
            repair_attempted,
        )
        if ready is None:
            # Another worker finished this summary first
            return self.repository.get(summary.summary_id) or summary

        counter("summary.ready")
        if repair_attempted:
            counter("summary.repaired")
        log.info("Summary ready: %d bullets", len(ready.bullets))
        return ready

    def _fail(self, summary: Summary, reason: str, repair_attempted: bool) -> Summary:
        failed = self.repository.mark_failed(summary.summary_id, reason, repair_attempted)
        if failed is None:
            return self.repository.get(summary.summary_id) or summary
        counter("summary.failed")
        logger.warning("Summary %s failed: %s", summary.summary_id, reason[:200])
        return failed
