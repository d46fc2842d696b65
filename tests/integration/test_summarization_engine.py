"""
Summarization engine with a scripted summarizer and a real summaries table.

Covers the one-repair contract, terminal idempotency, the outbox handoff and
daily composition from micro summaries.
"""

from __future__ import annotations

import pytest
from conftest import VALID_SUMMARY, ScriptedSummarizer, StaticPreferences

from digestq.delivery.models import UserPreferences, Verbosity
from digestq.observability.telemetry import get_counters
from digestq.storage.models import CompactItem, Granularity, PreparedWindow, SummaryStatus
from digestq.storage.summaries import SummaryRepository
from digestq.summarization.engine import SummarizationEngine

MISSING_BULLETS = '{"headline": "Two builds"}'
DAILY_SUMMARY = '{"headline": "Your day", "bullets": ["Builds went green", "PR 7 merged"]}'


def prepared_window(window_key="2026-10-18T12:05:00Z#alice", event_ids=("c1", "c2")):
    return PreparedWindow(
        recipient_id="alice",
        window_key=window_key,
        items=(
            CompactItem(title="Builds: 2 updates", facts=("Build 41 passed", "Build 40 failed"), topic="ci"),
        ),
        included_event_ids=event_ids,
    )


@pytest.fixture
def outbox(db):
    return SummaryRepository.pending_outbox


def test_valid_response_is_ready_and_enqueued(outbox):
    summarizer = ScriptedSummarizer(VALID_SUMMARY)
    summary = SummarizationEngine(summarizer).summarize_window(prepared_window())

    assert summary.status is SummaryStatus.READY
    assert summary.headline == "Two builds and a review"
    assert summary.bullets == ("Build 41 passed", "PR 7 needs review")
    assert summary.included_event_ids == ("c1", "c2")
    assert summary.repair_attempted is False
    assert len(summarizer.prompts) == 1
    assert [entry.summary_id for entry in outbox()] == [summary.summary_id]


def test_one_repair_recovers_invalid_output(outbox):
    summarizer = ScriptedSummarizer(MISSING_BULLETS, VALID_SUMMARY)
    summary = SummarizationEngine(summarizer).summarize_window(prepared_window())

    assert summary.status is SummaryStatus.READY
    assert summary.repair_attempted is True
    assert len(summary.bullets) == 2
    assert len(summarizer.prompts) == 2
    assert "did not match the required format" in summarizer.prompts[1]
    assert MISSING_BULLETS in summarizer.prompts[1]
    assert get_counters("summary.")["summary.repaired"] == 1


def test_second_invalid_output_fails_without_content(outbox):
    summarizer = ScriptedSummarizer(MISSING_BULLETS, "still not json")
    summary = SummarizationEngine(summarizer).summarize_window(prepared_window())

    assert summary.status is SummaryStatus.FAILED
    assert summary.headline is None
    assert summary.bullets == ()
    assert summary.repair_attempted is True
    assert summary.failure_reason.startswith("contract violation after repair")
    assert len(summarizer.prompts) == 2
    assert outbox() == []
    assert get_counters("summary.")["summary.contract_violation"] == 1


def test_summarizer_exception_fails_without_repair(outbox):
    summarizer = ScriptedSummarizer(TimeoutError("deadline exceeded"))
    summary = SummarizationEngine(summarizer).summarize_window(prepared_window())

    assert summary.status is SummaryStatus.FAILED
    assert summary.repair_attempted is False
    assert "deadline exceeded" in summary.failure_reason
    assert len(summarizer.prompts) == 1


def test_terminal_summary_is_never_regenerated(outbox):
    engine = SummarizationEngine(ScriptedSummarizer(VALID_SUMMARY))
    first = engine.summarize_window(prepared_window())

    # Script is now empty: any further call would raise
    second = engine.summarize_window(prepared_window())

    assert second.summary_id == first.summary_id
    assert second.status is SummaryStatus.READY
    assert len(outbox()) == 1


def test_failed_summary_stays_failed(outbox):
    engine = SummarizationEngine(ScriptedSummarizer("nope", "nope"))
    failed = engine.summarize_window(prepared_window())

    engine.summarizer = ScriptedSummarizer(VALID_SUMMARY)
    again = engine.summarize_window(prepared_window())

    assert again.status is SummaryStatus.FAILED
    assert again.summary_id == failed.summary_id
    assert engine.summarizer.prompts == []


def test_empty_window_fails_without_calling(outbox):
    summarizer = ScriptedSummarizer()
    empty = PreparedWindow(recipient_id="alice", window_key="2026-10-18T12:05:00Z#alice")

    summary = SummarizationEngine(summarizer).summarize_window(empty)

    assert summary.status is SummaryStatus.FAILED
    assert summary.failure_reason == "prepared window has no items"


def test_verbosity_comes_from_preferences(outbox):
    prefs = StaticPreferences([UserPreferences(recipient_id="alice", verbosity=Verbosity.BRIEF)])
    summarizer = ScriptedSummarizer(VALID_SUMMARY)

    SummarizationEngine(summarizer, prefs).summarize_window(prepared_window())

    assert "between 2 and 3 bullets" in summarizer.prompts[0]


def test_unavailable_preferences_fall_back_to_standard_verbosity(outbox):
    class DownPreferences:
        def get(self, recipient_id):
            raise ConnectionError("preferences service down")

    summarizer = ScriptedSummarizer(VALID_SUMMARY)
    summary = SummarizationEngine(summarizer, DownPreferences()).summarize_window(prepared_window())

    assert summary.status is SummaryStatus.READY
    assert "between 3 and 4 bullets" in summarizer.prompts[0]
    assert get_counters("summary.preferences") == {"summary.preferences_unavailable": 1}


class TestDaily:
    def test_daily_is_composed_from_ready_micro_summaries(self, outbox):
        engine = SummarizationEngine(ScriptedSummarizer(VALID_SUMMARY, VALID_SUMMARY, DAILY_SUMMARY))
        engine.summarize_window(prepared_window("2026-10-18T12:05:00Z#alice", ("c1", "c2")))
        engine.summarize_window(prepared_window("2026-10-18T15:30:00Z#alice", ("d1",)))

        daily = engine.summarize_daily("alice", "2026-10-18")

        assert daily.status is SummaryStatus.READY
        assert daily.granularity is Granularity.DAILY
        assert daily.window_key == "2026-10-18"
        assert daily.included_event_ids == ("c1", "c2", "d1")
        prompt = engine.summarizer.prompts[-1]
        assert "[2026-10-18T12:05:00Z] Two builds and a review" in prompt
        assert "[2026-10-18T15:30:00Z] Two builds and a review" in prompt
        assert len(outbox()) == 3

    def test_failed_micro_summaries_are_left_out(self, outbox):
        engine = SummarizationEngine(ScriptedSummarizer(VALID_SUMMARY, "bad", "bad", DAILY_SUMMARY))
        engine.summarize_window(prepared_window("2026-10-18T12:05:00Z#alice", ("c1",)))
        engine.summarize_window(prepared_window("2026-10-18T13:00:00Z#alice", ("x1",)))

        daily = engine.summarize_daily("alice", "2026-10-18")

        assert daily.included_event_ids == ("c1",)
        assert "13:00:00Z" not in engine.summarizer.prompts[-1]

    def test_day_without_micro_summaries_yields_nothing(self, outbox):
        summarizer = ScriptedSummarizer()
        assert SummarizationEngine(summarizer).summarize_daily("alice", "2026-10-18") is None
        assert summarizer.prompts == []

    def test_other_days_are_not_mixed_in(self, outbox):
        engine = SummarizationEngine(ScriptedSummarizer(VALID_SUMMARY, VALID_SUMMARY, DAILY_SUMMARY))
        engine.summarize_window(prepared_window("2026-10-18T23:55:00Z#alice", ("late",)))
        engine.summarize_window(prepared_window("2026-10-19T00:00:00Z#alice", ("next",)))

        daily = engine.summarize_daily("alice", "2026-10-18")

        assert daily.included_event_ids == ("late",)
