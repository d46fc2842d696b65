"""
Delivery dispatcher: per-channel isolation, quiet hours, retry budget and
the monotonic record state machine.
"""

from __future__ import annotations

from datetime import UTC, datetime, time

import pytest
from conftest import VALID_SUMMARY, FakeTransport, ScriptedSummarizer, StaticPreferences

from digestq.delivery.dispatcher import NO_TRANSPORT, QUIET_HOURS, DeliveryDispatcher
from digestq.delivery.models import DeliveryState, QuietHours, SendResult, UserPreferences
from digestq.delivery.repository import DeliveryRecordRepository
from digestq.infrastructure.errors import InvalidTransitionError, StoreUnavailableError, TransportError
from digestq.observability.telemetry import get_counters
from digestq.storage.models import CompactItem, PreparedWindow
from digestq.storage.summaries import SummaryRepository
from digestq.summarization.engine import SummarizationEngine

NOON = datetime(2026, 10, 18, 12, 10, tzinfo=UTC)
NIGHT = datetime(2026, 10, 18, 23, 30, tzinfo=UTC)


@pytest.fixture
def summary(db):
    prepared = PreparedWindow(
        recipient_id="alice",
        window_key="2026-10-18T12:05:00Z#alice",
        items=(CompactItem(title="Build 41 passed", topic="ci"),),
        included_event_ids=("c1",),
    )
    return SummarizationEngine(ScriptedSummarizer(VALID_SUMMARY)).summarize_window(prepared)


@pytest.fixture
def email():
    return FakeTransport("email", suppressed=True)


@pytest.fixture
def realtime():
    return FakeTransport("realtime", requires_ack=True)


@pytest.fixture
def sleeps():
    return []


def make_dispatcher(transports, sleeps, channels=("email", "realtime"), quiet_hours=None, max_attempts=3):
    prefs = StaticPreferences(
        [UserPreferences(recipient_id="alice", channels=frozenset(channels), quiet_hours=quiet_hours)]
    )
    return DeliveryDispatcher(
        {t.channel: t for t in transports}, prefs, max_attempts=max_attempts, sleep_fn=sleeps.append
    )


def states(records):
    return {r.channel: r.state for r in records}


def test_fan_out_to_every_channel(summary, email, realtime, sleeps):
    records = make_dispatcher([email, realtime], sleeps).dispatch(summary, NOON)

    # email handoff is terminal; realtime waits for its confirmation
    assert states(records) == {"email": DeliveryState.ACKED, "realtime": DeliveryState.SENT}
    assert email.sent == [("alice", summary.summary_id)]
    assert realtime.sent == [("alice", summary.summary_id)]
    assert {r.channel: r.transport_ref for r in records} == {"email": "email-1", "realtime": "realtime-1"}
    assert all(r.attempts == 1 for r in records)


def test_quiet_hours_skip_only_suppressed_channels(summary, email, realtime, sleeps):
    quiet = QuietHours(start=time(22, 0), end=time(7, 0))
    records = make_dispatcher([email, realtime], sleeps, quiet_hours=quiet).dispatch(summary, NIGHT)

    assert states(records) == {"email": DeliveryState.SKIPPED, "realtime": DeliveryState.SENT}
    assert email.sent == []
    skipped = DeliveryRecordRepository.get(summary.summary_id, "email")
    assert skipped.last_error == QUIET_HOURS


def test_skipped_delivery_is_not_retried_after_quiet_hours(summary, email, sleeps):
    quiet = QuietHours(start=time(22, 0), end=time(7, 0))
    dispatcher = make_dispatcher([email], sleeps, channels=("email",), quiet_hours=quiet)
    dispatcher.dispatch(summary, NIGHT)

    records = dispatcher.dispatch(summary, NOON)

    assert states(records) == {"email": DeliveryState.SKIPPED}
    assert email.sent == []


def test_exhausted_channel_fails_without_affecting_sibling(summary, email, sleeps):
    flaky = FakeTransport(
        "realtime",
        requires_ack=True,
        script=[SendResult.rejected("gateway busy")] * 3,
    )
    records = make_dispatcher([email, flaky], sleeps).dispatch(summary, NOON)

    assert states(records) == {"email": DeliveryState.ACKED, "realtime": DeliveryState.FAILED}
    failed = DeliveryRecordRepository.get(summary.summary_id, "realtime")
    assert failed.attempts == 3
    assert failed.last_error == "gateway busy"
    assert len(flaky.sent) == 3
    assert len(sleeps) == 2
    assert len(email.sent) == 1


def test_transient_failure_then_success(summary, sleeps):
    flaky = FakeTransport("realtime", requires_ack=True, script=[TransportError("HTTP 503", status_code=503)])
    records = make_dispatcher([flaky], sleeps, channels=("realtime",)).dispatch(summary, NOON)

    assert states(records) == {"realtime": DeliveryState.SENT}
    assert records[0].attempts == 2
    assert len(sleeps) == 1


def test_non_retryable_rejection_fails_at_once(summary, sleeps):
    bounced = FakeTransport("email", script=[SendResult.rejected("no such mailbox", retryable=False)])
    records = make_dispatcher([bounced], sleeps, channels=("email",)).dispatch(summary, NOON)

    assert states(records) == {"email": DeliveryState.FAILED}
    assert records[0].attempts == 1
    assert sleeps == []


def test_channel_without_transport_fails(summary, email, sleeps):
    records = make_dispatcher([email], sleeps, channels=("email", "sms")).dispatch(summary, NOON)

    assert states(records) == {"email": DeliveryState.ACKED, "sms": DeliveryState.FAILED}
    assert DeliveryRecordRepository.get(summary.summary_id, "sms").last_error == NO_TRANSPORT


def test_recipient_without_channels_gets_nothing(summary, email, sleeps):
    records = make_dispatcher([email], sleeps, channels=()).dispatch(summary, NOON)
    assert records == []


def test_redispatch_never_resends(summary, email, realtime, sleeps):
    dispatcher = make_dispatcher([email, realtime], sleeps)
    dispatcher.dispatch(summary, NOON)
    records = dispatcher.dispatch(summary, NOON)

    assert states(records) == {"email": DeliveryState.ACKED, "realtime": DeliveryState.SENT}
    assert len(email.sent) == 1
    assert len(realtime.sent) == 1


def test_spent_budget_is_not_extended(summary, sleeps):
    DeliveryRecordRepository.create_pending(summary.summary_id, "realtime")
    DeliveryRecordRepository.record_attempt(summary.summary_id, "realtime", 3, "HTTP 503")
    transport = FakeTransport("realtime", requires_ack=True)

    records = make_dispatcher([transport], sleeps, channels=("realtime",)).dispatch(summary, NOON)

    assert states(records) == {"realtime": DeliveryState.FAILED}
    assert transport.sent == []


def test_only_ready_summaries_are_dispatched(db, email, sleeps):
    prepared = PreparedWindow(
        recipient_id="alice",
        window_key="2026-10-18T12:05:00Z#alice",
        items=(CompactItem(title="x"),),
    )
    failed = SummarizationEngine(ScriptedSummarizer("bad", "bad")).summarize_window(prepared)

    assert make_dispatcher([email], sleeps, channels=("email",)).dispatch(failed, NOON) == []
    assert email.sent == []


class TestConfirmations:
    def test_ack_moves_sent_to_acked_once(self, summary, realtime, sleeps):
        dispatcher = make_dispatcher([realtime], sleeps, channels=("realtime",))
        dispatcher.dispatch(summary, NOON)

        first = dispatcher.acknowledge(summary.summary_id, "realtime")
        second = dispatcher.acknowledge(summary.summary_id, "realtime")

        assert first.state is DeliveryState.ACKED
        assert second.state is DeliveryState.ACKED
        assert second.updated_at == first.updated_at

    def test_ack_for_unknown_record(self, summary, realtime, sleeps):
        dispatcher = make_dispatcher([realtime], sleeps, channels=("realtime",))
        assert dispatcher.acknowledge(summary.summary_id, "realtime") is None

    def test_ack_before_send_is_rejected(self, summary, realtime, sleeps):
        DeliveryRecordRepository.create_pending(summary.summary_id, "realtime")
        dispatcher = make_dispatcher([realtime], sleeps, channels=("realtime",))

        with pytest.raises(InvalidTransitionError):
            dispatcher.acknowledge(summary.summary_id, "realtime")

    def test_ack_never_revives_a_failed_record(self, summary, sleeps):
        failing = FakeTransport("realtime", requires_ack=True, script=[SendResult.rejected("x", retryable=False)])
        dispatcher = make_dispatcher([failing], sleeps, channels=("realtime",))
        dispatcher.dispatch(summary, NOON)

        record = dispatcher.acknowledge(summary.summary_id, "realtime")

        assert record.state is DeliveryState.FAILED

    def test_failure_report_after_send(self, summary, realtime, sleeps):
        dispatcher = make_dispatcher([realtime], sleeps, channels=("realtime",))
        dispatcher.dispatch(summary, NOON)

        record = dispatcher.report_failure(summary.summary_id, "realtime", "device unregistered")

        assert record.state is DeliveryState.FAILED
        assert record.last_error == "device unregistered"
        # A late ack cannot undo it
        assert dispatcher.acknowledge(summary.summary_id, "realtime").state is DeliveryState.FAILED

    def test_backward_transition_is_refused_by_repository(self, summary):
        DeliveryRecordRepository.create_pending(summary.summary_id, "email")
        with pytest.raises(InvalidTransitionError):
            DeliveryRecordRepository.transition(
                summary.summary_id, "email", [DeliveryState.SENT], DeliveryState.PENDING
            )


class TestDrain:
    def test_drain_consumes_outbox_once(self, summary, email, realtime, sleeps):
        dispatcher = make_dispatcher([email, realtime], sleeps)

        report = dispatcher.drain(NOON)
        again = dispatcher.drain(NOON)

        assert (report.entries_seen, report.entries_completed) == (1, 1)
        assert len(report.records) == 2
        assert (again.entries_seen, again.entries_completed) == (0, 0)
        assert SummaryRepository.pending_outbox() == []

    def test_unsettled_channel_keeps_the_entry(self, summary, email, sleeps, monkeypatch):
        dispatcher = make_dispatcher([email], sleeps, channels=("email",))

        def unavailable(*args, **kwargs):
            raise StoreUnavailableError("database locked")

        with monkeypatch.context() as m:
            m.setattr(DeliveryRecordRepository, "create_pending", staticmethod(unavailable))
            report = dispatcher.drain(NOON)

        assert (report.entries_seen, report.entries_completed) == (1, 0)
        assert len(SummaryRepository.pending_outbox()) == 1

        assert dispatcher.drain(NOON).entries_completed == 1
        assert len(email.sent) == 1

    def test_failing_preferences_do_not_block_other_recipients(self, db, email, sleeps):
        engine = SummarizationEngine(ScriptedSummarizer(VALID_SUMMARY, VALID_SUMMARY))
        for recipient in ("bob", "alice"):
            engine.summarize_window(
                PreparedWindow(
                    recipient_id=recipient,
                    window_key=f"2026-10-18T12:05:00Z#{recipient}",
                    items=(CompactItem(title="Build 41 passed", topic="ci"),),
                    included_event_ids=(f"{recipient}-1",),
                )
            )

        class FlakyPreferences(StaticPreferences):
            def get(self, recipient_id):
                if recipient_id == "bob":
                    raise ConnectionError("preferences service down")
                return super().get(recipient_id)

        prefs = FlakyPreferences([UserPreferences(recipient_id="alice", channels=frozenset({"email"}))])
        dispatcher = DeliveryDispatcher({"email": email}, prefs, sleep_fn=sleeps.append)

        report = dispatcher.drain(NOON)

        assert (report.entries_seen, report.entries_completed) == (2, 1)
        assert [recipient for recipient, _ in email.sent] == ["alice"]
        assert get_counters("delivery.outbox_entry_errors") == {"delivery.outbox_entry_errors": 1}
        # bob's notification stays queued for the next drain
        remaining = SummaryRepository.pending_outbox()
        assert [SummaryRepository.get(e.summary_id).recipient_id for e in remaining] == ["bob"]
