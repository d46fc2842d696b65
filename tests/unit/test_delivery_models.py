"""Tests for delivery models: quiet hours and the record state machine"""

from __future__ import annotations

from datetime import UTC, datetime, time

import pytest
from pydantic import ValidationError

from digestq.delivery.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    DeliveryRecord,
    DeliveryState,
    QuietHours,
    SendResult,
    UserPreferences,
)


def utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 10, 18, hour, minute, tzinfo=UTC)


class TestQuietHours:
    def test_same_day_range(self):
        quiet = QuietHours(start=time(12, 0), end=time(14, 0))

        assert quiet.contains(utc(12, 0))
        assert quiet.contains(utc(13, 59))
        assert not quiet.contains(utc(14, 0))
        assert not quiet.contains(utc(11, 59))

    def test_range_wrapping_midnight(self):
        quiet = QuietHours(start=time(22, 0), end=time(7, 0))

        assert quiet.contains(utc(23, 30))
        assert quiet.contains(utc(3, 0))
        assert not quiet.contains(utc(7, 0))
        assert not quiet.contains(utc(12, 0))

    def test_equal_bounds_mean_never_quiet(self):
        quiet = QuietHours(start=time(9, 0), end=time(9, 0))
        assert not any(quiet.contains(utc(hour)) for hour in range(24))

    def test_evaluated_in_recipient_timezone(self):
        # 12:00 UTC is 21:00 in Tokyo
        quiet = QuietHours(start=time(20, 0), end=time(23, 0), timezone="Asia/Tokyo")
        assert quiet.contains(utc(12, 0))
        assert not quiet.contains(utc(15, 0))

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError):
            QuietHours(start=time(1, 0), end=time(2, 0), timezone="Mars/Olympus")


def test_preferences_without_quiet_hours_are_never_quiet():
    prefs = UserPreferences(recipient_id="alice", channels=frozenset({"email"}))
    assert not prefs.in_quiet_hours(utc(3))


class TestStateMachine:
    def test_terminal_states(self):
        assert TERMINAL_STATES == {DeliveryState.ACKED, DeliveryState.FAILED, DeliveryState.SKIPPED}

    @pytest.mark.parametrize(
        "source, target",
        [
            (DeliveryState.PENDING, DeliveryState.SENT),
            (DeliveryState.PENDING, DeliveryState.SKIPPED),
            (DeliveryState.PENDING, DeliveryState.FAILED),
            (DeliveryState.SENT, DeliveryState.ACKED),
            (DeliveryState.SENT, DeliveryState.FAILED),
        ],
    )
    def test_forward_transitions_allowed(self, source, target):
        record = DeliveryRecord(summary_id="s1", channel="email", state=source)
        assert record.can_transition_to(target)

    @pytest.mark.parametrize(
        "source, target",
        [
            (DeliveryState.SENT, DeliveryState.PENDING),
            (DeliveryState.ACKED, DeliveryState.SENT),
            (DeliveryState.FAILED, DeliveryState.PENDING),
            (DeliveryState.SKIPPED, DeliveryState.SENT),
            (DeliveryState.PENDING, DeliveryState.ACKED),
        ],
    )
    def test_regressions_and_skips_rejected(self, source, target):
        record = DeliveryRecord(summary_id="s1", channel="email", state=source)
        assert not record.can_transition_to(target)

    def test_every_state_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(DeliveryState)


def test_db_row_round_trip_keeps_state():
    record = DeliveryRecord(summary_id="s1", channel="realtime", state=DeliveryState.SENT, attempts=2)
    restored = DeliveryRecord.from_db_row(record.to_db_dict())

    assert restored.state is DeliveryState.SENT
    assert restored.attempts == 2
    assert restored.created_at == record.created_at


def test_send_result_constructors():
    assert SendResult.ok("ref-1").accepted
    rejected = SendResult.rejected("mailbox full", retryable=False)
    assert not rejected.accepted
    assert rejected.reason == "mailbox full"
    assert rejected.retryable is False
