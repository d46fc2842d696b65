"""
Pytest configuration for DigestQ tests

Every test that touches storage gets its own SQLite file through the `db`
fixture; the process-wide pool is reset around it so no state leaks.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from digestq.infrastructure.database import init_database, reset_pool
from digestq.observability.telemetry import reset_counters, reset_latencies
from digestq.storage.models import Event, EventInput


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Fresh, initialised database for one test."""
    db_path = tmp_path / "digestq.db"
    monkeypatch.setenv("DIGESTQ_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    reset_counters()
    reset_latencies()
    yield db_path
    reset_pool()


@pytest.fixture
def t0():
    """Start of a five-minute window."""
    return datetime(2026, 10, 18, 12, 5, tzinfo=UTC)


def make_input(
    recipient_id: str = "alice",
    source_type: str = "ci.build",
    occurred_at: datetime | None = None,
    event_id: str | None = None,
    **payload: Any,
) -> EventInput:
    fields: dict[str, Any] = {
        "recipient_id": recipient_id,
        "source_type": source_type,
        "occurred_at": occurred_at or datetime(2026, 10, 18, 12, 6, tzinfo=UTC),
        "payload": payload or {"title": "Build passed"},
    }
    if event_id is not None:
        fields["event_id"] = event_id
    return EventInput(**fields)


def make_event(
    event_id: str,
    source_type: str = "ci.build",
    occurred_at: datetime | None = None,
    recipient_id: str = "alice",
    window_key: str = "2026-10-18T12:05:00Z#alice",
    **payload: Any,
) -> Event:
    """Stored-event shape for pipeline tests (no store involved)."""
    return Event(
        recipient_id=recipient_id,
        event_id=event_id,
        source_type=source_type,
        occurred_at=occurred_at or datetime(2026, 10, 18, 12, 6, tzinfo=UTC),
        payload=payload or {"title": event_id},
        content_hash=f"hash-{event_id}",
        window_key=window_key,
        ingested_at=datetime(2026, 10, 18, 12, 10, tzinfo=UTC),
    )


class ScriptedSummarizer:
    """Returns queued responses in order; an Exception in the queue is raised."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.prompts: list[str] = []

    def generate(self, prompt: str, schema: dict[str, Any]) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError("summarizer called more often than scripted")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeTransport:
    """In-memory ChannelTransport; `script` holds SendResults or exceptions per call."""

    def __init__(self, channel: str, requires_ack: bool = False, suppressed: bool = False, script=None):
        self.channel = channel
        self.requires_ack = requires_ack
        self.suppressed_in_quiet_hours = suppressed
        self.script = list(script or [])
        self.sent: list[tuple[str, str]] = []

    def send(self, recipient_id, summary):
        from digestq.delivery.models import SendResult

        self.sent.append((recipient_id, summary.summary_id))
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SendResult.ok(transport_ref=f"{self.channel}-{len(self.sent)}")


class StaticPreferences:
    def __init__(self, preferences):
        self.preferences = {p.recipient_id: p for p in preferences}

    def get(self, recipient_id):
        from digestq.delivery.models import UserPreferences

        return self.preferences.get(recipient_id, UserPreferences(recipient_id=recipient_id))


VALID_SUMMARY = '{"headline": "Two builds and a review", "bullets": ["Build 41 passed", "PR 7 needs review"]}'
