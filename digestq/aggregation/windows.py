"""
Fixed-size window arithmetic.

A window key is "<window start>#<recipient id>", e.g. "2026-10-18T12:05:00Z#alice".
Windows are aligned to the Unix epoch in UTC, so every window of a calendar day
shares the "YYYY-MM-DD" prefix used to compose daily summaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from digestq.utils.redaction import redact
from digestq.utils.timestamps import ensure_utc

_KEY_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_SEPARATOR = "#"


@dataclass(frozen=True)
class Window:
    recipient_id: str
    start: datetime
    end: datetime

    @property
    def key(self) -> str:
        return f"{self.start.strftime(_KEY_FORMAT)}{_SEPARATOR}{self.recipient_id}"

    @property
    def day_key(self) -> str:
        return self.start.strftime("%Y-%m-%d")

    def next(self) -> Window:
        size = self.end - self.start
        return Window(self.recipient_id, self.end, self.end + size)


def window_for(recipient_id: str, occurred_at: datetime, size_seconds: int) -> Window:
    """Window containing occurred_at: start = floor(occurred_at, size)."""
    if size_seconds <= 0:
        raise ValueError("window size must be positive")
    ts = ensure_utc(occurred_at)
    epoch_seconds = int(ts.timestamp())
    start_seconds = epoch_seconds - (epoch_seconds % size_seconds)
    start = datetime.fromtimestamp(start_seconds, tz=UTC)
    return Window(recipient_id, start, start + timedelta(seconds=size_seconds))


def parse_window_key(window_key: str) -> tuple[datetime, str]:
    """Split a window key into (window start, recipient id)."""
    start_text, sep, recipient_id = window_key.partition(_SEPARATOR)
    if not sep or not recipient_id:
        raise ValueError(f"malformed window key: {window_key!r}")
    start = datetime.strptime(start_text, _KEY_FORMAT).replace(tzinfo=UTC)
    return start, recipient_id


def day_key_for(when: datetime) -> str:
    return ensure_utc(when).strftime("%Y-%m-%d")


def redact_window_key(window_key: str) -> str:
    """Window key with the recipient id hashed, safe for logs."""
    start_text, _, recipient_id = window_key.partition(_SEPARATOR)
    return f"{start_text}{_SEPARATOR}{redact(recipient_id)}"
