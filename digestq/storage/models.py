"""
Domain models (Pydantic v2) for the digest core.

Models are frozen: an Event never changes once stored, a PreparedWindow never
changes once produced, and state changes of claims and summaries happen in the
store through conditional writes, never by mutating an instance. repr() hashes
the payload so events can be logged without leaking their content.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from enum import Enum
from hashlib import sha256
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from digestq.utils.timestamps import ensure_utc, utc_now


def _hash_value(value: str) -> str:
    return f"hash:{sha256(value.encode('utf-8')).hexdigest()[:12]}"


class ClaimState(str, Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    PROCESSED = "processed"
    FAILED = "failed"  # release ceiling exceeded; reported, never retried


class Granularity(str, Enum):
    MICRO = "micro"
    DAILY = "daily"


class SummaryStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class EventInput(BaseModel):
    """A normalized event as handed to the ingestion gate."""

    model_config = ConfigDict(frozen=True)

    recipient_id: str = Field(..., min_length=1)
    source_type: str = Field(..., min_length=1)
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    @field_validator("occurred_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    recipient_id: str
    event_id: str
    source_type: str
    occurred_at: datetime
    payload: dict[str, Any]
    content_hash: str
    window_key: str
    ingested_at: datetime = Field(default_factory=utc_now)

    def __repr__(self) -> str:
        payload = json.dumps(self.payload, sort_keys=True, default=str)
        return (
            f"Event(event_id={self.event_id!r}, source_type={self.source_type!r}, "
            f"window_key={self.window_key!r}, payload={_hash_value(payload)})"
        )

    def text(self, key: str) -> str:
        """String payload field, or "" when absent or not a string."""
        value = self.payload.get(key)
        return value if isinstance(value, str) else ""


class WindowClaim(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    recipient_id: str
    window_key: str
    window_start: datetime
    window_end: datetime
    state: ClaimState = ClaimState.OPEN
    claimed_at: datetime | None = None
    release_count: int = 0
    last_error: str | None = None


class CompactItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    facts: tuple[str, ...] = ()
    link: str | None = None
    topic: str = "uncategorized"

    def char_count(self) -> int:
        return len(self.title) + sum(len(fact) for fact in self.facts)


class PreparedWindow(BaseModel):
    """Pipeline-reduced, ready-to-summarize representation of a window."""

    model_config = ConfigDict(frozen=True)

    recipient_id: str
    window_key: str
    items: tuple[CompactItem, ...] = ()
    included_event_ids: tuple[str, ...] = ()
    granularity: Granularity = Granularity.MICRO

    def to_json(self) -> str:
        """Deterministic serialisation (field order is fixed by the model)."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, body: str) -> PreparedWindow:
        return cls.model_validate_json(body)


class Summary(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary_id: str
    recipient_id: str
    window_key: str  # window key for micro, "YYYY-MM-DD" for daily
    granularity: Granularity
    headline: str | None = None
    bullets: tuple[str, ...] = ()
    included_event_ids: tuple[str, ...] = ()
    status: SummaryStatus = SummaryStatus.PENDING
    failure_reason: str | None = None
    repair_attempted: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_terminal(self) -> bool:
        return self.status in (SummaryStatus.READY, SummaryStatus.FAILED)
