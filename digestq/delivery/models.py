"""
Delivery domain models.

A DeliveryRecord tracks one (summary_id, channel) pair through

    PENDING -> SENT -> ACKED
    PENDING -> SKIPPED            (quiet hours, time-sensitive channel)
    PENDING / SENT -> FAILED      (retry budget exhausted, async bounce)

ACKED, FAILED and SKIPPED are terminal. The repository only ever applies
transitions listed in ALLOWED_TRANSITIONS, so records never regress.
"""

from __future__ import annotations

from datetime import datetime, time
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from digestq.utils.timestamps import ensure_utc, format_ts, parse_ts, utc_now


class DeliveryState(str, Enum):
    """Status of one channel delivery."""

    PENDING = "pending"  # Record created, nothing handed to the transport yet
    SENT = "sent"  # Transport accepted the message
    ACKED = "acked"  # Transport confirmed terminal delivery
    FAILED = "failed"  # Retry budget exhausted or delivery rejected after send
    SKIPPED = "skipped"  # Suppressed by quiet hours; never retried


ALLOWED_TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.PENDING: frozenset(
        {DeliveryState.SENT, DeliveryState.FAILED, DeliveryState.SKIPPED}
    ),
    DeliveryState.SENT: frozenset({DeliveryState.ACKED, DeliveryState.FAILED}),
    DeliveryState.ACKED: frozenset(),
    DeliveryState.FAILED: frozenset(),
    DeliveryState.SKIPPED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, nxt in ALLOWED_TRANSITIONS.items() if not nxt)


class Verbosity(str, Enum):
    BRIEF = "brief"
    STANDARD = "standard"
    DETAILED = "detailed"


class QuietHours(BaseModel):
    """
    Daily quiet range in the recipient's timezone. `start > end` wraps midnight
    (22:00-07:00); `start == end` means no quiet time at all.
    """

    model_config = ConfigDict(frozen=True)

    start: time
    end: time
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {value}") from e
        return value

    def contains(self, when: datetime) -> bool:
        if self.start == self.end:
            return False
        local = ensure_utc(when).astimezone(ZoneInfo(self.timezone)).time().replace(tzinfo=None)
        if self.start < self.end:
            return self.start <= local < self.end
        return local >= self.start or local < self.end


class UserPreferences(BaseModel):
    """Recipient settings; read-only to the core."""

    model_config = ConfigDict(frozen=True)

    recipient_id: str
    channels: frozenset[str] = frozenset()
    verbosity: Verbosity = Verbosity.STANDARD
    quiet_hours: QuietHours | None = None

    def in_quiet_hours(self, when: datetime) -> bool:
        return self.quiet_hours is not None and self.quiet_hours.contains(when)


class SendResult(BaseModel):
    """Outcome of one transport send: accepted, or rejected(reason)."""

    model_config = ConfigDict(frozen=True)

    accepted: bool
    reason: str | None = None
    transport_ref: str | None = None
    retryable: bool = True

    @classmethod
    def ok(cls, transport_ref: str | None = None) -> SendResult:
        return cls(accepted=True, transport_ref=transport_ref)

    @classmethod
    def rejected(cls, reason: str, retryable: bool = True) -> SendResult:
        return cls(accepted=False, reason=reason, retryable=retryable)


class DeliveryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary_id: str
    channel: str
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    last_error: str | None = None
    transport_ref: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition_to(self, target: DeliveryState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.state]

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "summary_id": self.summary_id,
            "channel": self.channel,
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "transport_ref": self.transport_ref,
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
        }

    @classmethod
    def from_db_row(cls, row: Any) -> DeliveryRecord:
        return cls(
            summary_id=row["summary_id"],
            channel=row["channel"],
            state=DeliveryState(row["state"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            transport_ref=row["transport_ref"],
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "updated_at": self.updated_at.isoformat(),
        }
