"""
Timestamp helpers.

Persisted timestamps use one fixed-width UTC format so that string comparison
in SQL equals chronological comparison.
"""

from __future__ import annotations

from datetime import UTC, datetime

_STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_ts(value: datetime) -> str:
    return ensure_utc(value).strftime(_STORAGE_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _STORAGE_FORMAT).replace(tzinfo=UTC)
