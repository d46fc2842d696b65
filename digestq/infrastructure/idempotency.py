"""
Content fingerprints for idempotent event ingestion.

The fingerprint is a SHA-256 over a canonical JSON form of the payload:
keys sorted, strings stripped with internal whitespace collapsed, None values
dropped, nested containers normalised recursively. Two payloads that differ
only in field order or whitespace therefore share a fingerprint.

Key: content_hash() produces the dedupe key stored with UNIQUE(recipient_id, content_hash).
"""

from __future__ import annotations

import json
from hashlib import sha256
from typing import Any

from digestq.observability.telemetry import counter, log_event


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split())
    if isinstance(value, dict):
        return {
            str(key).strip(): _normalize(item)
            for key, item in value.items()
            if item is not None
        }
    if isinstance(value, list | tuple):
        return [_normalize(item) for item in value]
    if isinstance(value, bool | int | float):
        return value
    if value is None:
        return None
    # datetimes, decimals, enums: compare by their string form
    return str(value).strip()


def canonical_payload(payload: dict[str, Any]) -> str:
    """Canonical, compact JSON for a payload."""
    return json.dumps(_normalize(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(payload: dict[str, Any]) -> str:
    """
    Deterministic fingerprint of normalized payload fields.

    Raises:
        ValueError: If the payload is empty (nothing to fingerprint)
    """
    if not payload:
        counter("idempotency.empty_payload")
        log_event("idempotency.drop", reason="empty_payload")
        raise ValueError("content hash requires a non-empty payload")
    return sha256(canonical_payload(payload).encode("utf-8")).hexdigest()
