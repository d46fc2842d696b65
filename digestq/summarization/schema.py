"""
Summary output contract.

SummaryPayload is the only shape a summarizer response may take:

    {"headline": "<1..120 chars>", "bullets": ["<1..240 chars>", ... 2..6 items]}

parse_summary() is tolerant about framing (code fences, prose around the
object) and strict about content: anything that does not validate is
reported as a list of human-readable errors for the repair prompt.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from digestq.config import (
    SUMMARY_BULLET_MAX_CHARS,
    SUMMARY_HEADLINE_MAX_CHARS,
    SUMMARY_MAX_BULLETS,
    SUMMARY_MAX_RESPONSE_CHARS,
    SUMMARY_MIN_BULLETS,
)
from digestq.infrastructure.errors import ContractViolationError
from digestq.observability.logging import get_logger

logger = get_logger(__name__)


class SummaryPayload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    headline: str = Field(..., min_length=1, max_length=SUMMARY_HEADLINE_MAX_CHARS)
    bullets: list[str] = Field(..., min_length=SUMMARY_MIN_BULLETS, max_length=SUMMARY_MAX_BULLETS)

    @field_validator("headline")
    @classmethod
    def _headline_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("headline must not be blank")
        return value.strip()

    @field_validator("bullets")
    @classmethod
    def _bullets_bounded(cls, value: list[str]) -> list[str]:
        cleaned = []
        for index, bullet in enumerate(value):
            text = bullet.strip()
            if not text:
                raise ValueError(f"bullet {index} must not be blank")
            if len(text) > SUMMARY_BULLET_MAX_CHARS:
                raise ValueError(
                    f"bullet {index} is {len(text)} chars (max {SUMMARY_BULLET_MAX_CHARS})"
                )
            cleaned.append(text)
        return cleaned


def summary_json_schema() -> dict[str, Any]:
    """JSON schema sent with every generation request."""
    schema = SummaryPayload.model_json_schema()
    schema["properties"]["bullets"]["items"]["maxLength"] = SUMMARY_BULLET_MAX_CHARS
    return schema


@dataclass(frozen=True)
class ParseOutcome:
    payload: SummaryPayload | None
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.payload is not None


def extract_json(text: str) -> Any:
    """
    Extract the JSON value from a model response.

    Handles markdown code fences and prose before/after the object.

    Raises:
        json.JSONDecodeError: If no JSON can be recovered
    """
    text = re.sub(r"```(?:json)?\s*", "", text).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match is None:
            raise
        return json.loads(match.group(0))


def _format_validation_error(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "response"
        messages.append(f"{location}: {item['msg']}")
    return messages


def parse_summary(raw: str | None, max_chars: int = SUMMARY_MAX_RESPONSE_CHARS) -> ParseOutcome:
    """
    Parse and validate a raw summarizer response.

    Returns:
        ParseOutcome with the payload, or with the reasons it was rejected

    Side Effects:
        None (pure function)
    """
    if raw is None or not raw.strip():
        return ParseOutcome(None, ["response: empty response"])
    if len(raw) > max_chars:
        return ParseOutcome(None, [f"response: {len(raw)} chars exceeds limit of {max_chars}"])

    try:
        data = extract_json(raw)
    except json.JSONDecodeError as e:
        return ParseOutcome(None, [f"response: not valid JSON ({e.msg})"])

    if not isinstance(data, dict):
        return ParseOutcome(None, [f"response: expected a JSON object, got {type(data).__name__}"])

    try:
        return ParseOutcome(SummaryPayload.model_validate(data))
    except ValidationError as e:
        errors = _format_validation_error(e)
        logger.debug("Summary payload rejected: %s", errors)
        return ParseOutcome(None, errors)


def require_summary(raw: str | None, max_chars: int = SUMMARY_MAX_RESPONSE_CHARS) -> SummaryPayload:
    """
    Like parse_summary(), but raise on rejection.

    Raises:
        ContractViolationError: With the validation errors attached
    """
    outcome = parse_summary(raw, max_chars=max_chars)
    if outcome.payload is None:
        raise ContractViolationError("; ".join(outcome.errors), errors=outcome.errors)
    return outcome.payload
