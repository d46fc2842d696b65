"""
Tests for the summary output contract

parse_summary() must accept framing noise around a valid object and reject
anything whose content breaks the bounds.
"""

from __future__ import annotations

import json

import pytest

from digestq.infrastructure.errors import ContractViolationError
from digestq.summarization.schema import (
    extract_json,
    parse_summary,
    require_summary,
    summary_json_schema,
)

VALID = {"headline": "Two builds", "bullets": ["Build 41 passed", "Build 40 failed"]}


def test_valid_response_parses():
    outcome = parse_summary(json.dumps(VALID))

    assert outcome.valid
    assert outcome.payload.headline == "Two builds"
    assert outcome.payload.bullets == ["Build 41 passed", "Build 40 failed"]


def test_whitespace_is_trimmed():
    outcome = parse_summary('{"headline": "  Hi  ", "bullets": [" a ", "b  "]}')
    assert outcome.payload.headline == "Hi"
    assert outcome.payload.bullets == ["a", "b"]


@pytest.mark.parametrize(
    "raw",
    [
        "```json\n" + json.dumps(VALID) + "\n```",
        "Here is the digest:\n" + json.dumps(VALID) + "\nThanks!",
    ],
)
def test_framing_is_tolerated(raw):
    assert parse_summary(raw).valid


def test_extract_json_raises_when_nothing_recoverable():
    with pytest.raises(json.JSONDecodeError):
        extract_json("no json here")


@pytest.mark.parametrize(
    "raw, fragment",
    [
        (None, "empty response"),
        ("   ", "empty response"),
        ("not json", "not valid JSON"),
        ("[1, 2]", "expected a JSON object, got list"),
        ('{"headline": "x", "bullets": ["only one"]}', "bullets"),
        ('{"headline": "x", "bullets": ["a", "b", "c", "d", "e", "f", "g"]}', "bullets"),
        ('{"headline": "", "bullets": ["a", "b"]}', "headline"),
        ('{"headline": "   ", "bullets": ["a", "b"]}', "headline must not be blank"),
        ('{"headline": "x", "bullets": ["a", " "]}', "bullet 1 must not be blank"),
        ('{"headline": "x", "bullets": ["a", "b"], "mood": "happy"}', "mood"),
        ('{"bullets": ["a", "b"]}', "headline"),
    ],
)
def test_invalid_responses_are_explained(raw, fragment):
    outcome = parse_summary(raw)

    assert not outcome.valid
    assert any(fragment in error for error in outcome.errors), outcome.errors


def test_headline_and_bullet_length_bounds():
    long_headline = {"headline": "h" * 121, "bullets": ["a", "b"]}
    long_bullet = {"headline": "ok", "bullets": ["a", "b" * 241]}

    assert not parse_summary(json.dumps(long_headline)).valid
    errors = parse_summary(json.dumps(long_bullet)).errors
    assert any("241 chars (max 240)" in error for error in errors)


def test_oversized_response_rejected_before_parsing():
    outcome = parse_summary(json.dumps(VALID), max_chars=10)
    assert outcome.errors == [f"response: {len(json.dumps(VALID))} chars exceeds limit of 10"]


def test_require_summary_raises_with_errors():
    with pytest.raises(ContractViolationError) as exc_info:
        require_summary('{"headline": "x", "bullets": []}')

    assert exc_info.value.errors
    assert "bullets" in str(exc_info.value)


def test_schema_carries_bounds():
    schema = summary_json_schema()

    assert schema["properties"]["bullets"]["minItems"] == 2
    assert schema["properties"]["bullets"]["maxItems"] == 6
    assert schema["properties"]["bullets"]["items"]["maxLength"] == 240
    assert schema["properties"]["headline"]["maxLength"] == 120
