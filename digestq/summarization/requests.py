"""
Generation request construction.

Requests are deterministic functions of their input (PreparedWindow or the
day's micro summaries, verbosity and config) so identical windows produce
identical prompts. Event-derived text passes through sanitize_for_prompt().
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from digestq.config import (
    SUMMARY_BULLET_MAX_CHARS,
    SUMMARY_HEADLINE_MAX_CHARS,
    SUMMARY_MAX_BULLETS,
    SUMMARY_MIN_BULLETS,
    WINDOW_SIZE_SECONDS,
)
from digestq.delivery.models import Verbosity
from digestq.storage.models import PreparedWindow, Summary
from digestq.summarization.prompts import get_loader
from digestq.summarization.schema import summary_json_schema
from digestq.utils.redaction import sanitize_for_prompt

# Requested bullet counts per verbosity; validation bounds stay 2..6 regardless
BULLET_RANGE: dict[Verbosity, tuple[int, int]] = {
    Verbosity.BRIEF: (SUMMARY_MIN_BULLETS, 3),
    Verbosity.STANDARD: (3, 4),
    Verbosity.DETAILED: (4, SUMMARY_MAX_BULLETS),
}


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    schema: dict[str, Any]


def _schema_text(schema: dict[str, Any]) -> str:
    return json.dumps(schema, sort_keys=True, indent=2)


def _bounds(verbosity: Verbosity) -> dict[str, int]:
    min_bullets, max_bullets = BULLET_RANGE[verbosity]
    return {
        "min_bullets": min_bullets,
        "max_bullets": max_bullets,
        "headline_max": SUMMARY_HEADLINE_MAX_CHARS,
        "bullet_max": SUMMARY_BULLET_MAX_CHARS,
    }


def format_items(prepared: PreparedWindow) -> str:
    lines = []
    for index, item in enumerate(prepared.items, start=1):
        lines.append(f"{index}. [{item.topic}] {sanitize_for_prompt(item.title, 300)}")
        for fact in item.facts:
            lines.append(f"   - {sanitize_for_prompt(fact, 300)}")
        if item.link:
            lines.append(f"   link: {sanitize_for_prompt(item.link, 300)}")
    return "\n".join(lines)


def build_micro_request(
    prepared: PreparedWindow, verbosity: Verbosity = Verbosity.STANDARD
) -> GenerationRequest:
    schema = summary_json_schema()
    prompt = get_loader().render(
        "micro_summary",
        window_minutes=WINDOW_SIZE_SECONDS // 60,
        items=format_items(prepared),
        schema=_schema_text(schema),
        **_bounds(verbosity),
    )
    return GenerationRequest(prompt=prompt, schema=schema)


def build_daily_request(
    day_key: str, micro_summaries: Sequence[Summary], verbosity: Verbosity = Verbosity.STANDARD
) -> GenerationRequest:
    digests = []
    for summary in micro_summaries:
        start = summary.window_key.split("#", 1)[0]
        digests.append(f"[{start}] {sanitize_for_prompt(summary.headline or '', 200)}")
        digests.extend(f"   - {sanitize_for_prompt(bullet, 300)}" for bullet in summary.bullets)

    schema = summary_json_schema()
    prompt = get_loader().render(
        "daily_summary",
        day=day_key,
        digests="\n".join(digests),
        schema=_schema_text(schema),
        **_bounds(verbosity),
    )
    return GenerationRequest(prompt=prompt, schema=schema)


def build_repair_request(
    original: GenerationRequest, previous_output: str, errors: Sequence[str]
) -> GenerationRequest:
    """
    The one repair request: original request, the rejected output, what was
    wrong with it, and the schema again.
    """
    repair = get_loader().render(
        "repair",
        errors="\n".join(f"- {error}" for error in errors),
        previous=previous_output[:4000],
        schema=_schema_text(original.schema),
    )
    return GenerationRequest(prompt=f"{original.prompt}\n\n{repair}", schema=original.schema)
