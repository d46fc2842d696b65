"""
Redaction helpers.

Provides:
- redact(): Hash identifiers (recipient ids) for correlation without exposure
- RedactionRule / DEFAULT_RULES / mask_secrets(): pattern-based masks applied to
  event free text by the pipeline's Redact stage (lossy, one-way)
- sanitize_for_prompt(): Strip prompt injection markers before text reaches the summarizer
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from hashlib import sha256

# Patterns that could be used for prompt injection
INJECTION_PATTERNS = [
    r"ignore\s+(previous|above|all)\s+instructions?",
    r"disregard\s+(previous|above|all)\s+instructions?",
    r"forget\s+(previous|above|all)\s+instructions?",
    r"new\s+instructions?:",
    r"system\s*:",
    r"assistant\s*:",
    r"\[INST\]",
    r"\[/INST\]",
    r"<\|im_start\|>",
    r"<\|im_end\|>",
]
INJECTION_REGEX = re.compile("|".join(INJECTION_PATTERNS), re.IGNORECASE)


@dataclass(frozen=True)
class RedactionRule:
    """One named mask. `pattern` is matched against free text; matches become `replacement`."""

    name: str
    pattern: re.Pattern[str]
    replacement: str

    @classmethod
    def compile(cls, name: str, pattern: str, replacement: str, flags: int = 0) -> RedactionRule:
        return cls(name=name, pattern=re.compile(pattern, flags), replacement=replacement)


# Order matters: block-level secrets first, then tokens, then assignments and PII.
DEFAULT_RULES: tuple[RedactionRule, ...] = (
    RedactionRule.compile(
        "private_key",
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
        "[PRIVATE_KEY]",
        re.DOTALL,
    ),
    RedactionRule.compile("aws_access_key", r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b", "[AWS_KEY]"),
    RedactionRule.compile("github_token", r"\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{30,}\b", "[GITHUB_TOKEN]"),
    RedactionRule.compile("github_pat", r"\bgithub_pat_[A-Za-z0-9_]{40,}\b", "[GITHUB_TOKEN]"),
    RedactionRule.compile("slack_token", r"\bxox[abposr]-[A-Za-z0-9-]{10,}\b", "[SLACK_TOKEN]"),
    RedactionRule.compile("google_api_key", r"\bAIza[0-9A-Za-z_\-]{35}\b", "[GOOGLE_KEY]"),
    RedactionRule.compile("stripe_key", r"\b(?:sk|rk)_(?:live|test)_[0-9A-Za-z]{16,}\b", "[STRIPE_KEY]"),
    RedactionRule.compile(
        "jwt", r"\beyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\b", "[JWT]"
    ),
    RedactionRule.compile(
        "bearer", r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]{16,}", r"\1 [TOKEN]"
    ),
    RedactionRule.compile(
        "credential_assignment",
        r"(?i)\b(password|passwd|pwd|secret|api[_-]?key|access[_-]?token|token)\s*[:=]\s*['\"]?[^\s'\",;]+",
        r"\1=[REDACTED]",
    ),
    RedactionRule.compile("email", r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}", "[EMAIL]"),
    RedactionRule.compile("card_number", r"\b(?:\d{4}[-\s]?){3}\d{1,7}\b", "[CARD]"),
)


def redact(value: str | None) -> str:
    """Return a stable hash representation of a sensitive string."""
    if not value:
        return "hash:missing"
    digest = sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"hash:{digest}"


def mask_secrets(text: str, rules: Sequence[RedactionRule] = DEFAULT_RULES) -> tuple[str, list[str]]:
    """
    Apply every rule to `text`.

    Returns:
        (masked text, names of rules that matched). Unmatched text is returned unchanged.

    Side Effects:
        None (pure function)
    """
    if not text:
        return text, []

    hits: list[str] = []
    for rule in rules:
        text, count = rule.pattern.subn(rule.replacement, text)
        if count:
            hits.append(rule.name)
    return text, hits


def sanitize_for_prompt(text: str, max_length: int = 500) -> str:
    """
    Sanitize event-derived text before including it in a summarizer prompt.

    Truncates, removes known injection markers and characters that could be
    mistaken for prompt structure.
    """
    if not text:
        return ""

    text = text[:max_length]
    text = INJECTION_REGEX.sub("[REDACTED]", text)
    text = re.sub(r"[<>{}|\\]", "", text)
    return text.strip()
