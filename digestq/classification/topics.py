"""
Deterministic topic classification for pipeline grouping.

Topics are used purely to cluster events into compact items; they never
filter or reorder content. Rules live in topic_rules.yaml next to this module
(versioned with the code) and are matched in-memory with no DB or LLM calls.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from digestq.observability.logging import get_logger
from digestq.storage.models import Event

logger = get_logger(__name__)

UNCATEGORIZED = "uncategorized"
DEFAULT_RULES_PATH = Path(__file__).parent / "topic_rules.yaml"

_TOPIC_SLUG = re.compile(r"^[a-z][a-z0-9_]{0,39}$")


@dataclass(frozen=True)
class TopicRule:
    topic: str
    label: str
    source_types: frozenset[str] = frozenset()
    keywords: tuple[str, ...] = ()


@dataclass
class TopicClassifier:
    """
    Map an event to a topic slug.

    Example:
        >>> classifier = TopicClassifier.from_yaml()
        >>> classifier.classify(event)   # event.source_type == "github.pull_request"
        'code_review'
    """

    rules: list[TopicRule] = field(default_factory=list)
    version: str = "unknown"

    @classmethod
    def from_yaml(cls, rules_path: str | Path | None = None) -> TopicClassifier:
        path = Path(rules_path) if rules_path else DEFAULT_RULES_PATH
        try:
            with open(path) as f:
                config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Topic rules not found: %s, using empty ruleset", path)
            config = {}

        rules = [
            TopicRule(
                topic=topic,
                label=spec.get("label", topic.replace("_", " ").capitalize()),
                source_types=frozenset(spec.get("source_types", [])),
                keywords=tuple(keyword.lower() for keyword in spec.get("keywords", [])),
            )
            for topic, spec in (config.get("topics") or {}).items()
        ]
        version = str(config.get("version", "unknown"))
        logger.info("Topic classifier loaded: version %s, %d topics", version, len(rules))
        return cls(rules=rules, version=version)

    def label_for(self, topic: str) -> str:
        for rule in self.rules:
            if rule.topic == topic:
                return rule.label
        return topic.replace("_", " ").capitalize()

    def classify(self, event: Event) -> str:
        """
        Topic slug for an event.

        Order: explicit payload "topic" (when it is a valid slug), exact
        source_type match, keyword match over title and body.
        """
        explicit = event.payload.get("topic")
        if isinstance(explicit, str) and _TOPIC_SLUG.match(explicit.strip().lower()):
            return explicit.strip().lower()

        for rule in self.rules:
            if event.source_type in rule.source_types:
                return rule.topic

        text = f"{event.text('title')} {event.text('body')}".lower()
        for rule in self.rules:
            if any(keyword in text for keyword in rule.keywords):
                return rule.topic

        return UNCATEGORIZED

    def describe(self) -> dict[str, Any]:
        return {"version": self.version, "topics": [rule.topic for rule in self.rules]}
