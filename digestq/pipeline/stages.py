"""
Window pipeline stages.

Each stage is a small class with `name`, `depends_on` and `process()`, and
returns a new WindowContext inside its StageResult. None of them perform I/O.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from digestq.aggregation.windows import redact_window_key
from digestq.classification.topics import UNCATEGORIZED, TopicClassifier
from digestq.observability.logging import get_logger
from digestq.pipeline.window_pipeline import ItemDraft, StageResult, WindowContext
from digestq.storage.models import Event
from digestq.utils.redaction import DEFAULT_RULES, RedactionRule, mask_secrets

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")
_ELLIPSIS = "..."


def _normalize_signature_part(value: Any) -> str:
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip().lower()


def semantic_signature(event: Event) -> str | None:
    """
    Logical-resource signature used to fold repeated updates.

    Signatures:
    - resource_id present: source_type + resource_id
    - otherwise:           source_type + normalized title
    - neither:             None (event is never folded)
    """
    resource_id = _normalize_signature_part(event.payload.get("resource_id"))
    if resource_id:
        return f"{event.source_type}|id|{resource_id}"
    title = _normalize_signature_part(event.text("title"))
    if title:
        return f"{event.source_type}|title|{title}"
    return None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= len(_ELLIPSIS):
        return text[:limit]
    return text[: limit - len(_ELLIPSIS)].rstrip() + _ELLIPSIS


class DeduplicateStage:
    """
    Fold semantically equivalent events; the most recent occurrence wins.

    Side Effects (on the returned context):
        - events: folded events removed, survivors keep (occurred_at, event_id) order
        - metadata["folded_event_ids"]: {surviving event_id: [folded event_ids]}
    """

    name = "deduplicate"
    depends_on: list[str] = []

    def process(self, context: WindowContext) -> StageResult:
        latest: dict[str, Event] = {}
        folded: dict[str, list[str]] = {}

        # context.events is ordered oldest first, so later entries replace earlier ones
        for event in context.events:
            signature = semantic_signature(event)
            if signature is None:
                continue
            previous = latest.get(signature)
            if previous is not None:
                folded[event.event_id] = folded.pop(previous.event_id, []) + [previous.event_id]
            latest[signature] = event

        dropped = {event_id for ids in folded.values() for event_id in ids}
        survivors = tuple(e for e in context.events if e.event_id not in dropped)

        return StageResult(
            success=True,
            stage_name=self.name,
            items_processed=len(context.events),
            items_output=len(survivors),
            context=context.evolve(events=survivors).with_metadata(
                folded_event_ids={k: sorted(v) for k, v in sorted(folded.items())}
            ),
            metadata={"folded": len(dropped)},
        )


class RedactStage:
    """
    Mask secrets in every string of every payload (lossy, one-way).

    Side Effects (on the returned context):
        - events: payload strings replaced with masked copies
        - metadata["redactions"]: {rule name: hit count}
    """

    name = "redact"
    depends_on = ["deduplicate"]

    def __init__(self, rules: Sequence[RedactionRule] = DEFAULT_RULES):
        self.rules = tuple(rules)

    def _mask(self, value: Any, hits: dict[str, int]) -> Any:
        if isinstance(value, str):
            masked, matched = mask_secrets(value, self.rules)
            for rule_name in matched:
                hits[rule_name] = hits.get(rule_name, 0) + 1
            return masked
        if isinstance(value, dict):
            return {key: self._mask(item, hits) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._mask(item, hits) for item in value]
        return value

    def process(self, context: WindowContext) -> StageResult:
        hits: dict[str, int] = {}
        events = tuple(
            event.model_copy(update={"payload": self._mask(event.payload, hits)})
            for event in context.events
        )
        return StageResult(
            success=True,
            stage_name=self.name,
            items_processed=len(context.events),
            items_output=len(events),
            context=context.evolve(events=events).with_metadata(redactions=dict(sorted(hits.items()))),
            metadata={"redactions": sum(hits.values())},
        )


class ClassifyStage:
    """
    Assign a topic to each event. Classifier failure degrades to "uncategorized".

    Side Effects (on the returned context):
        - topics: {event_id: topic}
        - metadata["classify_failures"]: count of events that fell back
    """

    name = "classify"
    depends_on = ["redact"]

    def __init__(self, classifier: TopicClassifier):
        self.classifier = classifier

    def process(self, context: WindowContext) -> StageResult:
        topics: dict[str, str] = {}
        failures = 0
        for event in context.events:
            try:
                topics[event.event_id] = self.classifier.classify(event) or UNCATEGORIZED
            except Exception as e:
                logger.warning("Classification failed for %r: %s", event, e)
                topics[event.event_id] = UNCATEGORIZED
                failures += 1

        return StageResult(
            success=True,
            stage_name=self.name,
            items_processed=len(context.events),
            items_output=len(topics),
            context=context.evolve(topics=topics).with_metadata(classify_failures=failures),
            metadata={"topics": len(set(topics.values()))},
        )


def _event_facts(event: Event) -> list[str]:
    facts = event.payload.get("facts")
    if isinstance(facts, list):
        strings = [_WHITESPACE.sub(" ", f).strip() for f in facts if isinstance(f, str)]
        return [f for f in strings if f]
    body = _WHITESPACE.sub(" ", event.text("body")).strip()
    return [body] if body else []


def _event_link(event: Event) -> str | None:
    for key in ("link", "url"):
        value = event.text(key).strip()
        if value:
            return value
    return None


def _event_title(event: Event) -> str:
    title = _WHITESPACE.sub(" ", event.text("title")).strip()
    return title or event.source_type


class ClusterStage:
    """
    Group same-topic events into one ItemDraft; uncategorized events stay separate.

    Titles:
    - single event: the event's own title
    - several:      "<Topic label>: <n> updates", one fact per event

    Facts are ordered most recent first. Drafts are ordered by their most
    recent event (newest first), ties broken by the newest event_id.

    Side Effects (on the returned context):
        - drafts: the clustered items
    """

    name = "cluster"
    depends_on = ["classify"]

    def __init__(self, classifier: TopicClassifier, fact_max_chars: int):
        self.classifier = classifier
        self.fact_max_chars = fact_max_chars

    def _draft(self, topic: str, events: list[Event]) -> ItemDraft:
        newest_first = sorted(events, key=lambda e: (e.occurred_at, e.event_id), reverse=True)
        newest = newest_first[0]

        if len(newest_first) == 1:
            title = _event_title(newest)
            facts = _event_facts(newest)
        else:
            title = f"{self.classifier.label_for(topic)}: {len(newest_first)} updates"
            facts = []
            for event in newest_first:
                event_facts = _event_facts(event)
                headline = _WHITESPACE.sub(" ", event.text("title")).strip()
                if headline and event_facts:
                    facts.append(f"{headline}: {event_facts[0]}")
                else:
                    facts.append(headline or (event_facts[0] if event_facts else event.source_type))

        return ItemDraft(
            topic=topic,
            title=_truncate(title, self.fact_max_chars),
            facts=tuple(_truncate(fact, self.fact_max_chars) for fact in facts),
            link=_event_link(newest),
            event_ids=tuple(sorted(e.event_id for e in newest_first)),
            latest_at=newest.occurred_at,
        )

    def process(self, context: WindowContext) -> StageResult:
        groups: OrderedDict[str, tuple[str, list[Event]]] = OrderedDict()
        for event in context.events:
            topic = context.topics.get(event.event_id, UNCATEGORIZED)
            key = f"{UNCATEGORIZED}#{event.event_id}" if topic == UNCATEGORIZED else topic
            groups.setdefault(key, (topic, []))[1].append(event)

        drafts = [self._draft(topic, events) for topic, events in groups.values()]
        drafts.sort(key=lambda d: (d.latest_at, max(d.event_ids)), reverse=True)

        return StageResult(
            success=True,
            stage_name=self.name,
            items_processed=len(context.events),
            items_output=len(drafts),
            context=context.evolve(drafts=tuple(drafts)),
        )


class ClampStage:
    """
    Enforce item, fact and character ceilings. Oldest content goes first.

    Order of application:
    1. keep the newest `max_items` drafts
    2. keep the newest `max_facts_per_item` facts of each draft
    3. while over `max_total_chars`: drop the last fact of the oldest draft,
       then the oldest draft itself; a lone remaining draft gets its title cut

    Side Effects (on the returned context):
        - drafts: clamped
        - metadata: items_dropped, facts_dropped, chars_budget_exhausted
    """

    name = "clamp"
    depends_on = ["cluster"]

    def __init__(self, max_items: int, max_facts_per_item: int, max_total_chars: int):
        self.max_items = max_items
        self.max_facts_per_item = max_facts_per_item
        self.max_total_chars = max_total_chars

    def process(self, context: WindowContext) -> StageResult:
        drafts = list(context.drafts[: self.max_items])
        items_dropped = len(context.drafts) - len(drafts)
        facts_dropped = 0

        for index, draft in enumerate(drafts):
            if len(draft.facts) > self.max_facts_per_item:
                facts_dropped += len(draft.facts) - self.max_facts_per_item
                drafts[index] = replace(draft, facts=draft.facts[: self.max_facts_per_item])

        budget_exhausted = False
        total = sum(draft.char_count() for draft in drafts)
        while drafts and total > self.max_total_chars:
            budget_exhausted = True
            oldest = drafts[-1]
            if oldest.facts:
                drafts[-1] = replace(oldest, facts=oldest.facts[:-1])
                facts_dropped += 1
            elif len(drafts) > 1:
                drafts.pop()
                items_dropped += 1
            else:
                drafts[-1] = replace(oldest, title=_truncate(oldest.title, self.max_total_chars))
            total = sum(draft.char_count() for draft in drafts)

        if items_dropped or facts_dropped:
            logger.info(
                "Clamped window %s: %d items dropped, %d facts dropped",
                redact_window_key(context.window_key),
                items_dropped,
                facts_dropped,
            )

        return StageResult(
            success=True,
            stage_name=self.name,
            items_processed=len(context.drafts),
            items_output=len(drafts),
            context=context.evolve(drafts=tuple(drafts)).with_metadata(
                items_dropped=items_dropped,
                facts_dropped=facts_dropped,
                chars_budget_exhausted=budget_exhausted,
            ),
            metadata={"items_dropped": items_dropped, "facts_dropped": facts_dropped},
        )
