"""
Window Pipeline - reduces one claimed window's events to a PreparedWindow.

Stages run strictly in declared order:
    deduplicate -> redact -> classify -> cluster -> clamp

Principles:
- Each stage receives an immutable WindowContext and returns a new one inside
  its StageResult; no stage ever observes a half-applied context.
- Stage dependencies are declared and validated before execution (fail fast).
- The pipeline is a pure function of (events, PipelineConfig): identical input
  yields a byte-identical PreparedWindow.to_json().
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Protocol

from digestq import config
from digestq.classification.topics import TopicClassifier
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import counter
from digestq.storage.models import CompactItem, Event, PreparedWindow
from digestq.utils.redaction import DEFAULT_RULES, RedactionRule

logger = get_logger(__name__)


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class PipelineConfig:
    """Ceilings and pluggable collaborators. Part of the pipeline's input."""

    max_items: int = config.PIPELINE_MAX_ITEMS
    max_facts_per_item: int = config.PIPELINE_MAX_FACTS_PER_ITEM
    max_total_chars: int = config.PIPELINE_MAX_TOTAL_CHARS
    fact_max_chars: int = config.PIPELINE_FACT_MAX_CHARS
    redaction_rules: tuple[RedactionRule, ...] = DEFAULT_RULES
    classifier: TopicClassifier = field(default_factory=TopicClassifier.from_yaml)

    def __post_init__(self) -> None:
        if self.max_items < 1 or self.max_facts_per_item < 0:
            raise ValueError("max_items must be >= 1 and max_facts_per_item >= 0")
        if self.max_total_chars < 1 or self.fact_max_chars < 1:
            raise ValueError("character budgets must be positive")


# ============================================================================
# Data Structures
# ============================================================================


@dataclass(frozen=True)
class ItemDraft:
    """A cluster under construction; becomes a CompactItem at the end of the run."""

    topic: str
    title: str
    facts: tuple[str, ...]
    link: str | None
    event_ids: tuple[str, ...]
    latest_at: datetime

    def char_count(self) -> int:
        return len(self.title) + sum(len(fact) for fact in self.facts)

    def to_item(self) -> CompactItem:
        return CompactItem(title=self.title, facts=self.facts, link=self.link, topic=self.topic)


@dataclass(frozen=True)
class WindowContext:
    """
    Immutable working context passed between stages.

    Stages derive a new context with `evolve()` / `with_metadata()`; metadata
    is exposed read-only.
    """

    recipient_id: str
    window_key: str
    events: tuple[Event, ...]
    topics: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    drafts: tuple[ItemDraft, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def evolve(self, **changes: Any) -> WindowContext:
        if "topics" in changes:
            changes["topics"] = MappingProxyType(dict(changes["topics"]))
        return replace(self, **changes)

    def with_metadata(self, **entries: Any) -> WindowContext:
        return replace(self, metadata=MappingProxyType({**self.metadata, **entries}))


@dataclass(frozen=True)
class StageResult:
    """
    Output contract for pipeline stages.

    `context` is the stage's output context; it is None only when the stage
    failed.
    """

    success: bool
    stage_name: str
    items_processed: int
    items_output: int
    context: WindowContext | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


class WindowStage(Protocol):
    """
    Contract for window pipeline stages.

    Side Effects: none. A stage must not mutate its input context, and must
    not perform I/O.
    """

    name: str
    depends_on: list[str]

    def process(self, context: WindowContext) -> StageResult: ...


class PipelineValidationError(Exception):
    """Raised when pipeline stage dependencies are invalid"""


@dataclass(frozen=True)
class PipelineResult:
    """Pipeline output plus per-stage metrics."""

    prepared: PreparedWindow | None
    stage_results: list[StageResult]
    metadata: Mapping[str, Any]
    success: bool

    @property
    def errors(self) -> list[str]:
        return [error for result in self.stage_results for error in result.errors]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "items": len(self.prepared.items) if self.prepared else 0,
            "metadata": dict(self.metadata),
            "stage_metrics": [
                {
                    "stage": r.stage_name,
                    "processed": r.items_processed,
                    "output": r.items_output,
                    "metadata": r.metadata,
                }
                for r in self.stage_results
            ],
        }


# ============================================================================
# Pipeline Orchestrator
# ============================================================================


@dataclass
class WindowPipeline:
    """
    Ordered window pipeline with explicit stage dependencies.

    Example:
        pipeline = build_default_pipeline()
        result = pipeline.run("alice", "2026-10-18T12:05:00Z#alice", events)
        if result.success:
            store.save_prepared_window(result.prepared)
    """

    stages: list[WindowStage]

    def validate_dependencies(self) -> list[str]:
        """Return dependency errors (empty if the stage order is valid)."""
        errors = []
        completed_stages: set[str] = set()

        for stage in self.stages:
            for dep in stage.depends_on:
                if dep not in completed_stages:
                    errors.append(
                        f"Stage '{stage.name}' depends on '{dep}' "
                        f"which has not run yet (or doesn't exist)"
                    )
            completed_stages.add(stage.name)

        return errors

    def run(self, recipient_id: str, window_key: str, events: Sequence[Event]) -> PipelineResult:
        """
        Execute all stages over one window's events.

        Events are sorted by (occurred_at, event_id) first, so the result does
        not depend on the order the store returned them in.

        Raises:
            PipelineValidationError: If stage dependencies are invalid

        A stage that fails or raises halts the run; the result then has
        success=False and prepared=None.
        """
        validation_errors = self.validate_dependencies()
        if validation_errors:
            raise PipelineValidationError(
                "Pipeline validation failed:\n" + "\n".join(validation_errors)
            )

        ordered = tuple(sorted(events, key=lambda e: (e.occurred_at, e.event_id)))
        context = WindowContext(recipient_id=recipient_id, window_key=window_key, events=ordered)

        stage_results: list[StageResult] = []
        for stage in self.stages:
            try:
                result = stage.process(context)
            except Exception as e:
                logger.exception("Stage '%s' raised exception", stage.name)
                result = StageResult(
                    success=False,
                    stage_name=stage.name,
                    items_processed=0,
                    items_output=0,
                    errors=[f"{type(e).__name__}: {e}"],
                )
            stage_results.append(result)

            if not result.success or result.context is None:
                logger.error("Stage '%s' failed: %s", stage.name, result.errors)
                counter("pipeline.stage_failed")
                return PipelineResult(
                    prepared=None,
                    stage_results=stage_results,
                    metadata=context.metadata,
                    success=False,
                )

            logger.debug(
                "Stage '%s' complete: %d processed, %d output",
                stage.name,
                result.items_processed,
                result.items_output,
            )
            context = result.context

        included = sorted({event_id for draft in context.drafts for event_id in draft.event_ids})
        prepared = PreparedWindow(
            recipient_id=recipient_id,
            window_key=window_key,
            items=tuple(draft.to_item() for draft in context.drafts),
            included_event_ids=tuple(included),
        )
        counter("pipeline.windows_prepared")
        return PipelineResult(
            prepared=prepared,
            stage_results=stage_results,
            metadata=context.metadata,
            success=True,
        )


def build_default_pipeline(pipeline_config: PipelineConfig | None = None) -> WindowPipeline:
    """The production stage order. Reordering stages changes output."""
    from digestq.pipeline.stages import (
        ClampStage,
        ClassifyStage,
        ClusterStage,
        DeduplicateStage,
        RedactStage,
    )

    cfg = pipeline_config or PipelineConfig()
    return WindowPipeline(
        stages=[
            DeduplicateStage(),
            RedactStage(rules=cfg.redaction_rules),
            ClassifyStage(classifier=cfg.classifier),
            ClusterStage(classifier=cfg.classifier, fact_max_chars=cfg.fact_max_chars),
            ClampStage(
                max_items=cfg.max_items,
                max_facts_per_item=cfg.max_facts_per_item,
                max_total_chars=cfg.max_total_chars,
            ),
        ]
    )
