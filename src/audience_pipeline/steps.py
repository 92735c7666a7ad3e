from __future__ import annotations

from typing import Any

from . import prompts
from .entities import materialize_pains, materialize_rankings, materialize_segments
from .models import StepKind, StepScope
from .registry import ReviewCategory, StepDef, StepDefinitionRegistry
from .schemas import STEP_CONTENT_SCHEMAS

TERMINAL_STEP = "overview"

PORTRAIT_REVIEW_CATEGORIES: tuple[ReviewCategory, ...] = (
    ReviewCategory("what_to_change", "change", lambda item: f"{item.get('current', '')} -> {item.get('suggested', '')}"),
    ReviewCategory("what_to_add", "add", lambda item: str(item.get("addition", ""))),
    ReviewCategory("what_to_remove", "remove", lambda item: str(item.get("removal", ""))),
)


def _segment_list(item: dict[str, Any]) -> str:
    return ", ".join(str(index) for index in item.get("segments", []))


SEGMENTS_REVIEW_CATEGORIES: tuple[ReviewCategory, ...] = (
    ReviewCategory(
        "segment_overlaps",
        "overlap",
        lambda item: f"Segments {_segment_list(item)}: {item.get('recommendation', '')}",
    ),
    ReviewCategory("too_broad", "broad", lambda item: f"Segment {item.get('segment')}: {item.get('recommendation', '')}"),
    ReviewCategory("too_narrow", "narrow", lambda item: f"Segment {item.get('segment')}: {item.get('recommendation', '')}"),
    ReviewCategory(
        "missing_segments",
        "missing",
        lambda item: f"{item.get('suggested_name', '')}: {item.get('description', '')}",
    ),
)

# Prerequisites shared by every per-segment analysis step.
_SEGMENT_BASE = ("portrait_final", "segments_final")


def _step(key: str, scope: StepScope, prerequisites: tuple[str, ...], description: str, **kwargs: Any) -> StepDef:
    return StepDef(
        key=key,
        scope=scope,
        schema=STEP_CONTENT_SCHEMAS[key],
        build_request=getattr(prompts, f"build_{key}"),
        prerequisites=prerequisites,
        description=description,
        **kwargs,
    )


def default_step_definitions() -> list[StepDef]:
    project, segment, pain = StepScope.PROJECT, StepScope.SEGMENT, StepScope.PAIN
    return [
        # Portrait block
        _step("portrait", project, (), "Initial portrait generated from onboarding data"),
        _step(
            "portrait_review",
            project,
            ("portrait",),
            "Portrait review with change/add/remove recommendations",
            kind=StepKind.REVIEW,
            review_categories=PORTRAIT_REVIEW_CATEGORIES,
        ),
        _step(
            "portrait_final",
            project,
            ("portrait", "portrait_review"),
            "Final portrait merging accepted review recommendations",
            kind=StepKind.FINALIZE,
            review_step="portrait_review",
        ),
        # Segmentation block
        _step("segments", project, ("portrait_final",), "Initial audience segmentation"),
        _step(
            "segments_review",
            project,
            ("portrait_final", "segments"),
            "Segments review with overlap/breadth/missing recommendations",
            kind=StepKind.REVIEW,
            review_categories=SEGMENTS_REVIEW_CATEGORIES,
        ),
        _step(
            "segments_final",
            project,
            ("segments", "segments_review"),
            "Final segment list merging accepted review recommendations",
            kind=StepKind.FINALIZE,
            review_step="segments_review",
            on_approve=materialize_segments,
        ),
        # Per-segment analysis
        _step("segment_details", segment, _SEGMENT_BASE, "Needs, triggers, values and objections per segment"),
        _step("jobs", segment, (*_SEGMENT_BASE, "segment_details"), "Jobs to be done"),
        _step("preferences", segment, (*_SEGMENT_BASE, "segment_details", "jobs"), "Preferences and expectations"),
        _step(
            "difficulties",
            segment,
            (*_SEGMENT_BASE, "segment_details", "jobs", "preferences"),
            "Difficulties and obstacles",
        ),
        _step(
            "triggers",
            segment,
            (*_SEGMENT_BASE, "segment_details", "jobs", "preferences", "difficulties"),
            "Purchase triggers and motivations",
        ),
        _step(
            "pains",
            segment,
            (*_SEGMENT_BASE, "segment_details", "jobs", "preferences", "difficulties", "triggers"),
            "Deep psychological pain points",
            on_approve=materialize_pains,
        ),
        _step(
            "pains_ranking",
            segment,
            ("pains",),
            "Pain prioritization and top-set selection",
            on_approve=materialize_rankings,
        ),
        _step(
            "channel_strategy",
            segment,
            (*_SEGMENT_BASE, "segment_details", "triggers"),
            "Platforms, content, trusted sources and communities",
        ),
        _step(
            "competitive_intelligence",
            segment,
            (*_SEGMENT_BASE, "pains", "jobs"),
            "Alternatives, workarounds and switching barriers",
        ),
        _step(
            "pricing_psychology",
            segment,
            (*_SEGMENT_BASE, "pains", "competitive_intelligence"),
            "Budget, price perception and willingness to pay",
        ),
        _step(
            "trust_framework",
            segment,
            (*_SEGMENT_BASE, "pains", "competitive_intelligence", "pricing_psychology"),
            "Proof hierarchy, authorities and red flags",
        ),
        _step(
            "jtbd_context",
            segment,
            (*_SEGMENT_BASE, "jobs", "competitive_intelligence"),
            "Situational context and priority of jobs",
        ),
        # Per top pain
        _step(
            "canvas",
            pain,
            (*_SEGMENT_BASE, "segment_details", "jobs", "preferences", "difficulties", "triggers", "pains_ranking"),
            "Emotional, behavioral and buying-signal canvas per top pain",
        ),
        _step("canvas_extended", pain, ("canvas",), "Extended canvas narrative per top pain"),
        # Terminal
        _step(
            "overview",
            project,
            ("portrait_final", "segments_final", "jtbd_context", "canvas_extended"),
            "Executive overview of the whole research",
        ),
    ]


def default_registry() -> StepDefinitionRegistry:
    return StepDefinitionRegistry(default_step_definitions(), terminal_step=TERMINAL_STEP)
