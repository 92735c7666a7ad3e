from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Any, Callable

import pytest

from audience_pipeline import FileArtifactStore, RetryPolicy, WorkflowEngine
from audience_pipeline.models import DecisionStatus, StepKind

# First matching marker wins; each is a phrase only that step's prompt contains.
STEP_MARKERS: list[tuple[str, str]] = [
    ("Regenerate the '", "field"),
    ("Create a comprehensive portrait", "portrait"),
    ("Critically review this portrait", "portrait_review"),
    ("Create the FINAL portrait", "portrait_final"),
    ("Split this audience into", "segments"),
    ("Review the segmentation", "segments_review"),
    ("Produce the FINAL segment list", "segments_final"),
    ("Analyze this segment in depth", "segment_details"),
    ("Enhance the Jobs to Be Done", "jtbd_context"),
    ("Describe the Jobs to Be Done", "jobs"),
    ("preferences and expectations this segment", "preferences"),
    ("difficulties and obstacles this segment", "difficulties"),
    ("Identify 5-8 purchase triggers", "triggers"),
    ("DEEP PSYCHOLOGICAL PAIN POINTS", "pains"),
    ("Rank these pains", "pains_ranking"),
    ("where this segment spends attention", "channel_strategy"),
    ("alternatives this segment has tried", "competitive_intelligence"),
    ("Describe this segment's pricing psychology", "pricing_psychology"),
    ("Build the trust framework", "trust_framework"),
    ("Canvas Analysis", "canvas"),
    ("Extend the canvas", "canvas_extended"),
    ("executive overview", "overview"),
]

_PAIN_ID_RE = re.compile(r"\[([0-9a-f]{32})\]")


def detect_step(prompt: str) -> str:
    for marker, step_key in STEP_MARKERS:
        if marker in prompt:
            return step_key
    raise AssertionError(f"unrecognized prompt: {prompt[:200]}")


class ScriptedProvider:
    """Offline GenerationProvider returning valid content for every step.

    ``failures`` queues exceptions per step key, raised before any content is
    returned; ``fail_when`` can fail selected calls by inspecting the prompt.
    """

    def __init__(self, *, segment_count: int = 3, pain_count: int = 4, top_count: int = 2) -> None:
        self.segment_count = segment_count
        self.pain_count = pain_count
        self.top_count = top_count
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.failures: dict[str, list[BaseException]] = {}
        self.fail_when: Callable[[str, str], BaseException | None] | None = None
        self.raw_overrides: dict[str, list[str]] = {}
        self.field_value = '"**A sharper, more specific description**"'

    def calls_for(self, step_key: str) -> list[str]:
        return [prompt for key, prompt in self.calls if key == step_key]

    async def generate(self, prompt: str, *, system_prompt: str | None = None, max_tokens: int | None = None) -> str:
        step_key = detect_step(prompt)
        self.calls.append((step_key, prompt))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        if self.fail_when is not None:
            error = self.fail_when(step_key, prompt)
            if error is not None:
                raise error
        queued = self.failures.get(step_key)
        if queued:
            raise queued.pop(0)
        overrides = self.raw_overrides.get(step_key)
        if overrides:
            return overrides.pop(0)
        if step_key == "field":
            return self.field_value
        return json.dumps(self.content_for(step_key, prompt))

    def content_for(self, step_key: str, prompt: str) -> dict[str, Any]:
        segments = [
            {"segment_index": index, "name": f"Segment {index}", "description": f"Audience group {index}"}
            for index in range(1, self.segment_count + 1)
        ]
        if step_key in ("portrait", "portrait_final"):
            return {
                "sociodemographics": "Urban professionals aged 30-45",
                "psychographics": "Plan-ahead, research-driven buyers",
                "changes_applied": ["tightened age range"] if step_key == "portrait_final" else [],
            }
        if step_key == "portrait_review":
            return {
                "what_to_change": [{"current": "aged 25-60", "suggested": "aged 30-45", "reasoning": "focus"}],
                "what_to_add": [{"addition": "commute habits", "reasoning": "channel fit"}],
                "what_to_remove": [{"removal": "students", "reasoning": "outside price range"}],
            }
        if step_key in ("segments", "segments_final"):
            return {"segments": segments, "summary": "final list" if step_key == "segments_final" else ""}
        if step_key == "segments_review":
            return {
                "segment_overlaps": [
                    {"segments": [1, 2], "overlap_description": "same budget", "recommendation": "merge 1 and 2"},
                    {"segments": [2, 3], "overlap_description": "same channel", "recommendation": "split by age"},
                ],
                "too_broad": [{"segment": 1, "issue": "mixed income", "recommendation": "narrow to high income"}],
                "too_narrow": [{"segment": 3, "issue": "tiny niche", "recommendation": "widen geography"}],
                "missing_segments": [{"suggested_name": "Gift buyers", "description": "Buy for others"}],
            }
        if step_key == "segment_details":
            return {"needs": [{"need": "save time"}], "awareness_level": "problem_aware"}
        if step_key == "jobs":
            return {"functional_jobs": [{"job": "plan weekly meals"}]}
        if step_key == "preferences":
            return {"preferences": [{"name": "clear labels"}]}
        if step_key == "difficulties":
            return {"difficulties": [{"name": "no time to cook"}]}
        if step_key == "triggers":
            return {"triggers": [{"name": "new year", "description": "resolution season"}]}
        if step_key == "pains":
            return {
                "pains": [
                    {"pain_index": index, "name": f"Pain {index}", "description": f"Pain number {index}"}
                    for index in range(1, self.pain_count + 1)
                ]
            }
        if step_key == "pains_ranking":
            pain_ids = _PAIN_ID_RE.findall(prompt)
            return {
                "rankings": [
                    {"pain_id": pain_id, "impact_score": 10 - position, "is_top_pain": position < self.top_count}
                    for position, pain_id in enumerate(pain_ids)
                ]
            }
        if step_key == "canvas":
            return {"emotional_aspects": [{"emotion": "Frustration", "intensity": "high"}]}
        if step_key == "canvas_extended":
            return {"extended_analysis": "A week in the life of the buyer"}
        if step_key == "overview":
            return {"executive_summary": "Two segments drive most demand", "key_insights": ["time is the pain"]}
        return {}


class Pipeline:
    """Test driver around a WorkflowEngine: runs coroutines and walks the graph."""

    def __init__(self, engine: WorkflowEngine, provider: ScriptedProvider) -> None:
        self.engine = engine
        self.provider = provider

    def run(self, coro: Any) -> Any:
        return asyncio.run(coro)

    def new_project(self) -> str:
        project = self.engine.create_project(
            "Meal kits",
            {
                "brand_name": "FreshBox",
                "product_service": "Weekly meal kits",
                "problems": ["no time to plan meals"],
                "geography": "US",
                "price_segment": "premium",
            },
        )
        return project.project_id

    def complete(self, project_id: str, step_key: str, scope_key: str = "") -> None:
        """Generate (if needed), decide every recommendation as applied, and approve."""
        instance = self.engine.instance(project_id, step_key, scope_key)
        if not self.engine.drafts.exists(instance):
            self.run(self.engine.generate(project_id, step_key, scope_key))
        step = self.engine.registry.resolve(step_key)
        if step.kind == StepKind.REVIEW:
            draft = self.engine.drafts.get(instance)
            for recommendation in self.engine.reconciler.recommendations(step, draft.content):
                self.engine.record_decision(
                    project_id, step_key, recommendation.recommendation_id, DecisionStatus.APPLIED, scope_key=scope_key
                )
        self.engine.approve(project_id, step_key, scope_key)

    def through_segments(self, project_id: str) -> list[str]:
        for step_key in ("portrait", "portrait_review", "portrait_final", "segments", "segments_review", "segments_final"):
            self.complete(project_id, step_key)
        return [segment.segment_id for segment in self.engine.entities.list_segments(project_id)]

    def through_segment(self, project_id: str, segment_id: str, *step_keys: str) -> None:
        for step_key in step_keys:
            self.complete(project_id, step_key, segment_id)


SEGMENT_CHAIN = ("segment_details", "jobs", "preferences", "difficulties", "triggers", "pains", "pains_ranking")


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def store(tmp_path: Path) -> FileArtifactStore:
    return FileArtifactStore(tmp_path / "store")


@pytest.fixture
def engine(store: FileArtifactStore, provider: ScriptedProvider) -> WorkflowEngine:
    return WorkflowEngine(
        store,
        provider,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0),
        concurrency=3,
    )


@pytest.fixture
def pipeline(engine: WorkflowEngine, provider: ScriptedProvider) -> Pipeline:
    return Pipeline(engine, provider)


@pytest.fixture
def segment_chain() -> tuple[str, ...]:
    return SEGMENT_CHAIN
