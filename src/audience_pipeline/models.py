from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class StepScope(str, Enum):
    PROJECT = "project"
    SEGMENT = "segment"
    PAIN = "pain"


class StepKind(str, Enum):
    GENERATE = "generate"
    REVIEW = "review"
    FINALIZE = "finalize"


class StepStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked_pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class DecisionStatus(str, Enum):
    APPLIED = "applied"
    EDITED = "edited"
    DISMISSED = "dismissed"


INCLUDED_DECISIONS: frozenset[DecisionStatus] = frozenset({DecisionStatus.APPLIED, DecisionStatus.EDITED})


class StepInstance(BaseModel):
    """One (project, step, scope) node of the generation graph."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    step_key: str
    scope_key: str = ""

    @property
    def label(self) -> str:
        if self.scope_key:
            return f"{self.step_key}[{self.scope_key}]"
        return self.step_key


class OnboardingData(BaseModel):
    brand_name: str
    product_service: str
    product_format: str = ""
    problems: list[str] = Field(default_factory=list)
    benefits: list[str] = Field(default_factory=list)
    usp: str = ""
    geography: str = ""
    business_model: str = ""
    price_segment: str = ""
    ideal_customer: str | None = None
    competitors: list[str] = Field(default_factory=list)
    differentiation: str = ""
    not_audience: str | None = None
    additional_context: str | None = None


class Project(BaseModel):
    project_id: str = Field(default_factory=_new_id)
    name: str
    onboarding: OnboardingData
    current_step: str | None = None
    completed: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Decision(BaseModel):
    recommendation_id: str
    status: DecisionStatus
    original_text: str = ""
    edited_text: str | None = None
    decided_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _edited_requires_text(self) -> "Decision":
        if self.status == DecisionStatus.EDITED and not (self.edited_text or "").strip():
            raise ValueError("edited decisions require edited_text")
        return self


class Draft(BaseModel):
    """Mutable pre-approval content for exactly one step instance."""

    draft_id: str = Field(default_factory=_new_id)
    instance: StepInstance
    content: dict[str, Any]
    version: int = 1
    decisions: dict[str, Decision] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ApprovedArtifact(BaseModel):
    instance: StepInstance
    content: dict[str, Any]
    decisions: dict[str, Decision] = Field(default_factory=dict)
    source_draft_id: str
    source_version: int
    fingerprint: str
    approved_at: datetime = Field(default_factory=_utcnow)


class ApprovalResult(BaseModel):
    artifact: ApprovedArtifact
    updated: bool
    unlocked: list[str] = Field(default_factory=list)
    project_completed: bool = False


class Recommendation(BaseModel):
    """A suggested change embedded in a review draft, addressed as ``{kind}-{index}``."""

    recommendation_id: str
    kind: str
    category: str
    index: int
    text: str
    item: dict[str, Any]


class FilteredChangeSet(BaseModel):
    """Accepted recommendations grouped by review category, in source order."""

    categories: dict[str, list[dict[str, Any]]]

    @property
    def total(self) -> int:
        return sum(len(items) for items in self.categories.values())


class GenerationRequest(BaseModel):
    prompt: str
    system_prompt: str | None = None
    max_tokens: int | None = None


class SegmentRecord(BaseModel):
    segment_id: str = Field(default_factory=_new_id)
    project_id: str
    segment_index: int
    name: str
    description: str = ""
    sociodemographics: str = ""


class PainRecord(BaseModel):
    pain_id: str = Field(default_factory=_new_id)
    project_id: str
    segment_id: str
    pain_index: int
    name: str
    description: str = ""
    deep_triggers: list[str] = Field(default_factory=list)
    examples: list[str] = Field(default_factory=list)


class RankingRecord(BaseModel):
    project_id: str
    segment_id: str
    pain_id: str
    impact_score: float = 0.0
    is_top_pain: bool = False
    ranking_reasoning: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)


class HistoryEntry(BaseModel):
    entry_id: str = Field(default_factory=_new_id)
    instance: StepInstance
    operation: str
    previous_fingerprint: str | None = None
    new_fingerprint: str
    recorded_at: datetime = Field(default_factory=_utcnow)


class StepProgress(BaseModel):
    scope_key: str
    status: StepStatus


class StepSummary(BaseModel):
    """Presentation-facing status of one step across all of its instances."""

    status: StepStatus
    has_draft: bool
    has_approved: bool


class BatchFailure(BaseModel):
    scope_key: str
    error_type: str
    message: str


class BatchResult(BaseModel):
    step_key: str
    requested: list[str] = Field(default_factory=list)
    found_existing: list[str] = Field(default_factory=list)
    succeeded: list[str] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)
    skipped: list[BatchFailure] = Field(default_factory=list)
    orphans: list[str] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "requested": len(self.requested),
            "found": len(self.found_existing),
            "generated": len(self.succeeded),
            "errored": len(self.failed),
            "skipped": len(self.skipped),
            "orphans": len(self.orphans),
        }


class ReconciliationReport(BaseModel):
    project_id: str
    orphan_rankings: list[str] = Field(default_factory=list)
    orphan_pains: list[str] = Field(default_factory=list)
    stale_drafts: list[StepInstance] = Field(default_factory=list)
    pruned: bool = False
