"""Per-step content schemas.

Every draft and approved artifact stores a plain JSON object whose shape is
fixed by the step that produced it. The schemas below validate that object at
the Draft Manager boundary; ``STEP_CONTENT_SCHEMAS`` maps step keys to them.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ContentValidationError


class StepContent(BaseModel):
    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Portrait block
# ---------------------------------------------------------------------------

class DemographicsDetailed(BaseModel):
    age_range: str = ""
    gender_distribution: str = ""
    income_level: str = ""
    education: str = ""
    location: str = ""
    occupation: str = ""
    family_status: str = ""


class PsychographicsDetailed(BaseModel):
    values_beliefs: list[str] = Field(default_factory=list)
    lifestyle_habits: list[str] = Field(default_factory=list)
    interests_hobbies: list[str] = Field(default_factory=list)
    personality_traits: list[str] = Field(default_factory=list)


class PortraitContent(StepContent):
    sociodemographics: str
    psychographics: str
    demographics_detailed: DemographicsDetailed = Field(default_factory=DemographicsDetailed)
    psychographics_detailed: PsychographicsDetailed = Field(default_factory=PsychographicsDetailed)


class ChangeItem(BaseModel):
    current: str
    suggested: str
    reasoning: str = ""


class AdditionItem(BaseModel):
    addition: str
    reasoning: str = ""


class RemovalItem(BaseModel):
    removal: str
    reasoning: str = ""


class PortraitReviewContent(StepContent):
    what_to_change: list[ChangeItem] = Field(default_factory=list)
    what_to_add: list[AdditionItem] = Field(default_factory=list)
    what_to_remove: list[RemovalItem] = Field(default_factory=list)
    reasoning: str = ""


class PortraitFinalContent(PortraitContent):
    changes_applied: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Segmentation block
# ---------------------------------------------------------------------------

class SegmentItem(BaseModel):
    segment_index: int
    name: str
    description: str = ""
    sociodemographics: str = ""


class SegmentsContent(StepContent):
    segments: list[SegmentItem] = Field(min_length=1)


class OverlapItem(BaseModel):
    segments: list[int]
    overlap_description: str
    recommendation: str


class BreadthItem(BaseModel):
    segment: int
    issue: str
    recommendation: str


class MissingSegmentItem(BaseModel):
    suggested_name: str
    description: str
    reasoning: str = ""


class SegmentsReviewContent(StepContent):
    segment_overlaps: list[OverlapItem] = Field(default_factory=list)
    too_broad: list[BreadthItem] = Field(default_factory=list)
    too_narrow: list[BreadthItem] = Field(default_factory=list)
    missing_segments: list[MissingSegmentItem] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class FinalSegmentItem(SegmentItem):
    changes_applied: list[str] = Field(default_factory=list)
    is_new: bool = False


class SegmentsFinalContent(StepContent):
    segments: list[FinalSegmentItem] = Field(min_length=1)
    summary: str = ""


# ---------------------------------------------------------------------------
# Per-segment analysis
# ---------------------------------------------------------------------------

class NeedItem(BaseModel):
    need: str
    intensity: str = ""


class SegmentTriggerItem(BaseModel):
    trigger: str
    trigger_moment: str = ""


class CoreValueItem(BaseModel):
    value: str
    manifestation: str = ""


class ObjectionItem(BaseModel):
    objection: str
    root_cause: str = ""
    how_to_overcome: str = ""


class SegmentDetailsContent(StepContent):
    needs: list[NeedItem] = Field(default_factory=list)
    triggers: list[SegmentTriggerItem] = Field(default_factory=list)
    core_values: list[CoreValueItem] = Field(default_factory=list)
    awareness_level: str = ""
    objections: list[ObjectionItem] = Field(default_factory=list)


class JobItem(BaseModel):
    job: str
    why_it_matters: str = ""
    how_product_helps: str = ""


class JobsContent(StepContent):
    functional_jobs: list[JobItem] = Field(default_factory=list)
    emotional_jobs: list[JobItem] = Field(default_factory=list)
    social_jobs: list[JobItem] = Field(default_factory=list)


class PreferenceItem(BaseModel):
    name: str
    description: str = ""
    importance: str = ""
    reasoning: str = ""


class PreferencesContent(StepContent):
    preferences: list[PreferenceItem] = Field(min_length=1)


class DifficultyItem(BaseModel):
    name: str
    description: str = ""
    frequency: str = ""
    emotional_impact: str = ""


class DifficultiesContent(StepContent):
    difficulties: list[DifficultyItem] = Field(min_length=1)


class TriggerItem(BaseModel):
    name: str
    description: str = ""
    psychological_basis: str = ""
    trigger_moment: str = ""
    messaging_angle: str = ""


class TriggersContent(StepContent):
    triggers: list[TriggerItem] = Field(min_length=1)


class PainItem(BaseModel):
    pain_index: int
    name: str
    description: str = ""
    deep_triggers: list[str] = Field(default_factory=list)
    examples: list[str] = Field(default_factory=list)


class PainsContent(StepContent):
    pains: list[PainItem] = Field(min_length=1)


class RankingItem(BaseModel):
    pain_id: str
    impact_score: float
    is_top_pain: bool
    ranking_reasoning: str = ""


class PainsRankingContent(StepContent):
    rankings: list[RankingItem] = Field(min_length=1)


class ChannelStrategyContent(StepContent):
    primary_platforms: list[dict[str, Any]] = Field(default_factory=list)
    content_preferences: list[dict[str, Any]] = Field(default_factory=list)
    trusted_sources: list[dict[str, Any]] = Field(default_factory=list)
    communities: list[dict[str, Any]] = Field(default_factory=list)


class CompetitiveIntelligenceContent(StepContent):
    alternatives_tried: list[dict[str, Any]] = Field(default_factory=list)
    current_workarounds: list[dict[str, Any]] = Field(default_factory=list)
    switching_barriers: list[dict[str, Any]] = Field(default_factory=list)


class PricingPsychologyContent(StepContent):
    budget_context: dict[str, Any] = Field(default_factory=dict)
    price_perception: dict[str, Any] = Field(default_factory=dict)
    value_anchors: list[dict[str, Any]] = Field(default_factory=list)
    willingness_to_pay_signals: list[dict[str, Any]] = Field(default_factory=list)


class TrustFrameworkContent(StepContent):
    baseline_trust: dict[str, Any] = Field(default_factory=dict)
    proof_hierarchy: list[dict[str, Any]] = Field(default_factory=list)
    trusted_authorities: list[dict[str, Any]] = Field(default_factory=list)
    red_flags: list[str] = Field(default_factory=list)


class JtbdContextContent(StepContent):
    job_contexts: list[dict[str, Any]] = Field(default_factory=list)
    job_priority_ranking: list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Per-pain messaging
# ---------------------------------------------------------------------------

class EmotionalAspect(BaseModel):
    emotion: str
    intensity: str = ""
    description: str = ""
    self_image_impact: str = ""
    connected_fears: list[str] = Field(default_factory=list)
    blocked_desires: list[str] = Field(default_factory=list)


class BehavioralPattern(BaseModel):
    pattern: str
    description: str = ""
    frequency: str = ""
    coping_mechanism: str = ""
    avoidance: str = ""


class BuyingSignal(BaseModel):
    signal: str
    readiness_level: str = ""
    messaging_angle: str = ""
    proof_needed: str = ""


class CanvasContent(StepContent):
    emotional_aspects: list[EmotionalAspect] = Field(min_length=1)
    behavioral_patterns: list[BehavioralPattern] = Field(default_factory=list)
    buying_signals: list[BuyingSignal] = Field(default_factory=list)


class DifferentAngle(BaseModel):
    angle: str
    narrative: str = ""


class CanvasExtendedContent(StepContent):
    extended_analysis: str
    different_angles: list[DifferentAngle] = Field(default_factory=list)
    journey_description: str = ""
    emotional_peaks: str = ""
    purchase_moment: str = ""
    post_purchase: str = ""


class OverviewContent(StepContent):
    executive_summary: str
    key_insights: list[str] = Field(default_factory=list)
    priority_segments: list[dict[str, Any]] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)


STEP_CONTENT_SCHEMAS: dict[str, type[StepContent]] = {
    "portrait": PortraitContent,
    "portrait_review": PortraitReviewContent,
    "portrait_final": PortraitFinalContent,
    "segments": SegmentsContent,
    "segments_review": SegmentsReviewContent,
    "segments_final": SegmentsFinalContent,
    "segment_details": SegmentDetailsContent,
    "jobs": JobsContent,
    "preferences": PreferencesContent,
    "difficulties": DifficultiesContent,
    "triggers": TriggersContent,
    "pains": PainsContent,
    "pains_ranking": PainsRankingContent,
    "channel_strategy": ChannelStrategyContent,
    "competitive_intelligence": CompetitiveIntelligenceContent,
    "pricing_psychology": PricingPsychologyContent,
    "trust_framework": TrustFrameworkContent,
    "jtbd_context": JtbdContextContent,
    "canvas": CanvasContent,
    "canvas_extended": CanvasExtendedContent,
    "overview": OverviewContent,
}


def validate_content(schema: type[StepContent], step_key: str, content: Any) -> dict[str, Any]:
    """Validate *content* against *schema* and return its normalized JSON form.

    Args:
        schema: Pydantic model class for the step.
        step_key: Step identifier, used in error messages.
        content: Candidate content (usually parsed provider output or an edit).

    Returns:
        The validated content dumped back to JSON-compatible primitives.

    Raises:
        ContentValidationError: If *content* is not an object or fails the schema.
    """
    if not isinstance(content, dict):
        raise ContentValidationError(step_key, f"expected a JSON object, got {type(content).__name__}")
    try:
        return schema.model_validate(content).model_dump(mode="json")
    except ValidationError as exc:
        raise ContentValidationError(step_key, str(exc)) from exc
