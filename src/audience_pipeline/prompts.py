"""Request builders for every step of the audience research pipeline.

Each builder reads only approved inputs from a ``RequestContext`` and returns
a ``GenerationRequest`` whose prompt asks for a single JSON object matching
the step's content schema.
"""

from __future__ import annotations

import json
from typing import Any, Iterable

from .models import GenerationRequest, OnboardingData, PainRecord, SegmentRecord
from .registry import RequestContext

SYSTEM_PROMPT = (
    "You are an expert marketing strategist specializing in audience research and customer psychology. "
    "Always respond in English, regardless of input language. "
    "Return ONLY valid JSON with no markdown fences and no commentary."
)

FIELD_SYSTEM_PROMPT = (
    "You are an expert marketing strategist and copywriter specializing in audience research. "
    "You generate content for exactly one field of an audience research document. "
    "Be specific, avoid generic language, do not include labels or field names, "
    "and respond with ONLY the content."
)


def _bullets(items: Iterable[Any]) -> str:
    lines = [f"- {item}" for item in items if str(item).strip()]
    return "\n".join(lines) if lines else "- (none)"


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def brand_context(onboarding: OnboardingData) -> str:
    lines = [
        "## Brand Context",
        f"Brand: {onboarding.brand_name}",
        f"Product: {onboarding.product_service}",
    ]
    if onboarding.product_format:
        lines.append(f"Format: {onboarding.product_format}")
    lines.append(f"Geography: {onboarding.geography or 'not specified'}")
    lines.append(f"Price Segment: {onboarding.price_segment or 'not specified'}")
    if onboarding.business_model:
        lines.append(f"Business Model: {onboarding.business_model}")
    if onboarding.usp:
        lines.append(f"USP: {onboarding.usp}")
    if onboarding.problems:
        lines.append("Problems Solved:\n" + _bullets(onboarding.problems))
    if onboarding.benefits:
        lines.append("Benefits:\n" + _bullets(onboarding.benefits))
    if onboarding.competitors:
        lines.append("Competitors:\n" + _bullets(onboarding.competitors))
    if onboarding.differentiation:
        lines.append(f"Differentiation: {onboarding.differentiation}")
    if onboarding.ideal_customer:
        lines.append(f"Known Ideal Customer: {onboarding.ideal_customer}")
    if onboarding.not_audience:
        lines.append(f"NOT Target Audience: {onboarding.not_audience}")
    if onboarding.additional_context:
        lines.append(f"Additional Context: {onboarding.additional_context}")
    return "\n".join(lines)


def segment_context(segment: SegmentRecord | None) -> str:
    if segment is None:
        return "## Segment\n(unknown)"
    return (
        "## Segment\n"
        f"Name: {segment.name}\n"
        f"Description: {segment.description}\n"
        f"Sociodemographics: {segment.sociodemographics}"
    )


def pain_context(pain: PainRecord | None) -> str:
    if pain is None:
        return "## Pain Point\n(unknown)"
    return (
        "## Pain Point to Analyze\n"
        f"Name: {pain.name}\n"
        f"Description: {pain.description}\n"
        f"Deep Triggers:\n{_bullets(pain.deep_triggers)}\n"
        f"Examples:\n{_bullets(pain.examples)}"
    )


def portrait_summary(portrait: dict[str, Any]) -> str:
    return (
        "## Audience Portrait\n"
        f"Socio-demographics:\n{portrait.get('sociodemographics', '')}\n\n"
        f"Psychographics:\n{portrait.get('psychographics', '')}"
    )


def _request(*sections: str, output: dict[str, Any]) -> GenerationRequest:
    body = "\n\n".join(section for section in sections if section)
    prompt = f"{body}\n\n## Output Format\n\nReturn ONLY valid JSON shaped like:\n\n{_dump(output)}"
    return GenerationRequest(prompt=prompt, system_prompt=SYSTEM_PROMPT)


def _accepted(ctx: RequestContext, category: str) -> str:
    if ctx.change_set is None:
        return "[]"
    return _dump(ctx.change_set.categories.get(category, []))


# ---------------------------------------------------------------------------
# Portrait block
# ---------------------------------------------------------------------------

def build_portrait(ctx: RequestContext) -> GenerationRequest:
    return _request(
        brand_context(ctx.project.onboarding),
        "## Task\n\nCreate a comprehensive portrait of the target audience: socio-demographics "
        "(age, gender, income, education, location, occupation, family status) and psychographics "
        "(values, lifestyle, interests, personality traits).",
        output={
            "sociodemographics": "Comprehensive text description...",
            "psychographics": "Comprehensive text description...",
            "demographics_detailed": {"age_range": "32-55 years", "income_level": "..."},
            "psychographics_detailed": {"values_beliefs": ["..."], "personality_traits": ["..."]},
        },
    )


def build_portrait_review(ctx: RequestContext) -> GenerationRequest:
    return _request(
        portrait_summary(ctx.content("portrait")),
        brand_context(ctx.project.onboarding),
        "## Task\n\nCritically review this portrait. What would you CHANGE and why? What is MISSING "
        "that should be added? What should be REMOVED as irrelevant? Be specific and give reasoning.",
        output={
            "what_to_change": [{"current": "...", "suggested": "...", "reasoning": "..."}],
            "what_to_add": [{"addition": "...", "reasoning": "..."}],
            "what_to_remove": [{"removal": "...", "reasoning": "..."}],
            "reasoning": "Overall assessment...",
        },
    )


def build_portrait_final(ctx: RequestContext) -> GenerationRequest:
    return _request(
        portrait_summary(ctx.content("portrait")),
        "## Accepted Review Feedback\n\n"
        f"Changes to make:\n{_accepted(ctx, 'what_to_change')}\n\n"
        f"Additions:\n{_accepted(ctx, 'what_to_add')}\n\n"
        f"Removals:\n{_accepted(ctx, 'what_to_remove')}",
        "## Task\n\nCreate the FINAL portrait by applying ONLY the accepted feedback above. "
        "Do not introduce changes that are not listed.",
        output={
            "sociodemographics": "Improved description...",
            "psychographics": "Improved description...",
            "demographics_detailed": {},
            "psychographics_detailed": {},
            "changes_applied": ["Applied change 1...", "Added X...", "Removed Y..."],
        },
    )


# ---------------------------------------------------------------------------
# Segmentation block
# ---------------------------------------------------------------------------

def build_segments(ctx: RequestContext) -> GenerationRequest:
    return _request(
        brand_context(ctx.project.onboarding),
        portrait_summary(ctx.content("portrait_final")),
        "## Task\n\nSplit this audience into 3-6 distinct, non-overlapping segments. "
        "Each segment needs a memorable name, a description and its socio-demographic profile.",
        output={
            "segments": [
                {"segment_index": 1, "name": "...", "description": "...", "sociodemographics": "..."}
            ]
        },
    )


def build_segments_review(ctx: RequestContext) -> GenerationRequest:
    return _request(
        "## Current Segments\n\n" + _dump(ctx.content("segments").get("segments", [])),
        portrait_summary(ctx.content("portrait_final")),
        "## Task\n\nReview the segmentation. Identify overlapping segments, segments that are too broad "
        "or too narrow, and segments that are missing. Refer to segments by their segment_index.",
        output={
            "segment_overlaps": [{"segments": [1, 2], "overlap_description": "...", "recommendation": "..."}],
            "too_broad": [{"segment": 3, "issue": "...", "recommendation": "..."}],
            "too_narrow": [{"segment": 4, "issue": "...", "recommendation": "..."}],
            "missing_segments": [{"suggested_name": "...", "description": "...", "reasoning": "..."}],
            "recommendations": ["..."],
        },
    )


def build_segments_final(ctx: RequestContext) -> GenerationRequest:
    return _request(
        "## Current Segments\n\n" + _dump(ctx.content("segments").get("segments", [])),
        "## Accepted Review Feedback\n\n"
        f"Overlaps to resolve:\n{_accepted(ctx, 'segment_overlaps')}\n\n"
        f"Too broad:\n{_accepted(ctx, 'too_broad')}\n\n"
        f"Too narrow:\n{_accepted(ctx, 'too_narrow')}\n\n"
        f"Missing segments to add:\n{_accepted(ctx, 'missing_segments')}",
        "## Task\n\nProduce the FINAL segment list by merging ONLY the accepted feedback above into the "
        "current segments. Keep segments untouched when no accepted feedback refers to them.",
        output={
            "segments": [
                {
                    "segment_index": 1,
                    "name": "...",
                    "description": "...",
                    "sociodemographics": "...",
                    "changes_applied": ["..."],
                    "is_new": False,
                }
            ],
            "summary": "What changed and why...",
        },
    )


# ---------------------------------------------------------------------------
# Per-segment analysis
# ---------------------------------------------------------------------------

def _segment_base(ctx: RequestContext, *previous: str) -> list[str]:
    sections = [
        brand_context(ctx.project.onboarding),
        portrait_summary(ctx.content("portrait_final")),
        segment_context(ctx.segment),
    ]
    for step_key in previous:
        if step_key in ctx.artifacts:
            title = step_key.replace("_", " ").title()
            sections.append(f"## {title}\n\n{_dump(ctx.content(step_key))}")
    return sections


def build_segment_details(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx),
        "## Task\n\nAnalyze this segment in depth: needs, purchase triggers, core values, "
        "awareness level and objections with how to overcome them.",
        output={
            "needs": [{"need": "...", "intensity": "high"}],
            "triggers": [{"trigger": "...", "trigger_moment": "..."}],
            "core_values": [{"value": "...", "manifestation": "..."}],
            "awareness_level": "problem_aware",
            "objections": [{"objection": "...", "root_cause": "...", "how_to_overcome": "..."}],
        },
    )


def build_jobs(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "segment_details"),
        "## Task\n\nDescribe the Jobs to Be Done for this segment: functional, emotional and social jobs.",
        output={
            "functional_jobs": [{"job": "...", "why_it_matters": "...", "how_product_helps": "..."}],
            "emotional_jobs": [{"job": "...", "why_it_matters": "...", "how_product_helps": "..."}],
            "social_jobs": [{"job": "...", "why_it_matters": "...", "how_product_helps": "..."}],
        },
    )


def build_preferences(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "segment_details", "jobs"),
        "## Task\n\nList 5-8 preferences and expectations this segment has toward products like this one.",
        output={"preferences": [{"name": "...", "description": "...", "importance": "high", "reasoning": "..."}]},
    )


def build_difficulties(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "segment_details", "jobs", "preferences"),
        "## Task\n\nList 5-8 difficulties and obstacles this segment faces when trying to get the jobs done.",
        output={
            "difficulties": [
                {"name": "...", "description": "...", "frequency": "daily", "emotional_impact": "..."}
            ]
        },
    )


def build_triggers(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "segment_details", "jobs", "preferences", "difficulties"),
        "## Task\n\nIdentify 5-8 purchase triggers: the situations and realizations that make this "
        "segment ready to buy.",
        output={
            "triggers": [
                {
                    "name": "...",
                    "description": "...",
                    "psychological_basis": "...",
                    "trigger_moment": "...",
                    "messaging_angle": "...",
                }
            ]
        },
    )


def build_pains(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "segment_details", "jobs", "preferences", "difficulties", "triggers"),
        "## Task\n\nIdentify 6-10 DEEP PSYCHOLOGICAL PAIN POINTS for this segment (fear-based, "
        "aspiration-based, avoidance and identity pains). For each give a name, a 2-3 sentence "
        "description, 3-5 deep triggers and 2-3 real-world examples with quotes.",
        output={
            "pains": [
                {
                    "pain_index": 1,
                    "name": "Fear of wasted investment",
                    "description": "...",
                    "deep_triggers": ["..."],
                    "examples": ["'...'"],
                }
            ]
        },
    )


def build_pains_ranking(ctx: RequestContext) -> GenerationRequest:
    pain_lines = "\n".join(
        f"{pain.pain_index}. [{pain.pain_id}] {pain.name}\n   {pain.description}" for pain in ctx.segment_pains
    )
    return _request(
        segment_context(ctx.segment),
        f"## Pains to Rank\n\n{pain_lines or '(none)'}",
        "## Task\n\nRank these pains by their IMPACT ON PURCHASE DECISION. Give each an impact score "
        "from 1 to 10 and mark the top 3 as is_top_pain. Use the pain ids shown in brackets.",
        output={
            "rankings": [
                {"pain_id": "<id from brackets>", "impact_score": 9, "is_top_pain": True, "ranking_reasoning": "..."}
            ]
        },
    )


def build_channel_strategy(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "segment_details", "triggers"),
        "## Task\n\nDescribe where this segment spends attention: primary platforms, content "
        "preferences, trusted sources and communities.",
        output={
            "primary_platforms": [{"platform": "...", "usage_pattern": "..."}],
            "content_preferences": [{"format": "...", "why": "..."}],
            "trusted_sources": [{"source": "...", "why_trusted": "..."}],
            "communities": [{"name": "...", "type": "..."}],
        },
    )


def build_competitive_intelligence(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "jobs", "pains"),
        "## Task\n\nAnalyze the alternatives this segment has tried, their current workarounds and "
        "the barriers that keep them from switching.",
        output={
            "alternatives_tried": [{"alternative": "...", "why_failed": "..."}],
            "current_workarounds": [{"workaround": "...", "cost": "..."}],
            "switching_barriers": [{"barrier": "...", "how_to_overcome": "..."}],
        },
    )


def build_pricing_psychology(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "pains", "competitive_intelligence"),
        "## Task\n\nDescribe this segment's pricing psychology: budget context, price perception, "
        "value anchors and willingness-to-pay signals.",
        output={
            "budget_context": {"typical_spend": "..."},
            "price_perception": {"sensitivity": "..."},
            "value_anchors": [{"anchor": "..."}],
            "willingness_to_pay_signals": [{"signal": "..."}],
        },
    )


def build_trust_framework(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "pains", "competitive_intelligence", "pricing_psychology"),
        "## Task\n\nBuild the trust framework for this segment: baseline trust, proof hierarchy, "
        "trusted authorities and red flags that destroy credibility.",
        output={
            "baseline_trust": {"level": "..."},
            "proof_hierarchy": [{"proof_type": "...", "effectiveness": "..."}],
            "trusted_authorities": [{"authority": "..."}],
            "red_flags": ["..."],
        },
    )


def build_jtbd_context(ctx: RequestContext) -> GenerationRequest:
    return _request(
        *_segment_base(ctx, "jobs", "competitive_intelligence"),
        "## Task\n\nEnhance the Jobs to Be Done with context: when each job arises, what triggers it, "
        "which alternatives compete for it and how success is measured. Rank the jobs by priority.",
        output={
            "job_contexts": [{"job": "...", "situation": "...", "success_metric": "..."}],
            "job_priority_ranking": [{"job": "...", "priority": 1}],
        },
    )


# ---------------------------------------------------------------------------
# Per-pain messaging
# ---------------------------------------------------------------------------

def build_canvas(ctx: RequestContext) -> GenerationRequest:
    return _request(
        segment_context(ctx.segment),
        pain_context(ctx.pain),
        "## Task: Canvas Analysis\n\nExplore this pain from three angles: emotional aspects, "
        "behavioral patterns and buying signals.",
        output={
            "emotional_aspects": [
                {
                    "emotion": "Frustration",
                    "intensity": "high",
                    "description": "...",
                    "self_image_impact": "...",
                    "connected_fears": ["..."],
                    "blocked_desires": ["..."],
                }
            ],
            "behavioral_patterns": [{"pattern": "...", "description": "...", "coping_mechanism": "..."}],
            "buying_signals": [{"signal": "...", "readiness_level": "...", "messaging_angle": "..."}],
        },
    )


def build_canvas_extended(ctx: RequestContext) -> GenerationRequest:
    return _request(
        segment_context(ctx.segment),
        pain_context(ctx.pain),
        "## Canvas\n\n" + _dump(ctx.content("canvas")),
        "## Task\n\nExtend the canvas into a narrative: an extended analysis, different messaging "
        "angles, the customer journey, emotional peaks, the purchase moment and post-purchase state.",
        output={
            "extended_analysis": "...",
            "different_angles": [{"angle": "...", "narrative": "..."}],
            "journey_description": "...",
            "emotional_peaks": "...",
            "purchase_moment": "...",
            "post_purchase": "...",
        },
    )


def build_overview(ctx: RequestContext) -> GenerationRequest:
    return _request(
        brand_context(ctx.project.onboarding),
        portrait_summary(ctx.content("portrait_final")),
        "## Segments\n\n" + _dump(ctx.content("segments_final").get("segments", [])),
        "## Segment JTBD Context\n\n" + _dump(ctx.contents("jtbd_context")),
        "## Top Pain Narratives\n\n"
        + _dump([item.get("extended_analysis", "") for item in ctx.contents("canvas_extended")]),
        "## Task\n\nWrite an executive overview of the audience research: a summary, the key insights, "
        "which segments to prioritize and the recommended next actions.",
        output={
            "executive_summary": "...",
            "key_insights": ["..."],
            "priority_segments": [{"segment": "...", "why": "..."}],
            "recommended_actions": ["..."],
        },
    )


# ---------------------------------------------------------------------------
# Single-field regeneration
# ---------------------------------------------------------------------------

def build_field_request(
    onboarding: OnboardingData,
    *,
    step_key: str,
    field_path: str,
    current_value: Any,
    segment: SegmentRecord | None = None,
    instructions: str | None = None,
    max_tokens: int | None = None,
) -> GenerationRequest:
    leaf = field_path.rsplit(".", 1)[-1]
    if leaf.isdigit() and "." in field_path:
        leaf = field_path.rsplit(".", 2)[-2]
    parts = [
        f"Regenerate the '{leaf.replace('_', ' ')}' field of a {step_key.replace('_', ' ')} document "
        f"for {onboarding.brand_name} ({onboarding.product_service}).",
    ]
    if segment is not None:
        parts.append(f"Segment: {segment.name}. {segment.description}")
    if instructions:
        parts.append(f"Additional context: {instructions}")
    if current_value not in (None, ""):
        parts.append(f'Current content to improve: "{current_value}"')
    else:
        parts.append("Generate fresh content.")
    parts.append("Respond with only the regenerated content, nothing else.")
    return GenerationRequest(prompt="\n\n".join(parts), system_prompt=FIELD_SYSTEM_PROMPT, max_tokens=max_tokens)
