from __future__ import annotations

import asyncio
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from audience_pipeline import (
    AlreadyExists,
    ApprovedArtifact,
    ContentValidationError,
    DecisionStatus,
    Draft,
    IncompleteDecisions,
    MissingPrerequisite,
    OrphanReference,
    RecordNotFound,
    RecordScope,
    StepStatus,
    UnknownRecommendation,
)


def _review_ready(pipeline) -> str:  # noqa: ANN001
    project_id = pipeline.new_project()
    for step_key in ("portrait", "portrait_review", "portrait_final", "segments"):
        pipeline.complete(project_id, step_key)
    pipeline.run(pipeline.engine.generate(project_id, "segments_review"))
    return project_id


def test_review_approval_requires_every_decision(pipeline) -> None:  # noqa: ANN001
    engine = pipeline.engine
    project_id = _review_ready(pipeline)
    decided = {
        "overlap-0": DecisionStatus.APPLIED,
        "overlap-1": DecisionStatus.DISMISSED,
        "broad-0": DecisionStatus.APPLIED,
        "narrow-0": DecisionStatus.DISMISSED,
    }
    for recommendation_id, status in decided.items():
        engine.record_decision(project_id, "segments_review", recommendation_id, status)

    with pytest.raises(IncompleteDecisions) as excinfo:
        engine.approve(project_id, "segments_review")
    assert excinfo.value.missing_ids == ["missing-0"]
    assert engine.status(project_id, "segments_review") == StepStatus.IN_PROGRESS

    engine.record_decision(project_id, "segments_review", "missing-0", DecisionStatus.DISMISSED)
    result = engine.approve(project_id, "segments_review")
    assert len(result.artifact.decisions) == 5
    assert result.updated is False
    assert "segments_final" in result.unlocked
    assert engine.status(project_id, "segments_review") == StepStatus.COMPLETED


def test_finalize_prompt_contains_only_accepted_recommendations(pipeline) -> None:  # noqa: ANN001
    engine = pipeline.engine
    project_id = _review_ready(pipeline)
    engine.record_decision(project_id, "segments_review", "overlap-0", "applied")
    engine.record_decision(project_id, "segments_review", "overlap-1", "edited", edited_text="split by life stage")
    for recommendation_id in ("broad-0", "narrow-0", "missing-0"):
        engine.record_decision(project_id, "segments_review", recommendation_id, "dismissed")
    engine.approve(project_id, "segments_review")

    pipeline.run(engine.generate(project_id, "segments_final"))
    prompt = pipeline.provider.calls_for("segments_final")[-1]
    assert "merge 1 and 2" in prompt
    assert "split by life stage" in prompt
    assert "narrow to high income" not in prompt
    assert "widen geography" not in prompt
    assert "Gift buyers" not in prompt


def test_record_decision_is_an_idempotent_upsert(pipeline) -> None:  # noqa: ANN001
    engine = pipeline.engine
    project_id = _review_ready(pipeline)
    engine.record_decision(project_id, "segments_review", "broad-0", "applied")
    draft = engine.record_decision(project_id, "segments_review", "broad-0", "dismissed")
    assert list(draft.decisions) == ["broad-0"]
    assert draft.decisions["broad-0"].status == DecisionStatus.DISMISSED
    assert draft.decisions["broad-0"].original_text == "Segment 1: narrow to high income"
    assert draft.version == 1


def test_record_decision_rejects_bad_input(pipeline) -> None:  # noqa: ANN001
    engine = pipeline.engine
    project_id = _review_ready(pipeline)
    with pytest.raises(UnknownRecommendation):
        engine.record_decision(project_id, "segments_review", "overlap-9", "applied")
    with pytest.raises(ValueError):
        engine.record_decision(project_id, "segments", "overlap-0", "applied")
    with pytest.raises(ValueError):
        engine.record_decision(project_id, "segments_review", "overlap-0", "edited")
    with pytest.raises(RecordNotFound):
        engine.record_decision(pipeline.new_project(), "portrait_review", "change-0", "applied")


def test_approval_history_and_reapproval(pipeline) -> None:  # noqa: ANN001
    engine = pipeline.engine
    project_id = pipeline.new_project()
    draft = pipeline.run(engine.generate(project_id, "portrait"))
    first = engine.approve(project_id, "portrait")
    engine.drafts.patch_field(project_id, draft.draft_id, "psychographics", "Busy parents who meal-prep on Sundays")
    second = engine.approve(project_id, "portrait")

    assert first.updated is False and second.updated is True
    assert second.artifact.source_version == 2
    assert first.artifact.fingerprint != second.artifact.fingerprint
    entries = {entry.operation: entry for entry in engine.history(project_id, "portrait")}
    assert set(entries) == {"INSERT", "UPDATE"}
    assert entries["INSERT"].previous_fingerprint is None
    assert entries["UPDATE"].previous_fingerprint == first.artifact.fingerprint
    assert entries["UPDATE"].new_fingerprint == second.artifact.fingerprint
    assert engine.get_project(project_id).current_step == "portrait"


def test_approve_without_draft_raises(pipeline) -> None:  # noqa: ANN001
    project_id = pipeline.new_project()
    with pytest.raises(RecordNotFound):
        pipeline.engine.approve(project_id, "portrait")


def test_resolve_artifact_prefers_approved(pipeline) -> None:  # noqa: ANN001
    engine = pipeline.engine
    project_id = pipeline.new_project()
    instance = engine.instance(project_id, "portrait")
    with pytest.raises(RecordNotFound):
        engine.resolve_artifact(instance)
    pipeline.run(engine.generate(project_id, "portrait"))
    assert isinstance(engine.resolve_artifact(instance), Draft)
    engine.approve(project_id, "portrait")
    assert isinstance(engine.resolve_artifact(instance), ApprovedArtifact)


def test_concurrent_generation_of_one_instance_has_one_winner(pipeline) -> None:  # noqa: ANN001
    engine = pipeline.engine
    project_id = pipeline.new_project()

    async def race() -> list[object]:
        return await asyncio.gather(
            engine.generate(project_id, "portrait"),
            engine.generate(project_id, "portrait"),
            return_exceptions=True,
        )

    outcomes = pipeline.run(race())
    assert sum(isinstance(item, Draft) for item in outcomes) == 1
    assert sum(isinstance(item, AlreadyExists) for item in outcomes) == 1
    with pytest.raises(AlreadyExists):
        pipeline.run(engine.generate(project_id, "portrait"))


def test_regenerate_field_patches_one_text_field(pipeline) -> None:  # noqa: ANN001
    engine = pipeline.engine
    project_id = pipeline.new_project()
    draft = pipeline.run(engine.generate(project_id, "portrait"))

    updated = pipeline.run(engine.regenerate_field(project_id, draft.draft_id, "psychographics", "focus on habits"))
    assert updated.version == 2
    assert updated.content["psychographics"] == "A sharper, more specific description"
    assert updated.content["sociodemographics"] == draft.content["sociodemographics"]
    prompt = pipeline.provider.calls_for("field")[-1]
    assert "Additional context: focus on habits" in prompt
    assert "Plan-ahead, research-driven buyers" in prompt

    with pytest.raises(ContentValidationError):
        pipeline.run(engine.regenerate_field(project_id, draft.draft_id, "demographics_detailed", None))


def test_reconcile_reports_and_prunes_drift(pipeline, segment_chain) -> None:  # noqa: ANN001
    engine = pipeline.engine
    pipeline.provider.segment_count = 1
    project_id = pipeline.new_project()
    (segment_id,) = pipeline.through_segments(project_id)
    pipeline.through_segment(project_id, segment_id, *segment_chain)
    top, _ = engine.entities.top_pains(project_id)
    pipeline.complete(project_id, "canvas", top[0].pain_id)
    instance = engine.instance(project_id, "canvas", top[0].pain_id)

    engine.set_top_pain(project_id, top[0].pain_id, False)
    report = engine.reconcile(project_id)
    assert report.stale_drafts == [instance]
    assert report.orphan_rankings == []
    assert engine.drafts.exists(instance)

    pruned = engine.reconcile(project_id, prune=True)
    assert pruned.pruned is True
    assert not engine.drafts.exists(instance)
    assert engine.get_approved(instance).instance == instance
    assert engine.reconcile(project_id).stale_drafts == []

    old_rankings = sorted(ranking.pain_id for ranking in engine.entities.list_rankings(project_id))
    engine.approve(project_id, "pains", segment_id)
    assert engine.reconcile(project_id).orphan_rankings == old_rankings
    engine.reconcile(project_id, prune=True)
    assert engine.entities.list_rankings(project_id) == []
    assert engine.reconcile(project_id).orphan_rankings == []


def _redo_segmentation(pipeline, project_id: str) -> str:  # noqa: ANN001
    engine = pipeline.engine
    pipeline.run(engine.generate(project_id, "segments_final"))
    result = engine.approve(project_id, "segments_final")
    assert result.updated is True
    (segment,) = engine.entities.list_segments(project_id)
    return segment.segment_id


def test_redoing_segmentation_orphans_per_pain_targets(pipeline, segment_chain) -> None:  # noqa: ANN001
    engine = pipeline.engine
    pipeline.provider.segment_count = 1
    project_id = pipeline.new_project()
    (old_segment,) = pipeline.through_segments(project_id)
    pipeline.through_segment(project_id, old_segment, *segment_chain)
    top, _ = engine.entities.top_pains(project_id)
    old_top = sorted(pain.pain_id for pain in top)
    pipeline.complete(project_id, "canvas", old_top[0])
    pipeline.complete(project_id, "canvas_extended", old_top[0])

    new_segment = _redo_segmentation(pipeline, project_id)
    assert new_segment != old_segment
    assert engine.entities.list_pains(project_id) == []

    batch = pipeline.run(engine.run_missing(project_id, "canvas"))
    assert batch.requested == []
    assert batch.orphans == old_top
    assert batch.failed == []
    assert len(pipeline.provider.calls_for("canvas")) == 1

    with pytest.raises(OrphanReference):
        pipeline.run(engine.generate(project_id, "canvas", old_top[1]))
    assert engine.project_steps(project_id)["canvas_extended"].status == StepStatus.LOCKED
    assert engine.status(project_id, "overview") == StepStatus.LOCKED
    assert engine.status(project_id, "segment_details", new_segment) == StepStatus.UNLOCKED


def test_reconcile_prunes_records_of_replaced_segments(pipeline, segment_chain) -> None:  # noqa: ANN001
    engine = pipeline.engine
    pipeline.provider.segment_count = 1
    project_id = pipeline.new_project()
    (old_segment,) = pipeline.through_segments(project_id)
    pipeline.through_segment(project_id, old_segment, *segment_chain)
    old_rankings = sorted(ranking.pain_id for ranking in engine.entities.list_rankings(project_id))
    top, _ = engine.entities.top_pains(project_id)
    pipeline.complete(project_id, "canvas", top[0].pain_id)

    _redo_segmentation(pipeline, project_id)
    report = engine.reconcile(project_id)
    assert report.orphan_rankings == old_rankings
    assert report.orphan_pains == []
    expected = {(step_key, old_segment) for step_key in segment_chain} | {("canvas", top[0].pain_id)}
    assert {(item.step_key, item.scope_key) for item in report.stale_drafts} == expected

    engine.reconcile(project_id, prune=True)
    assert engine.entities.list_rankings(project_id) == []
    assert not engine.drafts.exists(engine.instance(project_id, "segment_details", old_segment))
    assert engine.get_approved(engine.instance(project_id, "segment_details", old_segment)).content
    second = engine.reconcile(project_id)
    assert (second.orphan_rankings, second.orphan_pains, second.stale_drafts) == ([], [], [])


def test_pains_of_a_missing_segment_are_orphans(pipeline, segment_chain) -> None:  # noqa: ANN001
    engine = pipeline.engine
    pipeline.provider.segment_count = 1
    project_id = pipeline.new_project()
    (segment_id,) = pipeline.through_segments(project_id)
    pipeline.through_segment(project_id, segment_id, *segment_chain)
    pain_ids = sorted(pain.pain_id for pain in engine.entities.list_pains(project_id))
    top, _ = engine.entities.top_pains(project_id)
    engine.store.delete(RecordScope(project_id, "segments", scope_key=segment_id))

    present, orphans = engine.entities.top_pains(project_id)
    assert present == []
    assert orphans == sorted(pain.pain_id for pain in top)
    with pytest.raises(OrphanReference):
        pipeline.run(engine.generate(project_id, "canvas", top[0].pain_id))

    report = engine.reconcile(project_id, prune=True)
    assert report.orphan_pains == pain_ids
    assert engine.entities.list_pains(project_id) == []
    assert engine.entities.list_rankings(project_id) == []


def test_full_run_completes_project(pipeline, segment_chain) -> None:  # noqa: ANN001
    engine = pipeline.engine
    provider = pipeline.provider
    provider.segment_count, provider.pain_count, provider.top_count = 1, 2, 1
    project_id = pipeline.new_project()
    (segment_id,) = pipeline.through_segments(project_id)
    pipeline.through_segment(project_id, segment_id, *segment_chain, "competitive_intelligence", "jtbd_context")

    assert engine.status(project_id, "overview") == StepStatus.LOCKED
    with pytest.raises(MissingPrerequisite) as excinfo:
        pipeline.run(engine.generate(project_id, "overview"))
    assert {item.step_key for item in excinfo.value.missing} == {"canvas_extended"}

    (pain,), _ = engine.entities.top_pains(project_id)
    pipeline.complete(project_id, "canvas", pain.pain_id)
    pipeline.complete(project_id, "canvas_extended", pain.pain_id)
    assert engine.status(project_id, "overview") == StepStatus.UNLOCKED

    pipeline.run(engine.generate(project_id, "overview"))
    result = engine.approve(project_id, "overview")
    assert result.project_completed is True
    project = engine.get_project(project_id)
    assert project.completed is True
    assert project.current_step == "overview"
    assert "A week in the life of the buyer" in provider.calls_for("overview")[-1]


REPO_ROOT = Path(__file__).resolve().parents[1]


def _cli(tmp_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["AUDIENCE_STORE_ROOT"] = str(tmp_path / "store")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))
    env.pop("OPENAI_API_KEY", None)
    return subprocess.run(
        [sys.executable, "-m", "audience_pipeline", "--repo-root", str(tmp_path), *args],
        cwd=REPO_ROOT,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )


def test_cli_create_project_and_status(tmp_path: Path) -> None:
    onboarding = tmp_path / "onboarding.json"
    onboarding.write_text(json.dumps({"brand_name": "FreshBox", "product_service": "Meal kits"}), encoding="utf-8")

    created = _cli(tmp_path, "create-project", "--name", "Meal kits", "--onboarding-file", str(onboarding))
    assert created.returncode == 0, created.stderr
    project_id = json.loads(created.stdout)["project_id"]

    status = _cli(tmp_path, "status", project_id)
    assert status.returncode == 0, status.stderr
    steps = json.loads(status.stdout)
    assert steps["portrait"]["status"] == "unlocked_pending"
    assert steps["overview"]["status"] == "locked"

    blocked = _cli(tmp_path, "generate", project_id, "portrait-review")
    assert blocked.returncode == 1
    assert "Complete portrait before generating portrait_review" in blocked.stderr

    unknown = _cli(tmp_path, "approve", project_id, "validation")
    assert unknown.returncode == 1
