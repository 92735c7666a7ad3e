from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from .batch import BatchOrchestrator
from .canonical import content_fingerprint
from .drafts import DraftManager, get_field
from .entities import EntityRepository
from .errors import (
    AlreadyExists,
    ContentValidationError,
    IncompleteDecisions,
    MalformedOutputError,
    MissingPrerequisite,
    RecordNotFound,
    UnknownRecommendation,
)
from .llm import GenerationProvider, OpenAIGenerationProvider, clean_field_text, parse_json_response
from .models import (
    ApprovalResult,
    ApprovedArtifact,
    BatchResult,
    Decision,
    DecisionStatus,
    Draft,
    GenerationRequest,
    HistoryEntry,
    OnboardingData,
    Project,
    RankingRecord,
    ReconciliationReport,
    StepInstance,
    StepKind,
    StepProgress,
    StepScope,
    StepStatus,
    StepSummary,
)
from .prompts import build_field_request
from .reconcile import DecisionReconciler
from .registry import RequestContext, StepDef, StepDefinitionRegistry
from .retry import RetryPolicy, with_retry
from .schemas import validate_content
from .settings import RuntimeSettings
from .status import StepStatusResolver, approved_scope
from .steps import default_registry
from .store import ArtifactStore, FileArtifactStore, RecordScope

logger = logging.getLogger(__name__)


def _load_artifact(payload: dict[str, Any]) -> ApprovedArtifact:
    try:
        return ApprovedArtifact.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"stored approved artifact is invalid: {exc}") from exc


class WorkflowEngine:
    """Entry point for the generation pipeline and the draft/approval workflow.

    Wires the registry, status resolver, draft manager, decision reconciler
    and batch orchestrator over one artifact store and one generation provider.
    """

    def __init__(
        self,
        store: ArtifactStore,
        provider: GenerationProvider,
        *,
        registry: StepDefinitionRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        concurrency: int = 3,
        field_max_tokens: int = 500,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.provider = provider
        self.registry = registry or default_registry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.field_max_tokens = field_max_tokens
        self._sleep = sleep
        self.entities = EntityRepository(store)
        self.drafts = DraftManager(store, self.registry)
        self.reconciler = DecisionReconciler()
        self.resolver = StepStatusResolver(self.registry, store, self.entities)
        self.batch = BatchOrchestrator(self, concurrency=concurrency)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, repo_root: Path) -> "WorkflowEngine":
        provider = OpenAIGenerationProvider(
            model_name=settings.model_name,
            temperature=settings.temperature,
            timeout=settings.request_timeout_seconds,
            default_max_tokens=settings.max_tokens,
            repo_root=repo_root,
        )
        return cls(
            FileArtifactStore(settings.store_path(repo_root)),
            provider,
            retry_policy=settings.retry_policy(),
            concurrency=settings.batch_concurrency,
            field_max_tokens=settings.field_max_tokens,
        )

    def instance(self, project_id: str, step_key: str, scope_key: str = "") -> StepInstance:
        return StepInstance(project_id=project_id, step_key=self.registry.resolve(step_key).key, scope_key=scope_key)

    # ---------------------------------------------------------------------------
    # Projects and status
    # ---------------------------------------------------------------------------

    def create_project(self, name: str, onboarding: OnboardingData | dict[str, Any]) -> Project:
        if not name.strip():
            raise ValueError("project name must be non-empty")
        data = onboarding if isinstance(onboarding, OnboardingData) else OnboardingData.model_validate(onboarding)
        project = self.entities.create_project(Project(name=name.strip(), onboarding=data))
        logger.info("project %s created (%s)", project.project_id, project.name)
        return project

    def get_project(self, project_id: str) -> Project:
        return self.entities.get_project(project_id)

    def status(self, project_id: str, step_key: str, scope_key: str = "") -> StepStatus:
        return self.resolver.status(self.instance(project_id, step_key, scope_key))

    def segment_progress(self, project_id: str, step_key: str) -> list[StepProgress]:
        return self.resolver.segment_progress(project_id, step_key)

    def project_steps(self, project_id: str) -> dict[str, StepSummary]:
        self.entities.get_project(project_id)
        return self.resolver.project_steps(project_id)

    # ---------------------------------------------------------------------------
    # Artifacts
    # ---------------------------------------------------------------------------

    def get_approved(self, instance: StepInstance) -> ApprovedArtifact:
        return _load_artifact(self.store.get(approved_scope(instance)))

    def list_approved(self, project_id: str, step_key: str) -> list[ApprovedArtifact]:
        key = self.registry.resolve(step_key).key
        return [_load_artifact(payload) for payload in self.store.list(project_id, "approved", key)]

    def resolve_artifact(self, instance: StepInstance) -> ApprovedArtifact | Draft:
        """Return the approved artifact for *instance*, falling back to its draft.

        Raises:
            RecordNotFound: If the instance has neither.
        """
        try:
            return self.get_approved(instance)
        except RecordNotFound:
            pass
        draft = self.drafts.find(instance)
        if draft is None:
            raise RecordNotFound("artifact", instance.label)
        return draft

    def history(self, project_id: str, step_key: str | None = None) -> list[HistoryEntry]:
        key = self.registry.resolve(step_key).key if step_key else None
        entries = [HistoryEntry.model_validate(payload) for payload in self.store.list(project_id, "history", key)]
        return sorted(entries, key=lambda entry: entry.recorded_at)

    # ---------------------------------------------------------------------------
    # Generation
    # ---------------------------------------------------------------------------

    def build_context(self, instance: StepInstance) -> RequestContext:
        """Collect the approved inputs the step's request builder reads."""
        step = self.registry.resolve(instance.step_key)
        artifacts: dict[str, ApprovedArtifact | list[ApprovedArtifact]] = {}
        prerequisites = self.resolver.prerequisite_instances(instance)
        for dep_key in step.prerequisites:
            dep_instances = [item for item in prerequisites if item.step_key == dep_key]
            loaded = [self.get_approved(item) for item in dep_instances]
            if step.scope == StepScope.PROJECT and self.registry.resolve(dep_key).is_fan_out:
                artifacts[dep_key] = loaded
            else:
                artifacts[dep_key] = loaded[0]

        ctx = RequestContext(
            project=self.entities.get_project(instance.project_id),
            scope_key=instance.scope_key,
            artifacts=artifacts,
        )
        if step.scope == StepScope.SEGMENT:
            ctx.segment = self.entities.get_segment(instance.project_id, instance.scope_key)
            ctx.segment_pains = self.entities.list_pains(instance.project_id, instance.scope_key)
        elif step.scope == StepScope.PAIN:
            ctx.pain = self.entities.get_pain(instance.project_id, instance.scope_key)
            ctx.segment = self.entities.get_segment(instance.project_id, ctx.pain.segment_id)
        if step.kind == StepKind.FINALIZE and step.review_step is not None:
            review = artifacts[step.review_step]
            if not isinstance(review, ApprovedArtifact):
                raise TypeError(f"{instance.label}: review input {step.review_step} must be a single approved artifact")
            review_step = self.registry.resolve(step.review_step)
            ctx.change_set = self.reconciler.filter(review_step, review.content, review.decisions)
            logger.info(
                "%s: applying %d accepted recommendations from %s",
                instance.label,
                ctx.change_set.total,
                review_step.key,
            )
        return ctx

    async def _generate_content(self, step: StepDef, request: GenerationRequest, label: str) -> dict[str, Any]:
        async def attempt() -> dict[str, Any]:
            raw = await self.provider.generate(
                request.prompt,
                system_prompt=request.system_prompt,
                max_tokens=request.max_tokens,
            )
            parsed = parse_json_response(raw)
            try:
                return validate_content(step.schema, step.key, parsed)
            except ContentValidationError as exc:
                raise MalformedOutputError(str(exc), preview=raw[:500]) from exc

        return await with_retry(attempt, self.retry_policy, label=f"generate {label}", sleep=self._sleep)

    async def generate(self, project_id: str, step_key: str, scope_key: str = "") -> Draft:
        """Generate the draft for one step instance.

        Finalize steps replace any existing draft (their input is the current
        decision set); every other step refuses to overwrite one.

        Raises:
            InvalidScope: If the scope key does not fit the step.
            MissingPrerequisite: If any prerequisite instance is not approved.
            AlreadyExists: If a draft already exists (non-finalize steps).
            RetryExhausted: If every provider attempt failed transiently.
            GenerationFatalError: If the provider rejected the request.
        """
        instance = self.instance(project_id, step_key, scope_key)
        step = self.registry.resolve(instance.step_key)
        self.resolver.validate_scope(instance)
        missing = self.resolver.missing_prerequisites(instance)
        if missing:
            raise MissingPrerequisite(instance, missing)
        if step.kind != StepKind.FINALIZE and self.drafts.exists(instance):
            raise AlreadyExists(instance.label)

        request = step.build_request(self.build_context(instance))
        content = await self._generate_content(step, request, instance.label)
        if step.kind == StepKind.FINALIZE:
            return self.drafts.replace_all(instance, content)
        return self.drafts.create(instance, content)

    async def regenerate(self, project_id: str, step_key: str, scope_key: str = "") -> Draft:
        """Discard the instance's draft and generate a new one."""
        self.drafts.delete(self.instance(project_id, step_key, scope_key))
        return await self.generate(project_id, step_key, scope_key)

    async def regenerate_field(
        self,
        project_id: str,
        draft_id: str,
        field_path: str,
        instructions: str | None = None,
    ) -> Draft:
        """Ask the provider for a new value of one text field and patch it into the draft."""
        draft = self.drafts.get_by_id(project_id, draft_id)
        instance = draft.instance
        try:
            current = get_field(draft.content, field_path)
        except (KeyError, ValueError) as exc:
            raise ContentValidationError(instance.step_key, f"no field at {field_path!r}") from exc
        if not isinstance(current, str):
            raise ContentValidationError(instance.step_key, f"{field_path!r} is not a text field")

        segment = None
        step = self.registry.resolve(instance.step_key)
        if step.scope == StepScope.SEGMENT:
            segment = self.entities.get_segment(project_id, instance.scope_key)
        elif step.scope == StepScope.PAIN:
            segment = self.entities.get_segment(project_id, self.entities.get_pain(project_id, instance.scope_key).segment_id)
        request = build_field_request(
            self.entities.get_project(project_id).onboarding,
            step_key=step.key,
            field_path=field_path,
            current_value=current,
            segment=segment,
            instructions=instructions,
            max_tokens=self.field_max_tokens,
        )

        async def attempt() -> str:
            raw = await self.provider.generate(
                request.prompt,
                system_prompt=request.system_prompt,
                max_tokens=request.max_tokens,
            )
            value = clean_field_text(raw)
            if not value:
                raise MalformedOutputError("provider returned an empty field value")
            return value

        value = await with_retry(attempt, self.retry_policy, label=f"regenerate {instance.label}.{field_path}", sleep=self._sleep)
        return self.drafts.patch_field(project_id, draft_id, field_path, value)

    async def run_missing(self, project_id: str, step_key: str, concurrency: int | None = None) -> BatchResult:
        return await self.batch.run_missing(project_id, step_key, concurrency)

    async def regenerate_all(self, project_id: str, step_key: str, concurrency: int | None = None) -> BatchResult:
        return await self.batch.regenerate_all(project_id, step_key, concurrency)

    # ---------------------------------------------------------------------------
    # Review decisions and approval
    # ---------------------------------------------------------------------------

    def record_decision(
        self,
        project_id: str,
        step_key: str,
        recommendation_id: str,
        status: DecisionStatus | str,
        edited_text: str | None = None,
        scope_key: str = "",
    ) -> Draft:
        """Upsert the human verdict on one recommendation of a review draft.

        Raises:
            ValueError: If the step is not a review step or the decision is malformed.
            RecordNotFound: If the review draft does not exist.
            UnknownRecommendation: If the draft has no such recommendation.
        """
        instance = self.instance(project_id, step_key, scope_key)
        step = self.registry.resolve(instance.step_key)
        if step.kind != StepKind.REVIEW:
            raise ValueError(f"{step.key} is not a review step")
        draft = self.drafts.get(instance)
        recommendations = {item.recommendation_id: item for item in self.reconciler.recommendations(step, draft.content)}
        if recommendation_id not in recommendations:
            raise UnknownRecommendation(recommendation_id)
        decision = Decision(
            recommendation_id=recommendation_id,
            status=DecisionStatus(status),
            original_text=recommendations[recommendation_id].text,
            edited_text=edited_text,
        )
        updated = self.drafts.set_decision(instance, decision)
        logger.info("%s: %s -> %s", instance.label, recommendation_id, decision.status.value)
        return updated

    def approve(self, project_id: str, step_key: str, scope_key: str = "") -> ApprovalResult:
        """Promote the instance's draft to its approved artifact.

        Re-approval overwrites the previous artifact and is recorded as an
        UPDATE in the history. The draft itself is kept.

        Raises:
            RecordNotFound: If the instance has no draft.
            IncompleteDecisions: If a review draft has undecided recommendations.
        """
        instance = self.instance(project_id, step_key, scope_key)
        step = self.registry.resolve(instance.step_key)
        draft = self.drafts.get(instance)
        if step.kind == StepKind.REVIEW:
            missing = self.reconciler.missing_decisions(step, draft.content, draft.decisions)
            if missing:
                raise IncompleteDecisions(instance, missing)

        artifact = ApprovedArtifact(
            instance=instance,
            content=draft.content,
            decisions=draft.decisions,
            source_draft_id=draft.draft_id,
            source_version=draft.version,
            fingerprint=content_fingerprint(draft.content),
        )
        previous = self.store.upsert(approved_scope(instance), artifact.model_dump(mode="json"))
        entry = HistoryEntry(
            instance=instance,
            operation="UPDATE" if previous is not None else "INSERT",
            previous_fingerprint=previous.get("fingerprint") if previous is not None else None,
            new_fingerprint=artifact.fingerprint,
        )
        self.store.insert(
            RecordScope(project_id, "history", instance.step_key, entry.entry_id),
            entry.model_dump(mode="json"),
        )
        if step.on_approve is not None:
            step.on_approve(self.entities, artifact)

        project = self.entities.get_project(project_id)
        project.current_step = step.key
        if step.key == self.registry.terminal_step:
            project.completed = True
        self.entities.save_project(project)

        unlocked = [
            dependent.key
            for dependent in self.registry.dependents(step.key)
            if self.resolver.step_summary(project_id, dependent.key).status != StepStatus.LOCKED
        ]
        logger.info(
            "%s approved (%s); dependents available: %s",
            instance.label,
            entry.operation,
            ", ".join(unlocked) or "none",
        )
        return ApprovalResult(
            artifact=artifact,
            updated=previous is not None,
            unlocked=unlocked,
            project_completed=project.completed,
        )

    # ---------------------------------------------------------------------------
    # Top set and reconciliation
    # ---------------------------------------------------------------------------

    def set_top_pain(self, project_id: str, pain_id: str, is_top: bool) -> RankingRecord:
        return self.entities.set_top_pain(project_id, pain_id, is_top)

    def reconcile(self, project_id: str, prune: bool = False) -> ReconciliationReport:
        """Report (and with *prune*, remove) drift between the top set and stored records.

        Finds ranking records whose pain or segment no longer exists, pain
        records whose segment is gone, drafts of per-segment steps keyed by a
        deleted segment and drafts of per-pain steps whose pain is no longer a
        current top pain. Approved artifacts are never touched. Running it
        twice yields an empty second report when pruning.
        """
        self.entities.get_project(project_id)
        report = ReconciliationReport(
            project_id=project_id,
            orphan_rankings=self.entities.orphan_rankings(project_id),
            orphan_pains=self.entities.orphan_pains(project_id),
        )
        for key in self.registry.keys():
            if not self.registry.resolve(key).is_fan_out:
                continue
            current, _ = self.resolver.targets(project_id, key)
            for draft in self.drafts.list(project_id, key):
                if draft.instance.scope_key not in current:
                    report.stale_drafts.append(draft.instance)

        if report.orphan_rankings or report.orphan_pains or report.stale_drafts:
            logger.warning(
                "project %s: %d orphan rankings, %d orphan pains, %d stale drafts",
                project_id,
                len(report.orphan_rankings),
                len(report.orphan_pains),
                len(report.stale_drafts),
            )
        if prune:
            for pain_id in report.orphan_rankings:
                self.entities.delete_ranking(project_id, pain_id)
            for pain_id in report.orphan_pains:
                self.entities.delete_pain(project_id, pain_id)
            for stale in report.stale_drafts:
                self.drafts.delete(stale)
            report.pruned = True
        return report
