from __future__ import annotations

import logging

from .entities import EntityRepository
from .errors import InvalidScope, OrphanReference, RecordNotFound
from .models import StepInstance, StepProgress, StepScope, StepStatus, StepSummary
from .registry import StepDef, StepDefinitionRegistry
from .store import ArtifactStore, RecordScope

logger = logging.getLogger(__name__)


def approved_scope(instance: StepInstance) -> RecordScope:
    return RecordScope(instance.project_id, "approved", instance.step_key, instance.scope_key)


class StepStatusResolver:
    """Derives every step instance's status from stored state alone.

    Status is recomputed on each call; nothing is cached, so approvals made
    by other processes are visible immediately.
    """

    def __init__(self, registry: StepDefinitionRegistry, store: ArtifactStore, entities: EntityRepository) -> None:
        self.registry = registry
        self.store = store
        self.entities = entities

    # ---------------------------------------------------------------------------
    # Targets and scope resolution
    # ---------------------------------------------------------------------------

    def targets(self, project_id: str, step_key: str) -> tuple[list[str], list[str]]:
        """Return ``(scope keys the step should exist for, orphaned top-set ids)``.

        Project steps have the single scope key ``""``; per-segment steps one
        per current segment; per-pain steps one per pain currently marked top.
        Top-set entries whose pain record is gone are reported as orphans and
        never targeted.
        """
        step = self.registry.resolve(step_key)
        if step.scope == StepScope.PROJECT:
            return [""], []
        if step.scope == StepScope.SEGMENT:
            return [segment.segment_id for segment in self.entities.list_segments(project_id)], []
        pains, orphans = self.entities.top_pains(project_id)
        if orphans:
            logger.warning("step %s: top-set references missing pains %s", step.key, ", ".join(orphans))
        return [pain.pain_id for pain in pains], orphans

    def validate_scope(self, instance: StepInstance) -> None:
        """Check that *instance* names a scope its step may run for.

        Raises:
            InvalidScope: If the scope key is wrong for the step's fan-out kind,
                names a missing segment or pain, or names a pain outside the top set.
            OrphanReference: If the scope key is a top-set entry whose pain or
                whose segment is gone.
        """
        step = self.registry.resolve(instance.step_key)
        scope_key = instance.scope_key
        if step.scope == StepScope.PROJECT:
            if scope_key:
                raise InvalidScope(step.key, scope_key, "project-level step takes no scope key")
            return
        if not scope_key:
            raise InvalidScope(step.key, scope_key, f"a {step.scope.value} id is required")
        if step.scope == StepScope.SEGMENT:
            if not self.entities.segment_exists(instance.project_id, scope_key):
                raise InvalidScope(step.key, scope_key, "segment does not exist")
            return
        is_top = self._is_top(instance.project_id, scope_key)
        try:
            pain = self.entities.get_pain(instance.project_id, scope_key)
        except RecordNotFound:
            if is_top:
                raise OrphanReference(step.key, [scope_key]) from None
            raise InvalidScope(step.key, scope_key, "pain does not exist") from None
        if not is_top:
            raise InvalidScope(step.key, scope_key, "pain is not in the top set")
        if not self.entities.segment_exists(instance.project_id, pain.segment_id):
            raise OrphanReference(step.key, [scope_key])

    def _is_top(self, project_id: str, pain_id: str) -> bool:
        try:
            return self.entities.get_ranking(project_id, pain_id).is_top_pain
        except RecordNotFound:
            return False

    def _scope_for(self, instance: StepInstance, dependency: StepDef) -> str:
        if dependency.scope == StepScope.PROJECT:
            return ""
        step = self.registry.resolve(instance.step_key)
        if dependency.scope == step.scope:
            return instance.scope_key
        # A per-pain instance reads per-segment inputs of the pain's own segment.
        try:
            return self.entities.get_pain(instance.project_id, instance.scope_key).segment_id
        except RecordNotFound:
            raise InvalidScope(step.key, instance.scope_key, "pain does not exist") from None

    def prerequisite_instances(self, instance: StepInstance) -> list[StepInstance]:
        """Expand the step's prerequisites into concrete instances for this scope.

        A project-level step that depends on a fan-out step depends on every
        current target of that step.
        """
        step = self.registry.resolve(instance.step_key)
        resolved: list[StepInstance] = []
        for dep_key in step.prerequisites:
            dependency = self.registry.resolve(dep_key)
            if step.scope == StepScope.PROJECT and dependency.is_fan_out:
                scope_keys, _ = self.targets(instance.project_id, dep_key)
                resolved.extend(StepInstance(project_id=instance.project_id, step_key=dep_key, scope_key=key) for key in scope_keys)
                continue
            resolved.append(
                StepInstance(project_id=instance.project_id, step_key=dep_key, scope_key=self._scope_for(instance, dependency))
            )
        return resolved

    def missing_prerequisites(self, instance: StepInstance) -> list[StepInstance]:
        step = self.registry.resolve(instance.step_key)
        missing = [item for item in self.prerequisite_instances(instance) if not self.has_approved(item)]
        if step.scope == StepScope.PROJECT:
            # An aggregate over zero targets is never satisfied.
            for dep_key in step.prerequisites:
                if self.registry.resolve(dep_key).is_fan_out and not self.targets(instance.project_id, dep_key)[0]:
                    missing.append(StepInstance(project_id=instance.project_id, step_key=dep_key))
        return missing

    # ---------------------------------------------------------------------------
    # Status
    # ---------------------------------------------------------------------------

    def has_approved(self, instance: StepInstance) -> bool:
        return self.store.exists(approved_scope(instance))

    def has_draft(self, instance: StepInstance) -> bool:
        return self.store.exists(RecordScope(instance.project_id, "drafts", instance.step_key, instance.scope_key))

    def status(self, instance: StepInstance) -> StepStatus:
        if self.has_approved(instance):
            return StepStatus.COMPLETED
        if self.has_draft(instance):
            return StepStatus.IN_PROGRESS
        if self.missing_prerequisites(instance):
            return StepStatus.LOCKED
        return StepStatus.UNLOCKED

    def segment_progress(self, project_id: str, step_key: str) -> list[StepProgress]:
        step = self.registry.resolve(step_key)
        scope_keys, _ = self.targets(project_id, step.key)
        return [
            StepProgress(
                scope_key=key,
                status=self.status(StepInstance(project_id=project_id, step_key=step.key, scope_key=key)),
            )
            for key in scope_keys
        ]

    def is_step_complete(self, project_id: str, step_key: str) -> bool:
        progress = self.segment_progress(project_id, step_key)
        return bool(progress) and all(item.status == StepStatus.COMPLETED for item in progress)

    def step_summary(self, project_id: str, step_key: str) -> StepSummary:
        step = self.registry.resolve(step_key)
        scope_keys, _ = self.targets(project_id, step.key)
        instances = [StepInstance(project_id=project_id, step_key=step.key, scope_key=key) for key in scope_keys]
        statuses = [self.status(instance) for instance in instances]
        has_draft = any(self.has_draft(instance) for instance in instances)
        has_approved = any(status == StepStatus.COMPLETED for status in statuses)
        if not statuses:
            aggregate = StepStatus.LOCKED
        elif all(status == StepStatus.COMPLETED for status in statuses):
            aggregate = StepStatus.COMPLETED
        elif any(status in (StepStatus.COMPLETED, StepStatus.IN_PROGRESS) for status in statuses):
            aggregate = StepStatus.IN_PROGRESS
        elif any(status == StepStatus.UNLOCKED for status in statuses):
            aggregate = StepStatus.UNLOCKED
        else:
            aggregate = StepStatus.LOCKED
        return StepSummary(status=aggregate, has_draft=has_draft, has_approved=has_approved)

    def project_steps(self, project_id: str) -> dict[str, StepSummary]:
        """The per-project advancement map, in dependency order."""
        return {key: self.step_summary(project_id, key) for key in self.registry.topological_order()}
