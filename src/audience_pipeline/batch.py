from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .errors import AlreadyExists, InvalidScope, MissingPrerequisite, OrphanReference
from .models import BatchFailure, BatchResult, StepInstance

if TYPE_CHECKING:
    from .workflow import WorkflowEngine

logger = logging.getLogger(__name__)

# Outcomes that mean "not generated by this call" rather than "generation failed".
_SKIP_ERRORS = (AlreadyExists, MissingPrerequisite, InvalidScope, OrphanReference)


class BatchOrchestrator:
    """Fans one step out over its targets with bounded parallelism.

    Scope keys run in consecutive batches of ``concurrency`` items; the items
    of a batch run concurrently and a batch finishes before the next starts.
    Per-item errors are collected into the ``BatchResult`` and never abort
    sibling items.
    """

    def __init__(self, engine: "WorkflowEngine", concurrency: int = 3) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got: {concurrency}")
        self.engine = engine
        self.concurrency = concurrency

    async def run_missing(self, project_id: str, step_key: str, concurrency: int | None = None) -> BatchResult:
        """Generate drafts for every target of the step that has neither a draft nor an approval.

        Safe to re-invoke: instances generated by an earlier call are reported
        under ``found_existing`` and not generated again.
        """
        step = self.engine.registry.resolve(step_key)
        targets, orphans = self.engine.resolver.targets(project_id, step.key)
        result = BatchResult(step_key=step.key, requested=list(targets), orphans=orphans)

        pending: list[str] = []
        for scope_key in targets:
            instance = StepInstance(project_id=project_id, step_key=step.key, scope_key=scope_key)
            if self.engine.resolver.has_draft(instance) or self.engine.resolver.has_approved(instance):
                result.found_existing.append(scope_key)
            else:
                pending.append(scope_key)

        await self._run(project_id, step.key, pending, result, concurrency or self.concurrency)
        self._log_summary(result)
        return result

    async def regenerate_all(self, project_id: str, step_key: str, concurrency: int | None = None) -> BatchResult:
        """Drop the current draft of every target and generate each one afresh.

        Approved artifacts are kept; the new drafts replace them only when approved.
        """
        step = self.engine.registry.resolve(step_key)
        targets, orphans = self.engine.resolver.targets(project_id, step.key)
        result = BatchResult(step_key=step.key, requested=list(targets), orphans=orphans)
        for scope_key in targets:
            self.engine.drafts.delete(StepInstance(project_id=project_id, step_key=step.key, scope_key=scope_key))
        await self._run(project_id, step.key, list(targets), result, concurrency or self.concurrency)
        self._log_summary(result)
        return result

    async def _run(self, project_id: str, step_key: str, scope_keys: list[str], result: BatchResult, size: int) -> None:
        for start in range(0, len(scope_keys), size):
            chunk = scope_keys[start : start + size]
            logger.info("%s: generating batch %d (%s)", step_key, start // size + 1, ", ".join(chunk) or "project")
            outcomes = await asyncio.gather(
                *(self.engine.generate(project_id, step_key, scope_key) for scope_key in chunk),
                return_exceptions=True,
            )
            for scope_key, outcome in zip(chunk, outcomes):
                if isinstance(outcome, _SKIP_ERRORS):
                    logger.info("%s[%s] skipped: %s", step_key, scope_key, outcome)
                    result.skipped.append(BatchFailure(scope_key=scope_key, error_type=type(outcome).__name__, message=str(outcome)))
                elif isinstance(outcome, Exception):
                    logger.error("%s[%s] failed: %s", step_key, scope_key, outcome)
                    result.failed.append(BatchFailure(scope_key=scope_key, error_type=type(outcome).__name__, message=str(outcome)))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    result.succeeded.append(scope_key)

    @staticmethod
    def _log_summary(result: BatchResult) -> None:
        counts = result.counts()
        logger.info(
            "%s batch: requested=%d found=%d generated=%d errored=%d skipped=%d orphans=%d",
            result.step_key,
            counts["requested"],
            counts["found"],
            counts["generated"],
            counts["errored"],
            counts["skipped"],
            counts["orphans"],
        )
