from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .models import StepInstance


class WorkflowError(Exception):
    """Base class for every error raised by the generation workflow."""


class UnknownStep(WorkflowError):
    def __init__(self, step_key: str) -> None:
        super().__init__(f"Unknown step: {step_key!r}")
        self.step_key = step_key


class RecordNotFound(WorkflowError):
    def __init__(self, what: str, key: str) -> None:
        super().__init__(f"{what} not found: {key}")
        self.what = what
        self.key = key


class AlreadyExists(WorkflowError):
    """A record with the same key was written first.

    Callers generating drafts treat this as "already in progress".
    """

    def __init__(self, key: str) -> None:
        super().__init__(f"Record already exists: {key}")
        self.key = key


class MissingPrerequisite(WorkflowError):
    def __init__(self, instance: "StepInstance", missing: Iterable["StepInstance"]) -> None:
        self.instance = instance
        self.missing = list(missing)
        labels = ", ".join(item.label for item in self.missing)
        super().__init__(f"Complete {labels} before generating {instance.label}")


class InvalidScope(WorkflowError):
    def __init__(self, step_key: str, scope_key: str, reason: str) -> None:
        super().__init__(f"Invalid scope {scope_key!r} for step {step_key}: {reason}")
        self.step_key = step_key
        self.scope_key = scope_key
        self.reason = reason


class ContentValidationError(WorkflowError, ValueError):
    def __init__(self, step_key: str, detail: str) -> None:
        super().__init__(f"Content for step {step_key} failed validation: {detail}")
        self.step_key = step_key
        self.detail = detail


class GenerationTransientError(WorkflowError):
    """Provider timeout, rate limit, 5xx, or unparseable output. Retryable."""


class MalformedOutputError(GenerationTransientError):
    def __init__(self, message: str, *, preview: str = "") -> None:
        super().__init__(message)
        self.preview = preview


class GenerationFatalError(WorkflowError):
    """Provider rejected the request outright (bad request, auth). Not retried."""


class RetryExhausted(WorkflowError):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class IncompleteDecisions(WorkflowError):
    def __init__(self, instance: "StepInstance", missing_ids: Iterable[str]) -> None:
        self.instance = instance
        self.missing_ids = sorted(missing_ids)
        super().__init__(
            f"Cannot approve {instance.label}: undecided recommendations {', '.join(self.missing_ids)}"
        )


class UnknownRecommendation(WorkflowError, ValueError):
    def __init__(self, recommendation_id: str) -> None:
        super().__init__(f"Review draft has no recommendation {recommendation_id!r}")
        self.recommendation_id = recommendation_id


class OrphanReference(WorkflowError):
    """A top-set entry points at a pain, or a pain at a segment, that no longer exists."""

    def __init__(self, step_key: str, scope_keys: Iterable[str]) -> None:
        self.step_key = step_key
        self.scope_keys = sorted(scope_keys)
        super().__init__(f"Step {step_key} references missing records: {', '.join(self.scope_keys)}")
