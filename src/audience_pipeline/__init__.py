from importlib.metadata import version

from .batch import BatchOrchestrator
from .canonical import content_fingerprint, to_canonical_json
from .drafts import DraftManager
from .entities import EntityRepository
from .errors import (
    AlreadyExists,
    ContentValidationError,
    GenerationFatalError,
    GenerationTransientError,
    IncompleteDecisions,
    InvalidScope,
    MalformedOutputError,
    MissingPrerequisite,
    OrphanReference,
    RecordNotFound,
    RetryExhausted,
    UnknownRecommendation,
    UnknownStep,
    WorkflowError,
)
from .llm import GenerationProvider, OpenAIGenerationProvider, parse_json_response
from .models import (
    ApprovalResult,
    ApprovedArtifact,
    BatchResult,
    Decision,
    DecisionStatus,
    Draft,
    FilteredChangeSet,
    OnboardingData,
    Project,
    Recommendation,
    StepInstance,
    StepKind,
    StepScope,
    StepStatus,
    StepSummary,
)
from .reconcile import DecisionReconciler
from .registry import StepDef, StepDefinitionRegistry
from .retry import RetryPolicy, with_retry
from .settings import RuntimeSettings
from .status import StepStatusResolver
from .steps import default_registry
from .store import ArtifactStore, FileArtifactStore, RecordScope
from .workflow import WorkflowEngine


def get_version() -> str:
    try:
        return version("audience-pipeline")
    except Exception:
        return "0.0.0"


__all__ = [
    "AlreadyExists",
    "ApprovalResult",
    "ApprovedArtifact",
    "ArtifactStore",
    "BatchOrchestrator",
    "BatchResult",
    "ContentValidationError",
    "Decision",
    "DecisionReconciler",
    "DecisionStatus",
    "Draft",
    "DraftManager",
    "EntityRepository",
    "FileArtifactStore",
    "FilteredChangeSet",
    "GenerationFatalError",
    "GenerationProvider",
    "GenerationTransientError",
    "IncompleteDecisions",
    "InvalidScope",
    "MalformedOutputError",
    "MissingPrerequisite",
    "OnboardingData",
    "OpenAIGenerationProvider",
    "OrphanReference",
    "Project",
    "Recommendation",
    "RecordNotFound",
    "RecordScope",
    "RetryExhausted",
    "RetryPolicy",
    "RuntimeSettings",
    "StepDef",
    "StepDefinitionRegistry",
    "StepInstance",
    "StepKind",
    "StepScope",
    "StepStatus",
    "StepStatusResolver",
    "StepSummary",
    "UnknownRecommendation",
    "UnknownStep",
    "WorkflowEngine",
    "WorkflowError",
    "content_fingerprint",
    "default_registry",
    "parse_json_response",
    "to_canonical_json",
    "with_retry",
]
