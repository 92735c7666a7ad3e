from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable

from .errors import UnknownStep
from .models import ApprovedArtifact, FilteredChangeSet, GenerationRequest, PainRecord, Project, SegmentRecord, StepKind, StepScope
from .schemas import StepContent

if TYPE_CHECKING:
    from .entities import EntityRepository


@dataclass(frozen=True)
class ReviewCategory:
    """One list of recommendations inside a review step's content.

    ``field`` is the content key holding the list, ``kind`` the id prefix
    (recommendation ids are ``f"{kind}-{index}"``), and ``text`` renders one
    item as the human-readable original text of the recommendation.
    """

    field: str
    kind: str
    text: Callable[[dict[str, Any]], str]


@dataclass
class RequestContext:
    """Everything a step's request builder may read: approved inputs only."""

    project: Project
    scope_key: str
    artifacts: dict[str, ApprovedArtifact | list[ApprovedArtifact]]
    segment: SegmentRecord | None = None
    pain: PainRecord | None = None
    segment_pains: list[PainRecord] = field(default_factory=list)
    change_set: FilteredChangeSet | None = None

    def content(self, step_key: str) -> dict[str, Any]:
        artifact = self.artifacts[step_key]
        if isinstance(artifact, list):
            raise TypeError(f"{step_key} is an aggregate input; use contents()")
        return artifact.content

    def contents(self, step_key: str) -> list[dict[str, Any]]:
        artifact = self.artifacts[step_key]
        if isinstance(artifact, list):
            return [item.content for item in artifact]
        return [artifact.content]


RequestBuilder = Callable[[RequestContext], GenerationRequest]
ApprovalHook = Callable[["EntityRepository", ApprovedArtifact], None]


@dataclass(frozen=True)
class StepDef:
    key: str
    scope: StepScope
    schema: type[StepContent]
    build_request: RequestBuilder
    prerequisites: tuple[str, ...] = ()
    kind: StepKind = StepKind.GENERATE
    description: str = ""
    review_categories: tuple[ReviewCategory, ...] = ()
    review_step: str | None = None
    on_approve: ApprovalHook | None = None

    @property
    def is_fan_out(self) -> bool:
        return self.scope != StepScope.PROJECT


# Which prerequisite scopes an instance of a given scope can resolve to a
# concrete instance. A project-scoped step depending on a fan-out step reads
# the aggregate of all its instances instead.
_RESOLVABLE_SCOPES: dict[StepScope, frozenset[StepScope]] = {
    StepScope.PROJECT: frozenset({StepScope.PROJECT, StepScope.SEGMENT, StepScope.PAIN}),
    StepScope.SEGMENT: frozenset({StepScope.PROJECT, StepScope.SEGMENT}),
    StepScope.PAIN: frozenset({StepScope.PROJECT, StepScope.SEGMENT, StepScope.PAIN}),
}


def normalize_step_key(step_key: str) -> str:
    return step_key.strip().lower().replace("-", "_")


class StepDefinitionRegistry:
    """Read-only step graph; the single source of truth for step ordering."""

    def __init__(self, definitions: Iterable[StepDef], *, terminal_step: str) -> None:
        self._defs: dict[str, StepDef] = {}
        for definition in definitions:
            if definition.key in self._defs:
                raise ValueError(f"duplicate step definition {definition.key}")
            self._defs[definition.key] = definition
        self.terminal_step = normalize_step_key(terminal_step)
        self._validate()

    def __contains__(self, step_key: object) -> bool:
        return isinstance(step_key, str) and normalize_step_key(step_key) in self._defs

    def __len__(self) -> int:
        return len(self._defs)

    def resolve(self, step_key: str) -> StepDef:
        """Return the definition for *step_key* (hyphens and underscores are interchangeable).

        Raises:
            UnknownStep: If the step is not registered.
        """
        try:
            return self._defs[normalize_step_key(step_key)]
        except KeyError:
            raise UnknownStep(step_key) from None

    def keys(self) -> list[str]:
        return list(self._defs)

    def dependents(self, step_key: str) -> list[StepDef]:
        key = self.resolve(step_key).key
        return [definition for definition in self._defs.values() if key in definition.prerequisites]

    def topological_order(self) -> list[str]:
        indegree = {key: len(definition.prerequisites) for key, definition in self._defs.items()}
        edges: dict[str, list[str]] = defaultdict(list)
        for key, definition in self._defs.items():
            for dep in definition.prerequisites:
                edges[dep].append(key)

        order: list[str] = []
        queue = deque(key for key in self._defs if indegree[key] == 0)
        while queue:
            current = queue.popleft()
            order.append(current)
            for nxt in edges[current]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    queue.append(nxt)
        if len(order) != len(self._defs):
            raise ValueError("step dependency graph contains a cycle")
        return order

    def _validate(self) -> None:
        if self.terminal_step not in self._defs:
            raise ValueError(f"terminal step {self.terminal_step} is not registered")
        for definition in self._defs.values():
            for dep in definition.prerequisites:
                if dep not in self._defs:
                    raise ValueError(f"step {definition.key} depends on unknown step {dep}")
                dep_scope = self._defs[dep].scope
                if dep_scope not in _RESOLVABLE_SCOPES[definition.scope]:
                    raise ValueError(
                        f"step {definition.key} ({definition.scope.value}) cannot depend on "
                        f"{dep} ({dep_scope.value})"
                    )
            if definition.kind == StepKind.REVIEW and not definition.review_categories:
                raise ValueError(f"review step {definition.key} declares no recommendation categories")
            if definition.kind == StepKind.FINALIZE:
                review = definition.review_step
                if review is None or review not in definition.prerequisites:
                    raise ValueError(f"finalize step {definition.key} must list its review step as a prerequisite")
                if self._defs[review].kind != StepKind.REVIEW:
                    raise ValueError(f"finalize step {definition.key} points at non-review step {review}")
                if self._defs[review].scope != definition.scope:
                    raise ValueError(f"finalize step {definition.key} must share the scope of review step {review}")
        self.topological_order()
