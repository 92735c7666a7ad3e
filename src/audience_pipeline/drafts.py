from __future__ import annotations

import copy
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from .errors import ContentValidationError, RecordNotFound
from .models import Decision, Draft, StepInstance
from .registry import StepDefinitionRegistry
from .schemas import validate_content
from .store import ArtifactStore, RecordScope

logger = logging.getLogger(__name__)


def draft_scope(instance: StepInstance) -> RecordScope:
    return RecordScope(instance.project_id, "drafts", instance.step_key, instance.scope_key)


def _load(payload: dict[str, Any]) -> Draft:
    try:
        return Draft.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"stored draft is invalid: {exc}") from exc


def _split_path(field_path: str) -> list[str]:
    parts = [part for part in field_path.split(".") if part]
    if not parts:
        raise ValueError("field path must be non-empty")
    return parts


def set_field(content: dict[str, Any], field_path: str, value: Any) -> dict[str, Any]:
    """Return a copy of *content* with the value at dotted *field_path* replaced.

    Numeric path segments index into lists (``pains.1.description``). Only the
    addressed leaf changes; the path must already exist.

    Raises:
        KeyError: If any segment of the path does not resolve.
    """
    updated = copy.deepcopy(content)
    parts = _split_path(field_path)
    node: Any = updated
    for part in parts[:-1]:
        node = _child(node, part, field_path)
    leaf = parts[-1]
    if isinstance(node, list):
        index = _list_index(node, leaf, field_path)
        node[index] = value
    elif isinstance(node, dict) and leaf in node:
        node[leaf] = value
    else:
        raise KeyError(field_path)
    return updated


def get_field(content: dict[str, Any], field_path: str) -> Any:
    node: Any = content
    for part in _split_path(field_path):
        node = _child(node, part, field_path)
    return node


def _child(node: Any, part: str, field_path: str) -> Any:
    if isinstance(node, dict):
        if part not in node:
            raise KeyError(field_path)
        return node[part]
    if isinstance(node, list):
        return node[_list_index(node, part, field_path)]
    raise KeyError(field_path)


def _list_index(node: list[Any], part: str, field_path: str) -> int:
    if not part.isdigit() or int(part) >= len(node):
        raise KeyError(field_path)
    return int(part)


class DraftManager:
    """Create, version, edit and delete drafts; at most one draft per step instance.

    Drafts never touch approved artifacts. ``create`` is the concurrency
    primitive: the store's insert fails with ``AlreadyExists`` for the
    second writer of the same instance.
    """

    def __init__(self, store: ArtifactStore, registry: StepDefinitionRegistry) -> None:
        self.store = store
        self.registry = registry

    def _validated(self, instance: StepInstance, content: Any) -> dict[str, Any]:
        step = self.registry.resolve(instance.step_key)
        return validate_content(step.schema, step.key, content)

    def create(self, instance: StepInstance, content: Any) -> Draft:
        """Persist a version-1 draft for *instance*.

        Raises:
            ContentValidationError: If *content* does not match the step schema.
            AlreadyExists: If a draft for the instance is already present.
        """
        draft = Draft(instance=instance, content=self._validated(instance, content))
        self.store.insert(draft_scope(instance), draft.model_dump(mode="json"))
        logger.info("draft created for %s (%s)", instance.label, draft.draft_id)
        return draft

    def get(self, instance: StepInstance) -> Draft:
        return _load(self.store.get(draft_scope(instance)))

    def find(self, instance: StepInstance) -> Draft | None:
        try:
            return self.get(instance)
        except RecordNotFound:
            return None

    def exists(self, instance: StepInstance) -> bool:
        return self.store.exists(draft_scope(instance))

    def list(self, project_id: str, step_key: str) -> list[Draft]:
        key = self.registry.resolve(step_key).key
        return [_load(payload) for payload in self.store.list(project_id, "drafts", key)]

    def get_by_id(self, project_id: str, draft_id: str) -> Draft:
        for payload in self.store.list(project_id, "drafts"):
            if payload.get("draft_id") == draft_id:
                return _load(payload)
        raise RecordNotFound("draft", draft_id)

    def patch_field(self, project_id: str, draft_id: str, field_path: str, value: Any) -> Draft:
        """Replace one field of a draft and bump its version.

        Raises:
            RecordNotFound: If the draft does not exist.
            ContentValidationError: If the path does not exist or the result fails the schema.
        """
        draft = self.get_by_id(project_id, draft_id)
        try:
            patched = set_field(draft.content, field_path, value)
        except (KeyError, ValueError) as exc:
            raise ContentValidationError(draft.instance.step_key, f"no field at {field_path!r}") from exc
        draft.content = self._validated(draft.instance, patched)
        draft.version += 1
        draft.updated_at = datetime.now(UTC)
        self.store.update(draft_scope(draft.instance), draft.model_dump(mode="json"))
        logger.info("draft %s field %s patched (version %d)", draft.instance.label, field_path, draft.version)
        return draft

    def replace_all(self, instance: StepInstance, content: Any) -> Draft:
        """Discard any draft for *instance* and start again at version 1."""
        validated = self._validated(instance, content)
        self.delete(instance)
        return self.create(instance, validated)

    def delete(self, instance: StepInstance) -> bool:
        deleted = self.store.delete(draft_scope(instance))
        if deleted:
            logger.info("draft deleted for %s", instance.label)
        return deleted

    def set_decision(self, instance: StepInstance, decision: Decision) -> Draft:
        """Upsert one human decision on the draft, keyed by recommendation id.

        Decisions are review metadata, not content, so the version is unchanged.
        """
        draft = self.get(instance)
        draft.decisions[decision.recommendation_id] = decision
        draft.updated_at = datetime.now(UTC)
        self.store.update(draft_scope(instance), draft.model_dump(mode="json"))
        return draft
