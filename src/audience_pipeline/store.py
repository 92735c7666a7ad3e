from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Protocol

from .errors import AlreadyExists, RecordNotFound

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Record addressing
# ---------------------------------------------------------------------------

TABLES: frozenset[str] = frozenset(
    {"projects", "drafts", "approved", "segments", "pains", "rankings", "history"}
)

_PROJECT_SCOPE_FILE = "_project"
_NO_STEP_DIR = "_"


@dataclass(frozen=True)
class RecordScope:
    """Address of one record: ``(project_id, table, step_key, scope_key)``.

    ``step_key`` is empty for entity tables (projects, segments, pains,
    rankings); ``scope_key`` is empty for project-scoped step records.
    """

    project_id: str
    table: str
    step_key: str = ""
    scope_key: str = ""

    def __post_init__(self) -> None:
        if self.table not in TABLES:
            raise ValueError(f"unknown table {self.table!r}")

    def __str__(self) -> str:
        parts = [self.project_id, self.table, self.step_key or _NO_STEP_DIR, self.scope_key or _PROJECT_SCOPE_FILE]
        return "/".join(parts)


class ArtifactStore(Protocol):
    """Keyed record store the workflow persists drafts and artifacts through."""

    def get(self, scope: RecordScope) -> dict[str, Any]:
        ...

    def exists(self, scope: RecordScope) -> bool:
        ...

    def list(self, project_id: str, table: str, step_key: str | None = None) -> list[dict[str, Any]]:
        ...

    def insert(self, scope: RecordScope, payload: dict[str, Any]) -> None:
        ...

    def update(self, scope: RecordScope, payload: dict[str, Any]) -> None:
        ...

    def upsert(self, scope: RecordScope, payload: dict[str, Any]) -> dict[str, Any] | None:
        ...

    def delete(self, scope: RecordScope) -> bool:
        ...


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar leaves the data file free to be swapped in with ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            json.dump(payload, tmp_handle, indent=2, sort_keys=True, default=str)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_json(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"record at {path} contains invalid UTF-8 data") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"record at {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"record at {path} is not a JSON object")
    return payload


def sanitize_key(value: str, *, what: str = "key") -> str:
    """Make *value* safe to use as a single path component.

    Raises:
        ValueError: If the value is empty or contains no safe characters.
    """
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{what} must be non-empty")
    safe = re.sub(r"[^A-Za-z0-9._-]+", "-", stripped).strip("-.")
    if not safe:
        raise ValueError(f"{what} contains no filesystem-safe characters")
    return safe[:128]


# ---------------------------------------------------------------------------
# FileArtifactStore
# ---------------------------------------------------------------------------

class FileArtifactStore:
    """JSON-file implementation of ``ArtifactStore``.

    Layout: ``<root>/projects/<project_id>/<table>/<step_key|_>/<scope_key|_project>.json``.
    Writes go through temp-file-then-rename; every write that depends on the
    current record state (insert, update, upsert, delete) runs under an
    exclusive ``fcntl`` lock on that record.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.projects_dir = self.root / "projects"
        self.projects_dir.mkdir(parents=True, exist_ok=True)

    def _table_dir(self, project_id: str, table: str) -> Path:
        return self.projects_dir / sanitize_key(project_id, what="project_id") / table

    def _path(self, scope: RecordScope) -> Path:
        step_dir = sanitize_key(scope.step_key, what="step_key") if scope.step_key else _NO_STEP_DIR
        name = sanitize_key(scope.scope_key, what="scope_key") if scope.scope_key else _PROJECT_SCOPE_FILE
        return self._table_dir(scope.project_id, scope.table) / step_dir / f"{name}.json"

    def get(self, scope: RecordScope) -> dict[str, Any]:
        """Return the record at *scope*.

        Raises:
            RecordNotFound: If no record exists.
            ValueError: If the stored file is corrupt.
        """
        path = self._path(scope)
        if not path.is_file():
            raise RecordNotFound(scope.table, str(scope))
        return _read_json(path)

    def exists(self, scope: RecordScope) -> bool:
        return self._path(scope).is_file()

    def list(self, project_id: str, table: str, step_key: str | None = None) -> list[dict[str, Any]]:
        """Return every record of *table* for a project, optionally for one step.

        Records are ordered by step directory then file name so repeated
        calls are deterministic.
        """
        table_dir = self._table_dir(project_id, table)
        if step_key is not None:
            step_dirs = [table_dir / (sanitize_key(step_key, what="step_key") if step_key else _NO_STEP_DIR)]
        elif table_dir.is_dir():
            step_dirs = sorted(d for d in table_dir.iterdir() if d.is_dir())
        else:
            step_dirs = []
        records: list[dict[str, Any]] = []
        for step_dir in step_dirs:
            if not step_dir.is_dir():
                continue
            records.extend(_read_json(path) for path in sorted(step_dir.glob("*.json")))
        return records

    def insert(self, scope: RecordScope, payload: dict[str, Any]) -> None:
        """Create a record; the first writer for a scope wins.

        Raises:
            AlreadyExists: If a record is already present at *scope*.
        """
        path = self._path(scope)
        with _locked_file(path):
            if path.is_file():
                raise AlreadyExists(str(scope))
            _atomic_write_json(path, payload)

    def update(self, scope: RecordScope, payload: dict[str, Any]) -> None:
        """Overwrite an existing record.

        Raises:
            RecordNotFound: If no record exists at *scope*.
        """
        path = self._path(scope)
        with _locked_file(path):
            if not path.is_file():
                raise RecordNotFound(scope.table, str(scope))
            _atomic_write_json(path, payload)

    def upsert(self, scope: RecordScope, payload: dict[str, Any]) -> dict[str, Any] | None:
        """Write *payload* at *scope* and return the record it replaced, if any."""
        path = self._path(scope)
        with _locked_file(path):
            previous = _read_json(path) if path.is_file() else None
            _atomic_write_json(path, payload)
        return previous

    def delete(self, scope: RecordScope) -> bool:
        """Remove the record at *scope*. Returns False when there was nothing to delete."""
        path = self._path(scope)
        with _locked_file(path):
            if not path.is_file():
                return False
            path.unlink()
        logger.debug("deleted record %s", scope)
        return True
