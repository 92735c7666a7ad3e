from __future__ import annotations

from pathlib import Path

import pytest

from audience_pipeline import AlreadyExists, FileArtifactStore, RecordNotFound, RecordScope
from audience_pipeline.store import sanitize_key


def test_insert_is_first_writer_wins(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    scope = RecordScope("p1", "drafts", "jobs", "seg-a")
    store.insert(scope, {"value": 1})
    with pytest.raises(AlreadyExists):
        store.insert(scope, {"value": 2})
    assert store.get(scope) == {"value": 1}


def test_get_and_update_missing_record_raise(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    scope = RecordScope("p1", "approved", "portrait")
    with pytest.raises(RecordNotFound):
        store.get(scope)
    with pytest.raises(RecordNotFound):
        store.update(scope, {"value": 1})


def test_upsert_returns_previous_record(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    scope = RecordScope("p1", "approved", "portrait")
    assert store.upsert(scope, {"version": 1}) is None
    assert store.upsert(scope, {"version": 2}) == {"version": 1}
    assert store.get(scope) == {"version": 2}


def test_delete_is_idempotent(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    scope = RecordScope("p1", "drafts", "canvas", "pain-1")
    store.insert(scope, {"value": 1})
    assert store.delete(scope) is True
    assert store.delete(scope) is False
    assert not store.exists(scope)


def test_list_filters_by_partial_scope(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    store.insert(RecordScope("p1", "drafts", "jobs", "seg-b"), {"id": "b"})
    store.insert(RecordScope("p1", "drafts", "jobs", "seg-a"), {"id": "a"})
    store.insert(RecordScope("p1", "drafts", "pains", "seg-a"), {"id": "pain"})
    store.insert(RecordScope("p2", "drafts", "jobs", "seg-a"), {"id": "other"})

    assert [item["id"] for item in store.list("p1", "drafts", "jobs")] == ["a", "b"]
    assert [item["id"] for item in store.list("p1", "drafts")] == ["a", "b", "pain"]
    assert store.list("p1", "approved") == []


def test_corrupt_record_raises_value_error(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    scope = RecordScope("p1", "drafts", "jobs", "seg-a")
    store.insert(scope, {"value": 1})
    path = tmp_path / "projects" / "p1" / "drafts" / "jobs" / "seg-a.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="not valid JSON"):
        store.get(scope)


def test_record_scope_rejects_unknown_table() -> None:
    with pytest.raises(ValueError):
        RecordScope("p1", "comments")


def test_sanitize_key() -> None:
    assert sanitize_key(" my project/../x ") == "my-project-..-x"
    with pytest.raises(ValueError):
        sanitize_key("   ")
