from __future__ import annotations

from pathlib import Path

import pytest

from audience_pipeline import MalformedOutputError, RuntimeSettings, content_fingerprint, parse_json_response
from audience_pipeline.llm import clean_field_text, ensure_openai_api_key


def test_parse_json_response_strips_fences() -> None:
    assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}


def test_parse_json_response_extracts_object_from_prose() -> None:
    text = 'Here is the analysis you asked for:\n{"pains": [{"name": "x"}]}\nLet me know!'
    assert parse_json_response(text) == {"pains": [{"name": "x"}]}


def test_parse_json_response_escapes_raw_newlines_in_strings() -> None:
    text = '{"description": "line one\nline two\ttabbed"}'
    assert parse_json_response(text) == {"description": "line one\nline two\ttabbed"}


@pytest.mark.parametrize("text", ["", "not json at all", "[1, 2, 3]", '{"unterminated": '])
def test_parse_json_response_rejects_non_objects(text: str) -> None:
    with pytest.raises(MalformedOutputError):
        parse_json_response(text)


def test_clean_field_text_strips_quotes_and_bold() -> None:
    assert clean_field_text('  "**Fear of wasted money**"  ') == "Fear of wasted money"
    assert clean_field_text("plain") == "plain"


def test_content_fingerprint_ignores_key_order() -> None:
    assert content_fingerprint({"a": 1, "b": [1, 2]}) == content_fingerprint({"b": [1, 2], "a": 1})
    assert content_fingerprint({"a": 1}) != content_fingerprint({"a": 2})


def test_ensure_openai_api_key_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-test\n", encoding="utf-8")
    assert ensure_openai_api_key(tmp_path) == "sk-test"


def test_ensure_openai_api_key_missing_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        ensure_openai_api_key(tmp_path)


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUDIENCE_BATCH_CONCURRENCY", "5")
    monkeypatch.setenv("AUDIENCE_RETRY_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("AUDIENCE_RETRY_BASE_DELAY", "2.5")
    settings = RuntimeSettings.from_env()
    assert settings.batch_concurrency == 5
    policy = settings.retry_policy()
    assert policy.max_attempts == 4
    assert policy.base_delay == 2.5


def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUDIENCE_BATCH_CONCURRENCY", "abc")
    with pytest.raises(ValueError, match="AUDIENCE_BATCH_CONCURRENCY"):
        RuntimeSettings.from_env()
    monkeypatch.setenv("AUDIENCE_BATCH_CONCURRENCY", "0")
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_runtime_settings_store_path(tmp_path: Path) -> None:
    assert RuntimeSettings(store_root="data").store_path(tmp_path) == tmp_path / "data"
    assert RuntimeSettings(store_root=str(tmp_path)).store_path(Path("/elsewhere")) == tmp_path
