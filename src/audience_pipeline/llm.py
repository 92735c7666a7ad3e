from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Protocol

import openai
from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import GenerationFatalError, GenerationTransientError, MalformedOutputError, WorkflowError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class GenerationProvider(Protocol):
    """The one capability the workflow needs from a content-generation backend."""

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional directory holding a ``.env`` file (cwd if not given).

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for content generation")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.7,
    timeout: int = _DEFAULT_TIMEOUT,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with client-side retries disabled.

    Retrying is owned by ``audience_pipeline.retry.with_retry`` so that
    malformed output and provider errors share one attempt budget.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": 0,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def classify_provider_error(exc: BaseException) -> WorkflowError:
    """Map a provider/transport exception onto the retryable or fatal side of the taxonomy."""
    if isinstance(exc, WorkflowError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, openai.APIConnectionError, openai.RateLimitError)):
        return GenerationTransientError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429 or exc.status_code >= 500:
            return GenerationTransientError(f"provider returned {exc.status_code}: {exc}")
        return GenerationFatalError(f"provider rejected request ({exc.status_code}): {exc}")
    return GenerationFatalError(f"{type(exc).__name__}: {exc}")


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


class OpenAIGenerationProvider:
    """GenerationProvider backed by LangChain's ChatOpenAI."""

    def __init__(
        self,
        *,
        model_name: str,
        temperature: float = 0.7,
        timeout: int = _DEFAULT_TIMEOUT,
        default_max_tokens: int = 4_096,
        repo_root: Path | None = None,
    ) -> None:
        self.model_name = model_name
        self.temperature = temperature
        self.timeout = timeout
        self.default_max_tokens = default_max_tokens
        self.repo_root = repo_root
        self._models: dict[int, ChatOpenAI] = {}

    def _model(self, max_tokens: int) -> ChatOpenAI:
        if max_tokens not in self._models:
            self._models[max_tokens] = get_chat_model(
                model_name=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                max_completion_tokens=max_tokens,
                repo_root=self.repo_root,
            )
        return self._models[max_tokens]

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))
        model = self._model(max_tokens or self.default_max_tokens)
        try:
            response = await asyncio.wait_for(model.ainvoke(messages), timeout=self.timeout + 10)
        except Exception as exc:  # noqa: BLE001 - every provider failure is re-raised classified
            raise classify_provider_error(exc) from exc
        return _message_text(response)


def _escape_control_chars(text: str) -> str:
    """Escape raw newlines/tabs/control characters that appear inside JSON strings."""
    result: list[str] = []
    in_string = False
    escape_next = False
    for char in text:
        if escape_next:
            result.append(char)
            escape_next = False
        elif char == "\\" and in_string:
            result.append(char)
            escape_next = True
        elif char == '"':
            in_string = not in_string
            result.append(char)
        elif in_string and char == "\n":
            result.append("\\n")
        elif in_string and char == "\r":
            result.append("\\r")
        elif in_string and char == "\t":
            result.append("\\t")
        elif in_string and ord(char) < 32:
            result.append(f"\\u{ord(char):04x}")
        else:
            result.append(char)
    return "".join(result)


def parse_json_response(text: str) -> dict[str, Any]:
    """Parse provider output into a JSON object.

    Tries, in order: the text with markdown fences stripped, the outermost
    ``{...}`` block, and that block with raw control characters escaped.

    Raises:
        MalformedOutputError: If no candidate parses to a JSON object.
    """
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    candidates = [cleaned]
    match = _JSON_OBJECT_RE.search(cleaned)
    if match is not None:
        candidates.append(match.group(0))
        candidates.append(_escape_control_chars(match.group(0)))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise MalformedOutputError("provider output is not a JSON object", preview=cleaned[:500])


def clean_field_text(text: str) -> str:
    """Strip wrapping quotes and bold markers from a single-field regeneration."""
    value = text.strip()
    value = re.sub(r'^["\']|["\']$', "", value)
    value = re.sub(r"^\*\*|\*\*$", "", value)
    return value.strip()
