from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from .retry import RetryPolicy


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    store_root: str = "state_store"
    model_name: str = "gpt-4o"
    temperature: float = 0.7
    request_timeout_seconds: int = 120
    max_tokens: int = 4_096
    field_max_tokens: int = 500
    batch_concurrency: int = 3
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            store_root=os.getenv("AUDIENCE_STORE_ROOT", "state_store"),
            model_name=os.getenv("AUDIENCE_MODEL", "gpt-4o"),
            temperature=_get_env_float("AUDIENCE_TEMPERATURE", default=0.7, minimum=0.0, maximum=2.0),
            request_timeout_seconds=_get_env_int("AUDIENCE_REQUEST_TIMEOUT", default=120, minimum=5, maximum=900),
            max_tokens=_get_env_int("AUDIENCE_MAX_TOKENS", default=4_096, minimum=256, maximum=32_768),
            field_max_tokens=_get_env_int("AUDIENCE_FIELD_MAX_TOKENS", default=500, minimum=32, maximum=4_096),
            batch_concurrency=_get_env_int("AUDIENCE_BATCH_CONCURRENCY", default=3, minimum=1, maximum=20),
            retry_max_attempts=_get_env_int("AUDIENCE_RETRY_MAX_ATTEMPTS", default=3, minimum=1, maximum=10),
            retry_base_delay=_get_env_float("AUDIENCE_RETRY_BASE_DELAY", default=1.0, minimum=0.0, maximum=60.0),
            retry_max_delay=_get_env_float("AUDIENCE_RETRY_MAX_DELAY", default=30.0, minimum=0.0, maximum=600.0),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("AUDIENCE_MODEL must be non-empty")
        if not self.store_root.strip():
            raise ValueError("AUDIENCE_STORE_ROOT must be non-empty")
        if self.batch_concurrency < 1:
            raise ValueError(f"AUDIENCE_BATCH_CONCURRENCY must be >= 1, got: {self.batch_concurrency}")
        if self.retry_max_attempts < 1:
            raise ValueError(f"AUDIENCE_RETRY_MAX_ATTEMPTS must be >= 1, got: {self.retry_max_attempts}")
        # A ceiling below the base delay would make every backoff equal to the ceiling.
        max_delay = max(self.retry_max_delay, self.retry_base_delay)
        return replace(self, model_name=model_name, retry_max_delay=max_delay)

    def store_path(self, repo_root: Path) -> Path:
        path = Path(self.store_root)
        return path if path.is_absolute() else repo_root / path

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
