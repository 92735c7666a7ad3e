from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import GenerationTransientError, RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with capped exponential backoff.

    ``base_delay * 2 ** (attempt - 1)`` seconds are slept after each failed
    attempt, capped at ``max_delay`` and spread by +/- ``jitter``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")
        if not 0 <= self.jitter < 1:
            raise ValueError(f"jitter must be within [0, 1), got: {self.jitter}")

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if delay and self.jitter:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return delay


async def with_retry(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "generation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *op* until it succeeds, a fatal error escapes, or attempts run out.

    Only ``GenerationTransientError`` (timeouts, rate limits, 5xx, malformed
    output) is retried. Every other exception propagates unchanged on its
    first occurrence.

    Args:
        op: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt budget and backoff.
        label: Human-readable name used in log lines.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        Whatever *op* returns on its first successful attempt.

    Raises:
        RetryExhausted: After ``policy.max_attempts`` transient failures,
            chained to the last of them.
    """
    attempt = 1
    while True:
        try:
            return await op()
        except GenerationTransientError as exc:
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", label, policy.max_attempts, exc)
                raise RetryExhausted(policy.max_attempts, exc) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s attempt %d/%d failed (%s: %s); retrying in %.2fs",
                label,
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                exc,
                delay,
            )
            await sleep(delay)
            attempt += 1
