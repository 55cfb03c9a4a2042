"""Helpers for retrying transient CDN provider failures (timeouts, 5xx, throttling)."""

from __future__ import annotations

import random
from typing import Awaitable, Callable, TypeVar

import anyio
from loguru import logger

from cdn_purge.core.config import settings
from cdn_purge.core.errors import InvalidationError, RateLimitError

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    *,
    base_delay: float,
    max_delay: float,
    jitter: float,
    error: InvalidationError | None = None,
) -> float:
    """Exponential delay for the given 1-based attempt, capped, plus jitter."""

    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if isinstance(error, RateLimitError) and error.retry_after:
        delay = max(delay, min(error.retry_after, max_delay))
    return delay + random.uniform(0, jitter)


async def with_provider_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    jitter: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> T:
    """Run the async operation, retrying retryable invalidation errors with backoff.

    Permanent errors (authentication, provider rejection, serialization) are
    raised on first occurrence. The last retryable error is raised once the
    attempt ceiling is reached.
    """

    attempts = attempts or settings.CDN_RETRY_ATTEMPTS
    base_delay = base_delay if base_delay is not None else settings.CDN_RETRY_BASE_DELAY
    max_delay = max_delay if max_delay is not None else settings.CDN_RETRY_MAX_DELAY
    jitter = jitter if jitter is not None else settings.CDN_RETRY_JITTER
    last_error: InvalidationError | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except InvalidationError as exc:
            if not exc.retryable:
                raise
            last_error = exc
            if attempt == attempts:
                break
            sleep_for = backoff_delay(
                attempt,
                base_delay=base_delay,
                max_delay=max_delay,
                jitter=jitter,
                error=exc,
            )
            logger.bind(
                attempt=attempt,
                max_attempts=attempts,
                sleep=sleep_for,
                error_kind=exc.kind,
                error=str(exc),
            ).warning("cdn_retry_transient")
            await sleep(sleep_for)
    if last_error is not None:
        raise last_error
    raise RuntimeError("Operation failed without raising an exception")
