from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from inventory_engine.errors import (
    RetryExhaustedError,
    UpstreamHttpError,
    UpstreamTransportError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_BACKOFF_SECONDS = 30.0


def is_retryable(exc: BaseException) -> bool:
    """Rate limiting, server errors and transport failures are worth another try."""

    if isinstance(exc, UpstreamHttpError):
        return exc.retryable
    return isinstance(exc, UpstreamTransportError)


def backoff_delay(attempt: int, base_delay: float, max_delay: float = MAX_BACKOFF_SECONDS) -> float:
    """Exponential backoff for the given 1-based attempt number."""

    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = MAX_BACKOFF_SECONDS,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    operation_name: str = "upstream_call",
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Non-retryable errors (authentication, malformed bodies, plain 4xx) are
    re-raised untouched on the first occurrence. When every attempt fails with
    a retryable error a :class:`RetryExhaustedError` is raised carrying the
    last cause.
    """

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except (UpstreamHttpError, UpstreamTransportError) as exc:
            if not is_retryable(exc):
                raise
            if attempt >= max_attempts:
                logger.error(
                    "upstream_retries_exhausted",
                    operation=operation_name,
                    attempts=max_attempts,
                    error=str(exc),
                )
                raise RetryExhaustedError(max_attempts, exc) from exc
            wait_time = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "upstream_retry_scheduled",
                operation=operation_name,
                attempt=attempt,
                max_attempts=max_attempts,
                wait_seconds=wait_time,
                error=str(exc),
            )
            await sleep(wait_time)

    # Only reached when the loop never ran.
    raise ValueError("max_attempts must be at least 1")


__all__ = ["backoff_delay", "call_with_retry", "is_retryable"]
