"""Bounded retry with exponential backoff for external service calls.

Provides:
- with_retry: await an operation up to ``max_attempts`` times
- retry: decorator form of ``with_retry`` for async functions

Exhausting the attempts re-raises the last error unchanged so callers
can still branch on the original exception type.
"""

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import httpx

from tonelearn.core.config import settings
from tonelearn.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")

OnRetry = Callable[[BaseException, int], None]

# Transport failures that are safe to retry for the decorator form
RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


def compute_delay(attempt: int, initial_delay: float, backoff_factor: float) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return initial_delay * (backoff_factor ** (attempt - 1))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int | None = None,
    initial_delay: float | None = None,
    backoff_factor: float | None = None,
    on_retry: OnRetry | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str | None = None,
) -> T:
    """Await ``operation`` with bounded retries.

    Args:
        operation: Zero-argument coroutine factory. Called once per attempt.
        max_attempts: Total attempts including the first. Defaults to
            ``PIPELINE_RETRY_ATTEMPTS``.
        initial_delay: Seconds to wait after the first failure. Defaults to
            ``PIPELINE_RETRY_INITIAL_DELAY``.
        backoff_factor: Multiplier applied per attempt. Defaults to
            ``PIPELINE_RETRY_BACKOFF_FACTOR``.
        on_retry: Observer called with ``(error, attempt)`` before each sleep.
        retry_on: Exception types that trigger a retry. Anything else
            propagates immediately. :class:`ValidationError` is never
            retried.
        description: Label used in log messages.

    Returns:
        The operation's result.

    Raises:
        The last error raised by ``operation`` once attempts are exhausted.
    """
    attempts = max_attempts if max_attempts is not None else settings.PIPELINE_RETRY_ATTEMPTS
    delay0 = initial_delay if initial_delay is not None else settings.PIPELINE_RETRY_INITIAL_DELAY
    factor = (
        backoff_factor if backoff_factor is not None else settings.PIPELINE_RETRY_BACKOFF_FACTOR
    )
    label = description or getattr(operation, "__qualname__", "operation")
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            # Input errors are permanent
            if isinstance(exc, ValidationError):
                raise
            if attempt >= attempts:
                logger.error(
                    "All %d attempts exhausted for %s: %s",
                    attempts,
                    label,
                    exc,
                )
                raise
            delay = compute_delay(attempt, delay0, factor)
            if on_retry is not None:
                on_retry(exc, attempt)
            logger.warning(
                "Retry %d/%d for %s after %s (waiting %.2fs)",
                attempt,
                attempts - 1,
                label,
                type(exc).__name__,
                delay,
            )
            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"with_retry exited without result for {label}")


def retry(
    max_attempts: int | None = None,
    initial_delay: float | None = None,
    backoff_factor: float | None = None,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator: retry an async function with exponential backoff.

    Usage::

        @retry(max_attempts=3, initial_delay=0.5)
        async def fetch_vector():
            ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                initial_delay=initial_delay,
                backoff_factor=backoff_factor,
                retry_on=retry_on,
                description=func.__qualname__,
            )

        return wrapper

    return decorator
