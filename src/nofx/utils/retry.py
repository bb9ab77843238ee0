"""Bounded retry with a typed outcome, built on tenacity."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from nofx.errors import NofxError

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Check if an exception is worth another attempt."""
    if isinstance(exc, NofxError):
        return exc.retryable
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


class RetryStatus(StrEnum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class RetryOutcome(Generic[T]):
    status: RetryStatus
    value: T | None = None
    attempts: int = 0
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == RetryStatus.SUCCESS


async def retry_with_outcome(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 8.0,
    multiplier: float = 2.0,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    on_retry: Callable[[RetryCallState], None] | None = None,
    **kwargs: Any,
) -> RetryOutcome[T]:
    """Call *fn* up to *max_attempts* times with exponential backoff.

    Never raises for failures of *fn*: the last error is returned in an
    ``EXHAUSTED`` outcome.  An error rejected by *retry_on* stops early.

    Args:
        fn: Async callable to attempt.
        *args: Positional arguments for fn.
        max_attempts: Maximum attempts, including the first.
        min_wait: Minimum wait seconds between attempts.
        max_wait: Maximum wait seconds between attempts.
        multiplier: Exponential backoff multiplier.
        retry_on: Predicate deciding whether an error is retried.
        on_retry: Optional callback invoked before each sleep.
        **kwargs: Keyword arguments for fn.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception(retry_on),
        before_sleep=on_retry,
        reraise=True,
    )
    attempts = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                value = await fn(*args, **kwargs)
    except Exception as exc:
        return RetryOutcome(status=RetryStatus.EXHAUSTED, attempts=attempts, error=exc)
    return RetryOutcome(status=RetryStatus.SUCCESS, value=value, attempts=attempts)
