from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from .logging_utils import log_event

T = TypeVar("T")
R = TypeVar("R")

SleepFn = Callable[[float], Awaitable[Any]]


def backoff_delay_seconds(attempt_number: int, base_delay_ms: int) -> float:
    """Delay after a failed attempt: `base * 2 ** attempt_number` (1-based attempts)."""

    if base_delay_ms <= 0 or attempt_number <= 0:
        return 0.0
    return (base_delay_ms * (2**attempt_number)) / 1000.0


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay_ms: int,
    on_exhausted: Optional[Callable[[BaseException], Awaitable[R]]] = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: SleepFn = asyncio.sleep,
    logger: Optional[logging.Logger] = None,
    label: str = "operation",
) -> Union[T, R]:
    """
    Run `operation(attempt_number)` until it succeeds or `max_attempts` is reached.

    Waits `base_delay_ms * 2 ** attempt_number` between attempts. When every
    attempt fails, `on_exhausted(last_error)` is awaited and its result
    returned; without a callback the last error is re-raised.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number.
        max_attempts: Total number of attempts (>= 1).
        base_delay_ms: Backoff base in milliseconds.
        on_exhausted: Final failure callback.
        retry_on: Exception types that trigger another attempt.
        sleep: Awaitable sleep used between attempts.
        logger: Logger for retry events.
        label: Name used in log events.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    log = logger or logging.getLogger(__name__)

    def _wait(retry_state: RetryCallState) -> float:
        return backoff_delay_seconds(retry_state.attempt_number, base_delay_ms)

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        log_event(
            log,
            logging.WARNING,
            "retry.attempt_failed",
            label=label,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            next_delay_seconds=retry_state.next_action.sleep
            if retry_state.next_action
            else None,
            exc=error,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=_wait,
        retry=retry_if_exception_type(retry_on),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation(attempt.retry_state.attempt_number)
    except retry_on as exc:
        log_event(
            log,
            logging.ERROR,
            "retry.exhausted",
            label=label,
            max_attempts=max_attempts,
            exc=exc,
        )
        if on_exhausted is None:
            raise
        return await on_exhausted(exc)
    raise RuntimeError(f"{label}: retry loop ended without an outcome")
