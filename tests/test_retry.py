from __future__ import annotations

import logging

import pytest

from stickerbot.core.retry import backoff_delay_seconds, retry_with_backoff


def test_backoff_delay_doubles_from_base() -> None:
    assert backoff_delay_seconds(1, 1000) == 2.0
    assert backoff_delay_seconds(2, 1000) == 4.0
    assert backoff_delay_seconds(3, 500) == 4.0
    assert backoff_delay_seconds(1, 0) == 0.0


@pytest.mark.anyio
async def test_success_on_first_attempt_does_not_sleep(sleeps) -> None:
    calls: list[int] = []

    async def _op(attempt: int) -> str:
        calls.append(attempt)
        return "ok"

    result = await retry_with_backoff(
        _op, max_attempts=3, base_delay_ms=1000, sleep=sleeps
    )

    assert result == "ok"
    assert calls == [1]
    assert sleeps.delays == []


@pytest.mark.anyio
async def test_retries_until_success(sleeps) -> None:
    calls: list[int] = []

    async def _op(attempt: int) -> int:
        calls.append(attempt)
        if attempt < 3:
            raise RuntimeError(f"boom {attempt}")
        return attempt

    result = await retry_with_backoff(
        _op, max_attempts=3, base_delay_ms=1000, sleep=sleeps
    )

    assert result == 3
    assert calls == [1, 2, 3]
    assert sleeps.delays == [2.0, 4.0]


@pytest.mark.anyio
async def test_exhaustion_calls_callback_once_with_last_error(sleeps) -> None:
    seen: list[BaseException] = []

    async def _op(attempt: int) -> None:
        raise ValueError(f"attempt {attempt}")

    async def _exhausted(exc: BaseException) -> str:
        seen.append(exc)
        return "apologized"

    result = await retry_with_backoff(
        _op,
        max_attempts=3,
        base_delay_ms=1000,
        on_exhausted=_exhausted,
        sleep=sleeps,
    )

    assert result == "apologized"
    assert len(seen) == 1
    assert str(seen[0]) == "attempt 3"
    assert sleeps.delays == [2.0, 4.0]


@pytest.mark.anyio
async def test_exhaustion_without_callback_reraises(sleeps) -> None:
    async def _op(attempt: int) -> None:
        raise KeyError("missing")

    with pytest.raises(KeyError):
        await retry_with_backoff(_op, max_attempts=2, base_delay_ms=10, sleep=sleeps)
    assert sleeps.delays == [0.02]


@pytest.mark.anyio
async def test_single_attempt_never_sleeps(sleeps) -> None:
    async def _op(attempt: int) -> None:
        raise RuntimeError("nope")

    async def _exhausted(exc: BaseException) -> str:
        return "done"

    result = await retry_with_backoff(
        _op, max_attempts=1, base_delay_ms=1000, on_exhausted=_exhausted, sleep=sleeps
    )

    assert result == "done"
    assert sleeps.delays == []


@pytest.mark.anyio
async def test_non_matching_errors_are_not_retried(sleeps) -> None:
    calls: list[int] = []

    async def _op(attempt: int) -> None:
        calls.append(attempt)
        raise TypeError("programming error")

    with pytest.raises(TypeError):
        await retry_with_backoff(
            _op,
            max_attempts=3,
            base_delay_ms=1000,
            retry_on=(ValueError,),
            sleep=sleeps,
        )
    assert calls == [1]


@pytest.mark.anyio
async def test_invalid_attempt_count() -> None:
    async def _op(attempt: int) -> None:
        return None

    with pytest.raises(ValueError):
        await retry_with_backoff(_op, max_attempts=0, base_delay_ms=1)


@pytest.mark.anyio
async def test_attempt_failures_are_logged(sleeps, caplog) -> None:
    logger = logging.getLogger("test.retry")
    caplog.set_level(logging.WARNING, logger="test.retry")

    async def _op(attempt: int) -> None:
        raise RuntimeError("flaky")

    async def _exhausted(exc: BaseException) -> None:
        return None

    await retry_with_backoff(
        _op,
        max_attempts=2,
        base_delay_ms=1,
        on_exhausted=_exhausted,
        sleep=sleeps,
        logger=logger,
        label="clip",
    )

    assert "retry.attempt_failed" in caplog.text
    assert "retry.exhausted" in caplog.text
