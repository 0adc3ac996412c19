#!/usr/bin/env python3
"""RetryPolicy and the async retry combinator."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from retry import RetryExhaustedError, RetryPolicy, with_retry


class _Flaky:
    def __init__(self, failures: int, exc: Exception = RuntimeError("boom")):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


def _recording_sleep(delays):
    async def _sleep(seconds: float) -> None:
        delays.append(seconds)
    return _sleep


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(delay_seconds=-1)


def test_succeeds_after_transient_failures_with_fixed_delay() -> None:
    delays = []
    op = _Flaky(failures=2)
    result = asyncio.run(with_retry(op, RetryPolicy(3, 5.0), sleep=_recording_sleep(delays)))
    assert result == "ok"
    assert op.calls == 3
    assert delays == [5.0, 5.0]


def test_exhaustion_carries_last_error() -> None:
    delays = []
    op = _Flaky(failures=10, exc=ValueError("bad quote"))
    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(with_retry(op, RetryPolicy(3, 1.0), label="quote", sleep=_recording_sleep(delays)))
    assert op.calls == 3
    assert delays == [1.0, 1.0]
    assert isinstance(exc_info.value.last_error, ValueError)
    assert exc_info.value.attempts == 3
    assert "quote failed after 3 attempts" in str(exc_info.value)


def test_non_matching_exceptions_propagate_immediately() -> None:
    op = _Flaky(failures=1, exc=KeyError("x"))
    with pytest.raises(KeyError):
        asyncio.run(with_retry(op, RetryPolicy(3, 0), retry_on=(ValueError,)))
    assert op.calls == 1


def test_returned_failure_is_not_retried() -> None:
    calls = []

    async def op():
        calls.append(1)
        return {"success": False}

    assert asyncio.run(with_retry(op, RetryPolicy(3, 0))) == {"success": False}
    assert len(calls) == 1
