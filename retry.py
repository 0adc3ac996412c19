#!/usr/bin/env python3
"""Explicit retry policy and a generic async retry combinator."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded, fixed-delay retry policy."""
    max_attempts: int = 3
    delay_seconds: float = 5.0

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        if float(self.delay_seconds) < 0:
            raise ValueError("delay_seconds must be >= 0")


class RetryExhaustedError(Exception):
    """All attempts failed; carries the last underlying error."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"{label or 'operation'} failed after {attempts} attempts: {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "",
    log: Optional[logging.Logger] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run operation until it returns or policy.max_attempts is reached.

    Only raised exceptions matching retry_on are retried; a returned value is
    final even when it reports failure. Cancellation always propagates.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            last_error = exc
            if log:
                log.warning(
                    f"{label or 'operation'} attempt {attempt}/{policy.max_attempts} failed: {exc}"
                )
            if attempt < policy.max_attempts and policy.delay_seconds > 0:
                await sleep(policy.delay_seconds)
    assert last_error is not None
    raise RetryExhaustedError(label, policy.max_attempts, last_error)
