"""Bounded retry policy for short storage operations."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from app.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def fixed_backoff(seconds: float) -> Callable[[int], float]:
    return lambda attempt: seconds


class RetryExhaustedError(Exception):
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: fixed_backoff(0.2))
    retry_on: tuple[type[BaseException], ...] = (Exception,)
    sleep: Sleep = asyncio.sleep

    async def run(self, fn: Callable[[], Awaitable[T]], *, name: str = "operation") -> T:
        """Call fn until it succeeds or max_attempts is reached.

        Only exceptions listed in retry_on are retried; anything else
        propagates on the first occurrence. Raises RetryExhaustedError
        wrapping the last retryable error.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except self.retry_on as exc:
                if attempt == attempts:
                    raise RetryExhaustedError(attempt, exc) from exc
                delay = self.backoff(attempt)
                log.warning(f"{name}_retry", attempt=attempt, delay=delay, error=str(exc))
                await self.sleep(delay)
        raise AssertionError("unreachable")
