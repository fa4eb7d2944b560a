"""Retry helper with exponential backoff and error classification."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """The retry budget ran out while the error was still classified as retryable."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 4
    base_delay: float = 2.0
    backoff_factor: float = 2.0
    max_delay: Optional[float] = None

    def delay_for(self, retry_number: int) -> float:
        delay = self.base_delay * (self.backoff_factor ** (retry_number - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return max(delay, 0.0)


def attempt(
    fn: Callable[[int], T],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool],
    on_retry: Callable[[int, float, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn(attempt_number) until it returns.

    Non-retryable errors propagate unchanged on the attempt they occur.
    Retryable errors are retried up to policy.retries times (so at most
    retries + 1 calls); when the budget is spent RetryExhausted is raised
    with the last error attached.
    """
    total = policy.retries + 1
    for number in range(1, total + 1):
        try:
            return fn(number)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if number >= total:
                raise RetryExhausted(number, exc) from exc
            delay = policy.delay_for(number)
            if on_retry:
                on_retry(number, delay, exc)
            sleep(delay)
    # unreachable: the loop either returns or raises
    raise RuntimeError("RETRY_FAILED")
