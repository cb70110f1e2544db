"""Tenacity retry policy for ingestion runs.

Provides:
- ``RetryPolicy``: attempt budget and backoff schedule
- ``ScheduleWait``: schedule-driven wait that honours a Retry-After floor
- ``build_run_retrying``: ``AsyncRetrying`` controller for one run, aware of
  attempts already spent before a crash
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

import tenacity
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..errors import RateLimitExceeded, is_retryable
from ..logging import get_logger, log_event

__all__ = ["RetryPolicy", "ScheduleWait", "build_run_retrying"]

LOGGER = get_logger(__name__, base_fields={"component": "retry"})


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and waits between attempts.

    Attributes:
        max_attempts: Total attempts per run, counting attempts made before a
            restart.
        backoff_schedule_s: Wait before attempt 2, 3, ...; the last entry
            repeats once the schedule is exhausted.
        max_retry_after_s: Cap applied to a server-provided Retry-After.
    """

    max_attempts: int = 5
    backoff_schedule_s: Sequence[float] = (300.0, 900.0, 3600.0, 14400.0)
    max_retry_after_s: float = 14400.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.backoff_schedule_s:
            raise ValueError("backoff_schedule_s must not be empty")

    def delay_after(self, attempt: int) -> float:
        """Base wait after the ``attempt``-th attempt (1-based) failed."""
        index = min(max(attempt, 1) - 1, len(self.backoff_schedule_s) - 1)
        return float(self.backoff_schedule_s[index])


class ScheduleWait(tenacity.wait.wait_base):
    """Wait strategy that follows :class:`RetryPolicy` and respects Retry-After.

    A :class:`RateLimitExceeded` carrying ``retry_after`` waits at least that
    long (capped by ``max_retry_after_s``); otherwise the schedule applies.
    """

    def __init__(self, policy: RetryPolicy, *, attempt_offset: int = 0) -> None:
        self.policy = policy
        self.attempt_offset = attempt_offset

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt = retry_state.attempt_number + self.attempt_offset
        wait_s = self.policy.delay_after(attempt)
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None and outcome.failed else None
        if isinstance(exc, RateLimitExceeded) and exc.retry_after:
            floor = min(exc.retry_after, self.policy.max_retry_after_s)
            if floor > wait_s:
                log_event(
                    LOGGER,
                    "debug",
                    "retry_after_applied",
                    retry_after_s=exc.retry_after,
                    wait_s=floor,
                    service=exc.service,
                )
                wait_s = floor
        return wait_s


def build_run_retrying(
    policy: RetryPolicy,
    *,
    attempts_used: int = 0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    before_sleep: Optional[Callable[[RetryCallState], None]] = None,
) -> AsyncRetrying:
    """Build the ``AsyncRetrying`` controller for one run.

    Args:
        policy: Attempt budget and schedule.
        attempts_used: Attempts already recorded for the run (crash resume);
            they count against ``max_attempts`` and advance the schedule.
        sleep: Async sleep used between attempts, injectable for tests.
        before_sleep: Hook called with the retry state before each wait.

    Returns:
        Controller that retries only errors classified retryable and
        re-raises the last error when the budget is exhausted.
    """

    remaining = max(policy.max_attempts - attempts_used, 1)
    kwargs = {}
    if before_sleep is not None:
        kwargs["before_sleep"] = before_sleep
    return AsyncRetrying(
        stop=stop_after_attempt(remaining),
        wait=ScheduleWait(policy, attempt_offset=attempts_used),
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        reraise=True,
        **kwargs,
    )
