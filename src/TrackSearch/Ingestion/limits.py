"""Concurrency cap and start throttle for ingestion runs.

**Design:**

Two independent limits are shared by every run in the process:

    limits = RunLimits(max_concurrent=10, throttle_limit=10, throttle_period_s=60)

    await limits.admit()          # inside an attempt, until the run is admitted
    async with limits.slot():     # around each attempt, released during backoff
        await pipeline.execute(...)

``admit`` draws from a pyrate-limiter bucket (``throttle_limit`` starts per
``throttle_period_s``) and waits until a start is allowed. An admitted run does
not pass through ``admit`` again. ``slot`` is an ``asyncio.Semaphore`` that
bounds how many attempts execute at once.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from pyrate_limiter import Limiter, Rate

from ..errors import RateLimitExceeded
from ..logging import get_logger, log_event

__all__ = ["RunLimits"]

LOGGER = get_logger(__name__, base_fields={"component": "limits"})

_THROTTLE_KEY = "ingestion-run-start"


class RunLimits:
    """Process-wide concurrency semaphore plus run-start throttle.

    Args:
        max_concurrent: Attempts allowed to execute at the same time.
        throttle_limit: Run starts allowed per ``throttle_period_s``.
        throttle_period_s: Rolling throttle window.
        max_wait_s: Longest ``admit`` waits before raising
            :class:`RateLimitExceeded`; ``None`` waits indefinitely.
        poll_interval_s: Sleep between throttle acquisition attempts.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep, injectable for tests.
    """

    def __init__(
        self,
        max_concurrent: int = 10,
        throttle_limit: int = 10,
        throttle_period_s: float = 60.0,
        *,
        max_wait_s: Optional[float] = None,
        poll_interval_s: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be positive")
        if throttle_limit < 1:
            raise ValueError("throttle_limit must be positive")
        self._max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._throttle = Limiter(
            Rate(throttle_limit, int(throttle_period_s * 1000)),
            raise_when_fail=False,
            max_delay=None,
        )
        self._max_wait_s = max_wait_s
        self._poll_interval_s = poll_interval_s
        self._clock = clock
        self._sleep = sleep
        self._active = 0
        self._peak = 0

    @property
    def active(self) -> int:
        """Attempts currently holding a slot."""
        return self._active

    @property
    def peak(self) -> int:
        """Highest number of simultaneously held slots observed."""
        return self._peak

    async def admit(self, run_id: str = "") -> float:
        """Wait until another run may start; return seconds waited."""
        start = self._clock()
        logged = False
        while not self._throttle.try_acquire(_THROTTLE_KEY, weight=1):
            waited = self._clock() - start
            if self._max_wait_s is not None and waited >= self._max_wait_s:
                raise RateLimitExceeded(
                    "Ingestion start throttle did not admit the run in time",
                    service="ingestion",
                    waited_ms=int(waited * 1000),
                )
            if not logged:
                log_event(LOGGER, "info", "ingestion_start_throttled", run_id=run_id)
                logged = True
            await self._sleep(self._poll_interval_s)
        return self._clock() - start

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one of the ``max_concurrent`` execution slots."""
        async with self._semaphore:
            self._active += 1
            self._peak = max(self._peak, self._active)
            try:
                yield
            finally:
                self._active -= 1
