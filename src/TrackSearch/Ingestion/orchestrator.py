# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.Ingestion.orchestrator",
#   "purpose": "Trigger intake, run scheduling, retry control and failure reporting",
#   "sections": [
#     {"id": "ingestionorchestrator", "name": "IngestionOrchestrator", "anchor": "class-ingestionorchestrator", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Ingestion orchestrator.

Turns triggers into runs and drives each run to a terminal state:

    trigger ──validate──► open_run (coalesce within window)
                              │
                              ▼
          ┌──────────── AsyncRetrying ──────────────┐
          │  admit (start throttle, until admitted)  │
          │  slot() → mark_running → pipeline        │
          │  retryable error → mark_retrying, wait   │
          └──────────────────────────────────────────┘
                              │
              mark_completed  │  mark_failed + Failed event

Errors never escape to the trigger source. ``submit`` answers with a
:class:`TriggerReceipt` and the outcome is only observable through the
event sink; ``run`` executes inline and returns the event it published.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from tenacity import RetryCallState

from ..errors import AdapterError, InvalidIdentifier, error_kind
from ..HybridIndex.store import HybridIndexManager
from ..identity import derive_id, normalize_isrc
from ..logging import get_logger, log_event
from .events import EventSink
from .ledger import StepLedger
from .limits import RunLimits
from .models import (
    EventStatus,
    IngestionEvent,
    RunRecord,
    RunStatus,
    StepId,
    TrackIngestionRequest,
    TriggerReason,
    TriggerReceipt,
)
from .pipeline import IngestionPipeline
from .retry import RetryPolicy, build_run_retrying

__all__ = ["IngestionOrchestrator"]

LOGGER = get_logger(__name__, base_fields={"component": "orchestrator"})

TriggerInput = Union[TrackIngestionRequest, Mapping[str, Any]]


class IngestionOrchestrator:
    """Schedule ingestion runs and report their outcome.

    Args:
        ledger: Durable run and step ledger.
        pipeline: Step executor for one attempt.
        index: Index manager used for the optional already-indexed check.
        events: Sink receiving completion and failure events.
        limits: Shared concurrency cap and start throttle.
        policy: Attempt budget and backoff schedule.
        idempotency_window_s: Window in which duplicate triggers coalesce.
        skip_already_indexed: Skip triggers whose point already exists.
        clock: Wall clock in epoch seconds.
        sleep: Async sleep used for backoff, injectable for tests.
    """

    def __init__(
        self,
        *,
        ledger: StepLedger,
        pipeline: IngestionPipeline,
        index: HybridIndexManager,
        events: EventSink,
        limits: RunLimits,
        policy: RetryPolicy,
        idempotency_window_s: float = 86400.0,
        skip_already_indexed: bool = False,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._pipeline = pipeline
        self._index = index
        self._events = events
        self._limits = limits
        self._policy = policy
        self._window_s = idempotency_window_s
        self._skip_already_indexed = skip_already_indexed
        self._clock = clock
        self._sleep = sleep
        self._tasks: Dict[str, "asyncio.Task[IngestionEvent]"] = {}

    @property
    def in_flight(self) -> List[str]:
        """Run ids with a scheduled task that has not finished."""
        return sorted(self._tasks)

    # ------------------------------------------------------------- triggers

    async def submit(self, trigger: TriggerInput) -> TriggerReceipt:
        """Accept a trigger and schedule its run in the background."""

        request = self._coerce(trigger)
        try:
            request = replace(request, isrc=normalize_isrc(request.isrc))
        except InvalidIdentifier as exc:
            await self._reject(request, exc)
            return TriggerReceipt(
                accepted=False,
                reason=TriggerReason.INVALID_ISRC,
                isrc=request.isrc,
                details={"error": str(exc)},
            )

        if await self._already_indexed(request):
            return TriggerReceipt(
                accepted=False,
                reason=TriggerReason.ALREADY_INDEXED,
                isrc=request.isrc,
                details={"point_id": derive_id(request.isrc)},
            )

        run, created = self._ledger.open_run(request, window_s=self._window_s)
        reason = TriggerReason.SCHEDULED if created else TriggerReason.COALESCED
        if not run.status.terminal:
            self._ensure_task(run)
        log_event(
            LOGGER,
            "info",
            "ingestion_trigger_accepted",
            isrc=run.isrc,
            run_id=run.run_id,
            reason=reason.value,
            status=run.status.value,
        )
        return TriggerReceipt(
            accepted=True,
            reason=reason,
            isrc=run.isrc,
            run_id=run.run_id,
            details={"status": run.status.value},
        )

    async def run(self, trigger: TriggerInput) -> IngestionEvent:
        """Process a trigger inline and return the resulting event.

        A coalesced trigger returns the outcome of the run it joined: the
        recorded event of a finished run, or the result of the in-flight one.
        """

        request = self._coerce(trigger)
        try:
            request = replace(request, isrc=normalize_isrc(request.isrc))
        except InvalidIdentifier as exc:
            return await self._reject(request, exc)

        if await self._already_indexed(request):
            event = IngestionEvent(
                isrc=request.isrc,
                run_id=None,
                status=EventStatus.COMPLETED,
                skipped_reason=TriggerReason.ALREADY_INDEXED.value,
            )
            await self._events.publish(event)
            return event

        run, created = self._ledger.open_run(request, window_s=self._window_s)
        if not created:
            log_event(
                LOGGER, "info", "ingestion_trigger_coalesced", isrc=run.isrc, run_id=run.run_id
            )
            if run.status.terminal:
                return self._recorded_event(run)
        return await self._ensure_task(run)

    async def resume_pending(self) -> List[str]:
        """Schedule every non-terminal run found in the ledger.

        Returns:
            Run ids that were scheduled by this call.
        """
        scheduled = []
        for run in self._ledger.pending_runs():
            if run.run_id in self._tasks:
                continue
            self._ensure_task(run)
            scheduled.append(run.run_id)
        log_event(LOGGER, "info", "ingestion_runs_resumed", count=len(scheduled))
        return scheduled

    async def drain(self) -> List[IngestionEvent]:
        """Wait for every scheduled run, including runs scheduled meanwhile."""
        events: List[IngestionEvent] = []
        while self._tasks:
            events.extend(await asyncio.gather(*list(self._tasks.values())))
        return events

    # ------------------------------------------------------------ execution

    def _ensure_task(self, run: RunRecord) -> "asyncio.Task[IngestionEvent]":
        task = self._tasks.get(run.run_id)
        if task is None:
            task = asyncio.create_task(self._execute(run), name=f"ingest-{run.run_id}")
            self._tasks[run.run_id] = task
            task.add_done_callback(lambda _t, run_id=run.run_id: self._tasks.pop(run_id, None))
        return task

    async def _execute(self, run: RunRecord) -> IngestionEvent:
        log = LOGGER.child(isrc=run.isrc, run_id=run.run_id)
        if run.attempts >= self._policy.max_attempts:
            self._ledger.mark_failed(
                run.run_id,
                error_kind=run.error_kind or "internal_error",
                error_message=run.error_message or "attempt budget exhausted before restart",
            )
            return await self._publish_failure(self._ledger.get_run(run.run_id) or run, None)

        if run.next_attempt_at is not None:
            delay = run.next_attempt_at - self._clock()
            if delay > 0:
                log_event(log, "info", "ingestion_run_waiting", delay_s=round(delay, 3))
                await self._sleep(delay)

        def before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            wait_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
            self._ledger.mark_retrying(
                run.run_id,
                next_attempt_at=self._clock() + wait_s,
                error_kind=error_kind(exc) if exc is not None else None,
                error_message=str(exc) if exc is not None else None,
            )
            log_event(
                log,
                "warning",
                "ingestion_run_retrying",
                attempt=run.attempts + retry_state.attempt_number,
                wait_s=wait_s,
                error_kind=error_kind(exc) if exc is not None else None,
                error=str(exc) if exc is not None else None,
            )

        retrying = build_run_retrying(
            self._policy,
            attempts_used=run.attempts,
            sleep=self._sleep,
            before_sleep=before_sleep,
        )
        # The start throttle is passed once per run; a throttle timeout backs off like
        # any other RateLimitExceeded.
        admitted = run.attempts > 0
        event: Optional[IngestionEvent] = None
        try:
            async for attempt in retrying:
                with attempt:
                    if not admitted:
                        await self._limits.admit(run.run_id)
                        admitted = True
                    async with self._limits.slot():
                        count = self._ledger.mark_running(run.run_id)
                        event = await self._pipeline.execute(run, attempt=count)
            if event is None:
                raise RuntimeError(f"retry loop for run {run.run_id} ended without a result")
        except Exception as exc:
            kind = error_kind(exc)
            self._ledger.mark_failed(run.run_id, error_kind=kind, error_message=str(exc))
            if kind == "internal_error":
                log.exception(
                    "ingestion_run_failed",
                    extra={"extra_fields": {"event": "ingestion_run_failed", "error_kind": kind}},
                )
            else:
                log_event(log, "error", "ingestion_run_failed", error_kind=kind, error=str(exc))
            return await self._publish_failure(self._ledger.get_run(run.run_id) or run, exc)

        self._ledger.mark_completed(run.run_id)
        log_event(
            log,
            "info",
            "ingestion_run_completed",
            attempts=event.attempts,
            point_id=event.summary.point_id if event.summary else None,
        )
        return event

    async def _publish_failure(
        self, run: RunRecord, exc: Optional[BaseException]
    ) -> IngestionEvent:
        event = IngestionEvent(
            isrc=run.isrc,
            run_id=run.run_id,
            status=EventStatus.FAILED,
            error_kind=run.error_kind,
            error_message=run.error_message,
            service=exc.service if isinstance(exc, AdapterError) else None,
            status_code=exc.status_code if isinstance(exc, AdapterError) else None,
            attempts=run.attempts,
        )
        await self._events.publish(event)
        return event

    # -------------------------------------------------------------- helpers

    @staticmethod
    def _coerce(trigger: TriggerInput) -> TrackIngestionRequest:
        if isinstance(trigger, TrackIngestionRequest):
            return trigger
        return TrackIngestionRequest.from_trigger(trigger)

    async def _reject(
        self, request: TrackIngestionRequest, exc: InvalidIdentifier
    ) -> IngestionEvent:
        log_event(LOGGER, "warning", "ingestion_trigger_rejected", isrc=request.isrc, error=str(exc))
        event = IngestionEvent(
            isrc=request.isrc,
            run_id=None,
            status=EventStatus.FAILED,
            error_kind=error_kind(exc),
            error_message=str(exc),
        )
        await self._events.publish(event)
        return event

    async def _already_indexed(self, request: TrackIngestionRequest) -> bool:
        if not self._skip_already_indexed or request.force_reprocess:
            return False
        point_id = derive_id(request.isrc)
        try:
            present = point_id in await self._index.exists([point_id])
        except Exception as exc:
            # Fails open: an unreachable index must not block ingestion.
            log_event(
                LOGGER,
                "warning",
                "already_indexed_check_failed",
                isrc=request.isrc,
                error=str(exc),
                error_kind=error_kind(exc),
            )
            return False
        if present:
            log_event(LOGGER, "info", "ingestion_trigger_skipped", isrc=request.isrc, point_id=point_id)
        return present

    def _recorded_event(self, run: RunRecord) -> IngestionEvent:
        if run.status == RunStatus.COMPLETED:
            step = self._ledger.get_step(run.run_id, StepId.EMIT_COMPLETION)
            if step is not None and step.value:
                return IngestionEvent.from_dict(step.value)
            return IngestionEvent(
                isrc=run.isrc,
                run_id=run.run_id,
                status=EventStatus.COMPLETED,
                attempts=run.attempts,
            )
        return IngestionEvent(
            isrc=run.isrc,
            run_id=run.run_id,
            status=EventStatus.FAILED,
            error_kind=run.error_kind,
            error_message=run.error_message,
            attempts=run.attempts,
        )
