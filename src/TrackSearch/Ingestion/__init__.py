# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.Ingestion",
#   "purpose": "Durable, retried, rate-limited track ingestion",
#   "sections": []
# }
# === /NAVMAP ===

"""
TrackSearch.Ingestion turns a trigger into exactly one stored document:

- ``models``: requests, runs, step results, events and receipts.
- ``ledger``: SQLite record of runs and memoized step values.
- ``retry``: tenacity controller with the run backoff schedule.
- ``limits``: concurrency semaphore and run-start throttle.
- ``pipeline``: the six steps of one attempt.
- ``orchestrator``: trigger intake, scheduling and failure reporting.
- ``events``: sinks for completion and failure events.
"""

from __future__ import annotations

import importlib
import sys
from typing import Any

_ATTRIBUTE_EXPORTS: dict[str, tuple[str, str]] = {
    "TrackIngestionRequest": (".models", "TrackIngestionRequest"),
    "IngestionEvent": (".models", "IngestionEvent"),
    "TriggerReceipt": (".models", "TriggerReceipt"),
    "RunStatus": (".models", "RunStatus"),
    "StepId": (".models", "StepId"),
    "StepLedger": (".ledger", "StepLedger"),
    "RetryPolicy": (".retry", "RetryPolicy"),
    "RunLimits": (".limits", "RunLimits"),
    "IngestionPipeline": (".pipeline", "IngestionPipeline"),
    "IngestionOrchestrator": (".orchestrator", "IngestionOrchestrator"),
    "EventSink": (".events", "EventSink"),
    "LoggingEventSink": (".events", "LoggingEventSink"),
    "JsonlEventSink": (".events", "JsonlEventSink"),
}

__all__ = sorted(_ATTRIBUTE_EXPORTS)


def __getattr__(name: str) -> Any:
    if name in _ATTRIBUTE_EXPORTS:
        module_path, attr_name = _ATTRIBUTE_EXPORTS[name]
        module = importlib.import_module(f"{__name__}{module_path}")
        value = getattr(module, attr_name)
        setattr(sys.modules[__name__], name, value)
        return value
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
