"""Destinations for ingestion completion and failure events."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..logging import get_logger, log_event
from .models import IngestionEvent

__all__ = ["EventSink", "LoggingEventSink", "JsonlEventSink"]

LOGGER = get_logger(__name__, base_fields={"component": "events"})


@runtime_checkable
class EventSink(Protocol):
    """Receiver of :class:`IngestionEvent` values."""

    async def publish(self, event: IngestionEvent) -> None:
        ...


class LoggingEventSink:
    """Publish events as structured log records."""

    async def publish(self, event: IngestionEvent) -> None:
        level = "info" if event.completed else "warning"
        log_event(LOGGER, level, "ingestion_event", **event.to_dict())


class JsonlEventSink:
    """Append one JSON object per event to ``path``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def publish(self, event: IngestionEvent) -> None:
        line = json.dumps(event.to_dict(), sort_keys=True)
        async with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
