"""Run, step and event models for track ingestion.

**State Machine (Runs):**

    PENDING
      ↓ (attempt starts) → attempts += 1
    RUNNING
      ├→ COMPLETED  (all six steps recorded)
      ├→ RETRYING   (retryable error, next_attempt_at set) → RUNNING
      └→ FAILED     (non-retryable error or attempts exhausted)

Each run walks the steps in ``STEP_ORDER``. A step's value is recorded in the
ledger before the next step starts, so a RUNNING/RETRYING run found after a
restart resumes at its first unrecorded step.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

__all__ = [
    "StepId",
    "STEP_ORDER",
    "RunStatus",
    "EventStatus",
    "TriggerReason",
    "TrackIngestionRequest",
    "StepResult",
    "RunRecord",
    "CompletionSummary",
    "IngestionEvent",
    "TriggerReceipt",
]


class StepId(str, Enum):
    """Pipeline steps in execution order."""

    FETCH_AUDIO_FEATURES = "fetch-audio-features"
    FETCH_LYRICS = "fetch-lyrics"
    GENERATE_INTERPRETATION = "generate-interpretation"
    EMBED_INTERPRETATION = "embed-interpretation"
    STORE_DOCUMENT = "store-document"
    EMIT_COMPLETION = "emit-completion"


STEP_ORDER: tuple[StepId, ...] = tuple(StepId)


class RunStatus(str, Enum):
    """Run lifecycle states.

    - PENDING: Created, no attempt started yet
    - RUNNING: An attempt is executing
    - RETRYING: Waiting for the next attempt after a retryable error
    - COMPLETED: Document stored and completion emitted
    - FAILED: Non-retryable error or retry budget exhausted
    """

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class EventStatus(str, Enum):
    COMPLETED = "Completed"
    FAILED = "Failed"


class TriggerReason(str, Enum):
    """Why a trigger was (or was not) turned into a new run."""

    SCHEDULED = "scheduled"
    COALESCED = "coalesced"
    INVALID_ISRC = "invalid_isrc"
    ALREADY_INDEXED = "already_indexed"


@dataclass(frozen=True, slots=True)
class TrackIngestionRequest:
    """Ingestion trigger for one track.

    Attributes:
        isrc: Track identifier, any letter case; validated on submit.
        title: Track title.
        artist: Primary artist.
        album: Album title.
        artwork_url: Optional cover art URL stored with the document.
        force_reprocess: Start a new run even if one exists inside the
            idempotency window.
    """

    isrc: str
    title: str
    artist: str
    album: str
    artwork_url: Optional[str] = None
    force_reprocess: bool = False

    @classmethod
    def from_trigger(cls, payload: Mapping[str, Any]) -> "TrackIngestionRequest":
        """Build a request from an external trigger payload.

        Both snake_case and the camelCase keys used by upstream producers
        (``artworkUrl``, ``forceReprocess``/``force``) are accepted.
        """
        force = payload.get("force_reprocess", payload.get("forceReprocess", payload.get("force", False)))
        return cls(
            isrc=str(payload.get("isrc", "")),
            title=str(payload.get("title", "")),
            artist=str(payload.get("artist", "")),
            album=str(payload.get("album", "")),
            artwork_url=payload.get("artwork_url", payload.get("artworkUrl")),
            force_reprocess=bool(force),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class StepResult:
    """Memoized output of one step; never mutated once recorded."""

    step_id: StepId
    value: Any
    completed_at: datetime


@dataclass(frozen=True, slots=True)
class RunRecord:
    """Ledger row for one ingestion run.

    Timestamps are epoch seconds.
    """

    run_id: str
    isrc: str
    status: RunStatus
    attempts: int
    force: bool
    request: TrackIngestionRequest
    created_at: float
    updated_at: float
    next_attempt_at: Optional[float] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CompletionSummary:
    has_lyrics: bool
    has_audio_features: bool
    has_interpretation: bool
    point_id: str
    duration_ms: int


@dataclass(frozen=True, slots=True)
class IngestionEvent:
    """Completion or failure notification for one run.

    Attributes:
        isrc: Normalized track identifier (or the raw value if invalid).
        run_id: Run that produced the event; ``None`` for rejected triggers.
        status: ``Completed`` or ``Failed``.
        error_kind: Stable failure category for ``Failed`` events.
        error_message: Human-readable failure description.
        service: External service that caused an adapter failure.
        status_code: Status reported by that service.
        attempts: Attempts consumed by the run.
        summary: Outcome details for ``Completed`` events.
        skipped_reason: Set when no run was executed (e.g. ``already_indexed``).
    """

    isrc: str
    run_id: Optional[str]
    status: EventStatus
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    service: Optional[str] = None
    status_code: Optional[int] = None
    attempts: int = 0
    summary: Optional[CompletionSummary] = None
    skipped_reason: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == EventStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "IngestionEvent":
        data = dict(payload)
        summary = data.pop("summary", None)
        return cls(
            **{**data, "status": EventStatus(data["status"])},
            summary=CompletionSummary(**summary) if summary else None,
        )


@dataclass(frozen=True, slots=True)
class TriggerReceipt:
    """Immediate answer to a fire-and-forget trigger."""

    accepted: bool
    reason: TriggerReason
    isrc: str
    run_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
