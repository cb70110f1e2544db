"""Recording test doubles for adapters, event sinks and the ingestion stack."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence

import numpy as np
from qdrant_client import AsyncQdrantClient

from TrackSearch.Adapters.base import Err, Ok
from TrackSearch.Adapters.interpretation import Generation
from TrackSearch.Adapters.lyrics import Lyrics
from TrackSearch.errors import AdapterError
from TrackSearch.HybridIndex.document import AudioFeatures
from TrackSearch.HybridIndex.schema import CollectionSchema
from TrackSearch.HybridIndex.store import HybridIndexManager
from TrackSearch.Ingestion.ledger import StepLedger
from TrackSearch.Ingestion.limits import RunLimits
from TrackSearch.Ingestion.models import IngestionEvent
from TrackSearch.Ingestion.orchestrator import IngestionOrchestrator
from TrackSearch.Ingestion.pipeline import IngestionPipeline
from TrackSearch.Ingestion.retry import RetryPolicy

DIM = 16


def deterministic_vector(text: str, dim: int = DIM) -> List[float]:
    """Unit vector seeded by ``text`` so equal text embeds identically."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = np.random.default_rng(seed)
    vector = rng.standard_normal(dim)
    vector /= np.linalg.norm(vector)
    return [float(x) for x in vector]


def transient(service: str = "tei", status_code: int = 503) -> AdapterError:
    return AdapterError(
        f"{service} returned HTTP {status_code}",
        service=service,
        status_code=status_code,
        retryable=True,
    )


def fatal(service: str = "tei", status_code: int = 401) -> AdapterError:
    return AdapterError(
        f"{service} returned HTTP {status_code}",
        service=service,
        status_code=status_code,
        retryable=False,
    )


class _Scripted:
    """Return queued errors first, then the configured value."""

    def __init__(self, errors: Sequence[AdapterError] = ()) -> None:
        self.calls = 0
        self.errors = list(errors)

    def _next_error(self) -> Optional[Err]:
        self.calls += 1
        if self.errors:
            return Err(self.errors.pop(0))
        return None


class FakeAudioFeatures(_Scripted):
    def __init__(self, features: Optional[dict] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.features = AudioFeatures(**features) if features else None

    async def fetch(self, isrc: str):
        return self._next_error() or Ok(self.features)


class FakeLyrics(_Scripted):
    def __init__(self, text: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.lyrics = Lyrics(text=text, language="en") if text else None

    async def fetch(self, isrc: str, *, title: Optional[str] = None, artist: Optional[str] = None):
        return self._next_error() or Ok(self.lyrics)


class FakeInterpretation(_Scripted):
    """Deterministic generations; records every prompt it receives."""

    def __init__(self, expansions: Sequence[str] = (), **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.interpret_calls = 0
        self.describe_prompts: List[str] = []
        self.expansions = list(expansions)

    async def interpret(self, title: str, artist: str, album: str, lyrics: str):
        self.interpret_calls += 1
        return self._next_error() or Ok(
            Generation(
                text=f"{title} by {artist} reflects on longing and late night city lights.",
                model="fake-interpreter",
            )
        )

    async def describe(self, prompt: str):
        self.describe_prompts.append(prompt)
        return self._next_error() or Ok(
            Generation(text="A restless, driving anthem about escape.", model="fake-describer")
        )

    async def expand_query(self, query: str):
        return self._next_error() or Ok(self.expansions or [query])


class FakeEmbedding(_Scripted):
    def __init__(self, dimension: int = DIM, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.dimension = dimension
        self.texts: List[str] = []

    async def embed(self, text: str):
        self.texts.append(text)
        return self._next_error() or Ok(deterministic_vector(text, self.dimension))

    async def embed_query(self, query: str):
        return await self.embed(query)


class RecordingEventSink:
    def __init__(self) -> None:
        self.events: List[IngestionEvent] = []

    async def publish(self, event: IngestionEvent) -> None:
        self.events.append(event)


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@dataclass
class IngestionStack:
    ledger: StepLedger
    index: HybridIndexManager
    client: AsyncQdrantClient
    audio_features: FakeAudioFeatures
    lyrics: FakeLyrics
    interpretation: FakeInterpretation
    embedding: FakeEmbedding
    events: RecordingEventSink
    sleep: RecordingSleep
    pipeline: IngestionPipeline
    orchestrator: IngestionOrchestrator
    policy: RetryPolicy = field(default_factory=RetryPolicy)

    async def close(self) -> None:
        await self.client.close()
        self.ledger.close()


async def build_index(dim: int = DIM, name: str = "tracks") -> tuple[AsyncQdrantClient, HybridIndexManager]:
    client = AsyncQdrantClient(location=":memory:")
    manager = HybridIndexManager(
        client, CollectionSchema(name=name, dense_dim=dim, dense_datatype="float32")
    )
    await manager.ensure_collection()
    return client, manager


async def build_stack(
    ledger_path: Path | str = ":memory:",
    *,
    audio_features: Optional[FakeAudioFeatures] = None,
    lyrics: Optional[FakeLyrics] = None,
    interpretation: Optional[FakeInterpretation] = None,
    embedding: Optional[FakeEmbedding] = None,
    policy: Optional[RetryPolicy] = None,
    limits: Optional[RunLimits] = None,
    skip_already_indexed: bool = False,
    idempotency_window_s: float = 86400.0,
    clock=None,
) -> IngestionStack:
    """Wire a complete ingestion stack over fakes and an in-memory index."""

    ledger = StepLedger(ledger_path, **({"clock": clock} if clock else {}))
    client, index = await build_index()
    events = RecordingEventSink()
    sleep = RecordingSleep()
    audio_features = audio_features or FakeAudioFeatures()
    lyrics = lyrics or FakeLyrics()
    interpretation = interpretation or FakeInterpretation()
    embedding = embedding or FakeEmbedding()
    policy = policy or RetryPolicy(max_attempts=5, backoff_schedule_s=(300.0, 900.0, 3600.0, 14400.0))
    pipeline = IngestionPipeline(
        ledger=ledger,
        audio_features=audio_features,
        lyrics=lyrics,
        interpretation=interpretation,
        embedding=embedding,
        index=index,
        events=events,
        dense_dim=DIM,
        **({"clock": clock} if clock else {}),
    )
    orchestrator = IngestionOrchestrator(
        ledger=ledger,
        pipeline=pipeline,
        index=index,
        events=events,
        limits=limits or RunLimits(max_concurrent=10, throttle_limit=100, throttle_period_s=60.0),
        policy=policy,
        idempotency_window_s=idempotency_window_s,
        skip_already_indexed=skip_already_indexed,
        sleep=sleep,
        **({"clock": clock} if clock else {}),
    )
    return IngestionStack(
        ledger=ledger,
        index=index,
        client=client,
        audio_features=audio_features,
        lyrics=lyrics,
        interpretation=interpretation,
        embedding=embedding,
        events=events,
        sleep=sleep,
        pipeline=pipeline,
        orchestrator=orchestrator,
        policy=policy,
    )
