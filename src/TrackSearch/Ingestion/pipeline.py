# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.Ingestion.pipeline",
#   "purpose": "One attempt of one ingestion run: six memoized steps in fixed order",
#   "sections": [
#     {"id": "embedding-text", "name": "embedding_text", "anchor": "function-embedding-text", "kind": "function"},
#     {"id": "ingestionpipeline", "name": "IngestionPipeline", "anchor": "class-ingestionpipeline", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Step sequence for a single ingestion attempt.

Every step goes through :meth:`IngestionPipeline._step`, which returns the
ledger's recorded value when one exists and otherwise runs the step and
records its value before returning. A retried or resumed attempt therefore
re-executes only the steps that never completed.

Adapter results are unwrapped here: an ``Err`` becomes a raised
:class:`~TrackSearch.errors.AdapterError` so the orchestrator's retry
controller can classify it.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, Optional

from ..Adapters.audio_features import AudioFeaturesAdapter
from ..Adapters.embedding import EmbeddingAdapter
from ..Adapters.interpretation import InterpretationAdapter
from ..Adapters.lyrics import Lyrics, LyricsAdapter
from ..Adapters.prompts import (
    build_instrumental_description_prompt,
    build_metadata_description_prompt,
    build_short_description_prompt,
)
from ..HybridIndex.document import AudioFeatures, assemble_document
from ..HybridIndex.sparse import encode
from ..HybridIndex.store import HybridIndexManager
from ..identity import derive_id
from ..logging import get_logger, log_event
from .events import EventSink
from .ledger import StepLedger
from .models import (
    CompletionSummary,
    EventStatus,
    IngestionEvent,
    RunRecord,
    StepId,
)

__all__ = ["embedding_text", "IngestionPipeline"]

LOGGER = get_logger(__name__, base_fields={"component": "pipeline"})


def embedding_text(
    interpretation: Optional[str],
    short_description: Optional[str],
    title: str,
    artist: str,
    album: str,
) -> str:
    """Text embedded for the dense vector; never empty.

    Examples:
        >>> embedding_text(None, None, "Song", "Band", "Record")
        'Song by Band from Record'
    """
    for candidate in (interpretation, short_description):
        if candidate and candidate.strip():
            return candidate
    return f"{title} by {artist} from {album}"


class IngestionPipeline:
    """Execute the memoized step sequence for one run.

    Args:
        ledger: Step ledger shared with the orchestrator.
        audio_features: Audio-feature adapter.
        lyrics: Lyrics adapter.
        interpretation: Text-generation adapter.
        embedding: Embedding adapter; its dimension must match the index.
        index: Hybrid index manager receiving the single upsert.
        events: Sink receiving the completion event.
        dense_dim: Dense vector dimension of the index.
        clock: Wall clock in epoch seconds.
    """

    def __init__(
        self,
        *,
        ledger: StepLedger,
        audio_features: AudioFeaturesAdapter,
        lyrics: LyricsAdapter,
        interpretation: InterpretationAdapter,
        embedding: EmbeddingAdapter,
        index: HybridIndexManager,
        events: EventSink,
        dense_dim: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._audio_features = audio_features
        self._lyrics = lyrics
        self._interpretation = interpretation
        self._embedding = embedding
        self._index = index
        self._events = events
        self._dense_dim = dense_dim
        self._clock = clock

    async def execute(self, run: RunRecord, *, attempt: int) -> IngestionEvent:
        """Run every unrecorded step of ``run`` and return its completion event."""

        request = run.request
        log = LOGGER.child(isrc=run.isrc, run_id=run.run_id, attempt=attempt)

        features_value = await self._step(
            run, StepId.FETCH_AUDIO_FEATURES, lambda: self._fetch_audio_features(run), log
        )
        lyrics_value = await self._step(
            run, StepId.FETCH_LYRICS, lambda: self._fetch_lyrics(run), log
        )
        features = AudioFeatures.model_validate(features_value) if features_value else None
        lyrics_text = lyrics_value["text"] if lyrics_value else None

        async def generate() -> Dict[str, Any]:
            return await self._generate(run, lyrics_text, features)

        generated = await self._step(run, StepId.GENERATE_INTERPRETATION, generate, log)
        interpretation = generated.get("interpretation")
        descriptions: Dict[str, str] = generated.get("short_descriptions") or {}

        async def embed() -> list[float]:
            text = embedding_text(
                interpretation,
                next(iter(descriptions.values()), None),
                request.title,
                request.artist,
                request.album,
            )
            return (await self._embedding.embed(text)).unwrap()

        dense = await self._step(run, StepId.EMBED_INTERPRETATION, embed, log)

        async def store() -> Dict[str, Any]:
            document = assemble_document(
                isrc=run.isrc,
                title=request.title,
                artist=request.artist,
                album=request.album,
                artwork_url=request.artwork_url,
                lyrics=lyrics_text,
                interpretation=interpretation,
                short_descriptions=descriptions,
                audio_features=features,
                dense_embedding=dense,
                dense_dim=self._dense_dim,
            )
            sparse = encode(document.lexical_text())
            point_id = derive_id(run.isrc)
            await self._index.upsert(point_id, document, dense, sparse)
            return {"point_id": point_id, "sparse_terms": len(sparse)}

        stored = await self._step(run, StepId.STORE_DOCUMENT, store, log)

        async def emit() -> Dict[str, Any]:
            event = IngestionEvent(
                isrc=run.isrc,
                run_id=run.run_id,
                status=EventStatus.COMPLETED,
                attempts=attempt,
                summary=CompletionSummary(
                    has_lyrics=lyrics_text is not None,
                    has_audio_features=features is not None,
                    has_interpretation=interpretation is not None,
                    point_id=stored["point_id"],
                    duration_ms=int((self._clock() - run.created_at) * 1000),
                ),
            )
            await self._events.publish(event)
            return event.to_dict()

        emitted = await self._step(run, StepId.EMIT_COMPLETION, emit, log)
        return IngestionEvent.from_dict(emitted)

    async def _step(
        self,
        run: RunRecord,
        step_id: StepId,
        produce: Callable[[], Awaitable[Any]],
        log: Any,
    ) -> Any:
        recorded = self._ledger.get_step(run.run_id, step_id)
        if recorded is not None:
            log_event(log, "debug", "ingestion_step_reused", step=step_id.value)
            return recorded.value
        started = time.perf_counter()
        value = await produce()
        result = self._ledger.record_step(run.run_id, run.isrc, step_id, value)
        log_event(
            log,
            "info",
            "ingestion_step_completed",
            step=step_id.value,
            has_value=result.value is not None,
            elapsed_ms=int((time.perf_counter() - started) * 1000),
        )
        return result.value

    async def _fetch_audio_features(self, run: RunRecord) -> Optional[Dict[str, Any]]:
        features = (await self._audio_features.fetch(run.isrc)).unwrap()
        return features.present() if features is not None else None

    async def _fetch_lyrics(self, run: RunRecord) -> Optional[Dict[str, Any]]:
        lyrics: Optional[Lyrics] = (
            await self._lyrics.fetch(
                run.isrc, title=run.request.title, artist=run.request.artist
            )
        ).unwrap()
        return lyrics.model_dump() if lyrics is not None else None

    async def _generate(
        self,
        run: RunRecord,
        lyrics_text: Optional[str],
        features: Optional[AudioFeatures],
    ) -> Dict[str, Any]:
        request = run.request
        if lyrics_text:
            generation = (
                await self._interpretation.interpret(
                    request.title, request.artist, request.album, lyrics_text
                )
            ).unwrap()
            summary = (
                await self._interpretation.describe(
                    build_short_description_prompt(request.title, request.artist, generation.text)
                )
            ).unwrap()
            return {
                "interpretation": generation.text,
                "short_descriptions": {"lyrics": summary.text},
                "model": generation.model,
            }
        if features is not None:
            prompt = build_instrumental_description_prompt(
                request.title, request.artist, request.album, features
            )
            source = "audio_features"
        else:
            prompt = build_metadata_description_prompt(request.title, request.artist, request.album)
            source = "metadata"
        description = (await self._interpretation.describe(prompt)).unwrap()
        return {
            "interpretation": None,
            "short_descriptions": {source: description.text},
            "model": description.model,
        }
