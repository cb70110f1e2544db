"""Explicit wiring of clients, adapters, index, ledger and services.

Usage:

    async with TrackSearchRuntime(load_settings()) as runtime:
        receipt = await runtime.orchestrator.submit(request)
        hits = await runtime.search.search(QueryRequest("late night drive"))

Nothing is created at import time; every shared resource is owned by one
runtime and released by ``__aexit__`` after in-flight runs drain.
"""

from __future__ import annotations

from types import TracebackType
from typing import Optional, Type

import httpx
from qdrant_client import AsyncQdrantClient

from .Adapters.audio_features import AudioFeaturesAdapter
from .Adapters.base import ServiceRateLimiter
from .Adapters.embedding import EmbeddingAdapter
from .Adapters.interpretation import InterpretationAdapter
from .Adapters.lyrics import LyricsAdapter
from .HybridIndex.schema import CollectionSchema
from .HybridIndex.search import HybridSearchService
from .HybridIndex.store import HybridIndexManager
from .Ingestion.events import EventSink, JsonlEventSink, LoggingEventSink
from .Ingestion.ledger import StepLedger
from .Ingestion.limits import RunLimits
from .Ingestion.orchestrator import IngestionOrchestrator
from .Ingestion.pipeline import IngestionPipeline
from .Ingestion.retry import RetryPolicy
from .logging import get_logger, log_event
from .settings import Settings

__all__ = ["TrackSearchRuntime", "build_qdrant_client"]

LOGGER = get_logger(__name__, base_fields={"component": "runtime"})


def build_qdrant_client(settings: Settings) -> AsyncQdrantClient:
    """Create the Qdrant client for ``settings.index``.

    A configured ``location`` (``":memory:"`` or a local path) wins over
    ``url``.
    """
    cfg = settings.index
    if cfg.location:
        return AsyncQdrantClient(location=cfg.location)
    return AsyncQdrantClient(url=cfg.url, api_key=cfg.api_key, timeout=cfg.timeout_s)


class TrackSearchRuntime:
    """Own every long-lived resource for one process.

    Args:
        settings: Loaded configuration.
        http_client: Optional pre-built client (tests pass one with a
            ``MockTransport``); closed on exit only when created here.
        qdrant_client: Optional pre-built Qdrant client; closed on exit only
            when created here.
        events: Optional event sink overriding ``app.events_path``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        qdrant_client: Optional[AsyncQdrantClient] = None,
        events: Optional[EventSink] = None,
    ) -> None:
        self.settings = settings
        self._owns_http = http_client is None
        self._owns_qdrant = qdrant_client is None
        self.http = http_client or httpx.AsyncClient(
            headers={"User-Agent": settings.adapters.user_agent},
            timeout=settings.adapters.timeout_s,
        )
        self.qdrant = qdrant_client or build_qdrant_client(settings)

        adapters = settings.adapters
        self.rate_limiter = ServiceRateLimiter(adapters.rates, max_wait_s=adapters.max_rate_wait_s)
        self.audio_features = AudioFeaturesAdapter(
            self.http,
            base_url=adapters.audio_features_url,
            limiter=self.rate_limiter,
            timeout_s=adapters.audio_features_timeout_s,
        )
        self.lyrics = LyricsAdapter(
            self.http,
            base_url=adapters.lyrics_url,
            limiter=self.rate_limiter,
            timeout_s=adapters.lyrics_timeout_s,
            api_key=adapters.lyrics_api_key,
        )
        self.interpretation = InterpretationAdapter(
            self.http,
            base_url=adapters.llm_url,
            limiter=self.rate_limiter,
            timeout_s=adapters.llm_timeout_s,
            api_key=adapters.llm_api_key,
            api_version=adapters.llm_api_version,
            model=adapters.llm_model,
            description_model=adapters.llm_description_model,
            interpretation_max_tokens=adapters.interpretation_max_tokens,
            description_max_tokens=adapters.description_max_tokens,
            expansion_max_tokens=adapters.expansion_max_tokens,
        )
        self.embedding = EmbeddingAdapter(
            self.http,
            base_url=adapters.embedding_url,
            limiter=self.rate_limiter,
            timeout_s=adapters.embedding_timeout_s,
            dimension=settings.index.dense_dim,
            instruction=adapters.embedding_instruction,
        )

        self.index = HybridIndexManager(
            self.qdrant,
            CollectionSchema.from_config(settings.index),
            rrf_k=settings.index.rrf_k,
            prefetch_limit=settings.index.prefetch_limit,
        )
        self.search = HybridSearchService(self.index, self.embedding, self.interpretation)

        ingestion = settings.ingestion
        self.ledger = StepLedger(ingestion.ledger_path)
        if events is not None:
            self.events = events
        elif settings.app.events_path is not None:
            self.events = JsonlEventSink(settings.app.events_path)
        else:
            self.events = LoggingEventSink()
        self.pipeline = IngestionPipeline(
            ledger=self.ledger,
            audio_features=self.audio_features,
            lyrics=self.lyrics,
            interpretation=self.interpretation,
            embedding=self.embedding,
            index=self.index,
            events=self.events,
            dense_dim=settings.index.dense_dim,
        )
        self.orchestrator = IngestionOrchestrator(
            ledger=self.ledger,
            pipeline=self.pipeline,
            index=self.index,
            events=self.events,
            limits=RunLimits(
                ingestion.max_concurrent_runs,
                ingestion.throttle_limit,
                ingestion.throttle_period_s,
                max_wait_s=ingestion.throttle_max_wait_s,
            ),
            policy=RetryPolicy(
                max_attempts=ingestion.max_attempts,
                backoff_schedule_s=ingestion.backoff_schedule_s,
                max_retry_after_s=ingestion.max_retry_after_s,
            ),
            idempotency_window_s=ingestion.idempotency_window_s,
            skip_already_indexed=ingestion.skip_already_indexed,
        )

    async def __aenter__(self) -> "TrackSearchRuntime":
        created = await self.index.ensure_collection()
        log_event(
            LOGGER,
            "info",
            "runtime_started",
            collection=self.index.schema.name,
            collection_created=created,
            ledger=self.ledger.path,
        )
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        try:
            await self.orchestrator.drain()
        finally:
            if self._owns_http:
                await self.http.aclose()
            if self._owns_qdrant:
                await self.qdrant.close()
            self.ledger.close()
            log_event(LOGGER, "info", "runtime_stopped")
