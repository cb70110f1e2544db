"""Boundary contracts for the external services used during ingestion and search.

Every adapter shares one ``httpx.AsyncClient`` and one
:class:`~TrackSearch.Adapters.base.ServiceRateLimiter`, returns
:class:`~TrackSearch.Adapters.base.Ok` or :class:`~TrackSearch.Adapters.base.Err`
and never retries on its own.
"""

from __future__ import annotations

from .audio_features import AudioFeaturesAdapter
from .base import AdapterResult, Err, HttpAdapter, Ok, ServiceRateLimiter
from .embedding import EmbeddingAdapter
from .interpretation import Generation, InterpretationAdapter
from .lyrics import Lyrics, LyricsAdapter

__all__ = (
    "AdapterResult",
    "AudioFeaturesAdapter",
    "EmbeddingAdapter",
    "Err",
    "Generation",
    "HttpAdapter",
    "InterpretationAdapter",
    "Lyrics",
    "LyricsAdapter",
    "Ok",
    "ServiceRateLimiter",
)
