"""Audio-feature lookup by ISRC (ReccoBeats ``/audio-features`` contract)."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ..HybridIndex.document import AudioFeatures
from ..logging import get_logger, log_event
from .base import AdapterResult, HttpAdapter

__all__ = ["AudioFeaturesAdapter"]

LOGGER = get_logger(__name__, base_fields={"component": "adapters", "service": "reccobeats"})


class _FeaturesResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: list[AudioFeatures]


class AudioFeaturesAdapter(HttpAdapter):
    """Fetch :class:`AudioFeatures` for one ISRC.

    ``Ok(None)`` means the service has no features for the track (404 or an
    empty ``content`` list) or sent a payload that fails validation, which is
    a normal outcome.
    """

    service = "reccobeats"

    async def fetch(self, isrc: str) -> AdapterResult[Optional[AudioFeatures]]:
        return await self._guard(self._fetch(isrc), isrc=isrc)

    async def _fetch(self, isrc: str) -> Optional[AudioFeatures]:
        response = await self._send(
            "GET", "audio-features", params={"ids": isrc}, ok_statuses=(404,)
        )
        if response.status_code == 404:
            return None
        body: Any = self._json(response)
        try:
            parsed = _FeaturesResponse.model_validate(body)
        except PydanticValidationError as exc:
            # Out-of-range or malformed features count as absent.
            log_event(
                LOGGER,
                "warning",
                "audio_features_invalid",
                isrc=isrc,
                invalid_fields=exc.error_count(),
            )
            return None
        if not parsed.content:
            return None
        if len(parsed.content) > 1:
            log_event(
                LOGGER,
                "warning",
                "audio_features_multiple_results",
                isrc=isrc,
                results=len(parsed.content),
            )
        features = parsed.content[0]
        return None if features.is_empty() else features
