"""Lyrics lookup (Musixmatch ``track.lyrics.get`` / ``matcher.lyrics.get`` contract)."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ..errors import AdapterError
from .base import AdapterResult, HttpAdapter, schema_error

__all__ = ["Lyrics", "LyricsAdapter"]


class Lyrics(BaseModel):
    """Lyric text for one track."""

    model_config = ConfigDict(frozen=True)

    text: str
    language: Optional[str] = None
    explicit: Optional[bool] = None


class _LyricsBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lyrics_body: Optional[str] = None
    lyrics_language: Optional[str] = None
    explicit: Optional[int] = None


class _Header(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status_code: int


class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lyrics: Optional[_LyricsBody] = None


class _Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    header: _Header
    # An empty result is sent as ``[]`` instead of an object.
    body: Union[_Body, list[Any], None] = None


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: _Message


class LyricsAdapter(HttpAdapter):
    """Fetch lyrics by ISRC, falling back to a title/artist match.

    ``Ok(None)`` means no lyrics exist, which the pipeline treats as an
    instrumental track. The envelope's ``header.status_code`` is classified
    exactly like an HTTP status.
    """

    service = "musixmatch"

    def __init__(self, *args: Any, api_key: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._api_key = api_key

    async def fetch(
        self,
        isrc: str,
        *,
        title: Optional[str] = None,
        artist: Optional[str] = None,
    ) -> AdapterResult[Optional[Lyrics]]:
        return await self._guard(self._fetch(isrc, title, artist), isrc=isrc)

    async def _fetch(
        self, isrc: str, title: Optional[str], artist: Optional[str]
    ) -> Optional[Lyrics]:
        if not self._api_key:
            raise AdapterError(
                "Musixmatch API key is not configured",
                service=self.service,
                status_code=401,
                retryable=False,
            )
        lyrics = await self._lookup("track.lyrics.get", {"track_isrc": isrc})
        if lyrics is None and title and artist:
            lyrics = await self._lookup(
                "matcher.lyrics.get", {"q_track": title, "q_artist": artist}
            )
        return lyrics

    async def _lookup(self, path: str, params: dict[str, str]) -> Optional[Lyrics]:
        response = await self._send(
            "GET", path, params={**params, "apikey": self._api_key}, ok_statuses=(404,)
        )
        if response.status_code == 404:
            return None
        try:
            envelope = _Envelope.model_validate(self._json(response))
        except PydanticValidationError as exc:
            raise schema_error(self.service, f"{exc.error_count()} invalid field(s)") from exc

        status = envelope.message.header.status_code
        if status == 404:
            return None
        if status != 200:
            raise AdapterError.from_status(
                status, self.service, f"{self.service} API returned status {status}"
            )
        body = envelope.message.body
        if not isinstance(body, _Body) or body.lyrics is None:
            return None
        text = (body.lyrics.lyrics_body or "").strip()
        if not text:
            return None
        return Lyrics(
            text=text,
            language=body.lyrics.lyrics_language or None,
            explicit=bool(body.lyrics.explicit) if body.lyrics.explicit is not None else None,
        )
