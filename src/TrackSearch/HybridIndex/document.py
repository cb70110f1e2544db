# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.HybridIndex.document",
#   "purpose": "Validated track documents and the assembler that builds them",
#   "sections": [
#     {"id": "audiofeatures", "name": "AudioFeatures", "anchor": "class-audiofeatures", "kind": "class"},
#     {"id": "trackdocument", "name": "TrackDocument", "anchor": "class-trackdocument", "kind": "class"},
#     {"id": "truncate-description", "name": "truncate_description", "anchor": "function-truncate-description", "kind": "function"},
#     {"id": "select-short-description", "name": "select_short_description", "anchor": "function-select-short-description", "kind": "function"},
#     {"id": "assemble-document", "name": "assemble_document", "anchor": "function-assemble-document", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Track documents as stored in the hybrid index.

A :class:`TrackDocument` merges the outputs of one ingestion run: metadata from
the trigger, optional lyrics and audio features, the generated
interpretation and short description, and the dense embedding. Validation is
strict because a document that reaches the store is replaced only by a later
successful run for the same ISRC.

Payload layout
--------------
:meth:`TrackDocument.to_payload` flattens audio features to top-level keys
(``energy``, ``tempo`` ...) next to the text fields so the store can filter
on them directly. The dense embedding travels as a named vector, never in the
payload.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import DocumentValidationError, InvalidIdentifier
from ..identity import normalize_isrc, validate_isrc

__all__ = [
    "AUDIO_FEATURE_FIELDS",
    "SHORT_DESCRIPTION_MAX_CHARS",
    "SHORT_DESCRIPTION_SOURCES",
    "AudioFeatures",
    "TrackDocument",
    "truncate_description",
    "select_short_description",
    "assemble_document",
]

SHORT_DESCRIPTION_MAX_CHARS = 500

# Precedence order for the short description.
SHORT_DESCRIPTION_SOURCES = ("lyrics", "audio_features", "metadata")


class AudioFeatures(BaseModel):
    """Numeric audio descriptors; every field is optional and range-checked."""

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False, frozen=True)

    acousticness: Optional[float] = Field(None, ge=0.0, le=1.0)
    danceability: Optional[float] = Field(None, ge=0.0, le=1.0)
    energy: Optional[float] = Field(None, ge=0.0, le=1.0)
    instrumentalness: Optional[float] = Field(None, ge=0.0, le=1.0)
    key: Optional[int] = Field(None, ge=-1, le=11, description="Pitch class, -1 = none")
    liveness: Optional[float] = Field(None, ge=0.0, le=1.0)
    loudness: Optional[float] = Field(None, ge=-60.0, le=0.0, description="dB")
    mode: Optional[int] = Field(None, ge=0, le=1, description="0 = minor, 1 = major")
    speechiness: Optional[float] = Field(None, ge=0.0, le=1.0)
    tempo: Optional[float] = Field(None, ge=0.0, le=250.0, description="BPM")
    valence: Optional[float] = Field(None, ge=0.0, le=1.0)

    def present(self) -> Dict[str, float | int]:
        """Return only the features that carry a value."""
        return self.model_dump(exclude_none=True)

    def is_empty(self) -> bool:
        return not self.present()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["AudioFeatures"]:
        """Rebuild features from a flat index payload, ``None`` when none are set."""
        values = {
            name: payload[name]
            for name in AUDIO_FEATURE_FIELDS
            if payload.get(name) is not None
        }
        if not values:
            return None
        return cls.model_validate(values)


AUDIO_FEATURE_FIELDS: tuple[str, ...] = tuple(AudioFeatures.model_fields)


class TrackDocument(BaseModel):
    """Canonical indexed entity for one track.

    The embedding length is validated against ``dense_dim`` supplied through
    the validation context (see :func:`assemble_document`); without a context
    only non-emptiness and finiteness are checked.
    """

    model_config = ConfigDict(extra="forbid", allow_inf_nan=False, frozen=True)

    isrc: str
    title: str = Field(..., min_length=1)
    artist: str = Field(..., min_length=1)
    album: str = Field(..., min_length=1)
    artwork_url: Optional[str] = None
    lyrics: Optional[str] = None
    interpretation: Optional[str] = None
    short_description: Optional[str] = Field(None, max_length=SHORT_DESCRIPTION_MAX_CHARS)
    audio_features: Optional[AudioFeatures] = None
    dense_embedding: List[float]

    @field_validator("isrc", mode="before")
    @classmethod
    def normalize_isrc_field(cls, v: Any) -> str:
        """Accept any letter case, store uppercase."""
        if not validate_isrc(v):
            raise ValueError("isrc must be 12 alphanumeric characters")
        return str(v).upper()

    @field_validator("title", "artist", "album", mode="before")
    @classmethod
    def strip_required_text(cls, v: Any) -> Any:
        """Trim whitespace so blank metadata fails ``min_length``."""
        return v.strip() if isinstance(v, str) else v

    @field_validator("lyrics", "interpretation", "short_description", "artwork_url", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        """Treat empty optional text as absent."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("audio_features", mode="after")
    @classmethod
    def empty_features_to_none(cls, v: Optional[AudioFeatures]) -> Optional[AudioFeatures]:
        if v is not None and v.is_empty():
            return None
        return v

    @field_validator("dense_embedding", mode="after")
    @classmethod
    def check_embedding(cls, v: List[float], info: ValidationInfo) -> List[float]:
        """Enforce a non-empty, finite vector of the configured dimension."""
        if not v:
            raise ValueError("dense_embedding must not be empty")
        expected = (info.context or {}).get("dense_dim")
        if expected is not None and len(v) != expected:
            raise ValueError(f"dense_embedding has {len(v)} dimensions, expected {expected}")
        if not all(math.isfinite(x) for x in v):
            raise ValueError("dense_embedding contains non-finite values")
        return v

    def to_payload(self) -> Dict[str, Any]:
        """Return the flat payload written next to the vectors."""
        payload: Dict[str, Any] = {
            "isrc": self.isrc,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "artwork_url": self.artwork_url,
            "lyrics": self.lyrics,
            "interpretation": self.interpretation,
            "short_description": self.short_description,
        }
        for name in AUDIO_FEATURE_FIELDS:
            payload[name] = getattr(self.audio_features, name) if self.audio_features else None
        return payload

    @classmethod
    def from_payload(
        cls, payload: Mapping[str, Any], dense_embedding: Sequence[float]
    ) -> "TrackDocument":
        """Inverse of :meth:`to_payload` given the stored dense vector."""
        return cls(
            isrc=payload["isrc"],
            title=payload["title"],
            artist=payload["artist"],
            album=payload["album"],
            artwork_url=payload.get("artwork_url"),
            lyrics=payload.get("lyrics"),
            interpretation=payload.get("interpretation"),
            short_description=payload.get("short_description"),
            audio_features=AudioFeatures.from_payload(payload),
            dense_embedding=list(dense_embedding),
        )

    def lexical_text(self) -> str:
        """Text the sparse vector is derived from."""
        parts = [self.title, self.artist, self.album, self.lyrics, self.interpretation]
        return "\n".join(part for part in parts if part)


def truncate_description(text: str, limit: int = SHORT_DESCRIPTION_MAX_CHARS) -> str:
    """Trim ``text`` to ``limit`` characters, cutting on a word boundary.

    A single word longer than ``limit`` is cut hard.

    Examples:
        >>> truncate_description("alpha beta gamma", limit=12)
        'alpha beta'
    """

    text = text.strip()
    if len(text) <= limit:
        return text
    head = text[: limit + 1]
    cut = head.rfind(" ")
    if cut <= 0:
        return text[:limit].rstrip()
    return head[:cut].rstrip()


def select_short_description(candidates: Mapping[str, Optional[str]]) -> Optional[str]:
    """Pick the first non-blank candidate in ``SHORT_DESCRIPTION_SOURCES`` order."""

    for source in SHORT_DESCRIPTION_SOURCES:
        value = candidates.get(source)
        if value and value.strip():
            return truncate_description(value)
    return None


def assemble_document(
    *,
    isrc: str,
    title: str,
    artist: str,
    album: str,
    dense_embedding: Sequence[float],
    dense_dim: int,
    artwork_url: Optional[str] = None,
    lyrics: Optional[str] = None,
    interpretation: Optional[str] = None,
    short_descriptions: Optional[Mapping[str, Optional[str]]] = None,
    audio_features: AudioFeatures | Mapping[str, Any] | None = None,
) -> TrackDocument:
    """Merge run outputs into a validated :class:`TrackDocument`.

    Args:
        isrc: Track identifier in any letter case.
        title: Track title from the trigger metadata.
        artist: Primary artist.
        album: Album title.
        dense_embedding: Vector produced by the embedding step.
        dense_dim: Dimension the index was created with.
        artwork_url: Optional cover art URL.
        lyrics: Lyrics text, ``None`` for instrumentals.
        interpretation: Generated interpretation, ``None`` without lyrics.
        short_descriptions: Candidate descriptions keyed by source
            (``lyrics``/``audio_features``/``metadata``).
        audio_features: Feature set or its mapping form.

    Returns:
        The validated document.

    Raises:
        DocumentValidationError: If any field is malformed or out of range.
    """

    try:
        normalized = normalize_isrc(isrc)
    except InvalidIdentifier as exc:
        raise DocumentValidationError(str(exc), details={"field": "isrc"}) from exc

    try:
        vector = [float(x) for x in dense_embedding]
    except (TypeError, ValueError) as exc:
        raise DocumentValidationError(
            f"dense_embedding for {normalized} is not numeric",
            details={"isrc": normalized, "fields": ["dense_embedding"]},
        ) from exc

    data = {
        "isrc": normalized,
        "title": title,
        "artist": artist,
        "album": album,
        "artwork_url": artwork_url,
        "lyrics": lyrics,
        "interpretation": interpretation,
        "short_description": select_short_description(short_descriptions or {}),
        "audio_features": audio_features,
        "dense_embedding": vector,
    }
    try:
        return TrackDocument.model_validate(data, context={"dense_dim": dense_dim})
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise DocumentValidationError(
            f"Invalid track document for {normalized}: {', '.join(fields)}",
            details={"isrc": normalized, "fields": fields},
        ) from exc
