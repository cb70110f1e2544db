from __future__ import annotations

import math

import pytest

from TrackSearch.errors import DocumentValidationError, ValidationError
from TrackSearch.HybridIndex.document import (
    AUDIO_FEATURE_FIELDS,
    AudioFeatures,
    TrackDocument,
    assemble_document,
    select_short_description,
    truncate_description,
)


def _assemble(**overrides):
    fields = dict(
        isrc="usrc17607839",
        title="Midnight City",
        artist="M83",
        album="Hurry Up, We're Dreaming",
        dense_embedding=[0.1, 0.2, 0.3, 0.4],
        dense_dim=4,
    )
    fields.update(overrides)
    return assemble_document(**fields)


def test_assembles_and_normalizes() -> None:
    document = _assemble(
        lyrics="Waiting in a car",
        interpretation="A song about youth.",
        short_descriptions={"metadata": "Fallback", "lyrics": "Neon-lit nostalgia."},
        audio_features={"energy": 0.85, "tempo": 150},
    )
    assert document.isrc == "USRC17607839"
    assert document.short_description == "Neon-lit nostalgia."
    assert document.audio_features is not None
    assert document.audio_features.energy == 0.85


def test_short_description_precedence() -> None:
    assert select_short_description({"metadata": "m", "audio_features": "a"}) == "a"
    assert select_short_description({"metadata": "m", "lyrics": "  "}) == "m"
    assert select_short_description({}) is None


def test_long_description_is_cut_on_word_boundary() -> None:
    text = "word " * 200
    document = _assemble(short_descriptions={"lyrics": text})
    assert document.short_description is not None
    assert len(document.short_description) <= 500
    assert document.short_description.endswith("word")
    assert truncate_description("x" * 600) == "x" * 500


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"isrc": "BAD"}, "isrc"),
        ({"dense_embedding": [0.1, 0.2]}, "dense_embedding"),
        ({"dense_embedding": [0.1, math.nan, 0.3, 0.4]}, "dense_embedding"),
        ({"dense_embedding": [0.1, math.inf, 0.3, 0.4]}, "dense_embedding"),
        ({"audio_features": {"energy": 1.5}}, "audio_features.energy"),
        ({"audio_features": {"tempo": 300}}, "audio_features.tempo"),
        ({"audio_features": {"key": 12}}, "audio_features.key"),
        ({"title": "   "}, "title"),
    ],
)
def test_invalid_inputs_raise_document_validation_error(overrides: dict, field: str) -> None:
    with pytest.raises(DocumentValidationError) as excinfo:
        _assemble(**overrides)
    assert isinstance(excinfo.value, ValidationError)
    if field != "isrc":
        assert any(name.startswith(field) for name in excinfo.value.details["fields"])


def test_non_numeric_embedding_is_rejected() -> None:
    with pytest.raises(DocumentValidationError):
        _assemble(dense_embedding=["a", "b", "c", "d"])


def test_empty_audio_features_are_dropped() -> None:
    document = _assemble(audio_features={})
    assert document.audio_features is None


def test_payload_flattens_features_and_round_trips() -> None:
    document = _assemble(audio_features={"energy": 0.85, "tempo": 150.0, "key": 5})
    payload = document.to_payload()
    assert payload["energy"] == 0.85
    assert payload["valence"] is None
    assert set(AUDIO_FEATURE_FIELDS) <= set(payload)
    assert "dense_embedding" not in payload
    restored = TrackDocument.from_payload(payload, document.dense_embedding)
    assert restored == document


def test_lexical_text_covers_text_fields() -> None:
    document = _assemble(lyrics="neon lights", interpretation="youthful escape")
    text = document.lexical_text()
    for part in ("Midnight City", "M83", "neon lights", "youthful escape"):
        assert part in text


def test_audio_features_from_payload_without_values() -> None:
    assert AudioFeatures.from_payload({"title": "x", "energy": None}) is None
