"""Prompt templates for interpretation, short descriptions and query expansion."""

from __future__ import annotations

import math
from typing import List, Optional

from ..HybridIndex.document import AudioFeatures

__all__ = [
    "INTERPRETATION_SYSTEM_CONTEXT",
    "build_interpretation_prompt",
    "format_audio_features",
    "build_short_description_prompt",
    "build_instrumental_description_prompt",
    "build_metadata_description_prompt",
    "build_query_expansion_prompt",
]

INTERPRETATION_SYSTEM_CONTEXT = (
    "You are analyzing song lyrics to create a rich, searchable interpretation "
    "for a music discovery system."
)

NO_AUDIO_CHARACTERISTICS = "No distinctive audio characteristics available"


def build_interpretation_prompt(title: str, artist: str, album: str, lyrics: str) -> str:
    return f"""{INTERPRETATION_SYSTEM_CONTEXT}

Given the following song information and lyrics, create a detailed interpretation that captures:
1. **Themes**: Core topics and ideas (love, rebellion, nostalgia, etc.)
2. **Emotional Tone**: The mood and feelings evoked (melancholic, euphoric, angry, etc.)
3. **Narrative**: Any story or journey in the lyrics
4. **Context**: Cultural, social, or musical context when apparent

Write a cohesive 2-3 paragraph interpretation that would help someone find this song when searching for music matching specific moods, themes, or experiences. Focus on what makes this song emotionally resonant and thematically distinctive.

Song: {title} by {artist}
Album: {album}

Lyrics:
{lyrics}"""


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _band(value: Optional[float], low: float, high: float, low_label: str, high_label: str) -> Optional[str]:
    if value is None:
        return None
    if value >= high:
        return high_label
    if value <= low:
        return low_label
    return None


def format_audio_features(features: AudioFeatures) -> str:
    """Render features as comma-separated descriptors for an LLM prompt.

    Examples:
        >>> format_audio_features(AudioFeatures(energy=0.85, tempo=150))
        'high energy, fast tempo (150 BPM)'
    """

    descriptors: List[str] = []
    for label in (
        _band(features.energy, 0.3, 0.7, "low energy", "high energy"),
        _band(features.valence, 0.3, 0.7, "melancholic mood", "uplifting mood"),
        _band(features.acousticness, 0.2, 0.7, "electronic", "acoustic"),
        _band(features.danceability, 0.3, 0.7, "ambient", "danceable"),
    ):
        if label:
            descriptors.append(label)

    if features.tempo is not None:
        bpm = _round_half_up(features.tempo)
        if features.tempo >= 140:
            descriptors.append(f"fast tempo ({bpm} BPM)")
        elif features.tempo <= 80:
            descriptors.append(f"slow tempo ({bpm} BPM)")
        else:
            descriptors.append(f"{bpm} BPM")

    if features.liveness is not None and features.liveness >= 0.8:
        descriptors.append("live recording")
    if features.speechiness is not None and features.speechiness >= 0.66:
        descriptors.append("spoken word elements")

    if not descriptors:
        return NO_AUDIO_CHARACTERISTICS
    return ", ".join(descriptors)


def build_short_description_prompt(title: str, artist: str, interpretation: str) -> str:
    return f"""Summarize this track interpretation in exactly one sentence (max 50 words).
Focus on mood, theme, and emotional content. Output only the sentence.

Track: {title} by {artist}
Interpretation: {interpretation}"""


def build_instrumental_description_prompt(
    title: str, artist: str, album: str, features: AudioFeatures
) -> str:
    return f"""Describe this instrumental track in exactly one sentence (max 50 words).
Use the audio features and metadata to convey its sonic character. Output only the sentence.

Track: {title} by {artist} from {album}
Audio Features: {format_audio_features(features)}"""


def build_metadata_description_prompt(title: str, artist: str, album: str) -> str:
    return f"""Create a brief, neutral description for this track in exactly one sentence (max 50 words).
Use only the metadata provided. Output only the sentence.

Track: {title} by {artist} from {album}"""


def build_query_expansion_prompt(query: str) -> str:
    return f"""Given a user's natural language query describing the mood, theme, or feeling they want in music, generate 1 to 3 focused search queries optimized for finding matching songs.

Guidelines:
- If the user query is specific (e.g., "songs about summer"), generate 1-2 queries
- If the user query is complex or multi-faceted, generate 2-3 queries covering different aspects
- Each query should be 5-15 words, suitable for semantic and keyword search
- Focus on themes, emotions, imagery, and lyrical content
- Do not include artist names or song titles unless the user specified them

User query: {query}

Respond with ONLY a JSON array of strings. No explanation or additional text.
Example response format:
["uplifting songs about overcoming hardship", "hopeful lyrics about perseverance"]"""
