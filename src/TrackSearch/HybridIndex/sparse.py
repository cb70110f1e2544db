"""Hashed term-frequency sparse vectors for BM25-style lexical matching.

The encoder only supplies saturated per-document term frequencies. Inverse
document frequency is applied by the vector store (the sparse field is
declared with the IDF modifier), so nothing here depends on corpus statistics
and the same function serves both indexing and querying.
"""

from __future__ import annotations

import hashlib
import re
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Tuple

__all__ = [
    "TF_SATURATION_K",
    "SparseVector",
    "tokenize",
    "hash_token",
    "term_weight",
    "encode",
    "combine",
    "is_empty",
]

TF_SATURATION_K = 1.2

_NON_WORD = re.compile(r"[^\w\s]")


@dataclass(frozen=True, slots=True)
class SparseVector:
    """Parallel ``indices``/``values`` sequences with unique uint32 indices.

    Attributes:
        indices: Term hashes, unique within the vector.
        values: Weight for the term hash at the same position.

    Examples:
        >>> SparseVector.empty().as_mapping()
        {}
    """

    indices: Tuple[int, ...] = ()
    values: Tuple[float, ...] = ()

    def __post_init__(self) -> None:
        if len(self.indices) != len(self.values):
            raise ValueError("indices and values must have the same length")
        if len(set(self.indices)) != len(self.indices):
            raise ValueError("sparse vector indices must be unique")

    @classmethod
    def empty(cls) -> "SparseVector":
        return cls((), ())

    @classmethod
    def from_mapping(cls, weights: Mapping[int, float]) -> "SparseVector":
        """Build a vector from ``{index: weight}`` ordered by index."""
        ordered = sorted(weights.items())
        return cls(tuple(i for i, _ in ordered), tuple(float(w) for _, w in ordered))

    def as_mapping(self) -> Dict[int, float]:
        return dict(zip(self.indices, self.values))

    def __len__(self) -> int:
        return len(self.indices)


def tokenize(text: str) -> List[str]:
    """Lowercase, turn non-word characters into spaces and drop 1-char tokens."""

    cleaned = _NON_WORD.sub(" ", text.lower())
    return [token for token in cleaned.split() if len(token) > 1]


def hash_token(token: str) -> int:
    """Return the first four bytes of ``md5(token)`` as a big-endian uint32."""

    digest = hashlib.md5(token.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


def term_weight(tf: int, k: float = TF_SATURATION_K) -> float:
    """Saturating term-frequency weight ``tf / (tf + k)``."""

    if tf < 1:
        raise ValueError("term frequency must be at least 1")
    return tf / (tf + k)


def encode(text: str) -> SparseVector:
    """Encode ``text`` into a sparse vector with one entry per distinct term hash.

    Args:
        text: Arbitrary text; empty or whitespace-only text yields an empty vector.

    Returns:
        :class:`SparseVector` ordered by index, so the result does not depend
        on word order.
    """

    # Distinct tokens may share a 32-bit hash; their counts are merged.
    counts: Counter[int] = Counter(hash_token(token) for token in tokenize(text))
    return SparseVector.from_mapping({index: term_weight(tf) for index, tf in counts.items()})


def combine(vectors: Iterable[SparseVector]) -> SparseVector:
    """Sum weights per index across ``vectors`` (used for expanded queries)."""

    totals: Dict[int, float] = defaultdict(float)
    for vector in vectors:
        for index, value in zip(vector.indices, vector.values):
            totals[index] += value
    return SparseVector.from_mapping(totals)


def is_empty(vector: SparseVector) -> bool:
    """Return ``True`` when ``vector`` carries no lexical signal."""

    return len(vector.indices) == 0
