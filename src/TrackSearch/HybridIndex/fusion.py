"""Reciprocal Rank Fusion over dense and sparse candidate lists."""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

__all__ = ["FusionCandidate", "FusedCandidate", "ReciprocalRankFusion"]


@dataclass(slots=True)
class FusionCandidate:
    """One entry of a ranked candidate list.

    Attributes:
        source: Retrieval method that produced the candidate (``dense``/``sparse``)
        point_id: Index key of the candidate document
        score: Raw similarity reported by the store for this method
        rank: 1-based position within the source list
    """

    source: str
    point_id: str
    score: float
    rank: int


@dataclass(slots=True)
class FusedCandidate:
    """Aggregated view of a candidate after fusion."""

    point_id: str
    fused_score: float
    dense_score: Optional[float] = None
    sparse_score: Optional[float] = None
    dense_rank: Optional[int] = None
    sparse_rank: Optional[int] = None


class ReciprocalRankFusion:
    """Combine ranked lists using Reciprocal Rank Fusion.

    Attributes:
        _k0: Fusion parameter controlling the influence of item rank.

    Examples:
        >>> rrf = ReciprocalRankFusion(k0=60.0)
        >>> rrf.fuse([])
        {}
    """

    def __init__(self, k0: float = 60.0) -> None:
        if k0 <= 0:
            raise ValueError("k0 must be positive")
        self._k0 = k0

    @property
    def k0(self) -> float:
        return self._k0

    def fuse(self, candidates: Sequence[FusionCandidate]) -> Dict[str, float]:
        """Score candidates using reciprocal rank fusion.

        Args:
            candidates: Candidates from every list; ``rank`` is 1-based.

        Returns:
            Mapping of point IDs to aggregated RRF scores.
        """
        scores: Dict[str, float] = defaultdict(float)
        for candidate in candidates:
            if candidate.rank < 1:
                raise ValueError("ranks are 1-based")
            scores[candidate.point_id] += 1.0 / (self._k0 + candidate.rank)
        return dict(scores)

    def rank(
        self,
        dense: Sequence[FusionCandidate],
        sparse: Sequence[FusionCandidate] = (),
    ) -> List[FusedCandidate]:
        """Fuse ``dense`` and ``sparse`` lists into one ordering.

        Candidates are ordered by fused score, then by dense similarity
        (absent dense similarity sorts last), then by point id so equal inputs
        always give the same order.
        """
        fused_scores = self.fuse([*dense, *sparse])
        merged: Dict[str, FusedCandidate] = {}
        for candidate in dense:
            entry = merged.setdefault(
                candidate.point_id,
                FusedCandidate(candidate.point_id, fused_scores[candidate.point_id]),
            )
            entry.dense_score = candidate.score
            entry.dense_rank = candidate.rank
        for candidate in sparse:
            entry = merged.setdefault(
                candidate.point_id,
                FusedCandidate(candidate.point_id, fused_scores[candidate.point_id]),
            )
            entry.sparse_score = candidate.score
            entry.sparse_rank = candidate.rank

        def sort_key(entry: FusedCandidate) -> tuple[float, float, str]:
            dense_score = entry.dense_score if entry.dense_score is not None else -math.inf
            return (-entry.fused_score, -dense_score, entry.point_id)

        return sorted(merged.values(), key=sort_key)
