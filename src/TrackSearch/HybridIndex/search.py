"""Query-side service: validate a discovery query, derive both query vectors, fuse."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..Adapters.embedding import EmbeddingAdapter
from ..Adapters.interpretation import InterpretationAdapter
from ..errors import ValidationError
from ..logging import get_logger, log_event
from .sparse import combine, encode
from .store import HybridIndexManager, QueryHit

__all__ = ["MAX_QUERY_CHARS", "MAX_TOP_K", "QueryRequest", "QueryResponse", "HybridSearchService"]

LOGGER = get_logger(__name__, base_fields={"component": "search"})

MAX_QUERY_CHARS = 2000
MAX_TOP_K = 50


@dataclass(slots=True)
class QueryRequest:
    """Discovery query as received from the caller.

    Attributes:
        query_text: Free text; trimmed, 1 to 2000 characters.
        query_embedding: Precomputed dense query vector. When omitted the
            embedding adapter embeds ``query_text`` with its query instruction.
        top_k: Requested result count, clamped to ``[1, 50]``.
        expand: Rewrite the query into paraphrases before building the sparse
            query.

    Examples:
        >>> QueryRequest(query_text="rainy night drive", top_k=5)
        QueryRequest(query_text='rainy night drive', query_embedding=None, top_k=5, expand=False)
    """

    query_text: str
    query_embedding: Optional[Sequence[float]] = None
    top_k: int = 10
    expand: bool = False


@dataclass(slots=True)
class QueryResponse:
    """Ranked hits plus the query variants that produced them."""

    hits: List[QueryHit]
    query_text: str
    expanded_queries: List[str] = field(default_factory=list)
    took_ms: int = 0


class HybridSearchService:
    """Run fused hybrid queries against the track index."""

    def __init__(
        self,
        index: HybridIndexManager,
        embedding: EmbeddingAdapter,
        interpretation: Optional[InterpretationAdapter] = None,
    ) -> None:
        self._index = index
        self._embedding = embedding
        self._interpretation = interpretation

    async def search(self, request: QueryRequest) -> QueryResponse:
        """Execute ``request``.

        Raises:
            ValidationError: If the query text is empty, too long, or the
                supplied embedding has the wrong dimension.
            AdapterError: If the query embedding cannot be computed.
        """
        started = time.perf_counter()
        text = self._validate(request)
        top_k = min(max(int(request.top_k), 1), MAX_TOP_K)

        expanded: List[str] = []
        if request.expand and self._interpretation is not None:
            result = await self._interpretation.expand_query(text)
            if result.ok:
                expanded = [q for q in result.value if q != text]
            else:
                log_event(
                    LOGGER,
                    "warning",
                    "query_expansion_skipped",
                    error_kind="adapter_error",
                    error=str(result.error),
                )
        sparse = combine([encode(text), *(encode(q) for q in expanded)])

        if request.query_embedding is not None:
            dense = [float(x) for x in request.query_embedding]
        else:
            dense = (await self._embedding.embed_query(text)).unwrap()

        hits = await self._index.query(dense, sparse, top_k=top_k)
        unique: List[QueryHit] = []
        seen: set[str] = set()
        for hit in hits:
            if hit.isrc in seen:
                continue
            seen.add(hit.isrc)
            unique.append(hit)

        took_ms = int((time.perf_counter() - started) * 1000)
        log_event(
            LOGGER,
            "info",
            "search_completed",
            query_chars=len(text),
            expanded=len(expanded),
            sparse_terms=len(sparse),
            returned=len(unique),
            took_ms=took_ms,
        )
        return QueryResponse(hits=unique[:top_k], query_text=text, expanded_queries=expanded, took_ms=took_ms)

    def _validate(self, request: QueryRequest) -> str:
        text = (request.query_text or "").strip()
        if not text:
            raise ValidationError("Query must not be empty")
        if len(text) > MAX_QUERY_CHARS:
            raise ValidationError(
                f"Query exceeds {MAX_QUERY_CHARS} characters",
                details={"length": len(text)},
            )
        if request.query_embedding is not None:
            expected = self._index.schema.dense_dim
            if len(request.query_embedding) != expected:
                raise ValidationError(
                    f"query_embedding has {len(request.query_embedding)} dimensions, expected {expected}",
                )
        return text
