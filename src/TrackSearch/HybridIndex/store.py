# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.HybridIndex.store",
#   "purpose": "Qdrant-backed hybrid index manager: schema bootstrap, upsert and fused query",
#   "sections": [
#     {"id": "queryhit", "name": "QueryHit", "anchor": "class-queryhit", "kind": "class"},
#     {"id": "hybridindexmanager", "name": "HybridIndexManager", "anchor": "class-hybridindexmanager", "kind": "class"},
#     {"id": "classify-store-error", "name": "classify_store_error", "anchor": "function-classify-store-error", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Read/write contract for the track collection.

``HybridIndexManager`` owns no client; the caller constructs the
``AsyncQdrantClient`` and closes it. All writes are single-point upserts keyed
by the deterministic id, so a retried store step replaces the same point.

Queries issue one dense and (when there is lexical signal) one sparse
candidate search and fuse them client-side with
:class:`~TrackSearch.HybridIndex.fusion.ReciprocalRankFusion`, which keeps the
fusion constant and the dense-similarity tie-break under our control.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

import httpx
from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from ..errors import IndexWriteError
from ..logging import get_logger, log_event
from .document import AudioFeatures, TrackDocument
from .fusion import FusionCandidate, ReciprocalRankFusion
from .schema import CollectionSchema
from .sparse import SparseVector, is_empty

__all__ = ["QueryHit", "HybridIndexManager", "classify_store_error"]

LOGGER = get_logger(__name__, base_fields={"component": "hybrid_index"})


@dataclass(slots=True)
class QueryHit:
    """One ranked search result.

    Attributes:
        isrc: Track identifier.
        title: Track title.
        artist: Primary artist.
        album: Album title.
        score: Fused RRF score used for ordering.
        short_description: One-sentence description, when generated.
        audio_features: Stored audio features, ``None`` when absent.
        point_id: Index key of the document.
        dense_score: Cosine similarity from the dense list, if it appeared there.
        sparse_score: Sparse dot product from the sparse list, if it appeared there.
    """

    isrc: str
    title: str
    artist: str
    album: str
    score: float
    short_description: Optional[str]
    audio_features: Optional[AudioFeatures]
    point_id: str
    dense_score: Optional[float] = None
    sparse_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isrc": self.isrc,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "score": self.score,
            "short_description": self.short_description,
            "audio_features": self.audio_features.present() if self.audio_features else None,
            "point_id": self.point_id,
            "dense_score": self.dense_score,
            "sparse_score": self.sparse_score,
        }


def classify_store_error(exc: BaseException, *, operation: str) -> IndexWriteError:
    """Translate a client exception into :class:`IndexWriteError`.

    4xx responses (other than 429) and local-mode ``ValueError``/``KeyError``
    (wrong dimension, unknown vector name) mean the write can never succeed
    and are flagged ``schema_mismatch``; everything else is transient.
    """

    if isinstance(exc, IndexWriteError):
        return exc
    if isinstance(exc, UnexpectedResponse):
        status = exc.status_code or 0
        mismatch = 400 <= status < 500 and status not in (408, 429)
        return IndexWriteError(
            f"{operation} rejected by vector store (HTTP {status})", schema_mismatch=mismatch
        )
    if isinstance(exc, (ValueError, KeyError)):
        return IndexWriteError(f"{operation} rejected by vector store: {exc}", schema_mismatch=True)
    if isinstance(exc, (ResponseHandlingException, httpx.HTTPError, OSError, asyncio.TimeoutError)):
        return IndexWriteError(f"{operation} failed: {exc}")
    return IndexWriteError(f"{operation} failed: {type(exc).__name__}: {exc}")


def _to_store_sparse(vector: SparseVector) -> models.SparseVector:
    return models.SparseVector(indices=list(vector.indices), values=list(vector.values))


class HybridIndexManager:
    """Schema bootstrap, idempotent upserts and fused hybrid queries.

    Args:
        client: Shared async Qdrant client.
        schema: Collection layout.
        rrf_k: Reciprocal rank fusion constant.
        prefetch_limit: Default candidates fetched per list before fusion.

    Examples:
        >>> manager = HybridIndexManager(client, CollectionSchema(name="tracks", dense_dim=8))
        >>> await manager.ensure_collection()  # doctest: +SKIP
    """

    def __init__(
        self,
        client: AsyncQdrantClient,
        schema: CollectionSchema,
        *,
        rrf_k: float = 60.0,
        prefetch_limit: int = 100,
    ) -> None:
        if prefetch_limit < 1:
            raise ValueError("prefetch_limit must be positive")
        self._client = client
        self._schema = schema
        self._fusion = ReciprocalRankFusion(k0=rrf_k)
        self._prefetch_limit = prefetch_limit

    @property
    def schema(self) -> CollectionSchema:
        return self._schema

    async def ensure_collection(self) -> bool:
        """Create the collection and payload indexes when missing.

        Returns:
            ``True`` when the collection was created, ``False`` if it existed.

        Raises:
            IndexWriteError: If an existing collection has an incompatible
                dense vector layout (``schema_mismatch``).
        """
        name = self._schema.name
        if await self._client.collection_exists(name):
            await self._check_existing_layout()
            log_event(LOGGER, "debug", "index_collection_exists", collection=name)
            return False

        await self._client.create_collection(**self._schema.create_collection_kwargs())
        for index in self._schema.payload_indexes:
            await self._client.create_payload_index(
                collection_name=name,
                field_name=index.field_name,
                field_schema=index.field_schema(),
            )
        log_event(
            LOGGER,
            "info",
            "index_collection_created",
            collection=name,
            dense_dim=self._schema.dense_dim,
            payload_indexes=[index.field_name for index in self._schema.payload_indexes],
        )
        return True

    async def _check_existing_layout(self) -> None:
        info = await self._client.get_collection(self._schema.name)
        vectors = info.config.params.vectors
        if not isinstance(vectors, Mapping) or self._schema.dense_vector_name not in vectors:
            raise IndexWriteError(
                f"collection {self._schema.name!r} has no dense vector "
                f"{self._schema.dense_vector_name!r}",
                schema_mismatch=True,
            )
        size = vectors[self._schema.dense_vector_name].size
        if size != self._schema.dense_dim:
            raise IndexWriteError(
                f"collection {self._schema.name!r} stores {size}-d vectors, "
                f"configured for {self._schema.dense_dim}",
                schema_mismatch=True,
            )

    async def upsert(
        self,
        point_id: str,
        document: TrackDocument,
        dense: Sequence[float],
        sparse: SparseVector,
    ) -> None:
        """Write one point; the sparse vector is omitted when empty.

        Raises:
            IndexWriteError: On any store failure; ``schema_mismatch`` marks
                failures that retrying cannot fix.
        """
        if len(dense) != self._schema.dense_dim:
            raise IndexWriteError(
                f"dense vector has {len(dense)} dimensions, collection expects "
                f"{self._schema.dense_dim}",
                schema_mismatch=True,
            )
        vectors: Dict[str, Any] = {self._schema.dense_vector_name: [float(x) for x in dense]}
        if not is_empty(sparse):
            vectors[self._schema.sparse_vector_name] = _to_store_sparse(sparse)
        point = models.PointStruct(id=point_id, vector=vectors, payload=document.to_payload())
        try:
            await self._client.upsert(
                collection_name=self._schema.name, points=[point], wait=True
            )
        except Exception as exc:
            error = classify_store_error(exc, operation="upsert")
            log_event(
                LOGGER,
                "warning",
                "index_upsert_failed",
                isrc=document.isrc,
                point_id=point_id,
                error_kind="index_write_error",
                schema_mismatch=error.schema_mismatch,
                error=str(exc),
            )
            raise error from exc
        log_event(
            LOGGER,
            "debug",
            "index_upsert_completed",
            isrc=document.isrc,
            point_id=point_id,
            sparse_terms=len(sparse),
        )

    async def query(
        self,
        dense: Sequence[float],
        sparse: Optional[SparseVector],
        top_k: int,
        prefetch_limit: Optional[int] = None,
    ) -> List[QueryHit]:
        """Return the ``top_k`` documents by fused dense + sparse rank.

        An empty (or missing) sparse query degrades to dense-only ranking.
        """
        if top_k < 1:
            raise ValueError("top_k must be positive")
        limit = max(prefetch_limit or self._prefetch_limit, top_k)

        dense_response = await self._client.query_points(
            collection_name=self._schema.name,
            query=[float(x) for x in dense],
            using=self._schema.dense_vector_name,
            limit=limit,
            with_payload=True,
        )
        payloads: Dict[str, Mapping[str, Any]] = {}
        dense_candidates = self._candidates("dense", dense_response.points, payloads)

        sparse_candidates: List[FusionCandidate] = []
        if sparse is not None and not is_empty(sparse):
            sparse_response = await self._client.query_points(
                collection_name=self._schema.name,
                query=_to_store_sparse(sparse),
                using=self._schema.sparse_vector_name,
                limit=limit,
                with_payload=True,
            )
            sparse_candidates = self._candidates("sparse", sparse_response.points, payloads)

        fused = self._fusion.rank(dense_candidates, sparse_candidates)[:top_k]
        hits = []
        for entry in fused:
            payload = payloads[entry.point_id]
            hits.append(
                QueryHit(
                    isrc=payload["isrc"],
                    title=payload["title"],
                    artist=payload["artist"],
                    album=payload["album"],
                    score=entry.fused_score,
                    short_description=payload.get("short_description"),
                    audio_features=AudioFeatures.from_payload(payload),
                    point_id=entry.point_id,
                    dense_score=entry.dense_score,
                    sparse_score=entry.sparse_score,
                )
            )
        log_event(
            LOGGER,
            "debug",
            "index_query_completed",
            dense_candidates=len(dense_candidates),
            sparse_candidates=len(sparse_candidates),
            returned=len(hits),
        )
        return hits

    @staticmethod
    def _candidates(
        source: str,
        points: Iterable[models.ScoredPoint],
        payloads: Dict[str, Mapping[str, Any]],
    ) -> List[FusionCandidate]:
        candidates = []
        for rank, point in enumerate(points, start=1):
            point_id = str(point.id)
            payloads.setdefault(point_id, point.payload or {})
            candidates.append(FusionCandidate(source, point_id, float(point.score), rank))
        return candidates

    async def exists(self, point_ids: Iterable[str]) -> Set[str]:
        """Return the subset of ``point_ids`` present in the collection."""
        ids = list(point_ids)
        if not ids:
            return set()
        records = await self._client.retrieve(
            collection_name=self._schema.name,
            ids=ids,
            with_payload=False,
            with_vectors=False,
        )
        return {str(record.id) for record in records}

    async def count(self) -> int:
        result = await self._client.count(collection_name=self._schema.name, exact=True)
        return result.count

    async def get(self, point_id: str) -> Optional[TrackDocument]:
        """Fetch one stored document with its dense vector, ``None`` if absent."""
        records = await self._client.retrieve(
            collection_name=self._schema.name,
            ids=[point_id],
            with_payload=True,
            with_vectors=True,
        )
        if not records:
            return None
        record = records[0]
        vectors = record.vector if isinstance(record.vector, Mapping) else {}
        dense = vectors.get(self._schema.dense_vector_name) or []
        return TrackDocument.from_payload(record.payload or {}, dense)
