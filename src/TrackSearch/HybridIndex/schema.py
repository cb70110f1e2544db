"""Collection layout for the track index: one dense and one sparse vector field."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from qdrant_client import models

from ..settings import IndexCfg

__all__ = ["PayloadIndex", "CollectionSchema", "PAYLOAD_INDEXES"]


@dataclass(frozen=True, slots=True)
class PayloadIndex:
    """Payload field and the kind of index declared on it."""

    field_name: str
    kind: str  # "keyword" or "text"

    def field_schema(self) -> models.PayloadSchemaType | models.TextIndexParams:
        if self.kind == "keyword":
            return models.PayloadSchemaType.KEYWORD
        return models.TextIndexParams(
            type=models.TextIndexType.TEXT,
            tokenizer=models.TokenizerType.WORD,
            min_token_len=2,
            lowercase=True,
        )


PAYLOAD_INDEXES: Tuple[PayloadIndex, ...] = (
    PayloadIndex("isrc", "keyword"),
    PayloadIndex("title", "text"),
    PayloadIndex("artist", "text"),
    PayloadIndex("lyrics", "text"),
    PayloadIndex("interpretation", "text"),
)

_DATATYPES = {
    "float32": models.Datatype.FLOAT32,
    "float16": models.Datatype.FLOAT16,
    "uint8": models.Datatype.UINT8,
}


@dataclass(frozen=True, slots=True)
class CollectionSchema:
    """Declarative description of the track collection.

    Attributes:
        name: Collection name.
        dense_vector_name: Named dense vector (cosine distance).
        sparse_vector_name: Named sparse vector with the IDF modifier.
        dense_dim: Dense vector dimensionality.
        dense_datatype: Storage datatype for dense vectors.
        hnsw_m: HNSW graph degree.
        hnsw_ef_construct: HNSW build-time candidate list size.
        payload_indexes: Payload fields indexed for exact or text matching.
    """

    name: str
    dense_vector_name: str = "interpretation_embedding"
    sparse_vector_name: str = "text_sparse"
    dense_dim: int = 4096
    dense_datatype: str = "float16"
    hnsw_m: int = 16
    hnsw_ef_construct: int = 200
    payload_indexes: Tuple[PayloadIndex, ...] = field(default=PAYLOAD_INDEXES)

    @classmethod
    def from_config(cls, cfg: IndexCfg) -> "CollectionSchema":
        return cls(
            name=cfg.collection,
            dense_vector_name=cfg.dense_vector_name,
            sparse_vector_name=cfg.sparse_vector_name,
            dense_dim=cfg.dense_dim,
            dense_datatype=cfg.dense_datatype,
            hnsw_m=cfg.hnsw_m,
            hnsw_ef_construct=cfg.hnsw_ef_construct,
        )

    def create_collection_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``AsyncQdrantClient.create_collection``."""
        return {
            "collection_name": self.name,
            "vectors_config": {
                self.dense_vector_name: models.VectorParams(
                    size=self.dense_dim,
                    distance=models.Distance.COSINE,
                    datatype=_DATATYPES[self.dense_datatype],
                    on_disk=False,
                )
            },
            "sparse_vectors_config": {
                self.sparse_vector_name: models.SparseVectorParams(
                    index=models.SparseIndexParams(on_disk=False),
                    modifier=models.Modifier.IDF,
                )
            },
            "hnsw_config": models.HnswConfigDiff(m=self.hnsw_m, ef_construct=self.hnsw_ef_construct),
            "optimizers_config": models.OptimizersConfigDiff(
                indexing_threshold=20000,
                memmap_threshold=50000,
                max_segment_size=200000,
            ),
        }
