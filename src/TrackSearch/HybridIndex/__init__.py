# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.HybridIndex",
#   "purpose": "Hybrid dense/sparse index public API facade",
#   "sections": []
# }
# === /NAVMAP ===

"""
TrackSearch.HybridIndex holds everything between an ingestion run's outputs
and a ranked list of tracks:

- ``sparse`` turns text into hashed, TF-saturated sparse vectors.
- ``document`` validates and assembles ``TrackDocument`` values and flattens
  them into store payloads.
- ``schema`` declares the Qdrant collection (dense cosine vector, sparse IDF
  vector, payload indexes).
- ``store`` wraps ``AsyncQdrantClient`` for upserts and fused queries.
- ``fusion`` implements Reciprocal Rank Fusion.
- ``search`` is the query-side service (validation, expansion, embedding).

Attributes are loaded lazily so importing the sparse encoder does not pull in
the Qdrant client.
"""

from __future__ import annotations

import importlib
import sys
from typing import Any

_ATTRIBUTE_EXPORTS: dict[str, tuple[str, str]] = {
    "AudioFeatures": (".document", "AudioFeatures"),
    "TrackDocument": (".document", "TrackDocument"),
    "assemble_document": (".document", "assemble_document"),
    "SparseVector": (".sparse", "SparseVector"),
    "ReciprocalRankFusion": (".fusion", "ReciprocalRankFusion"),
    "CollectionSchema": (".schema", "CollectionSchema"),
    "HybridIndexManager": (".store", "HybridIndexManager"),
    "QueryHit": (".store", "QueryHit"),
    "HybridSearchService": (".search", "HybridSearchService"),
    "QueryRequest": (".search", "QueryRequest"),
}

__all__ = sorted(_ATTRIBUTE_EXPORTS)


def __getattr__(name: str) -> Any:
    if name in _ATTRIBUTE_EXPORTS:
        module_path, attr_name = _ATTRIBUTE_EXPORTS[name]
        module = importlib.import_module(f"{__name__}{module_path}")
        value = getattr(module, attr_name)
        setattr(sys.modules[__name__], name, value)
        return value
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:  # pragma: no cover - tooling helper
    return sorted(set(globals()) | set(__all__))
