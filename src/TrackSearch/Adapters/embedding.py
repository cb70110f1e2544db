"""Dense embeddings from a text-embeddings-inference (TEI) server."""

from __future__ import annotations

import math
from typing import Any, List

from ..errors import AdapterError
from .base import AdapterResult, HttpAdapter, schema_error

__all__ = ["EmbeddingAdapter"]


class EmbeddingAdapter(HttpAdapter):
    """``POST /embed`` client returning one fixed-length vector per call.

    Args:
        dimension: Expected vector length; any other length is a terminal
            schema error.
        instruction: Prefix applied by :meth:`embed_query` for
            instruction-aware embedding models.
    """

    service = "tei"

    def __init__(self, *args: Any, dimension: int, instruction: str = "", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        if dimension < 1:
            raise ValueError("dimension must be positive")
        self._dimension = dimension
        self._instruction = instruction.strip()

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> AdapterResult[List[float]]:
        return await self._guard(self._embed(text), chars=len(text or ""))

    async def embed_query(self, query: str) -> AdapterResult[List[float]]:
        """Embed a search query with the configured instruction prefix."""
        if not (query or "").strip() or not self._instruction:
            return await self.embed(query)
        return await self.embed(f"{self._instruction} {query.strip()}")

    async def _embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise AdapterError(
                "Cannot embed empty text",
                service=self.service,
                status_code=400,
                retryable=False,
            )
        response = await self._send("POST", "embed", json={"inputs": text})
        data = self._json(response)
        if isinstance(data, list) and data and isinstance(data[0], list):
            vector = data[0]
        elif isinstance(data, list) and data and all(isinstance(x, (int, float)) for x in data):
            vector = data
        else:
            raise schema_error(self.service, f"unexpected response shape {type(data).__name__}")
        if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in vector):
            raise schema_error(self.service, "embedding contains non-numeric values")
        if len(vector) != self._dimension:
            raise schema_error(
                self.service,
                f"embedding has {len(vector)} dimensions, expected {self._dimension}",
            )
        result = [float(x) for x in vector]
        if not all(math.isfinite(x) for x in result):
            raise schema_error(self.service, "embedding contains non-finite values")
        return result
