"""Query embedding client for the vector source.

Embedding generation itself is owned by the embedding service; this client
only POSTs the query text and returns the vector. Document embeddings are
regenerated by background workers outside the request path, so nothing here
ever waits on embedding freshness.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
import numpy as np
import structlog

logger = structlog.get_logger("sources.embedding")


class EmbeddingServiceError(Exception):
    """The embedding service returned no usable vector."""
    pass


class EmbeddingCache(ABC):
    """Store for query embeddings, keyed by query text and model."""

    @abstractmethod
    async def get_cached_query_embedding(self, query: str, model: str) -> Optional[List[float]]:
        pass

    @abstractmethod
    async def cache_query_embedding(self, query: str, model: str, embedding: List[float]) -> None:
        pass


class EmbeddingClient:
    """Thin async client for the ``/api/v1/embed`` endpoint."""

    def __init__(
        self,
        service_url: str,
        model: str = "default",
        timeout: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[EmbeddingCache] = None,
    ):
        self.service_url = service_url.rstrip("/")
        self.model = model
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.cache = cache

    async def embed(self, text: str) -> np.ndarray:
        """Return the embedding vector for ``text``, from the cache when possible."""
        if self.cache is not None:
            cached = await self.cache.get_cached_query_embedding(text, self.model)
            if cached is not None:
                return np.asarray(cached, dtype=np.float32)

        response = await self.http_client.post(
            f"{self.service_url}/api/v1/embed",
            json={
                "items": [{"text": text}],
                "model": self.model
            }
        )

        if response.status_code != 200:
            raise EmbeddingServiceError(f"Embedding service returned status {response.status_code}")

        vectors = response.json().get("vectors", [])
        if not vectors:
            raise EmbeddingServiceError("Embedding service returned no vectors")

        vector = np.asarray(vectors[0], dtype=np.float32)
        logger.debug("Query embedded", query=text[:50], dimension=int(vector.shape[0]))
        if self.cache is not None:
            await self.cache.cache_query_embedding(text, self.model, vector.tolist())
        return vector

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
