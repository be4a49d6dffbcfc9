"""Cache manager for search responses, suggestions and query embeddings."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type, TypeVar

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, ValidationError

from searchlibs.common.config import SearchConfig
from searchlibs.models import CacheEntry
from searchlibs.sources.embedding import EmbeddingCache

from ..query.normalizer import (
    EMBEDDING_CACHE_PREFIX,
    RESULT_CACHE_PREFIX,
    SIMILAR_CACHE_PREFIX,
    SUGGESTION_CACHE_PREFIX,
    embedding_cache_key,
)
from ..runtime.metrics import MetricsCollector

logger = structlog.get_logger("search_cache")

M = TypeVar("M", bound=BaseModel)

CACHE_PREFIXES = (RESULT_CACHE_PREFIX, SUGGESTION_CACHE_PREFIX, SIMILAR_CACHE_PREFIX, EMBEDDING_CACHE_PREFIX)


class CacheBackend(ABC):
    """Key/value store for ``CacheEntry`` values."""

    name = "backend"

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    async def set(self, entry: CacheEntry, ttl: int) -> None:
        pass

    @abstractmethod
    async def clear(self, prefixes: Iterable[str]) -> int:
        """Delete every key under ``prefixes``; returns the number deleted."""
        pass

    @abstractmethod
    async def stats(self, prefixes: Iterable[str]) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        return None


class InMemoryCacheBackend(CacheBackend):
    """Process-local cache used when no Redis URL is configured.

    Expiry is passive: expired entries are dropped when read or when the store
    grows past ``max_entries``.
    """

    name = "memory"

    def __init__(self, max_entries: int = 10000, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is not None and entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    async def set(self, entry: CacheEntry, ttl: int) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        if len(self._entries) > self.max_entries:
            self._evict()

    def _evict(self) -> None:
        now = self._clock()
        for key in [key for key, entry in self._entries.items() if entry.is_expired(now)]:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def clear(self, prefixes: Iterable[str]) -> int:
        prefixes = tuple(prefixes)
        keys = [key for key in self._entries if key.startswith(prefixes)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def stats(self, prefixes: Iterable[str]) -> Dict[str, Any]:
        return {
            "cache_counts": {
                prefix: sum(1 for key in self._entries if key.startswith(prefix))
                for prefix in prefixes
            },
            "total_keys": len(self._entries),
            "max_entries": self.max_entries,
        }


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache; entries are JSON documents written with ``SETEX``."""

    name = "redis"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        if client is None and not redis_url:
            raise ValueError("RedisCacheBackend requires redis_url or client")
        self.redis_client = client or redis.from_url(redis_url)
        self._clock = clock

    async def get(self, key: str) -> Optional[CacheEntry]:
        cached_data = await self.redis_client.get(key)
        if not cached_data:
            return None
        entry = CacheEntry.model_validate_json(cached_data)
        if entry.is_expired(self._clock()):
            return None
        return entry

    async def set(self, entry: CacheEntry, ttl: int) -> None:
        await self.redis_client.setex(entry.key, ttl, entry.model_dump_json())

    async def clear(self, prefixes: Iterable[str]) -> int:
        total_deleted = 0
        for prefix in prefixes:
            keys = await self.redis_client.keys(f"{prefix}*")
            if keys:
                total_deleted += await self.redis_client.delete(*keys)
        return total_deleted

    async def stats(self, prefixes: Iterable[str]) -> Dict[str, Any]:
        counts = {}
        for prefix in prefixes:
            counts[prefix] = len(await self.redis_client.keys(f"{prefix}*"))

        memory_info = await self.redis_client.info("memory")
        return {
            "cache_counts": counts,
            "total_keys": sum(counts.values()),
            "memory_usage": {
                "used_memory": memory_info.get("used_memory", 0),
                "used_memory_human": memory_info.get("used_memory_human", "0B"),
                "maxmemory": memory_info.get("maxmemory", 0),
            },
        }

    async def close(self) -> None:
        await self.redis_client.close()


class SearchCacheManager(EmbeddingCache):
    """Response cache in front of the search pipeline.

    Also keeps query embeddings for the vector source.

    Backend failures never fail a request: they are logged and treated as a
    miss (reads) or skipped (writes). Concurrent misses on one key share a
    single in-flight computation, and a computation that raises writes nothing.
    """

    def __init__(
        self,
        backend: CacheBackend,
        enabled: bool = True,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        embedding_ttl: int = 3600,
    ):
        self.backend = backend
        self.enabled = enabled
        self.embedding_ttl = embedding_ttl
        self.metrics = metrics
        self._clock = clock
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}
        self._hits = 0
        self._misses = 0
        self._errors = 0

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[M]],
        ttl: int,
        model: Type[M],
        cache_type: str = "search",
        cacheable: Optional[Callable[[M], bool]] = None,
    ) -> M:
        """Return the cached value for ``key`` or compute and cache it.

        Parameters
        - key: Cache key (see ``query.normalizer.cache_key``)
        - compute: Zero-argument coroutine factory producing the value
        - ttl: Seconds the computed value stays valid
        - model: Pydantic model used to rebuild cached values
        - cache_type: Label for metrics
        - cacheable: Predicate deciding whether a computed value is stored
        """
        if not self.enabled:
            return await compute()

        cached = await self.get(key, model, cache_type)
        if cached is not None:
            return cached

        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._compute_and_store(key, compute, ttl, cacheable))
            self._inflight[key] = future
            future.add_done_callback(lambda done: self._forget(key, done))
        else:
            logger.debug("Joining in-flight computation", key=key)

        return await asyncio.shield(future)

    def _forget(self, key: str, future: "asyncio.Future[Any]") -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.cancelled():
            # mark the exception retrieved when every waiter went away
            future.exception()

    async def _compute_and_store(
        self,
        key: str,
        compute: Callable[[], Awaitable[M]],
        ttl: int,
        cacheable: Optional[Callable[[M], bool]],
    ) -> M:
        value = await compute()
        if cacheable is None or cacheable(value):
            await self.set(key, value, ttl)
        return value

    async def get(self, key: str, model: Type[M], cache_type: str = "search") -> Optional[M]:
        """Get a cached value; ``None`` on miss, expiry or backend failure."""
        try:
            entry = await self.backend.get(key)
        except Exception as e:
            self._errors += 1
            logger.warning("Failed to read cache entry", key=key, backend=self.backend.name, error=str(e))
            entry = None

        if entry is None:
            self._misses += 1
            if self.metrics is not None:
                self.metrics.record_cache_miss(cache_type)
            logger.debug("Cache miss", key=key, cache_type=cache_type)
            return None

        try:
            value = model.model_validate(entry.response)
        except ValidationError as e:
            self._errors += 1
            self._misses += 1
            if self.metrics is not None:
                self.metrics.record_cache_miss(cache_type)
            logger.warning("Discarding unreadable cache entry", key=key, backend=self.backend.name, error=str(e))
            return None

        self._hits += 1
        if self.metrics is not None:
            self.metrics.record_cache_hit(cache_type)
        logger.debug("Cache hit", key=key, cache_type=cache_type)
        return value

    async def set(self, key: str, value: BaseModel, ttl: int) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""
        entry = CacheEntry(
            key=key,
            response=value.model_dump(mode="json", by_alias=True),
            expires_at=self._clock() + ttl,
        )
        try:
            await self.backend.set(entry, ttl)
            logger.debug("Cache entry stored", key=key, ttl=ttl)
        except Exception as e:
            self._errors += 1
            logger.warning("Failed to write cache entry", key=key, backend=self.backend.name, error=str(e))

    async def get_cached_query_embedding(self, query: str, model: str) -> Optional[List[float]]:
        """Get a cached query embedding."""
        if not self.enabled:
            return None
        try:
            entry = await self.backend.get(embedding_cache_key(query, model))
            if entry is not None:
                logger.debug("Query embedding cache hit", query=query[:50])
                return [float(value) for value in entry.response["embedding"]]
        except Exception as e:
            self._errors += 1
            logger.warning("Failed to get cached query embedding", error=str(e))
        return None

    async def cache_query_embedding(self, query: str, model: str, embedding: List[float]) -> None:
        """Cache a query embedding."""
        if not self.enabled:
            return
        key = embedding_cache_key(query, model)
        entry = CacheEntry(
            key=key,
            response={"model": model, "embedding": list(embedding)},
            expires_at=self._clock() + self.embedding_ttl,
        )
        try:
            await self.backend.set(entry, self.embedding_ttl)
            logger.debug("Query embedding cached", query=query[:50])
        except Exception as e:
            self._errors += 1
            logger.warning("Failed to cache query embedding", error=str(e))

    async def clear(self) -> int:
        """Delete every cached response and suggestion."""
        try:
            deleted = await self.backend.clear(CACHE_PREFIXES)
            logger.info("Cache cleared", backend=self.backend.name, keys_deleted=deleted)
            return deleted
        except Exception as e:
            logger.error("Failed to clear cache", backend=self.backend.name, error=str(e))
            return 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        stats: Dict[str, Any] = {
            "backend": self.backend.name,
            "enabled": self.enabled,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "in_flight": len(self._inflight),
        }
        try:
            stats.update(await self.backend.stats(CACHE_PREFIXES))
        except Exception as e:
            logger.error("Failed to get cache stats", backend=self.backend.name, error=str(e))
        return stats

    async def close(self) -> None:
        """Close the backend connection."""
        try:
            await self.backend.close()
            logger.info("Search cache manager closed")
        except Exception as e:
            logger.warning("Failed to close cache manager", error=str(e))


def create_search_cache_manager(
    config: SearchConfig,
    metrics: Optional[MetricsCollector] = None,
) -> SearchCacheManager:
    """Create the cache manager; Redis when a URL is configured, in-memory otherwise."""
    if config.search_redis_url:
        backend: CacheBackend = RedisCacheBackend(redis_url=config.search_redis_url)
    else:
        backend = InMemoryCacheBackend()

    logger.info("Search cache configured", backend=backend.name, enabled=config.search_cache_enabled)
    return SearchCacheManager(
        backend=backend,
        enabled=config.search_cache_enabled,
        metrics=metrics,
        embedding_ttl=config.search_embedding_cache_ttl,
    )
