"""Search manager for unified multi-source search.

Wires the pipeline together:

    raw request -> normalizer -> cache -> coordinator -> fusion -> cache -> response

The manager owns the sources' lifecycle (health checks, cleanup) and exposes
the operations the HTTP layer needs: full search, documentation search,
typeahead suggestions, similar-entity lookups, index statistics and cache
administration.
"""

import math
import time
from typing import Any, Dict, Mapping, Optional

import structlog

from searchlibs.common.config import SearchConfig
from searchlibs.common.logging import log_performance
from searchlibs.models import SearchMode, SearchRequest, SearchResponse, SearchScope, SourceKind, SuggestionResponse
from searchlibs.sources.base import AdapterError, AdapterTimeout
from searchlibs.sources.factory import SourceSet, create_sources

from ..errors import AllSourcesUnavailable
from ..query.normalizer import RequestNormalizer, cache_key, similar_cache_key
from ..ranking.fusion import WeightedScoreFusion, estimate_total, paginate
from ..retrievers.cache_manager import SearchCacheManager, create_search_cache_manager
from ..runtime.metrics import MetricsCollector
from .coordinator import FanOutCoordinator
from .suggestions import SuggestionService

logger = structlog.get_logger("search_service.search_manager")


class SearchManager:
    """Manages unified search operations.

    Responsibilities
    - Validate and canonicalize incoming requests
    - Serve repeated requests from the response cache
    - Fan queries out to the configured sources and fuse their hits
    - Keep source connections healthy and release them on shutdown
    """

    def __init__(
        self,
        config: SearchConfig,
        sources: SourceSet,
        cache: SearchCacheManager,
        metrics: Optional[MetricsCollector] = None,
        normalizer: Optional[RequestNormalizer] = None,
    ):
        """Construct a search manager.

        Parameters
        - config: ``SearchConfig`` providing deadlines, weights and TTLs
        - sources: Adapters to query; injected so tests can pass fakes
        - cache: Response cache
        - metrics: Optional metrics collector
        """
        self.config = config
        self.sources = sources
        self.cache = cache
        self.metrics = metrics
        self.normalizer = normalizer or RequestNormalizer()
        self.fusion = WeightedScoreFusion()
        self.coordinator = FanOutCoordinator(
            sources=sources.search_sources,
            deadline=config.deadline_seconds,
            overfetch_factor=config.search_overfetch_factor,
            max_candidates=config.search_max_candidates,
            relational_scopes=config.relational_scopes,
            fallback_deadline=config.fallback_deadline_seconds,
            metrics=metrics,
        )
        self.suggestions = SuggestionService(
            source=sources.suggest_source,
            cache=cache,
            normalizer=self.normalizer,
            deadline=config.suggest_deadline_seconds,
            cache_ttl=config.search_suggest_cache_ttl,
            metrics=metrics,
        )

    @classmethod
    def from_config(cls, config: SearchConfig, metrics: Optional[MetricsCollector] = None) -> "SearchManager":
        """Build a manager with sources and cache created from ``config``."""
        cache = create_search_cache_manager(config, metrics=metrics)
        return cls(
            config=config,
            sources=create_sources(config, embedding_cache=cache),
            cache=cache,
            metrics=metrics,
        )

    async def search(self, raw: Mapping[str, Any], use_cache: bool = True) -> SearchResponse:
        """Perform a unified search for raw request parameters.

        Raises ``InvalidParameter`` for bad input (before any backend call) and
        ``AllSourcesUnavailable`` when no required source answered.
        """
        request = self.normalizer.normalize(raw)
        return await self.search_request(request, use_cache=use_cache)

    async def search_request(self, request: SearchRequest, use_cache: bool = True) -> SearchResponse:
        """Perform a search for an already normalized request."""
        if not use_cache:
            return await self._execute(request)

        return await self.cache.get_or_compute(
            cache_key(request),
            lambda: self._execute(request),
            ttl=self.config.cache_ttl_for(request.scope),
            model=SearchResponse,
            cache_type=request.scope.value,
            cacheable=lambda response: not response.degraded,
        )

    async def search_docs(
        self,
        query: Any,
        category: Optional[str] = None,
        limit: Any = None,
        page: Any = None,
        use_cache: bool = True,
    ) -> SearchResponse:
        """Keyword search over documentation pages."""
        raw = {
            "query": query,
            "scope": SearchScope.DOCS,
            "mode": SearchMode.KEYWORD,
            "category": category,
            "limit": limit,
            "page": page,
        }
        return await self.search(raw, use_cache=use_cache)

    async def suggest(self, query: Any, limit: Any = None) -> SuggestionResponse:
        """Typeahead suggestions for a prefix."""
        return await self.suggestions.suggest(query, limit)

    async def similar(self, entity_id: Any, limit: Any = None, use_cache: bool = True) -> SearchResponse:
        """Entities most similar to a stored one ("more like this").

        Served by the vector source alone; the seed entity is never part of
        the answer. Raises ``AllSourcesUnavailable`` when the vector source is
        missing or fails.
        """
        seed, wanted = self.normalizer.normalize_similar(entity_id, limit)

        async def compute() -> SearchResponse:
            return await self._execute_similar(seed, wanted)

        if not use_cache:
            return await compute()

        return await self.cache.get_or_compute(
            similar_cache_key(seed, wanted),
            compute,
            ttl=self.config.search_cache_ttl,
            model=SearchResponse,
            cache_type="similar",
        )

    async def _execute_similar(self, entity_id: str, limit: int) -> SearchResponse:
        source = self.sources.search_sources.get(SourceKind.VECTOR)
        if source is None:
            raise AllSourcesUnavailable({SourceKind.VECTOR.value: "not configured"})

        started = time.perf_counter()
        try:
            hits = await source.similar_to(entity_id, timeout=self.config.deadline_seconds, limit=limit)
        except AdapterError as e:
            outcome = "timeout" if isinstance(e, AdapterTimeout) else "error"
            self._record_source_call(source.name, outcome, time.perf_counter() - started)
            logger.warning("Similar lookup failed", source=source.name, entity_id=entity_id, error=str(e))
            raise AllSourcesUnavailable({source.name: outcome}) from e
        self._record_source_call(source.name, "ok", time.perf_counter() - started)

        hits = [hit for hit in hits if hit.entity_id != entity_id]
        fused = self.fusion.fuse({SourceKind.VECTOR: hits}, SearchMode.SEMANTIC, {SourceKind.VECTOR: 1.0})
        results = tuple(fused[:limit])
        processing_time_ms = round((time.perf_counter() - started) * 1000, 2)
        log_performance("similar", processing_time_ms, entity_id=entity_id, results_count=len(results))
        return SearchResponse(
            results=results,
            total_results=len(results),
            page=0,
            total_pages=1 if results else 0,
            processing_time_ms=processing_time_ms,
            degraded=False,
            search_mode=SearchMode.SEMANTIC,
        )

    def _record_source_call(self, source: str, outcome: str, duration: float) -> None:
        if self.metrics is not None:
            self.metrics.record_source_call(source, outcome, duration)

    async def _execute(self, request: SearchRequest) -> SearchResponse:
        started = time.perf_counter()

        gathered = await self.coordinator.gather(request)
        weights = self.config.fusion_weights(gathered.search_mode)
        fused = self.fusion.fuse(gathered.hits_by_source, gathered.search_mode, weights)

        total_results = estimate_total(gathered.hits_by_source)
        processing_time_ms = round((time.perf_counter() - started) * 1000, 2)
        response = SearchResponse(
            results=tuple(paginate(fused, request.limit, request.page)),
            total_results=total_results,
            page=request.page,
            total_pages=math.ceil(total_results / request.limit),
            processing_time_ms=processing_time_ms,
            degraded=gathered.degraded,
            search_mode=gathered.search_mode,
        )

        if self.metrics is not None:
            self.metrics.record_search(
                gathered.search_mode.value,
                processing_time_ms / 1000.0,
                degraded=gathered.degraded,
            )
        log_performance(
            "search",
            processing_time_ms,
            query=request.query[:50],
            requested_mode=request.mode.value,
            search_mode=gathered.search_mode.value,
            scope=request.scope.value,
            results_count=len(response.results),
            total_results=total_results,
            degraded=gathered.degraded,
            failures=gathered.failures or None,
        )
        return response

    async def get_cache_stats(self) -> Dict[str, Any]:
        return await self.cache.get_cache_stats()

    async def clear_cache(self) -> int:
        return await self.cache.clear()

    async def get_index_stats(self) -> Dict[str, Any]:
        """Document counts of the lexical indices."""
        lexical = self.sources.search_sources.get(SourceKind.LEXICAL)
        indices = await lexical.index_stats() if lexical is not None else {}
        return {"indices": indices}

    async def health_check(self) -> Dict[str, Any]:
        """Check every source.

        The service is ``healthy`` when all sources answer, ``degraded`` when
        at least the lexical source does, ``unhealthy`` otherwise.
        """
        statuses: Dict[str, bool] = {}
        for source in self.sources.all():
            try:
                statuses[source.name] = await source.health_check()
            except Exception as e:
                logger.error("Health check failed", source=source.name, error=str(e))
                statuses[source.name] = False

        lexical = self.sources.search_sources.get(SourceKind.LEXICAL)
        if statuses and all(statuses.values()):
            status = "healthy"
        elif lexical is not None and statuses.get(lexical.name):
            status = "degraded"
        else:
            status = "unhealthy"
        breakers = {source.name: source.breaker.get_stats()["state"] for source in self.sources.all()}
        return {"status": status, "sources": statuses, "circuit_breakers": breakers}

    async def cleanup(self):
        """Cleanup resources."""
        try:
            await self.sources.close()
            await self.cache.close()
            logger.info("Search manager cleaned up")
        except Exception as e:
            logger.error("Cleanup failed", error=str(e))
