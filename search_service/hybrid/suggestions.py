"""Typeahead suggestions.

Prefix queries go to a single lexical-prefix source under a short deadline.
Suggestions are the case-folded titles and tags of the hits, in hit order,
without duplicates. Prefixes shorter than two characters never reach a
backend.
"""

import time
from typing import Any, List, Optional

import structlog

from searchlibs.models import SearchMode, SearchRequest, SearchScope, SourceHit, SuggestionResponse
from searchlibs.sources.base import AdapterError, SearchSource

from ..errors import AllSourcesUnavailable
from ..query.normalizer import RequestNormalizer, suggestion_cache_key
from ..retrievers.cache_manager import SearchCacheManager
from ..runtime.metrics import MetricsCollector

logger = structlog.get_logger("search_suggestions")


def extract_suggestions(hits: List[SourceHit], limit: int) -> List[str]:
    """Collect case-folded titles and tags of ``hits`` until ``limit`` is reached."""
    suggestions: List[str] = []
    seen = set()
    for hit in hits:
        payload = hit.payload or {}
        candidates = [payload.get("title")] + list(payload.get("tags") or [])
        for candidate in candidates:
            if not isinstance(candidate, str):
                continue
            text = " ".join(candidate.split()).casefold()
            if text and text not in seen:
                seen.add(text)
                suggestions.append(text)
                if len(suggestions) >= limit:
                    return suggestions
    return suggestions


class SuggestionService:
    """Prefix search over one suggestion source."""

    def __init__(
        self,
        source: Optional[SearchSource],
        cache: Optional[SearchCacheManager] = None,
        normalizer: Optional[RequestNormalizer] = None,
        deadline: float = 0.2,
        cache_ttl: int = 300,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.source = source
        self.cache = cache
        self.normalizer = normalizer or RequestNormalizer()
        self.deadline = deadline
        self.cache_ttl = cache_ttl
        self.metrics = metrics

    async def suggest(self, query: Any, limit: Any = None) -> SuggestionResponse:
        """Return suggestions for a typed prefix.

        Raises ``AllSourcesUnavailable`` when the suggestion source fails;
        nothing is cached in that case.
        """
        normalized = self.normalizer.normalize_suggestion(query, limit)
        if normalized is None:
            self._record("skipped")
            return SuggestionResponse(query=query.strip() if isinstance(query, str) else "", suggestions=())

        prefix, wanted = normalized

        async def compute() -> SuggestionResponse:
            return await self._fetch(prefix, wanted)

        if self.cache is None:
            return await compute()

        return await self.cache.get_or_compute(
            suggestion_cache_key(prefix, wanted),
            compute,
            ttl=self.cache_ttl,
            model=SuggestionResponse,
            cache_type="suggestions",
        )

    async def _fetch(self, prefix: str, limit: int) -> SuggestionResponse:
        if self.source is None:
            self._record("error")
            raise AllSourcesUnavailable({"suggest": "not configured"})

        request = SearchRequest(query=prefix, scope=SearchScope.COMPONENTS, mode=SearchMode.KEYWORD, limit=limit)
        started = time.perf_counter()
        try:
            hits = await self.source.search(request, timeout=self.deadline, limit=limit)
        except AdapterError as e:
            self._record("error")
            logger.warning("Suggestion source failed", source=self.source.name, error=str(e))
            raise AllSourcesUnavailable({self.source.name: "error"}) from e

        suggestions = extract_suggestions(hits, limit)
        self._record("ok")
        logger.debug(
            "Suggestions computed",
            prefix=prefix,
            count=len(suggestions),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return SuggestionResponse(query=prefix, suggestions=tuple(suggestions))

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_suggestion(outcome)
