"""OpenSearch lexical source implementation.

Full-text relevance search over the catalog indices (components, docs,
resources). One ``msearch`` round-trip queries every index selected by the
request scope. Documentation pages carry no framework or pricing fields, so
only the category and tag filters reach the docs index.

The ``opensearch-py`` client is synchronous, so calls are pushed onto worker
threads with ``asyncio.to_thread`` and never block the event loop.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import structlog
from opensearchpy import OpenSearch

from ..models import SearchFilters, SearchRequest, SearchScope, SourceHit, SourceKind
from .base import AdapterError, SearchSource
from .circuit_breaker import CircuitBreaker

logger = structlog.get_logger("sources.opensearch")

# Entity type reported in payloads for each logical index
ENTITY_TYPES = {
    SearchScope.COMPONENTS: "component",
    SearchScope.DOCS: "documentation",
    SearchScope.RESOURCES: "resource",
}

HIGHLIGHT_FIELDS = ("title", "name", "description", "content")


class OpenSearchLexicalSource(SearchSource):
    """Keyword search against OpenSearch indices."""

    kind = SourceKind.LEXICAL

    def __init__(
        self,
        hosts: List[str],
        index_names: Dict[SearchScope, str],
        username: Optional[str] = None,
        password: Optional[str] = None,
        verify_certs: bool = False,
        ssl_assert_hostname: bool = False,
        ssl_show_warn: bool = False,
        name: str = "opensearch",
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[OpenSearch] = None,
    ):
        """Initialize the OpenSearch lexical source.

        Args:
            hosts: List of OpenSearch host URLs
            index_names: Index name per concrete scope (components/docs/resources)
            username: OpenSearch username
            password: OpenSearch password
            verify_certs: Whether to verify SSL certificates
            ssl_assert_hostname: Whether to assert hostname
            ssl_show_warn: Whether to show SSL warnings
            name: Source name used in logs and metrics
            breaker: Circuit breaker guarding this source
            client: Pre-built client (tests)
        """
        super().__init__(name=name, breaker=breaker)
        self.index_names = dict(index_names)
        self.client = client or OpenSearch(
            hosts=hosts,
            http_auth=(username, password) if username and password else None,
            verify_certs=verify_certs,
            ssl_assert_hostname=ssl_assert_hostname,
            ssl_show_warn=ssl_show_warn,
            use_ssl=True if hosts and hosts[0].startswith('https') else False,
        )

    def _target_scopes(self, scope: SearchScope) -> List[SearchScope]:
        if scope == SearchScope.ALL:
            return [SearchScope.COMPONENTS, SearchScope.DOCS, SearchScope.RESOURCES]
        return [scope]

    def _build_filters(self, filters: SearchFilters, scope: SearchScope) -> List[Dict[str, Any]]:
        clauses: List[Dict[str, Any]] = []
        if filters.category:
            clauses.append({"term": {"category": filters.category}})
        if filters.tags:
            # any of the tags matches
            clauses.append({"terms": {"tags": list(filters.tags)}})
        if scope == SearchScope.DOCS:
            return clauses

        if filters.framework:
            clauses.append({"term": {"framework": filters.framework}})
        if filters.is_free is not None:
            clauses.append({"term": {"isFree": filters.is_free}})
        if filters.is_premium is not None:
            clauses.append({"term": {"isPremium": filters.is_premium}})
        if filters.has_typescript is not None:
            clauses.append({"term": {"hasTypescript": filters.has_typescript}})
        return clauses

    def _build_query(self, request: SearchRequest, scope: SearchScope, limit: int) -> Dict[str, Any]:
        """Build the query body for one index."""
        filters = self._build_filters(request.filters, scope)
        return {
            "size": limit,
            "query": {
                "bool": {
                    "must": [
                        {
                            "multi_match": {
                                "query": request.query,
                                "fields": ["title^3", "name^3", "tags^2", "description", "content"],
                                "type": "best_fields",
                                "fuzziness": "AUTO",
                            }
                        }
                    ],
                    "filter": filters,
                }
            },
            "highlight": {
                "fields": {field: {"number_of_fragments": 1, "fragment_size": 150} for field in HIGHLIGHT_FIELDS}
            },
        }

    async def _search(self, request: SearchRequest, limit: int) -> List[SourceHit]:
        scopes = self._target_scopes(request.scope)
        body: List[Dict[str, Any]] = []
        for scope in scopes:
            body.append({"index": self.index_names[scope]})
            body.append(self._build_query(request, scope, limit))

        response = await asyncio.to_thread(self.client.msearch, body=body)

        hits: List[SourceHit] = []
        failed: List[str] = []
        for scope, result in zip(scopes, response.get("responses", [])):
            if "error" in result:
                failed.append(self.index_names[scope])
                continue
            for raw_hit in result.get("hits", {}).get("hits", []):
                hits.append(self._to_hit(raw_hit, scope))

        if failed:
            logger.warning("OpenSearch index query failed", source=self.name, indices=failed)
            if len(failed) == len(scopes):
                raise AdapterError(self.name, "all index queries failed")

        hits.sort(key=lambda hit: (-hit.raw_score, hit.entity_id))
        return hits[:limit]

    def _to_hit(self, raw_hit: Dict[str, Any], scope: SearchScope) -> SourceHit:
        """Map an OpenSearch hit into a ``SourceHit``."""
        source = raw_hit.get("_source", {})
        description = source.get("description") or (source.get("content") or "")[:200]
        payload = {
            "title": source.get("name") or source.get("title"),
            "type": ENTITY_TYPES[scope],
            "description": description or None,
            "url": source.get("url") or source.get("demoUrl"),
            "framework": source.get("framework"),
            "category": source.get("category"),
            "tags": list(source.get("tags") or []),
            "popularity": source.get("downloads", source.get("popularity")),
        }
        return SourceHit(
            entity_id=str(raw_hit["_id"]),
            raw_score=float(raw_hit.get("_score") or 0.0),
            source_kind=self.kind,
            highlight=self._first_highlight(raw_hit.get("highlight", {})),
            payload={key: value for key, value in payload.items() if value not in (None, [], "")},
        )

    @staticmethod
    def _first_highlight(highlight: Dict[str, List[str]]) -> Optional[str]:
        for field in HIGHLIGHT_FIELDS:
            fragments = highlight.get(field)
            if fragments:
                return fragments[0]
        return None

    async def index_stats(self) -> Dict[str, Optional[int]]:
        """Document count per scope; ``None`` for an index that could not be counted."""
        scopes = list(self.index_names)
        counts = await asyncio.gather(*(self._count(self.index_names[scope]) for scope in scopes))
        return {scope.value: count for scope, count in zip(scopes, counts)}

    async def _count(self, index: str) -> Optional[int]:
        try:
            response = await asyncio.to_thread(self.client.count, index=index)
            return int(response.get("count", 0))
        except Exception as e:
            logger.warning("Failed to count index documents", source=self.name, index=index, error=str(e))
            return None

    async def health_check(self) -> bool:
        """Check if OpenSearch answers a ping."""
        try:
            return bool(await asyncio.to_thread(self.client.ping))
        except Exception as e:
            logger.error("OpenSearch health check failed", source=self.name, error=str(e))
            return False

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)


class OpenSearchSuggestSource(OpenSearchLexicalSource):
    """Prefix (typeahead) variant of the lexical source.

    Only the component index is consulted and only titles and tags are
    retrieved, which keeps the round-trip small enough for keystroke traffic.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        kwargs.setdefault("name", "opensearch-suggest")
        super().__init__(*args, **kwargs)

    def _target_scopes(self, scope: SearchScope) -> List[SearchScope]:
        return [SearchScope.COMPONENTS]

    def _build_query(self, request: SearchRequest, scope: SearchScope, limit: int) -> Dict[str, Any]:
        return {
            "size": limit,
            "_source": ["name", "title", "tags"],
            "query": {
                "bool": {
                    "should": [
                        {"match_phrase_prefix": {"name": {"query": request.query}}},
                        {"match_phrase_prefix": {"title": {"query": request.query}}},
                        {"prefix": {"tags": {"value": request.query}}},
                    ],
                    "minimum_should_match": 1,
                }
            },
        }


def index_names_from_tuple(names: Tuple[str, str, str]) -> Dict[SearchScope, str]:
    """Map ``(components, docs, resources)`` index names onto scopes."""
    components, docs, resources = names
    return {
        SearchScope.COMPONENTS: components,
        SearchScope.DOCS: docs,
        SearchScope.RESOURCES: resources,
    }
