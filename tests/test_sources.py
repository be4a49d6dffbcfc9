"""Tests for search source adapters."""

import asyncio
from unittest.mock import MagicMock

import httpx
import numpy as np
import pytest

from searchlibs.models import SearchFilters, SearchMode, SearchRequest, SearchScope, SourceKind
from searchlibs.sources.base import AdapterError, AdapterTimeout
from searchlibs.sources.circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerState
from searchlibs.sources.embedding import EmbeddingClient, EmbeddingServiceError
from searchlibs.sources.factory import SourceSet, create_sources
from searchlibs.sources.opensearch import (
    OpenSearchLexicalSource,
    OpenSearchSuggestSource,
    index_names_from_tuple,
)
from searchlibs.sources.pgvector import PgVectorSource
from searchlibs.sources.relational import PostgresRelationalSource, escape_like
from search_service.retrievers.cache_manager import InMemoryCacheBackend, SearchCacheManager

from .fakes import FakeClock, FakeSource

INDEX_NAMES = index_names_from_tuple(("ui_components", "ui_docs", "ui_resources"))


def os_hit(entity_id, score, **source):
    return {"_id": entity_id, "_score": score, "_source": source}


def lexical_with(responses):
    client = MagicMock()
    client.msearch.return_value = {"responses": responses}
    return OpenSearchLexicalSource(hosts=["http://localhost:9200"], index_names=INDEX_NAMES, client=client), client


class FakeConnection:
    def __init__(self, rows):
        self.rows = rows
        self.queries = []

    async def fetch(self, sql, *args):
        self.queries.append((sql, args))
        return self.rows


class FakeAcquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class FakePool:
    def __init__(self, rows):
        self.conn = FakeConnection(rows)

    def acquire(self):
        return FakeAcquire(self.conn)

    async def close(self):
        pass


class FakeEmbedder:
    def __init__(self, dimension=3):
        self.dimension = dimension

    async def embed(self, text):
        return np.ones(self.dimension, dtype=np.float32)

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_opensearch_maps_hits_across_indices():
    """Hits from every index are merged by score and mapped to SourceHit."""
    source, client = lexical_with([
        {"hits": {"hits": [os_hit("c1", 3.0, name="Data Table", tags=["table"], downloads=12, framework="react")]}},
        {"hits": {"hits": [{**os_hit("d1", 5.0, title="Tables guide", content="x" * 500),
                            "highlight": {"content": ["<em>tables</em>"]}}]}},
        {"hits": {"hits": [os_hit("r1", 1.0, name="Table kit")]}},
    ])

    hits = await source.search(SearchRequest(query="table"), timeout=1.0, limit=10)

    assert [hit.entity_id for hit in hits] == ["d1", "c1", "r1"]
    assert all(hit.source_kind == SourceKind.LEXICAL for hit in hits)
    docs_hit, component_hit = hits[0], hits[1]
    assert docs_hit.highlight == "<em>tables</em>"
    assert docs_hit.payload["type"] == "documentation"
    assert len(docs_hit.payload["description"]) == 200
    assert component_hit.payload == {
        "title": "Data Table",
        "type": "component",
        "framework": "react",
        "tags": ["table"],
        "popularity": 12,
    }

    body = client.msearch.call_args.kwargs["body"]
    assert [header["index"] for header in body[::2]] == ["ui_components", "ui_docs", "ui_resources"]


@pytest.mark.asyncio
async def test_opensearch_docs_index_gets_category_and_tags_only():
    source, client = lexical_with([{"hits": {"hits": []}}, {"hits": {"hits": []}}, {"hits": {"hits": []}}])
    request = SearchRequest(
        query="table",
        filters=SearchFilters(framework="react", category="guides", tags=("forms",), is_free=True),
    )

    await source.search(request, timeout=1.0)

    body = client.msearch.call_args.kwargs["body"]
    component_filters = body[1]["query"]["bool"]["filter"]
    docs_filters = body[3]["query"]["bool"]["filter"]
    assert {"term": {"framework": "react"}} in component_filters
    assert {"terms": {"tags": ["forms"]}} in component_filters
    assert {"term": {"isFree": True}} in component_filters
    assert docs_filters == [{"term": {"category": "guides"}}, {"terms": {"tags": ["forms"]}}]


@pytest.mark.asyncio
async def test_opensearch_tolerates_partial_index_failure():
    source, _ = lexical_with([
        {"hits": {"hits": [os_hit("c1", 1.0, name="A")]}},
        {"error": {"type": "index_not_found"}},
        {"hits": {"hits": []}},
    ])
    hits = await source.search(SearchRequest(query="a"), timeout=1.0)
    assert [hit.entity_id for hit in hits] == ["c1"]


@pytest.mark.asyncio
async def test_opensearch_all_indices_failing_raises():
    source, _ = lexical_with([{"error": {"type": "index_not_found"}}])
    with pytest.raises(AdapterError):
        await source.search(SearchRequest(query="a", scope=SearchScope.DOCS), timeout=1.0)


@pytest.mark.asyncio
async def test_opensearch_client_errors_become_adapter_errors():
    source, client = lexical_with([])
    client.msearch.side_effect = ConnectionError("connection refused")
    with pytest.raises(AdapterError) as exc_info:
        await source.search(SearchRequest(query="a"), timeout=1.0)
    assert exc_info.value.source == "opensearch"


@pytest.mark.asyncio
async def test_suggest_source_queries_components_with_prefix():
    client = MagicMock()
    client.msearch.return_value = {"responses": [{"hits": {"hits": [os_hit("c1", 2.0, name="Button", tags=["ui"])]}}]}
    source = OpenSearchSuggestSource(hosts=["http://localhost:9200"], index_names=INDEX_NAMES, client=client)

    hits = await source.search(SearchRequest(query="bu", mode=SearchMode.KEYWORD), timeout=1.0, limit=5)

    assert source.name == "opensearch-suggest"
    assert hits[0].payload["title"] == "Button"
    body = client.msearch.call_args.kwargs["body"]
    assert body[0] == {"index": "ui_components"}
    assert body[1]["query"]["bool"]["should"][0] == {"match_phrase_prefix": {"name": {"query": "bu"}}}


def test_escape_like():
    assert escape_like("100%_off\\") == "100\\%\\_off\\\\"


def test_relational_sql_binds_filters():
    source = PostgresRelationalSource(dsn="postgresql://localhost/test")
    request = SearchRequest(
        query="data table",
        filters=SearchFilters(category="layout", tags=("grid",), has_typescript=True),
    )

    sql, args = source._build_sql(request, 40)

    assert args[:3] == ["data table", "data table%", "%data table%"]
    assert args[3:] == ["layout", ["grid"], True, 40]
    assert "category = $4" in sql
    assert "tags && $5::text[]" in sql
    assert "has_typescript = $6" in sql
    assert "LIMIT $7" in sql


@pytest.mark.asyncio
async def test_relational_search_maps_rows():
    source = PostgresRelationalSource(dsn="postgresql://localhost/test")
    source._pool = FakePool([{
        "id": 7, "name": "Data Table", "description": "", "framework": "vue", "category": None,
        "tags": ["table"], "downloads": 3, "demo_url": None, "score": 1.0,
    }])

    hits = await source.search(SearchRequest(query="data table"), timeout=1.0)

    assert hits[0].entity_id == "7"
    assert hits[0].source_kind == SourceKind.RELATIONAL
    assert hits[0].payload == {
        "title": "Data Table", "type": "resource", "framework": "vue", "tags": ["table"], "popularity": 3,
    }


def test_pgvector_sql_scopes_entity_types():
    source = PgVectorSource(dsn="postgresql://localhost/test", embedder=FakeEmbedder())
    request = SearchRequest(query="table", scope=SearchScope.COMPONENTS, filters=SearchFilters(is_premium=False))

    sql, args = source._build_sql(request, 20)

    assert args == [None, ["component"], False, 20]
    assert "entity_type = ANY($2::text[])" in sql
    assert "(meta->>'isPremium')::boolean = $3" in sql
    assert "embedding <=> $1" in sql


@pytest.mark.asyncio
async def test_pgvector_search_maps_rows():
    source = PgVectorSource(dsn="postgresql://localhost/test", embedder=FakeEmbedder(), vector_dimension=3)
    pool = FakePool([{
        "entity_id": "c1", "entity_type": "component", "similarity": 0.87,
        "meta": {"name": "Grid", "tags": ["layout"], "downloads": 5},
    }])
    source._pool = pool

    hits = await source.search(SearchRequest(query="grid"), timeout=1.0)

    assert hits[0].raw_score == pytest.approx(0.87)
    assert hits[0].source_kind == SourceKind.VECTOR
    assert hits[0].payload == {"title": "Grid", "type": "component", "tags": ["layout"], "popularity": 5}
    _, args = pool.conn.queries[0]
    assert isinstance(args[0], np.ndarray)


@pytest.mark.asyncio
async def test_pgvector_dimension_mismatch_is_adapter_error():
    source = PgVectorSource(dsn="postgresql://localhost/test", embedder=FakeEmbedder(4), vector_dimension=3)
    source._pool = FakePool([])
    with pytest.raises(AdapterError):
        await source.search(SearchRequest(query="grid"), timeout=1.0)


@pytest.mark.asyncio
async def test_embedding_client_posts_query():
    def handler(request):
        assert request.url.path == "/api/v1/embed"
        return httpx.Response(200, json={"vectors": [[0.1, 0.2, 0.3]]})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = EmbeddingClient("http://embedding:9006/", http_client=http_client)

    vector = await client.embed("data table")

    assert vector.shape == (3,)
    await http_client.aclose()


@pytest.mark.asyncio
async def test_embedding_client_rejects_errors():
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    client = EmbeddingClient("http://embedding:9006", http_client=http_client)

    with pytest.raises(EmbeddingServiceError):
        await client.embed("data table")
    await http_client.aclose()


@pytest.mark.asyncio
async def test_exhausted_budget_times_out_immediately():
    source = FakeSource(SourceKind.LEXICAL)
    with pytest.raises(AdapterTimeout):
        await source.search(SearchRequest(query="a"), timeout=0)
    assert source.calls == []


@pytest.mark.asyncio
async def test_circuit_breaker_opens_and_recovers():
    """A failing source is short-circuited until the recovery timeout passes."""
    clock = FakeClock()
    source = FakeSource(SourceKind.VECTOR, error=RuntimeError("down"))
    source.breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30.0, name="fake", clock=clock)
    request = SearchRequest(query="a")

    for _ in range(2):
        with pytest.raises(AdapterError):
            await source.search(request, timeout=1.0)
    assert source.breaker.get_state() == CircuitBreakerState.OPEN

    with pytest.raises(AdapterError):
        await source.search(request, timeout=1.0)
    assert len(source.calls) == 2

    clock.advance(31)
    source.error = None
    await source.search(request, timeout=1.0)
    assert source.breaker.get_state() == CircuitBreakerState.CLOSED
    assert len(source.calls) == 3


def test_create_sources_from_config(config):
    sources = create_sources(config)
    assert isinstance(sources.search_sources[SourceKind.LEXICAL], OpenSearchLexicalSource)
    assert isinstance(sources.search_sources[SourceKind.VECTOR], PgVectorSource)
    assert isinstance(sources.search_sources[SourceKind.RELATIONAL], PostgresRelationalSource)
    assert isinstance(sources.suggest_source, OpenSearchSuggestSource)
    assert sources.search_sources[SourceKind.LEXICAL].breaker.failure_threshold == config.search_breaker_failure_threshold


def test_create_sources_respects_disabled_backends(config):
    config = config.model_copy(update={"search_vector_enabled": False, "search_relational_enabled": False})
    sources = create_sources(config)
    assert set(sources.search_sources) == {SourceKind.LEXICAL}


@pytest.mark.asyncio
async def test_source_set_close_continues_after_failure():
    class BrokenClose(FakeSource):
        async def close(self):
            raise RuntimeError("already closed")

    broken = BrokenClose(SourceKind.LEXICAL)
    vector = FakeSource(SourceKind.VECTOR)
    suggest = FakeSource(SourceKind.LEXICAL, name="fake-suggest")

    await SourceSet(search_sources={SourceKind.LEXICAL: broken, SourceKind.VECTOR: vector}, suggest_source=suggest).close()

    assert vector.closed
    assert suggest.closed


def slow_create_pool(created):
    """``asyncpg.create_pool`` stand-in that records every pool it builds."""
    async def create_pool(dsn, **kwargs):
        await asyncio.sleep(0.01)
        pool = FakePool([])
        created.append(pool)
        return pool
    return create_pool


@pytest.mark.asyncio
async def test_pgvector_pool_created_once_for_concurrent_calls(monkeypatch):
    created = []
    monkeypatch.setattr("asyncpg.create_pool", slow_create_pool(created))
    source = PgVectorSource(dsn="postgresql://localhost/test", embedder=FakeEmbedder())

    await asyncio.gather(
        source.search(SearchRequest(query="grid"), timeout=1.0),
        source.search(SearchRequest(query="table"), timeout=1.0),
    )

    assert len(created) == 1


@pytest.mark.asyncio
async def test_relational_pool_created_once_for_concurrent_calls(monkeypatch):
    created = []
    monkeypatch.setattr("asyncpg.create_pool", slow_create_pool(created))
    source = PostgresRelationalSource(dsn="postgresql://localhost/test")

    await asyncio.gather(*(source.search(SearchRequest(query="grid"), timeout=1.0) for _ in range(3)))

    assert len(created) == 1


@pytest.mark.asyncio
async def test_pgvector_similar_to_excludes_seed():
    source = PgVectorSource(dsn="postgresql://localhost/test", embedder=FakeEmbedder())
    pool = FakePool([{
        "entity_id": "c2", "entity_type": "component", "similarity": 0.8, "meta": {"name": "Grid"},
    }])
    source._pool = pool

    hits = await source.similar_to("c1", timeout=1.0, limit=3)

    assert [hit.entity_id for hit in hits] == ["c2"]
    assert hits[0].source_kind == SourceKind.VECTOR
    sql, args = pool.conn.queries[0]
    assert args == ("c1", 3)
    assert "WHERE entity_id = $1" in sql
    assert "t.entity_id <> $1" in sql


@pytest.mark.asyncio
async def test_similar_lookup_unsupported_by_lexical_source():
    source, _ = lexical_with([])
    with pytest.raises(AdapterError):
        await source.similar_to("c1", timeout=1.0, limit=5)


@pytest.mark.asyncio
async def test_opensearch_index_stats_counts_each_index():
    client = MagicMock()

    def count(index):
        if index == "ui_docs":
            raise ConnectionError("shard failure")
        return {"count": {"ui_components": 120, "ui_resources": 7}[index]}

    client.count.side_effect = count
    source = OpenSearchLexicalSource(hosts=["http://localhost:9200"], index_names=INDEX_NAMES, client=client)

    assert await source.index_stats() == {"components": 120, "docs": None, "resources": 7}


@pytest.mark.asyncio
async def test_half_open_breaker_admits_single_trial_call():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30.0, name="fake", clock=clock)

    async def fail():
        raise RuntimeError("down")

    with pytest.raises(RuntimeError):
        await breaker.call(fail)
    assert breaker.get_state() == CircuitBreakerState.OPEN

    clock.advance(31)
    release = asyncio.Event()

    async def slow_ok():
        await release.wait()
        return "ok"

    trial = asyncio.ensure_future(breaker.call(slow_ok))
    await asyncio.sleep(0)
    assert breaker.get_state() == CircuitBreakerState.HALF_OPEN

    with pytest.raises(CircuitBreakerError):
        await breaker.call(slow_ok)

    release.set()
    assert await trial == "ok"
    assert breaker.get_state() == CircuitBreakerState.CLOSED
    assert await breaker.call(slow_ok) == "ok"


@pytest.mark.asyncio
async def test_embedding_client_reuses_cached_vectors():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"vectors": [[0.1, 0.2, 0.3]]})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cache = SearchCacheManager(InMemoryCacheBackend())
    client = EmbeddingClient("http://embedding:9006", http_client=http_client, cache=cache)

    first = await client.embed("data table")
    second = await client.embed("data table")

    assert len(requests) == 1
    assert np.allclose(first, second)
    await http_client.aclose()


def test_create_sources_shares_embedding_cache(config):
    cache = SearchCacheManager(InMemoryCacheBackend())
    sources = create_sources(config, embedding_cache=cache)
    assert sources.search_sources[SourceKind.VECTOR].embedder.cache is cache
