"""PgVector semantic source implementation.

The query text is embedded through the embedding service and compared with
stored entity embeddings in PostgreSQL using the pgvector ``<=>`` (cosine
distance) operator. Distance is converted to a similarity
``1 - distance`` so larger is better, matching every other source.

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- The pgvector codec is registered on every pooled connection
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from ..models import SearchRequest, SearchScope, SourceHit, SourceKind
from .base import SearchSource
from .circuit_breaker import CircuitBreaker
from .embedding import EmbeddingClient

logger = structlog.get_logger("sources.pgvector")

SCOPE_ENTITY_TYPES = {
    SearchScope.COMPONENTS: ["component"],
    SearchScope.DOCS: ["documentation"],
    SearchScope.RESOURCES: ["resource"],
}


class PgVectorSource(SearchSource):
    """Nearest-neighbour search over entity embeddings."""

    kind = SourceKind.VECTOR

    def __init__(
        self,
        dsn: str,
        embedder: EmbeddingClient,
        table: str = "search_embeddings",
        pool_size: int = 10,
        command_timeout: int = 5,
        vector_dimension: Optional[int] = None,
        name: str = "pgvector",
        breaker: Optional[CircuitBreaker] = None,
    ):
        """Configure a pgvector-backed source.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - embedder: Client producing query embeddings
        - table: Table holding ``entity_id``, ``entity_type``, ``embedding`` and ``meta``
        - pool_size: Max size of asyncpg connection pool
        - command_timeout: Seconds to allow per DB command
        - vector_dimension: Expected dimensionality of query vectors
        """
        super().__init__(name=name, breaker=breaker)
        self.dsn = dsn
        self.embedder = embedder
        self.table = table
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.vector_dimension = vector_dimension
        self._pool: Optional[Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _init_connection(self, conn: Connection) -> None:
        """Register pgvector and JSONB codecs for pooled connections."""
        await register_vector(conn)
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def _get_pool(self) -> Pool:
        """Get or lazily create the connection pool."""
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created PgVector connection pool", source=self.name, pool_size=self.pool_size)
        return self._pool

    def _build_sql(self, request: SearchRequest, limit: int) -> Tuple[str, List[Any]]:
        """Build the similarity query and its positional arguments.

        Filters live in the ``meta`` JSONB document written by the indexer.
        """
        clauses: List[str] = []
        args: List[Any] = []

        def bind(value: Any) -> str:
            args.append(value)
            return f"${len(args)}"

        vector_param = bind(None)  # filled once the embedding is known

        entity_types = SCOPE_ENTITY_TYPES.get(request.scope)
        if entity_types:
            clauses.append(f"entity_type = ANY({bind(entity_types)}::text[])")

        filters = request.filters
        if filters.framework:
            clauses.append(f"meta->>'framework' = {bind(filters.framework)}")
        if filters.category:
            clauses.append(f"meta->>'category' = {bind(filters.category)}")
        if filters.tags:
            clauses.append(f"(meta->'tags') ?| {bind(list(filters.tags))}::text[]")
        for field, value in (
            ("isFree", filters.is_free),
            ("isPremium", filters.is_premium),
            ("hasTypescript", filters.has_typescript),
        ):
            if value is not None:
                clauses.append(f"(meta->>'{field}')::boolean = {bind(value)}")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT entity_id, entity_type,
                   1 - (embedding <=> {vector_param}) AS similarity,
                   COALESCE(meta, '{{}}'::jsonb) AS meta
            FROM {self.table}
            {where}
            ORDER BY embedding <=> {vector_param}
            LIMIT {bind(limit)}
        """
        return sql, args

    async def _search(self, request: SearchRequest, limit: int) -> List[SourceHit]:
        vector = await self.embedder.embed(request.query)
        if self.vector_dimension is not None and vector.shape[0] != self.vector_dimension:
            raise ValueError(
                f"Expected vector dimension {self.vector_dimension}, got {vector.shape[0]}"
            )

        sql, args = self._build_sql(request, limit)
        args[0] = vector

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)

        return [self._to_hit(row) for row in rows]

    async def similar_to(self, entity_id: str, timeout: float, limit: int = 5) -> List[SourceHit]:
        """Entities nearest to the stored embedding of ``entity_id``.

        The seed itself is excluded; an unknown seed yields no hits.
        """
        return await self._call(self._similar_to, timeout, entity_id, limit)

    def _build_similar_sql(self) -> str:
        return f"""
            WITH seed AS (
                SELECT embedding FROM {self.table} WHERE entity_id = $1
            )
            SELECT t.entity_id, t.entity_type,
                   1 - (t.embedding <=> seed.embedding) AS similarity,
                   COALESCE(t.meta, '{{}}'::jsonb) AS meta
            FROM {self.table} t, seed
            WHERE t.entity_id <> $1
            ORDER BY t.embedding <=> seed.embedding
            LIMIT $2
        """

    async def _similar_to(self, entity_id: str, limit: int) -> List[SourceHit]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(self._build_similar_sql(), entity_id, limit)

        logger.debug("Similar entities fetched", source=self.name, entity_id=entity_id, hits=len(rows))
        return [self._to_hit(row) for row in rows]

    def _to_hit(self, row: Any) -> SourceHit:
        meta: Dict[str, Any] = dict(row["meta"] or {})
        payload = {
            "title": meta.get("name") or meta.get("title"),
            "type": row["entity_type"],
            "description": meta.get("description"),
            "url": meta.get("url"),
            "framework": meta.get("framework"),
            "category": meta.get("category"),
            "tags": list(meta.get("tags") or []),
            "popularity": meta.get("downloads", meta.get("popularity")),
        }
        return SourceHit(
            entity_id=str(row["entity_id"]),
            raw_score=float(row["similarity"]),
            source_kind=self.kind,
            payload={key: value for key, value in payload.items() if value not in (None, [], "")},
        )

    async def health_check(self) -> bool:
        """Check that the database answers."""
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.error("PgVector health check failed", source=self.name, error=str(e))
            return False

    async def close(self) -> None:
        """Close the connection pool and the embedding client."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed PgVector connection pool", source=self.name)
        await self.embedder.close()
