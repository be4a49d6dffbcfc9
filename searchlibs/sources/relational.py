"""PostgreSQL relational fallback source.

Exact / substring matching over the marketplace ``resources`` table. This is
a low-precision, last-resort source: it is only consulted when the lexical
and vector indices both come back empty, so its score is a coarse match tier
computed in SQL rather than a relevance model.

Score tiers
- 1.0: name equals the query
- 0.75: name starts with the query
- 0.5: name contains the query
- 0.25: only the description contains the query
"""

import asyncio
from typing import Any, List, Optional, Tuple

import asyncpg
import structlog
from asyncpg import Pool

from ..models import SearchRequest, SourceHit, SourceKind
from .base import SearchSource
from .circuit_breaker import CircuitBreaker

logger = structlog.get_logger("sources.relational")


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresRelationalSource(SearchSource):
    """Substring search over the resources table."""

    kind = SourceKind.RELATIONAL

    def __init__(
        self,
        dsn: str,
        table: str = "resources",
        pool_size: int = 10,
        command_timeout: int = 5,
        name: str = "postgres",
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(name=name, breaker=breaker)
        self.dsn = dsn
        self.table = table
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> Pool:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                )
                logger.info("Created relational connection pool", source=self.name, pool_size=self.pool_size)
        return self._pool

    def _build_sql(self, request: SearchRequest, limit: int) -> Tuple[str, List[Any]]:
        """Build the match query and its positional arguments."""
        query = request.query
        pattern = escape_like(query)
        args: List[Any] = [query, f"{pattern}%", f"%{pattern}%"]
        clauses = ["(lower(name) LIKE $3 ESCAPE '\\' OR lower(coalesce(description, '')) LIKE $3 ESCAPE '\\')"]

        def bind(value: Any) -> str:
            args.append(value)
            return f"${len(args)}"

        filters = request.filters
        if filters.framework:
            clauses.append(f"framework = {bind(filters.framework)}")
        if filters.category:
            clauses.append(f"category = {bind(filters.category)}")
        if filters.tags:
            clauses.append(f"tags && {bind(list(filters.tags))}::text[]")
        if filters.is_free is not None:
            clauses.append(f"is_free = {bind(filters.is_free)}")
        if filters.is_premium is not None:
            clauses.append(f"is_premium = {bind(filters.is_premium)}")
        if filters.has_typescript is not None:
            clauses.append(f"has_typescript = {bind(filters.has_typescript)}")

        sql = f"""
            SELECT id, name, description, framework, category, tags, downloads, demo_url,
                   CASE
                       WHEN lower(name) = $1 THEN 1.0
                       WHEN lower(name) LIKE $2 ESCAPE '\\' THEN 0.75
                       WHEN lower(name) LIKE $3 ESCAPE '\\' THEN 0.5
                       ELSE 0.25
                   END AS score
            FROM {self.table}
            WHERE {' AND '.join(clauses)}
            ORDER BY score DESC, downloads DESC NULLS LAST, id
            LIMIT {bind(limit)}
        """
        return sql, args

    async def _search(self, request: SearchRequest, limit: int) -> List[SourceHit]:
        sql, args = self._build_sql(request, limit)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [self._to_hit(row) for row in rows]

    def _to_hit(self, row: Any) -> SourceHit:
        payload = {
            "title": row["name"],
            "type": "resource",
            "description": row["description"],
            "url": row["demo_url"],
            "framework": row["framework"],
            "category": row["category"],
            "tags": list(row["tags"] or []),
            "popularity": row["downloads"],
        }
        return SourceHit(
            entity_id=str(row["id"]),
            raw_score=float(row["score"]),
            source_kind=self.kind,
            payload={key: value for key, value in payload.items() if value not in (None, [], "")},
        )

    async def health_check(self) -> bool:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.error("Relational health check failed", source=self.name, error=str(e))
            return False

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed relational connection pool", source=self.name)
