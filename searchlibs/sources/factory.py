"""Search source factory.

Builds the concrete adapters from ``SearchConfig`` so the service layer never
depends on a specific backend. Each adapter gets its own circuit breaker.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from ..common.config import SearchConfig
from ..models import SourceKind
from .base import SearchSource
from .circuit_breaker import CircuitBreaker
from .embedding import EmbeddingCache, EmbeddingClient
from .opensearch import OpenSearchLexicalSource, OpenSearchSuggestSource, index_names_from_tuple
from .pgvector import PgVectorSource
from .relational import PostgresRelationalSource

logger = structlog.get_logger("sources.factory")


@dataclass
class SourceSet:
    """Adapters available to the service.

    ``search_sources`` is keyed by kind and feeds the fan-out coordinator;
    ``suggest_source`` serves the typeahead path.
    """

    search_sources: Dict[SourceKind, SearchSource] = field(default_factory=dict)
    suggest_source: Optional[SearchSource] = None

    def all(self) -> List[SearchSource]:
        sources = list(self.search_sources.values())
        if self.suggest_source is not None:
            sources.append(self.suggest_source)
        return sources

    async def close(self) -> None:
        for source in self.all():
            try:
                await source.close()
            except Exception as e:
                logger.warning("Failed to close search source", source=source.name, error=str(e))


def _breaker(config: SearchConfig, name: str) -> CircuitBreaker:
    return CircuitBreaker(
        failure_threshold=config.search_breaker_failure_threshold,
        recovery_timeout=config.search_breaker_recovery_timeout,
        name=name,
    )


def create_sources(config: SearchConfig, embedding_cache: Optional[EmbeddingCache] = None) -> SourceSet:
    """Create every configured search source.

    The lexical and suggestion sources are always present; vector and
    relational sources can be switched off individually. ``embedding_cache``
    lets the vector source reuse query embeddings.
    """
    opensearch_kwargs = dict(
        hosts=config.opensearch_hosts,
        index_names=index_names_from_tuple((
            config.search_components_index,
            config.search_docs_index,
            config.search_resources_index,
        )),
        username=config.search_opensearch_username,
        password=config.search_opensearch_password,
        verify_certs=config.search_opensearch_verify_certs,
        ssl_assert_hostname=config.search_opensearch_ssl_assert_hostname,
        ssl_show_warn=config.search_opensearch_ssl_show_warn,
    )

    sources = SourceSet()
    sources.search_sources[SourceKind.LEXICAL] = OpenSearchLexicalSource(
        breaker=_breaker(config, "opensearch"), **opensearch_kwargs
    )
    sources.suggest_source = OpenSearchSuggestSource(
        breaker=_breaker(config, "opensearch-suggest"), **opensearch_kwargs
    )

    if config.search_vector_enabled:
        embedder = EmbeddingClient(
            service_url=config.search_embedding_service_url,
            model=config.search_embedding_model,
            timeout=config.search_embedding_timeout,
            cache=embedding_cache,
        )
        sources.search_sources[SourceKind.VECTOR] = PgVectorSource(
            dsn=config.search_vector_db_dsn,
            embedder=embedder,
            table=config.search_vector_table,
            pool_size=config.search_db_pool_size,
            command_timeout=config.search_db_command_timeout,
            vector_dimension=config.search_vector_dimension,
            breaker=_breaker(config, "pgvector"),
        )

    if config.search_relational_enabled:
        sources.search_sources[SourceKind.RELATIONAL] = PostgresRelationalSource(
            dsn=config.search_relational_db_dsn,
            table=config.search_relational_table,
            pool_size=config.search_db_pool_size,
            command_timeout=config.search_db_command_timeout,
            breaker=_breaker(config, "postgres"),
        )

    logger.info(
        "Search sources created",
        kinds=[kind.value for kind in sources.search_sources],
        suggest=sources.suggest_source.name,
    )
    return sources
