"""Value types shared by the search sources and the fusion engine.

Every model here is frozen: a ``SearchRequest`` is built once by the
normalizer, ``SourceHit`` values are produced by adapters and a
``SearchResponse`` is an immutable snapshot handed to both the cache and the
caller.

Response models serialize with camelCase aliases (``totalResults``,
``blendedScore``) for the public contract while keeping snake_case attributes
in Python.
"""

import json
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SearchScope(str, Enum):
    """Which part of the catalog a query targets."""
    ALL = "all"
    COMPONENTS = "components"
    DOCS = "docs"
    RESOURCES = "resources"


class SearchMode(str, Enum):
    """Ranking strategy requested by the caller."""
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class SourceKind(str, Enum):
    """Kind of backing search engine that produced a hit."""
    LEXICAL = "lexical"
    VECTOR = "vector"
    RELATIONAL = "relational"


class SearchFilters(BaseModel):
    """Canonical structured filters.

    ``tags`` is always a sorted, de-duplicated tuple so equivalent requests
    serialize (and therefore hash) identically.
    """

    model_config = ConfigDict(frozen=True)

    framework: Optional[str] = None
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    is_free: Optional[bool] = None
    is_premium: Optional[bool] = None
    has_typescript: Optional[bool] = None

    def is_empty(self) -> bool:
        return self == SearchFilters()


class SearchRequest(BaseModel):
    """A validated, canonical search request.

    Instances are only expected to come out of the request normalizer, which
    enforces trimming, case-folding and clamping.
    """

    model_config = ConfigDict(frozen=True)

    query: str = Field(..., min_length=1, max_length=200)
    scope: SearchScope = SearchScope.ALL
    mode: SearchMode = SearchMode.HYBRID
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = Field(20, ge=1, le=100)
    page: int = Field(0, ge=0)

    def canonical_json(self) -> str:
        """Stable JSON rendering used for cache keys."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))

    def candidate_limit(self, overfetch_factor: int = 2, max_candidates: int = 200) -> int:
        """Number of hits to request from each source.

        Sources must return enough candidates to fill the requested page after
        cross-source deduplication, so pagination is never pushed down to them.
        """
        wanted = (self.page + 1) * self.limit * overfetch_factor
        return max(1, min(wanted, max_candidates))


class SourceHit(BaseModel):
    """One backend's opinion about one entity.

    ``raw_score`` lives on the backend's own scale and is only comparable with
    other hits from the same source.
    """

    model_config = ConfigDict(frozen=True)

    entity_id: str
    raw_score: float
    source_kind: SourceKind
    highlight: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class FusedResult(BaseModel):
    """One entity in the final ranked answer."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    entity_id: str
    normalized_scores: Dict[SourceKind, float]
    blended_score: float
    source_kinds: FrozenSet[SourceKind]
    payload: Dict[str, Any] = Field(default_factory=dict)
    highlight: Optional[str] = None

    @property
    def popularity(self) -> float:
        value = self.payload.get("popularity")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
        return float(value)


class SearchResponse(BaseModel):
    """Ordered search answer (insertion order is the final rank)."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    results: Tuple[FusedResult, ...] = ()
    total_results: int = 0
    page: int = 0
    total_pages: int = 0
    processing_time_ms: float = 0.0
    degraded: bool = False
    search_mode: SearchMode = SearchMode.HYBRID


class SuggestionResponse(BaseModel):
    """Typeahead suggestions for a prefix."""

    model_config = ConfigDict(frozen=True)

    query: str = ""
    suggestions: Tuple[str, ...] = ()


class CacheEntry(BaseModel):
    """A cached response; never mutated, expired entries count as absent."""

    model_config = ConfigDict(frozen=True)

    key: str
    response: Dict[str, Any]
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
