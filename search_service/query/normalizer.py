"""Request normalization for search and suggestion queries.

Turns loosely-typed request parameters (query strings, JSON bodies) into a
canonical, validated ``SearchRequest``. Two requests that mean the same thing
normalize to equal values, which is what makes the cache key stable.

Rules
- ``query`` is trimmed, case-folded and whitespace-collapsed; empty or longer
  than 200 characters is rejected
- ``limit`` is clamped into [1, 100] and ``page`` to >= 0; non-integers are
  rejected
- unknown ``scope`` / ``mode`` values are rejected
- tags are trimmed, case-folded, de-duplicated and sorted
"""

import hashlib
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Type, TypeVar

from searchlibs.models import SearchFilters, SearchMode, SearchRequest, SearchScope

from ..errors import InvalidParameter

MAX_QUERY_LENGTH = 200
DEFAULT_LIMIT = 20
MAX_LIMIT = 100
MIN_SUGGESTION_LENGTH = 2
DEFAULT_SUGGESTION_LIMIT = 5
MAX_SUGGESTION_LIMIT = 20
DEFAULT_SIMILAR_LIMIT = 5
MAX_SIMILAR_LIMIT = 50

RESULT_CACHE_PREFIX = "search:result:"
SUGGESTION_CACHE_PREFIX = "search:suggest:"
SIMILAR_CACHE_PREFIX = "search:similar:"
EMBEDDING_CACHE_PREFIX = "search:embedding:"

TRUE_VALUES = {"true", "1", "yes"}
FALSE_VALUES = {"false", "0", "no"}

# Accepted spellings for each filter field
FILTER_ALIASES = {
    "framework": ("framework",),
    "category": ("category",),
    "tags": ("tags", "tag"),
    "is_free": ("is_free", "isFree", "free"),
    "is_premium": ("is_premium", "isPremium", "premium"),
    "has_typescript": ("has_typescript", "hasTypescript", "typescript"),
}

E = TypeVar("E", SearchScope, SearchMode)


def normalize_query_text(value: Any) -> str:
    """Trim, case-fold and collapse whitespace."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidParameter("query", "must be a string")
    return " ".join(value.split()).casefold()


def parse_int(field: str, value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidParameter(field, "must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise InvalidParameter(field, "must be an integer")


def parse_bool(field: str, value: Any) -> Optional[bool]:
    """Parse a tri-state flag; ``None`` and empty strings mean "not set"."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return None
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
    raise InvalidParameter(field, "must be a boolean")


def parse_enum(field: str, value: Any, enum_type: Type[E], default: E) -> E:
    if value is None or value == "":
        return default
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        try:
            return enum_type(value.strip().lower())
        except ValueError:
            pass
    allowed = ", ".join(member.value for member in enum_type)
    raise InvalidParameter(field, f"must be one of: {allowed}")


def canonical_tags(value: Any) -> Tuple[str, ...]:
    """Trim, case-fold, de-duplicate and sort tags.

    Accepts a list of strings or a single comma-separated string.
    """
    if value is None:
        return ()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        raise InvalidParameter("tags", "must be a list of strings")

    tags = set()
    for item in items:
        if not isinstance(item, str):
            raise InvalidParameter("tags", "must be a list of strings")
        tag = item.strip().casefold()
        if tag:
            tags.add(tag)
    return tuple(sorted(tags))


def _optional_text(field: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidParameter(field, "must be a string")
    return value.strip() or None


def _lookup(raw: Mapping[str, Any], names: Tuple[str, ...]) -> Any:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


class RequestNormalizer:
    """Validates and canonicalizes raw search requests."""

    def __init__(
        self,
        max_query_length: int = MAX_QUERY_LENGTH,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ):
        self.max_query_length = max_query_length
        self.default_limit = default_limit
        self.max_limit = max_limit

    def normalize(self, raw: Mapping[str, Any]) -> SearchRequest:
        """Build a canonical ``SearchRequest`` from raw parameters.

        ``raw`` may carry ``query`` (or ``q``), ``scope`` (or ``type``),
        ``mode``, ``limit``, ``page`` and a nested ``filters`` mapping; filter
        fields given at the top level are honoured too.

        Raises ``InvalidParameter`` naming the offending field.
        """
        query = normalize_query_text(_lookup(raw, ("query", "q")))
        if not query:
            raise InvalidParameter("query", "must not be empty")
        if len(query) > self.max_query_length:
            raise InvalidParameter("query", f"must be at most {self.max_query_length} characters")

        scope = parse_enum("scope", _lookup(raw, ("scope", "type")), SearchScope, SearchScope.ALL)
        mode = parse_enum("mode", raw.get("mode"), SearchMode, SearchMode.HYBRID)

        limit = parse_int("limit", raw.get("limit"), self.default_limit)
        page = parse_int("page", raw.get("page"), 0)

        return SearchRequest(
            query=query,
            scope=scope,
            mode=mode,
            filters=self.normalize_filters(raw),
            limit=min(max(limit, 1), self.max_limit),
            page=max(page, 0),
        )

    def normalize_filters(self, raw: Mapping[str, Any]) -> SearchFilters:
        nested = raw.get("filters") or {}
        if not isinstance(nested, Mapping):
            raise InvalidParameter("filters", "must be an object")

        values: Dict[str, Any] = {}
        for field, aliases in FILTER_ALIASES.items():
            value = _lookup(nested, aliases)
            if value is None:
                value = _lookup(raw, aliases)
            values[field] = value

        return SearchFilters(
            framework=_optional_text("framework", values["framework"]),
            category=_optional_text("category", values["category"]),
            tags=canonical_tags(values["tags"]),
            is_free=parse_bool("is_free", values["is_free"]),
            is_premium=parse_bool("is_premium", values["is_premium"]),
            has_typescript=parse_bool("has_typescript", values["has_typescript"]),
        )

    def normalize_suggestion(self, query: Any, limit: Any = None) -> Optional[Tuple[str, int]]:
        """Normalize a typeahead prefix.

        Returns ``(query, limit)``, or ``None`` when the prefix is shorter than
        two characters and the answer is simply "no suggestions".
        """
        text = normalize_query_text(query)
        if len(text) < MIN_SUGGESTION_LENGTH:
            return None
        text = text[:self.max_query_length]
        wanted = parse_int("limit", limit, DEFAULT_SUGGESTION_LIMIT)
        return text, min(max(wanted, 1), MAX_SUGGESTION_LIMIT)

    def normalize_similar(self, entity_id: Any, limit: Any = None) -> Tuple[str, int]:
        """Validate the seed id and result limit of a similar-entities lookup."""
        if not isinstance(entity_id, str) or not entity_id.strip():
            raise InvalidParameter("entity_id", "must not be empty")
        entity_id = entity_id.strip()
        if len(entity_id) > self.max_query_length:
            raise InvalidParameter("entity_id", f"must be at most {self.max_query_length} characters")
        wanted = parse_int("limit", limit, DEFAULT_SIMILAR_LIMIT)
        return entity_id, min(max(wanted, 1), MAX_SIMILAR_LIMIT)


def _digest(data: str) -> str:
    return hashlib.md5(data.encode()).hexdigest()


def cache_key(request: SearchRequest, prefix: str = RESULT_CACHE_PREFIX) -> str:
    """Stable cache key for a normalized request."""
    return f"{prefix}{_digest(request.canonical_json())}"


def suggestion_cache_key(query: str, limit: int) -> str:
    """Stable cache key for a normalized suggestion prefix."""
    return f"{SUGGESTION_CACHE_PREFIX}{_digest(f'{query}|{limit}')}"


def similar_cache_key(entity_id: str, limit: int) -> str:
    return f"{SIMILAR_CACHE_PREFIX}{_digest(f'{entity_id}|{limit}')}"


def embedding_cache_key(text: str, model: str) -> str:
    return f"{EMBEDDING_CACHE_PREFIX}{_digest(f'{model}|{text}')}"
