"""API routes for search service."""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from searchlibs.models import SearchResponse, SuggestionResponse

from ..errors import AllSourcesUnavailable, InvalidParameter
from ..hybrid.search_manager import SearchManager

logger = structlog.get_logger("search_service.api")

router = APIRouter()

RETRY_AFTER_SECONDS = 1


class SearchBody(BaseModel):
    """Request model for the search endpoint.

    Fields are deliberately loose; validation happens in the request
    normalizer so every bad parameter is reported the same way.
    """

    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = Field(None, description="Search query")
    scope: Optional[str] = Field(None, description="all, components, docs or resources")
    mode: Optional[str] = Field(None, description="keyword, semantic or hybrid")
    filters: Optional[Dict[str, Any]] = Field(
        None,
        description="framework, category, tags, isFree, isPremium, hasTypescript",
    )
    limit: Optional[Any] = Field(None, description="Results per page (1-100)")
    page: Optional[Any] = Field(None, description="Zero-based page number")
    use_cache: bool = Field(True, alias="useCache", description="Serve from and store into the cache")


class CacheClearResponse(BaseModel):
    """Response model for cache clearing."""
    status: str = Field(..., description="Operation status")
    keys_deleted: int = Field(..., description="Number of cache entries deleted")


def get_search_manager(request: Request) -> SearchManager:
    """Get search manager from application state."""
    return request.app.state.search_manager


def _to_http_error(error: Exception, operation: str) -> HTTPException:
    """Map a service error onto an HTTP error without leaking backend details."""
    if isinstance(error, InvalidParameter):
        return HTTPException(
            status_code=400,
            detail={"error": "invalid_parameter", "field": error.field, "message": error.message},
        )
    if isinstance(error, AllSourcesUnavailable):
        logger.warning(f"{operation} unavailable", failures=error.failures)
        return HTTPException(
            status_code=503,
            detail={"error": "search_unavailable", "message": "Search backends are unavailable, retry shortly"},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )
    logger.error(f"{operation} failed", error_type=type(error).__name__, error=str(error))
    return HTTPException(
        status_code=500,
        detail={"error": "internal_error", "message": f"{operation} failed"},
    )


@router.post("/search", response_model=SearchResponse)
async def search(
    body: SearchBody,
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Perform a unified search."""
    raw = body.model_dump(exclude={"use_cache"})
    try:
        return await search_manager.search(raw, use_cache=body.use_cache)
    except Exception as e:
        raise _to_http_error(e, "Search") from e


@router.get("/search", response_model=SearchResponse)
async def search_get(
    q: Optional[str] = Query(None, description="Search query"),
    type: Optional[str] = Query(None, description="Search scope"),
    mode: Optional[str] = Query(None, description="keyword, semantic or hybrid"),
    limit: Optional[str] = Query(None, description="Results per page (1-100)"),
    page: Optional[str] = Query(None, description="Zero-based page number"),
    framework: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    tag: Optional[List[str]] = Query(None, description="Repeatable tag filter"),
    free: Optional[str] = Query(None),
    premium: Optional[str] = Query(None),
    typescript: Optional[str] = Query(None),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Perform a unified search from query-string parameters."""
    raw = {
        "query": q,
        "scope": type,
        "mode": mode,
        "limit": limit,
        "page": page,
        "filters": {
            "framework": framework,
            "category": category,
            "tags": tag,
            "is_free": free,
            "is_premium": premium,
            "has_typescript": typescript,
        },
    }
    try:
        return await search_manager.search(raw)
    except Exception as e:
        raise _to_http_error(e, "Search") from e


@router.get("/search/suggestions", response_model=SuggestionResponse)
async def suggestions(
    q: Optional[str] = Query(None, description="Typed prefix"),
    limit: Optional[str] = Query(None, description="Maximum suggestions (1-20)"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Typeahead suggestions."""
    try:
        return await search_manager.suggest(q, limit)
    except Exception as e:
        raise _to_http_error(e, "Suggestions") from e


@router.get("/search/docs", response_model=SearchResponse)
async def search_docs(
    q: Optional[str] = Query(None, description="Search query"),
    category: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Keyword search over documentation pages."""
    try:
        return await search_manager.search_docs(q, category=category, limit=limit, page=page)
    except Exception as e:
        raise _to_http_error(e, "Documentation search") from e


@router.get("/search/similar/{entity_id}", response_model=SearchResponse)
async def similar(
    entity_id: str,
    limit: Optional[str] = Query(None, description="Maximum results (1-50)"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Entities most similar to a stored one."""
    try:
        return await search_manager.similar(entity_id, limit)
    except Exception as e:
        raise _to_http_error(e, "Similar search") from e


@router.get("/search/stats")
async def index_stats(search_manager: SearchManager = Depends(get_search_manager)) -> Dict[str, Any]:
    """Document counts per search index."""
    return await search_manager.get_index_stats()


@router.get("/cache/stats")
async def cache_stats(search_manager: SearchManager = Depends(get_search_manager)) -> Dict[str, Any]:
    """Get cache statistics."""
    return await search_manager.get_cache_stats()


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(search_manager: SearchManager = Depends(get_search_manager)):
    """Clear cached responses and suggestions."""
    deleted = await search_manager.clear_cache()
    return CacheClearResponse(status="cleared", keys_deleted=deleted)
