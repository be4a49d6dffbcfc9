"""Base search source interface.

Defines the contract the fan-out coordinator depends on, independent of the
backing engine (OpenSearch, pgvector, plain PostgreSQL, ...).

A source receives a normalized ``SearchRequest`` plus a time budget and returns
an ordered list of ``SourceHit`` values, or raises ``AdapterError``. Sources
must respect the budget: work that cannot finish in time raises
``AdapterTimeout`` instead of returning late.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog

from ..models import SearchRequest, SourceHit, SourceKind
from .circuit_breaker import CircuitBreaker, CircuitBreakerError

logger = structlog.get_logger("sources.base")

T = TypeVar("T")


class AdapterError(Exception):
    """A search source failed to produce hits.

    The message is meant for logs only; it is never forwarded to callers.
    """

    def __init__(self, source: str, message: str = "source failed"):
        super().__init__(f"{source}: {message}")
        self.source = source


class AdapterTimeout(AdapterError):
    """A search source did not answer within its time budget."""

    def __init__(self, source: str, timeout: float):
        super().__init__(source, f"timed out after {timeout:.3f}s")
        self.timeout = timeout


class SearchSource(ABC):
    """Abstract base class for search sources.

    Subclasses implement ``_search`` against their backend and map the
    backend's loosely-typed payloads into ``SourceHit``. The public ``search``
    wraps it with the time budget, the circuit breaker and error mapping so
    every implementation fails the same way.
    """

    kind: SourceKind

    def __init__(self, name: str, breaker: Optional[CircuitBreaker] = None):
        self.name = name
        self.breaker = breaker or CircuitBreaker(name=name)

    async def search(self, request: SearchRequest, timeout: float, limit: Optional[int] = None) -> List[SourceHit]:
        """Return hits for ``request`` within ``timeout`` seconds.

        Parameters
        - request: The normalized request
        - timeout: Remaining time budget in seconds
        - limit: Number of candidates wanted; defaults to ``request.limit``

        Raises
        - ``AdapterTimeout`` when the budget elapses
        - ``AdapterError`` for any other backend failure
        """
        candidate_limit = limit or request.limit
        started = time.perf_counter()
        hits = await self._call(self._search, timeout, request, candidate_limit)

        logger.debug(
            "Search source completed",
            source=self.name,
            kind=self.kind.value,
            hits=len(hits),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return hits

    async def _call(self, operation: Callable[..., Awaitable[T]], timeout: float, *args: Any) -> T:
        """Await ``operation(*args)`` under the time budget and the circuit breaker."""
        if timeout <= 0:
            raise AdapterTimeout(self.name, timeout)

        try:
            return await asyncio.wait_for(self.breaker.call(operation, *args), timeout=timeout)
        except asyncio.TimeoutError:
            raise AdapterTimeout(self.name, timeout)
        except CircuitBreakerError as e:
            raise AdapterError(self.name, str(e))
        except AdapterError:
            raise
        except Exception as e:
            logger.warning(
                "Search source failed",
                source=self.name,
                kind=self.kind.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise AdapterError(self.name, f"{type(e).__name__}: {e}")

    @abstractmethod
    async def _search(self, request: SearchRequest, limit: int) -> List[SourceHit]:
        """Query the backend and map its response into ``SourceHit`` values.

        Returns hits ordered by descending backend relevance.
        """
        pass

    async def similar_to(self, entity_id: str, timeout: float, limit: int) -> List[SourceHit]:
        """Entities most similar to ``entity_id``, excluding it.

        Only sources holding per-entity vectors support this lookup.
        """
        raise AdapterError(self.name, "similarity lookup not supported")

    async def index_stats(self) -> Dict[str, Optional[int]]:
        """Document count per index; empty when the backend has no notion of it."""
        return {}

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the backend is reachable."""
        pass

    async def close(self) -> None:
        """Release backend resources (pools, clients)."""
        return None
