"""Fan-out coordination across search sources.

Runs every source applicable to a request concurrently under one shared
deadline and collects whatever answered in time. A source that errors or
misses the deadline is dropped from the answer and marks it degraded; the
request only fails when no required source answered at all.

Plan per mode
- keyword: lexical
- semantic: vector, then lexical if the vector source failed
- hybrid: lexical + vector in parallel, then the relational store if both
  answered with nothing and the scope is one it covers
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import structlog

from searchlibs.models import SearchMode, SearchRequest, SearchScope, SourceHit, SourceKind
from searchlibs.sources.base import AdapterError, AdapterTimeout, SearchSource

from ..errors import AllSourcesUnavailable
from ..runtime.metrics import MetricsCollector

logger = structlog.get_logger("search_coordinator")

DEFAULT_RELATIONAL_SCOPES = frozenset({SearchScope.RESOURCES, SearchScope.ALL})

OUTCOME_OK = "ok"
OUTCOME_ERROR = "error"
OUTCOME_TIMEOUT = "timeout"


@dataclass
class GatherResult:
    """Hits collected for one request plus how they were obtained."""

    hits_by_source: Dict[SourceKind, List[SourceHit]]
    degraded: bool
    search_mode: SearchMode
    failures: Dict[str, str] = field(default_factory=dict)


class FanOutCoordinator:
    """Queries the applicable sources concurrently under one deadline."""

    def __init__(
        self,
        sources: Dict[SourceKind, SearchSource],
        deadline: float = 0.8,
        overfetch_factor: int = 2,
        max_candidates: int = 200,
        relational_scopes: FrozenSet[SearchScope] = DEFAULT_RELATIONAL_SCOPES,
        fallback_deadline: Optional[float] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Configure the coordinator.

        Parameters
        - sources: Injected adapters keyed by kind; missing kinds count as failed
        - deadline: Seconds shared by every source call of one request
        - overfetch_factor: Candidates requested per result slot
        - max_candidates: Upper bound of candidates requested per source
        - relational_scopes: Scopes covered by the relational fallback
        - fallback_deadline: Seconds guaranteed to the lexical fallback of a
          semantic request; defaults to half of ``deadline``
        - metrics: Collector receiving per-source outcomes
        """
        self.sources = dict(sources)
        self.deadline = deadline
        self.overfetch_factor = overfetch_factor
        self.max_candidates = max_candidates
        self.relational_scopes = frozenset(relational_scopes)
        self.fallback_deadline = deadline / 2 if fallback_deadline is None else fallback_deadline
        self.metrics = metrics
        self._clock = clock

    async def gather(self, request: SearchRequest) -> GatherResult:
        """Collect hits for ``request`` according to its mode.

        Raises ``AllSourcesUnavailable`` when every source required for the
        mode failed or timed out.
        """
        deadline_at = self._clock() + self.deadline

        if request.mode == SearchMode.KEYWORD:
            return await self._gather_keyword(request, deadline_at)
        if request.mode == SearchMode.SEMANTIC:
            return await self._gather_semantic(request, deadline_at)
        return await self._gather_hybrid(request, deadline_at)

    async def _gather_keyword(self, request: SearchRequest, deadline_at: float) -> GatherResult:
        hits, failures = await self._run_step([SourceKind.LEXICAL], request, deadline_at)
        if SourceKind.LEXICAL not in hits:
            raise AllSourcesUnavailable(failures)
        return GatherResult(hits_by_source=hits, degraded=False, search_mode=SearchMode.KEYWORD)

    async def _gather_semantic(self, request: SearchRequest, deadline_at: float) -> GatherResult:
        hits, failures = await self._run_step([SourceKind.VECTOR], request, deadline_at)
        if SourceKind.VECTOR in hits:
            return GatherResult(hits_by_source=hits, degraded=False, search_mode=SearchMode.SEMANTIC)

        logger.info("Vector search unavailable, falling back to lexical", query=request.query[:50])
        # the vector call may have used up the shared deadline
        fallback_at = max(deadline_at, self._clock() + self.fallback_deadline)
        fallback_hits, fallback_failures = await self._run_step([SourceKind.LEXICAL], request, fallback_at)
        failures.update(fallback_failures)
        if SourceKind.LEXICAL not in fallback_hits:
            raise AllSourcesUnavailable(failures)
        return GatherResult(
            hits_by_source=fallback_hits,
            degraded=True,
            search_mode=SearchMode.KEYWORD,
            failures=failures,
        )

    async def _gather_hybrid(self, request: SearchRequest, deadline_at: float) -> GatherResult:
        hits, failures = await self._run_step([SourceKind.LEXICAL, SourceKind.VECTOR], request, deadline_at)
        if not hits:
            raise AllSourcesUnavailable(failures)

        degraded = bool(failures)
        if SourceKind.LEXICAL in hits and SourceKind.VECTOR in hits:
            mode = SearchMode.HYBRID
        elif SourceKind.LEXICAL in hits:
            mode = SearchMode.KEYWORD
        else:
            mode = SearchMode.SEMANTIC

        if mode == SearchMode.HYBRID and not any(hits.values()) and self._relational_applies(request):
            fallback_hits, fallback_failures = await self._run_step(
                [SourceKind.RELATIONAL], request, deadline_at
            )
            hits.update(fallback_hits)
            failures.update(fallback_failures)
            degraded = degraded or bool(fallback_failures)

        return GatherResult(hits_by_source=hits, degraded=degraded, search_mode=mode, failures=failures)

    def _relational_applies(self, request: SearchRequest) -> bool:
        return SourceKind.RELATIONAL in self.sources and request.scope in self.relational_scopes

    async def _run_step(
        self,
        kinds: Iterable[SourceKind],
        request: SearchRequest,
        deadline_at: float,
    ) -> Tuple[Dict[SourceKind, List[SourceHit]], Dict[str, str]]:
        """Call ``kinds`` concurrently until ``deadline_at``.

        Returns hits of the sources that answered and a ``name -> reason``
        map of those that did not. Calls still running at the deadline are
        cancelled and not awaited.
        """
        hits: Dict[SourceKind, List[SourceHit]] = {}
        failures: Dict[str, str] = {}
        limit = request.candidate_limit(self.overfetch_factor, self.max_candidates)

        tasks: Dict[asyncio.Task, SourceKind] = {}
        remaining = deadline_at - self._clock()
        for kind in kinds:
            source = self.sources.get(kind)
            if source is None:
                failures[kind.value] = "not configured"
                continue
            if remaining <= 0:
                self._record_failure(source, OUTCOME_TIMEOUT, 0.0, failures)
                continue
            task = asyncio.ensure_future(source.search(request, timeout=remaining, limit=limit))
            tasks[task] = kind

        if not tasks:
            return hits, failures

        started = self._clock()
        done, pending = await asyncio.wait(tasks.keys(), timeout=max(remaining, 0.0))
        elapsed = self._clock() - started

        for task in pending:
            task.cancel()
            self._record_failure(self.sources[tasks[task]], OUTCOME_TIMEOUT, elapsed, failures)

        for task in done:
            kind = tasks[task]
            source = self.sources[kind]
            error = task.exception()
            if error is None:
                hits[kind] = list(task.result())
                self._record(source, OUTCOME_OK, elapsed)
            elif isinstance(error, AdapterTimeout):
                self._record_failure(source, OUTCOME_TIMEOUT, elapsed, failures)
            elif isinstance(error, AdapterError):
                self._record_failure(source, OUTCOME_ERROR, elapsed, failures)
            else:
                logger.error(
                    "Unexpected search source exception",
                    source=source.name,
                    error_type=type(error).__name__,
                    error=str(error),
                )
                self._record_failure(source, OUTCOME_ERROR, elapsed, failures)

        return hits, failures

    def _record(self, source: SearchSource, outcome: str, duration: float) -> None:
        if self.metrics is not None:
            self.metrics.record_source_call(source.name, outcome, duration)

    def _record_failure(
        self,
        source: SearchSource,
        outcome: str,
        duration: float,
        failures: Dict[str, str],
    ) -> None:
        failures[source.name] = outcome
        self._record(source, outcome, duration)
        logger.warning(
            "Search source unavailable",
            source=source.name,
            kind=source.kind.value,
            outcome=outcome,
            duration_ms=round(duration * 1000, 2),
        )
