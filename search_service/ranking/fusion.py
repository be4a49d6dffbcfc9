"""Result fusion for multi-source search.

Raw scores from different engines live on unrelated scales (BM25, cosine
similarity, SQL match tiers), so each source is min-max normalized on its own
before blending. An entity's blended score is the weighted mean of the
normalized scores of the sources that actually returned it:

    blended = sum(w[s] * n[s]) / sum(w[s])   for s in sources(entity)

An entity found by only one source is therefore not penalized for being
absent from the others. The relational fallback only counts when neither the
lexical nor the vector source produced anything.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from searchlibs.models import FusedResult, SearchMode, SourceHit, SourceKind

logger = structlog.get_logger("search_fusion")

# Payload/highlight preference when several sources return the same entity
SOURCE_PRIORITY = (SourceKind.LEXICAL, SourceKind.VECTOR, SourceKind.RELATIONAL)


def normalize_scores(hits: Sequence[SourceHit]) -> Dict[str, float]:
    """Min-max normalize one source's raw scores into [0, 1].

    If every hit has the same raw score they all normalize to 1.0. When a
    source returns the same entity twice its best raw score is used.
    """
    best: Dict[str, float] = {}
    for hit in hits:
        if hit.entity_id not in best or hit.raw_score > best[hit.entity_id]:
            best[hit.entity_id] = hit.raw_score

    if not best:
        return {}

    min_score = min(best.values())
    max_score = max(best.values())
    if max_score > min_score:
        span = max_score - min_score
        return {entity_id: (score - min_score) / span for entity_id, score in best.items()}
    return {entity_id: 1.0 for entity_id in best}


def _payload_completeness(payload: Optional[Dict[str, Any]]) -> int:
    if not payload:
        return 0
    return sum(1 for value in payload.values() if value not in (None, "", [], {}))


def estimate_total(hits_by_source: Dict[SourceKind, Sequence[SourceHit]]) -> int:
    """Estimate the number of matching entities.

    Sum of per-source hit counts minus entities reported by more than one
    source, i.e. the number of distinct candidates seen.
    """
    entity_ids = set()
    for hits in hits_by_source.values():
        entity_ids.update(hit.entity_id for hit in hits)
    return len(entity_ids)


def paginate(results: Sequence[FusedResult], limit: int, page: int = 0) -> List[FusedResult]:
    """Slice one page out of the fully ranked list."""
    start = page * limit
    return list(results[start:start + limit])


def sort_key(result: FusedResult):
    """Ranking order: blended desc, popularity desc, highlighted first, id asc."""
    return (
        -result.blended_score,
        -result.popularity,
        0 if result.highlight else 1,
        result.entity_id,
    )


class WeightedScoreFusion:
    """Weighted, per-source normalized score fusion."""

    def fuse(
        self,
        hits_by_source: Dict[SourceKind, Sequence[SourceHit]],
        mode: SearchMode,
        weights: Dict[SourceKind, float],
    ) -> List[FusedResult]:
        """Fuse per-source hits into one deduplicated, ranked list.

        Parameters
        - hits_by_source: Hits of each source that answered
        - mode: Effective search mode (for logging)
        - weights: Source weights; sources without a positive weight are ignored

        Raises ``ValueError`` when ``hits_by_source`` is empty.
        """
        if not hits_by_source:
            raise ValueError("Cannot fuse results without any source")

        active = self._active_sources(hits_by_source, weights)

        normalized: Dict[SourceKind, Dict[str, float]] = {}
        best_hits: Dict[SourceKind, Dict[str, SourceHit]] = {}
        for kind in active:
            hits = hits_by_source[kind]
            normalized[kind] = normalize_scores(hits)
            best_hits[kind] = self._best_hits(hits)

        entity_ids = set()
        for scores in normalized.values():
            entity_ids.update(scores)

        fused = [self._fuse_entity(entity_id, normalized, best_hits, weights) for entity_id in entity_ids]
        fused.sort(key=sort_key)

        logger.debug(
            "Weighted fusion completed",
            mode=mode.value,
            sources={kind.value: len(hits_by_source[kind]) for kind in hits_by_source},
            active_sources=[kind.value for kind in active],
            fused_count=len(fused),
        )
        return fused

    @staticmethod
    def _active_sources(
        hits_by_source: Dict[SourceKind, Sequence[SourceHit]],
        weights: Dict[SourceKind, float],
    ) -> List[SourceKind]:
        weighted = [kind for kind in SOURCE_PRIORITY if kind in hits_by_source and weights.get(kind, 0.0) > 0]
        primary_found = any(
            hits_by_source.get(kind) for kind in (SourceKind.LEXICAL, SourceKind.VECTOR)
        )
        if primary_found:
            return [kind for kind in weighted if kind != SourceKind.RELATIONAL]
        return weighted

    @staticmethod
    def _best_hits(hits: Iterable[SourceHit]) -> Dict[str, SourceHit]:
        best: Dict[str, SourceHit] = {}
        for hit in hits:
            current = best.get(hit.entity_id)
            if current is None or hit.raw_score > current.raw_score:
                best[hit.entity_id] = hit
        return best

    @staticmethod
    def _fuse_entity(
        entity_id: str,
        normalized: Dict[SourceKind, Dict[str, float]],
        best_hits: Dict[SourceKind, Dict[str, SourceHit]],
        weights: Dict[SourceKind, float],
    ) -> FusedResult:
        scores = {
            kind: per_source[entity_id]
            for kind, per_source in normalized.items()
            if entity_id in per_source
        }
        total_weight = sum(weights[kind] for kind in scores)
        blended = sum(weights[kind] * score for kind, score in scores.items()) / total_weight

        hits = [best_hits[kind][entity_id] for kind in SOURCE_PRIORITY if kind in scores]

        # Most complete payload wins; ``max`` keeps the first of equals, so
        # ties follow source priority.
        payload_hit = max(hits, key=lambda hit: _payload_completeness(hit.payload))
        highlight = next((hit.highlight for hit in hits if hit.highlight), None)

        return FusedResult(
            entity_id=entity_id,
            normalized_scores=scores,
            blended_score=blended,
            source_kinds=frozenset(scores),
            payload=dict(payload_hit.payload or {}),
            highlight=highlight,
        )
