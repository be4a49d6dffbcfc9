"""Tests for result fusion."""

import pytest

from searchlibs.models import SearchMode, SourceKind
from search_service.ranking.fusion import (
    WeightedScoreFusion,
    estimate_total,
    normalize_scores,
    paginate,
)

from .fakes import make_hit

LEXICAL = SourceKind.LEXICAL
VECTOR = SourceKind.VECTOR
RELATIONAL = SourceKind.RELATIONAL

HYBRID_WEIGHTS = {LEXICAL: 0.5, VECTOR: 0.5, RELATIONAL: 0.3}


@pytest.fixture
def fusion():
    return WeightedScoreFusion()


def test_normalize_scores_min_max():
    hits = [make_hit("a", 10.0, LEXICAL), make_hit("b", 5.0, LEXICAL), make_hit("c", 0.0, LEXICAL)]
    assert normalize_scores(hits) == {"a": 1.0, "b": 0.5, "c": 0.0}


def test_normalize_scores_equal_scores():
    hits = [make_hit("a", 3.0, LEXICAL), make_hit("b", 3.0, LEXICAL)]
    assert normalize_scores(hits) == {"a": 1.0, "b": 1.0}


def test_normalize_scores_keeps_best_duplicate():
    hits = [make_hit("a", 1.0, LEXICAL), make_hit("a", 4.0, LEXICAL), make_hit("b", 2.0, LEXICAL)]
    assert normalize_scores(hits) == {"a": 1.0, "b": 0.0}


def test_data_table_scenario(fusion):
    """Lexical and vector lists overlapping on B."""
    hits_by_source = {
        LEXICAL: [make_hit("A", 9.1, LEXICAL), make_hit("B", 4.0, LEXICAL)],
        VECTOR: [make_hit("B", 0.91, VECTOR), make_hit("C", 0.40, VECTOR)],
    }
    results = fusion.fuse(hits_by_source, SearchMode.HYBRID, HYBRID_WEIGHTS)

    assert [result.entity_id for result in results] == ["A", "B", "C"]
    by_id = {result.entity_id: result for result in results}
    assert by_id["A"].blended_score == pytest.approx(1.0)
    assert by_id["B"].blended_score == pytest.approx(0.5)
    assert by_id["B"].normalized_scores == {LEXICAL: 0.0, VECTOR: 1.0}
    assert by_id["B"].source_kinds == frozenset({LEXICAL, VECTOR})
    assert by_id["C"].blended_score == pytest.approx(0.0)


def test_no_duplicate_entities(fusion):
    hits_by_source = {
        LEXICAL: [make_hit("x", 3.0, LEXICAL), make_hit("y", 2.0, LEXICAL), make_hit("x", 1.0, LEXICAL)],
        VECTOR: [make_hit("y", 0.9, VECTOR), make_hit("x", 0.2, VECTOR)],
    }
    results = fusion.fuse(hits_by_source, SearchMode.HYBRID, HYBRID_WEIGHTS)
    ids = [result.entity_id for result in results]
    assert len(ids) == len(set(ids)) == 2


def test_ordering_is_deterministic(fusion):
    lexical = [make_hit(entity_id, 1.0, LEXICAL) for entity_id in ["d", "b", "a", "c"]]
    first = fusion.fuse({LEXICAL: lexical}, SearchMode.KEYWORD, {LEXICAL: 1.0})
    second = fusion.fuse({LEXICAL: list(reversed(lexical))}, SearchMode.KEYWORD, {LEXICAL: 1.0})
    assert first == second
    assert [result.entity_id for result in first] == ["a", "b", "c", "d"]


def test_tie_breaks_popularity_then_highlight(fusion):
    lexical = [
        make_hit("a", 1.0, LEXICAL),
        make_hit("b", 1.0, LEXICAL, highlight="<em>b</em>"),
        make_hit("c", 1.0, LEXICAL, popularity=50),
    ]
    results = fusion.fuse({LEXICAL: lexical}, SearchMode.KEYWORD, {LEXICAL: 1.0})
    assert [result.entity_id for result in results] == ["c", "b", "a"]


def test_results_sorted_by_blended_score(fusion):
    hits_by_source = {
        LEXICAL: [make_hit(str(i), float(i), LEXICAL) for i in range(10)],
        VECTOR: [make_hit(str(i), 1.0 / (i + 1), VECTOR) for i in range(0, 10, 2)],
    }
    results = fusion.fuse(hits_by_source, SearchMode.HYBRID, HYBRID_WEIGHTS)
    scores = [result.blended_score for result in results]
    assert scores == sorted(scores, reverse=True)


def test_relational_ignored_when_primary_sources_found_hits(fusion):
    hits_by_source = {
        LEXICAL: [make_hit("a", 1.0, LEXICAL)],
        VECTOR: [],
        RELATIONAL: [make_hit("r", 1.0, RELATIONAL)],
    }
    results = fusion.fuse(hits_by_source, SearchMode.HYBRID, HYBRID_WEIGHTS)
    assert [result.entity_id for result in results] == ["a"]


def test_relational_used_when_primary_sources_empty(fusion):
    hits_by_source = {
        LEXICAL: [],
        VECTOR: [],
        RELATIONAL: [make_hit("r1", 1.0, RELATIONAL), make_hit("r2", 0.25, RELATIONAL)],
    }
    results = fusion.fuse(hits_by_source, SearchMode.HYBRID, HYBRID_WEIGHTS)
    assert [result.entity_id for result in results] == ["r1", "r2"]
    assert results[0].blended_score == pytest.approx(1.0)


def test_sources_without_weight_are_ignored(fusion):
    hits_by_source = {
        LEXICAL: [make_hit("a", 1.0, LEXICAL)],
        VECTOR: [make_hit("b", 1.0, VECTOR)],
    }
    results = fusion.fuse(hits_by_source, SearchMode.KEYWORD, {LEXICAL: 1.0})
    assert [result.entity_id for result in results] == ["a"]


def test_payload_merge_prefers_most_complete(fusion):
    hits_by_source = {
        LEXICAL: [make_hit("a", 1.0, LEXICAL, highlight="<em>a</em>", title="A")],
        VECTOR: [make_hit("a", 1.0, VECTOR, highlight="vector", title="A", description="Alpha", url="/a")],
    }
    result = fusion.fuse(hits_by_source, SearchMode.HYBRID, HYBRID_WEIGHTS)[0]
    assert result.payload == {"title": "A", "description": "Alpha", "url": "/a"}
    assert result.highlight == "<em>a</em>"


def test_payload_tie_prefers_lexical(fusion):
    hits_by_source = {
        LEXICAL: [make_hit("a", 1.0, LEXICAL, title="Lexical")],
        VECTOR: [make_hit("a", 1.0, VECTOR, title="Vector", highlight="from vector")],
    }
    result = fusion.fuse(hits_by_source, SearchMode.HYBRID, HYBRID_WEIGHTS)[0]
    assert result.payload == {"title": "Lexical"}
    assert result.highlight == "from vector"


def test_empty_source_map_raises(fusion):
    with pytest.raises(ValueError):
        fusion.fuse({}, SearchMode.HYBRID, HYBRID_WEIGHTS)


def test_empty_hit_lists_fuse_to_nothing(fusion):
    assert fusion.fuse({LEXICAL: [], VECTOR: []}, SearchMode.HYBRID, HYBRID_WEIGHTS) == []


def test_paginate_never_exceeds_limit(fusion):
    lexical = [make_hit(f"id-{i:02d}", float(i), LEXICAL) for i in range(25)]
    results = fusion.fuse({LEXICAL: lexical}, SearchMode.KEYWORD, {LEXICAL: 1.0})

    first = paginate(results, limit=10, page=0)
    last = paginate(results, limit=10, page=2)
    assert len(first) == 10
    assert len(last) == 5
    assert first[0].entity_id == "id-24"
    assert paginate(results, limit=10, page=3) == []


def test_estimate_total_counts_unique_entities():
    hits_by_source = {
        LEXICAL: [make_hit("A", 9.1, LEXICAL), make_hit("B", 4.0, LEXICAL)],
        VECTOR: [make_hit("B", 0.91, VECTOR), make_hit("C", 0.40, VECTOR)],
    }
    assert estimate_total(hits_by_source) == 3
