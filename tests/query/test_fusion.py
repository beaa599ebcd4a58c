import pytest

from memory_engineering.query.fusion import (
    merge_first_seen,
    merge_minmax,
    merge_rankings,
    weighted_rrf,
)
from memory_engineering.shared.records import StoreHit


def _hits(*pairs, freshness=None):
    freshness = freshness or {}
    return [
        StoreHit(id=doc_id, score=score, payload={"freshness": freshness.get(doc_id, 0.0)})
        for doc_id, score in pairs
    ]


def test_weighted_rrf_sums_reciprocal_ranks():
    rankings = {
        "semantic": _hits(("a", 0.9), ("b", 0.8)),
        "lexical": _hits(("b", 2.0), ("c", 1.0)),
    }
    fused = weighted_rrf(rankings, {"semantic": 0.4, "lexical": 0.3}, k=60)

    assert [hit.id for hit in fused] == ["b", "a", "c"]
    assert fused[0].fused_score == pytest.approx(0.4 / 62 + 0.3 / 61)
    assert fused[1].fused_score == pytest.approx(0.4 / 61)
    assert fused[2].fused_score == pytest.approx(0.3 / 62)
    assert fused[0].pipelines == {"semantic": 2, "lexical": 1}
    assert fused[0].semantic_score == 0.8
    assert fused[2].semantic_score is None


def test_weighted_rrf_is_deterministic():
    rankings = {
        "semantic": _hits(("x", 0.5), ("y", 0.4), ("z", 0.3)),
        "temporal": _hits(("z", 10.0), ("y", 9.0)),
        "frequency": _hits(("y", 5.0)),
    }
    weights = {"semantic": 0.4, "temporal": 0.2, "frequency": 0.1}
    first = [(h.id, h.fused_score) for h in weighted_rrf(rankings, weights)]
    for _ in range(5):
        assert [(h.id, h.fused_score) for h in weighted_rrf(rankings, weights)] == first


def test_zero_weight_pipelines_are_ignored():
    rankings = {"semantic": _hits(("a", 0.9)), "frequency": _hits(("b", 9.0))}
    fused = weighted_rrf(rankings, {"semantic": 0.7, "frequency": 0.0})
    assert [hit.id for hit in fused] == ["a"]


def test_ties_prefer_semantic_score_then_freshness_then_id():
    rankings = {"semantic": _hits(("s", 0.2)), "lexical": _hits(("l", 3.0))}
    fused = weighted_rrf(rankings, {"semantic": 0.5, "lexical": 0.5})
    assert [hit.id for hit in fused] == ["s", "l"]

    fresh = {"old": 100.0, "new": 200.0}
    rankings = {
        "temporal": _hits(("old", 1.0), freshness=fresh),
        "frequency": _hits(("new", 1.0), freshness=fresh),
    }
    fused = weighted_rrf(rankings, {"temporal": 0.5, "frequency": 0.5})
    assert [hit.id for hit in fused] == ["new", "old"]

    rankings = {"temporal": _hits(("b", 1.0)), "frequency": _hits(("a", 1.0))}
    fused = weighted_rrf(rankings, {"temporal": 0.5, "frequency": 0.5})
    assert [hit.id for hit in fused] == ["a", "b"]


def test_weighted_rrf_respects_limit():
    rankings = {"semantic": _hits(*[(f"d{i}", 1.0 - i / 10) for i in range(5)])}
    assert len(weighted_rrf(rankings, {"semantic": 1.0}, limit=3)) == 3


def test_first_seen_keeps_pipeline_precedence():
    rankings = {
        "lexical": _hits(("c", 2.0), ("a", 1.0)),
        "semantic": _hits(("a", 0.9), ("b", 0.8)),
        "temporal": _hits(("d", 5.0)),
    }
    merged = merge_first_seen(rankings, k=60)
    assert [hit.id for hit in merged] == ["a", "b", "c", "d"]
    assert [hit.fused_score for hit in merged] == pytest.approx([1 / 61, 1 / 62, 1 / 63, 1 / 64])
    assert merged[0].pipelines == {"semantic": 1, "lexical": 2}


def test_minmax_normalises_each_pipeline():
    rankings = {
        "semantic": _hits(("a", 0.9), ("b", 0.5), ("c", 0.1)),
        "lexical": _hits(("c", 2.0), ("a", 1.0)),
    }
    merged = merge_minmax(rankings, {"semantic": 0.7, "lexical": 0.3})
    assert [hit.id for hit in merged] == ["a", "b", "c"]
    assert merged[0].fused_score == pytest.approx(0.7)
    assert merged[1].fused_score == pytest.approx(0.35)
    assert merged[2].fused_score == pytest.approx(0.3)


def test_minmax_flat_pipeline_scores_one():
    merged = merge_minmax({"temporal": _hits(("a", 5.0), ("b", 5.0))}, {"temporal": 1.0})
    assert [hit.fused_score for hit in merged] == [1.0, 1.0]


def test_merge_rankings_keeps_best_score_per_id():
    combined = merge_rankings(
        [_hits(("a", 0.5), ("b", 0.4)), _hits(("a", 0.7), ("c", 0.6))], limit=2
    )
    assert [(hit.id, hit.score) for hit in combined] == [("a", 0.7), ("c", 0.6)]
