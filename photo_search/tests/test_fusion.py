import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fusion import (
    RRF_K,
    CandidateResult,
    StrategyResult,
    fusion_stats,
    merge,
    reorder,
    weighted_rrf,
    weights_for_intent,
)


def _c(pid: str, score: float, source: str, **metadata) -> CandidateResult:
    return CandidateResult(pid, score, source, metadata)


# ---------------------------------------------------------------------------
# weighted_rrf
# ---------------------------------------------------------------------------


def test_single_source_rrf():
    rankings = {"semantic": [("a", 0.9), ("b", 0.8), ("c", 0.7)]}
    result = weighted_rrf(rankings, {"semantic": 1.0}, top_k=3)
    assert [pid for pid, _ in result] == ["a", "b", "c"]
    assert result[0][1] == pytest.approx(1.0 / (RRF_K + 1))


def test_two_sources_agreement():
    """When both sources agree on ranking, fused ranking preserves order."""
    rankings = {
        "semantic": [("a", 0.9), ("b", 0.8), ("c", 0.7)],
        "keyword": [("a", 0.85), ("b", 0.75), ("c", 0.6)],
    }
    result = weighted_rrf(rankings, {"semantic": 1.0, "keyword": 1.0}, top_k=3)
    assert [pid for pid, _ in result] == ["a", "b", "c"]


def test_two_sources_disagreement_ties_break_by_id():
    rankings = {
        "semantic": [("a", 0.9), ("b", 0.8), ("c", 0.7)],
        "keyword": [("c", 0.9), ("b", 0.8), ("a", 0.7)],
    }
    result = weighted_rrf(rankings, {"semantic": 1.0, "keyword": 1.0})
    # a and c have identical fused scores; b sits in the middle of both
    assert result[0][1] == pytest.approx(result[1][1])
    assert [pid for pid, _ in result][:2] == ["a", "c"]


def test_weighted_rrf_respects_weights():
    rankings = {
        "people": [("a", 0.9), ("b", 0.5)],
        "keyword": [("b", 0.9), ("a", 0.5)],
    }
    result = weighted_rrf(rankings, {"people": 10.0, "keyword": 1.0}, top_k=2)
    assert result[0][0] == "a"


def test_top_k_and_empty():
    rankings = {"semantic": [(f"p{i}", 1.0 - i * 0.1) for i in range(10)]}
    assert len(weighted_rrf(rankings, top_k=3)) == 3
    assert weighted_rrf({}, {}, top_k=5) == []


# ---------------------------------------------------------------------------
# merge (weighted)
# ---------------------------------------------------------------------------


def test_merge_has_no_duplicates_and_is_sorted():
    lists = [
        [_c("a", 0.9, "semantic"), _c("b", 0.5, "semantic"), _c("a", 0.4, "semantic")],
        [_c("b", 1.0, "keyword"), _c("c", 0.3, "keyword")],
        [_c("a", 1.0, "people")],
    ]
    merged = merge(lists)
    ids = [m.photo_id for m in merged]
    assert len(ids) == len(set(ids)) == 3
    scores = [m.final_score for m in merged]
    assert scores == sorted(scores, reverse=True)


def test_merge_applies_default_weights():
    merged = merge([[_c("a", 1.0, "people")], [_c("b", 1.0, "semantic")], [_c("c", 1.0, "keyword")]])
    assert [(m.photo_id, m.final_score) for m in merged] == [
        ("a", pytest.approx(1.0)),
        ("b", pytest.approx(0.8)),
        ("c", pytest.approx(0.6)),
    ]


def test_unknown_source_weighs_one_and_scores_are_clamped():
    [m] = merge([[_c("a", 3.0, "album")]])
    assert m.final_score == pytest.approx(1.0)
    assert m.sources[0].raw_score == 3.0
    [m] = merge([[_c("a", -0.5, "album")]], min_score=-1.0)
    assert m.final_score == 0.0


def test_dedup_strategies():
    lists = [[_c("a", 1.0, "keyword")], [_c("a", 0.5, "semantic")]]
    weights = {"keyword": 1.0, "semantic": 1.0}
    assert merge(lists, weights, "highest-score")[0].final_score == pytest.approx(1.0)
    assert merge(lists, weights, "average")[0].final_score == pytest.approx(0.75)
    reversed_lists = list(reversed(lists))
    assert merge(reversed_lists, weights, "first-wins")[0].final_score == pytest.approx(0.5)


def test_merge_records_every_contributing_source():
    lists = [[_c("a", 0.8, "keyword", path="/x.jpg")], [_c("a", 0.6, "semantic")]]
    [m] = merge(lists)
    assert m.matched_agents == ["keyword", "semantic"]
    assert m.source_score("semantic") == pytest.approx(0.6 * 0.8)
    assert m.source_score("people") == 0.0
    assert m.metadata["path"] == "/x.jpg"


def test_ties_are_stable_by_photo_id():
    lists = [[_c("z", 0.5, "keyword"), _c("m", 0.5, "keyword"), _c("a", 0.5, "keyword")]]
    assert [m.photo_id for m in merge(lists)] == ["a", "m", "z"]


def test_min_score_and_max_results():
    lists = [[_c(f"p{i}", i / 10, "keyword") for i in range(10)]]
    merged = merge(lists, {"keyword": 1.0}, min_score=0.5, max_results=3)
    assert [m.photo_id for m in merged] == ["p9", "p8", "p7"]


def test_failed_strategy_results_contribute_nothing():
    ok = StrategyResult("keyword", True, [_c("a", 0.9, "keyword")])
    bad = StrategyResult.failed("semantic", "timeout")
    bad.results = [_c("b", 1.0, "semantic")]
    assert [m.photo_id for m in merge([ok, bad])] == ["a"]


def test_invalid_options():
    with pytest.raises(ValueError):
        merge([], dedup_strategy="median")
    with pytest.raises(ValueError):
        merge([], policy="borda")


# ---------------------------------------------------------------------------
# merge (rrf)
# ---------------------------------------------------------------------------


def test_rrf_policy_rewards_agreement():
    lists = [
        [_c("a", 0.99, "semantic"), _c("b", 0.98, "semantic")],
        [_c("b", 0.2, "keyword"), _c("c", 0.1, "keyword")],
    ]
    merged = merge(lists, {"semantic": 1.0, "keyword": 1.0}, policy="rrf")
    assert merged[0].photo_id == "b"
    assert merged[0].final_score == pytest.approx(1 / (RRF_K + 2) + 1 / (RRF_K + 1))
    assert sorted(merged[0].matched_agents) == ["keyword", "semantic"]


# ---------------------------------------------------------------------------
# weights, reorder, stats
# ---------------------------------------------------------------------------


def test_weights_for_intent():
    base = {"people": 1.0, "semantic": 0.8, "keyword": 0.6}
    assert weights_for_intent("mixed", base) == base
    kw = weights_for_intent("keyword", base)
    assert kw["keyword"] == pytest.approx(0.72)
    assert kw["semantic"] == pytest.approx(0.4)
    assert weights_for_intent("people", base)["people"] == pytest.approx(1.2)
    # base is not mutated
    assert base["keyword"] == 0.6


def test_reorder_by_agent_and_recency():
    merged = merge(
        [
            [_c("a", 1.0, "keyword", taken_at="2020-01-01"), _c("b", 0.2, "keyword")],
            [_c("b", 1.0, "semantic", taken_at="2023-01-01"), _c("c", 0.9, "semantic")],
        ]
    )
    assert reorder(merged, "keyword")[0].photo_id == "a"
    assert reorder(merged, "semantic")[0].photo_id == "b"
    assert [m.photo_id for m in reorder(merged, "recency")] == ["b", "a", "c"]
    assert [m.photo_id for m in reorder(merged, "mixed")] == [m.photo_id for m in merged]
    with pytest.raises(ValueError):
        reorder(merged, "color")


def test_fusion_stats():
    merged = merge([[_c("a", 1.0, "keyword"), _c("b", 0.5, "keyword")], [_c("a", 1.0, "semantic")]])
    stats = fusion_stats(merged)
    assert stats["total"] == 2
    assert stats["multi_source"] == 1
    assert stats["by_agent"] == {"keyword": 2, "semantic": 1}
    assert stats["single_source"] == {"keyword": 1}
    assert fusion_stats([])["average_score"] == 0.0
