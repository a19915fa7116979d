"""Merge per-strategy candidate lists into one ranked, deduplicated list.

Two policies:

- weighted (default): each candidate's score is clamped to [0, 1] and
  multiplied by its source weight; a photo found by several sources gets a
  final score chosen by the dedup strategy.
- rrf: reciprocal rank fusion, ``weight / (RRF_K + rank + 1)`` summed across
  sources. Ignores raw score magnitudes, only ranks matter.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field

from config import DEFAULT_FUSION_WEIGHTS

logger = logging.getLogger(__name__)

RRF_K = 60
DEDUP_STRATEGIES = ("highest-score", "first-wins", "average")
POLICIES = ("weighted", "rrf")

# Multipliers on the configured weights per intent type.
INTENT_MULTIPLIERS: dict[str, dict[str, float]] = {
    "keyword": {"keyword": 1.2, "semantic": 0.5},
    "semantic": {"keyword": 0.5, "semantic": 1.2},
    "people": {"people": 1.2, "keyword": 0.8, "semantic": 0.8},
    "location": {},
    "time": {},
    "mixed": {},
}


@dataclass
class CandidateResult:
    photo_id: str
    score: float
    source: str
    metadata: dict = field(default_factory=dict)


@dataclass
class StrategyResult:
    """Uniform envelope every search strategy returns."""

    source: str
    success: bool
    results: list[CandidateResult] = field(default_factory=list)
    confidence: float = 0.0
    metadata: dict = field(default_factory=dict)
    error: str | None = None
    elapsed_ms: float = 0.0

    @classmethod
    def failed(cls, source: str, error: str, elapsed_ms: float = 0.0) -> "StrategyResult":
        return cls(source=source, success=False, error=error, elapsed_ms=elapsed_ms)


@dataclass
class SourceScore:
    agent: str
    raw_score: float
    weight: float
    weighted_score: float


@dataclass
class MergedResult:
    photo_id: str
    final_score: float
    sources: list[SourceScore] = field(default_factory=list)
    matched_agents: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def source_score(self, agent: str) -> float:
        for s in self.sources:
            if s.agent == agent:
                return s.weighted_score
        return 0.0

    def as_dict(self) -> dict:
        return {
            "photo_id": self.photo_id,
            "final_score": round(self.final_score, 6),
            "sources": [
                {
                    "agent": s.agent,
                    "raw_score": round(s.raw_score, 6),
                    "weight": s.weight,
                    "weighted_score": round(s.weighted_score, 6),
                }
                for s in self.sources
            ],
            "matched_agents": self.matched_agents,
            "metadata": self.metadata,
        }


def weights_for_intent(intent_type: str | None, base: dict[str, float] | None = None) -> dict[str, float]:
    """Scale ``base`` weights (defaults: people > semantic > keyword) for an intent type."""
    weights = dict(base or DEFAULT_FUSION_WEIGHTS)
    for source, factor in INTENT_MULTIPLIERS.get(intent_type or "mixed", {}).items():
        if source in weights:
            weights[source] = round(weights[source] * factor, 4)
    return weights


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))


def _as_lists(candidate_lists) -> list[list[CandidateResult]]:
    lists = []
    for item in candidate_lists:
        if isinstance(item, StrategyResult):
            lists.append(item.results if item.success else [])
        else:
            lists.append(list(item))
    return lists


def _best_per_source(lists: list[list[CandidateResult]]) -> dict[str, dict[str, CandidateResult]]:
    """photo_id -> source -> best candidate, in first-seen order."""
    seen: dict[str, dict[str, CandidateResult]] = {}
    for candidates in lists:
        for c in candidates:
            by_source = seen.setdefault(c.photo_id, {})
            prev = by_source.get(c.source)
            if prev is None or c.score > prev.score:
                by_source[c.source] = c
    return seen


def weighted_rrf(
    rankings: dict[str, list[tuple[str, float]]],
    weights: dict[str, float] | None = None,
    top_k: int | None = None,
) -> list[tuple[str, float]]:
    """Weighted reciprocal rank fusion over ``source -> [(photo_id, raw_score)]`` rankings."""
    weights = weights or {}
    scores: dict[str, float] = {}
    for source, ranked in rankings.items():
        w = weights.get(source, 1.0)
        for rank, (pid, _raw_score) in enumerate(ranked):
            scores[pid] = scores.get(pid, 0.0) + w / (RRF_K + rank + 1)

    sorted_items = sorted(scores.items(), key=lambda x: (-x[1], x[0]))
    return sorted_items[:top_k] if top_k else sorted_items


def merge(
    candidate_lists,
    weights: dict[str, float] | None = None,
    dedup_strategy: str = "highest-score",
    min_score: float = 0.0,
    max_results: int | None = 50,
    policy: str = "weighted",
) -> list[MergedResult]:
    """Fuse candidate lists (or StrategyResults) into unique, ranked MergedResults.

    Args:
        candidate_lists: lists of CandidateResult, or StrategyResult envelopes
            (failed envelopes contribute nothing).
        weights: per-source weight; unknown sources weigh 1.0.
        dedup_strategy: highest-score, first-wins, or average.
        min_score: drop results with a final score below this.
        max_results: cap on the output length (None for no cap).
        policy: "weighted" or "rrf".

    Returns:
        Results sorted by final score descending, ties by photo_id.
    """
    if dedup_strategy not in DEDUP_STRATEGIES:
        raise ValueError(f"Unknown dedup strategy: {dedup_strategy}")
    if policy not in POLICIES:
        raise ValueError(f"Unknown fusion policy: {policy}")
    weights = DEFAULT_FUSION_WEIGHTS if weights is None else weights
    lists = _as_lists(candidate_lists)

    if policy == "rrf":
        merged = _merge_rrf(lists, weights)
    else:
        merged = _merge_weighted(lists, weights, dedup_strategy)

    results = [m for m in merged if m.final_score >= min_score]
    results.sort(key=lambda m: (-m.final_score, m.photo_id))
    return results[:max_results] if max_results else results


def _merge_weighted(
    lists: list[list[CandidateResult]], weights: dict[str, float], dedup_strategy: str
) -> list[MergedResult]:
    merged = []
    for pid, by_source in _best_per_source(lists).items():
        sources = []
        metadata: dict = {}
        for source, c in by_source.items():
            w = weights.get(source, 1.0)
            sources.append(SourceScore(source, float(c.score), w, _clamp01(c.score) * w))
            for k, v in c.metadata.items():
                metadata.setdefault(k, v)

        scores = [s.weighted_score for s in sources]
        if dedup_strategy == "first-wins":
            final = scores[0]
        elif dedup_strategy == "average":
            final = sum(scores) / len(scores)
        else:
            final = max(scores)
        merged.append(
            MergedResult(
                photo_id=pid,
                final_score=final,
                sources=sources,
                matched_agents=list(by_source),
                metadata=metadata,
            )
        )
    return merged


def _merge_rrf(lists: list[list[CandidateResult]], weights: dict[str, float]) -> list[MergedResult]:
    rankings: dict[str, list[tuple[str, float]]] = {}
    for source, best in _rank_by_source(lists).items():
        rankings[source] = [(c.photo_id, c.score) for c in best]

    detail: dict[str, MergedResult] = {}
    for source, ranked in rankings.items():
        w = weights.get(source, 1.0)
        for rank, (pid, raw) in enumerate(ranked):
            m = detail.setdefault(pid, MergedResult(photo_id=pid, final_score=0.0))
            m.sources.append(SourceScore(source, float(raw), w, w / (RRF_K + rank + 1)))
            m.matched_agents.append(source)

    for pid, score in weighted_rrf(rankings, weights):
        detail[pid].final_score = score
    for candidates in lists:
        for c in candidates:
            for k, v in c.metadata.items():
                detail[c.photo_id].metadata.setdefault(k, v)
    return list(detail.values())


def _rank_by_source(lists: list[list[CandidateResult]]) -> dict[str, list[CandidateResult]]:
    """Per source: unique candidates sorted by score descending, ties by photo_id."""
    per_source: dict[str, dict[str, CandidateResult]] = {}
    for candidates in lists:
        for c in candidates:
            best = per_source.setdefault(c.source, {})
            prev = best.get(c.photo_id)
            if prev is None or c.score > prev.score:
                best[c.photo_id] = c
    return {
        source: sorted(best.values(), key=lambda c: (-c.score, c.photo_id))
        for source, best in per_source.items()
    }


def reorder(results: list[MergedResult], sort_by: str = "score") -> list[MergedResult]:
    """Re-sort merged results by one agent's contribution, by recency, or by final score."""
    if sort_by in ("keyword", "semantic", "people"):
        return sorted(results, key=lambda m: (-m.source_score(sort_by), -m.final_score, m.photo_id))
    if sort_by == "recency":
        dated = sorted((m for m in results if m.metadata.get("taken_at")), key=lambda m: m.photo_id)
        dated.sort(key=lambda m: m.metadata["taken_at"], reverse=True)
        undated = sorted((m for m in results if not m.metadata.get("taken_at")), key=lambda m: m.photo_id)
        return dated + undated
    if sort_by in ("score", "mixed"):
        return sorted(results, key=lambda m: (-m.final_score, m.photo_id))
    raise ValueError(f"Unknown sort key: {sort_by}")


def fusion_stats(results: list[MergedResult]) -> dict:
    agents = Counter(a for m in results for a in m.matched_agents)
    solo = Counter(m.matched_agents[0] for m in results if len(m.matched_agents) == 1)
    scores = [m.final_score for m in results]
    return {
        "total": len(results),
        "multi_source": sum(1 for m in results if len(m.matched_agents) > 1),
        "by_agent": dict(sorted(agents.items())),
        "single_source": dict(sorted(solo.items())),
        "average_score": round(sum(scores) / len(scores), 6) if scores else 0.0,
        "max_score": round(max(scores), 6) if scores else 0.0,
        "min_score": round(min(scores), 6) if scores else 0.0,
    }
