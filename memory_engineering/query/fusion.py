"""
Rank fusion for the hybrid query planner.

All functions are pure and deterministic: identical rankings and weights
always yield the same order. Ties on the fused score are broken by raw
semantic score, then freshness, then id.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from memory_engineering.shared.records import FusedHit, StoreHit
from memory_engineering.store.base import PIPELINE_ORDER, SEMANTIC

DEFAULT_RRF_K = 60


def fusion_sort_key(hit: FusedHit):
    semantic = hit.semantic_score if hit.semantic_score is not None else float("-inf")
    return (-hit.fused_score, -semantic, -hit.freshness, hit.id)


def _ordered(rankings: Mapping[str, Sequence[StoreHit]], order: Iterable[str]) -> List[str]:
    names = [name for name in order if name in rankings]
    names.extend(sorted(name for name in rankings if name not in names))
    return names


def _collect(
    rankings: Mapping[str, Sequence[StoreHit]], names: Sequence[str]
) -> Dict[str, FusedHit]:
    """One FusedHit per id with its per-pipeline ranks and semantic score."""
    hits: Dict[str, FusedHit] = {}
    for name in names:
        for rank, hit in enumerate(rankings[name], start=1):
            fused = hits.get(hit.id)
            if fused is None:
                fused = hits[hit.id] = FusedHit(id=hit.id, fused_score=0.0, payload=hit.payload)
            fused.pipelines.setdefault(name, rank)
            if name == SEMANTIC and fused.semantic_score is None:
                fused.semantic_score = hit.score
    return hits


def weighted_rrf(
    rankings: Mapping[str, Sequence[StoreHit]],
    weights: Mapping[str, float],
    k: int = DEFAULT_RRF_K,
    limit: Optional[int] = None,
) -> List[FusedHit]:
    """
    Weighted Reciprocal Rank Fusion.

    A document at 1-based rank ``r`` in pipeline ``p`` contributes
    ``weights[p] / (k + r)``. Pipelines with zero weight are ignored.
    """
    names = [n for n in _ordered(rankings, PIPELINE_ORDER) if weights.get(n, 0.0) > 0]
    hits = _collect(rankings, names)
    for name in names:
        weight = weights[name]
        for rank, hit in enumerate(rankings[name], start=1):
            if hits[hit.id].pipelines.get(name) == rank:
                hits[hit.id].fused_score += weight / (k + rank)
    fused = sorted(hits.values(), key=fusion_sort_key)
    return fused[:limit] if limit is not None else fused


def merge_first_seen(
    rankings: Mapping[str, Sequence[StoreHit]],
    order: Sequence[str] = PIPELINE_ORDER,
    k: int = DEFAULT_RRF_K,
    limit: Optional[int] = None,
) -> List[FusedHit]:
    """
    Union in pipeline precedence order, deduplicated by id.

    Documents keep the position of their first appearance; ``fused_score``
    is ``1 / (k + position)`` so it decreases along the merged list.
    """
    names = _ordered(rankings, order)
    hits = _collect(rankings, names)
    merged: List[FusedHit] = []
    seen = set()
    for name in names:
        for hit in rankings[name]:
            if hit.id in seen:
                continue
            seen.add(hit.id)
            fused = hits[hit.id]
            fused.fused_score = 1.0 / (k + len(merged) + 1)
            merged.append(fused)
    return merged[:limit] if limit is not None else merged


def merge_minmax(
    rankings: Mapping[str, Sequence[StoreHit]],
    weights: Mapping[str, float],
    limit: Optional[int] = None,
) -> List[FusedHit]:
    """
    Score fusion: per-pipeline min-max normalised scores summed by weight.

    A pipeline whose scores are all equal normalises every hit to 1.0.
    """
    names = [n for n in _ordered(rankings, PIPELINE_ORDER) if weights.get(n, 0.0) > 0]
    hits = _collect(rankings, names)
    for name in names:
        ranking = rankings[name]
        if not ranking:
            continue
        scores = [hit.score for hit in ranking]
        low, high = min(scores), max(scores)
        span = high - low
        for hit in ranking:
            normalised = (hit.score - low) / span if span > 0 else 1.0
            if hits[hit.id].pipelines.get(name) is not None:
                hits[hit.id].fused_score += weights[name] * normalised
    fused = sorted(hits.values(), key=fusion_sort_key)
    return fused[:limit] if limit is not None else fused


def merge_rankings(lists: Iterable[Sequence[StoreHit]], limit: int) -> List[StoreHit]:
    """Combine one pipeline's rankings from several collections by raw score."""
    combined: Dict[str, StoreHit] = {}
    for ranking in lists:
        for hit in ranking:
            current = combined.get(hit.id)
            if current is None or hit.score > current.score:
                combined[hit.id] = hit
    ordered = sorted(combined.values(), key=lambda hit: (-hit.score, hit.id))
    return ordered[:limit]
