"""Hybrid retrieval: pipeline planning, fusion, code-search variants, telemetry."""

from memory_engineering.query.fusion import merge_first_seen, merge_minmax, weighted_rrf
from memory_engineering.query.planner import (
    HybridQueryPlanner,
    SearchFilters,
    SearchRequest,
)
from memory_engineering.query.telemetry import QueryTelemetry

__all__ = [
    "HybridQueryPlanner",
    "QueryTelemetry",
    "SearchFilters",
    "SearchRequest",
    "merge_first_seen",
    "merge_minmax",
    "weighted_rrf",
]
