"""Pipeline selection and request construction per search mode."""

from typing import Dict, List, Optional, Sequence, Tuple

from memory_engineering.shared.config import HybridSearchConfig
from memory_engineering.store.base import (
    FREQUENCY,
    LEXICAL,
    PIPELINE_ORDER,
    SEMANTIC,
    TEMPORAL,
    PipelineRequest,
)

SECONDS_PER_DAY = 86400.0

MODE_FUSED = "fused"
MODE_VECTOR = "vector"
MODE_TEXT = "text"
MODE_TEMPORAL = "temporal"

MODE_PIPELINES: Dict[str, Tuple[str, ...]] = {
    MODE_FUSED: PIPELINE_ORDER,
    MODE_VECTOR: (SEMANTIC,),
    MODE_TEXT: (LEXICAL,),
    MODE_TEMPORAL: (TEMPORAL,),
}
MODES = tuple(MODE_PIPELINES)


def pipeline_limit(name: str, limit: int) -> int:
    return limit if name == FREQUENCY else 2 * limit


def weights_for(pipelines: Sequence[str], hybrid: HybridSearchConfig) -> Dict[str, float]:
    if len(pipelines) == 1:
        return {pipelines[0]: 1.0}
    if set(pipelines) == {SEMANTIC, LEXICAL}:
        weights = hybrid.two_pipeline_weights.as_dict()
    else:
        weights = hybrid.weights.as_dict()
    return {name: weights.get(name, 0.0) for name in pipelines}


def build_requests(
    pipelines: Sequence[str],
    limit: int,
    hybrid: HybridSearchConfig,
    *,
    now: float,
    vector: Optional[List[float]] = None,
    terms: Sequence[str] = (),
) -> List[PipelineRequest]:
    requests: List[PipelineRequest] = []
    for name in pipelines:
        size = pipeline_limit(name, limit)
        if name == SEMANTIC:
            requests.append(
                PipelineRequest(
                    name=name,
                    limit=size,
                    vector=vector,
                    candidates=limit * hybrid.candidate_multiplier,
                )
            )
        elif name == LEXICAL:
            requests.append(
                PipelineRequest(
                    name=name,
                    limit=size,
                    terms=tuple(terms),
                    scan_limit=max(hybrid.lexical_scan_limit, size),
                )
            )
        elif name == TEMPORAL:
            requests.append(
                PipelineRequest(
                    name=name,
                    limit=size,
                    since=now - hybrid.temporal_window_days * SECONDS_PER_DAY,
                )
            )
        elif name == FREQUENCY:
            requests.append(
                PipelineRequest(name=name, limit=size, min_access=hybrid.frequency_min_access)
            )
        else:
            raise ValueError(f"Unknown pipeline: {name}")
    return requests
