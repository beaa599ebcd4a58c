"""
No-op reranker implementation.

Used when:
- Reranking is disabled (rerank.enabled=false or provider "none")
- No rerank credential is configured
- Testing scenarios
"""

import logging
from typing import Dict, List

from memory_engineering.shared.observability.metrics import rerank_request_total

logger = logging.getLogger(__name__)


class NoopReranker:
    """
    No-op reranker that preserves original candidate ordering.
    """

    def __init__(self, reason: str = "disabled"):
        self._model_id = "noop"
        self._provider_name = "noop"
        self.reason = reason

        logger.info("NoopReranker initialized (passthrough mode)", extra={"reason": reason})

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def provider_name(self) -> str:
        return self._provider_name

    async def rerank(
        self, query: str, candidates: List[Dict], top_k: int = 10
    ) -> List[Dict]:
        rerank_request_total.labels(model_id=self._model_id, status="skipped").inc()
        return passthrough(candidates, top_k)

    async def aclose(self) -> None:
        return None


def passthrough(candidates: List[Dict], top_k: int) -> List[Dict]:
    """Original order with rerank bookkeeping fields attached."""
    return [
        {**candidate, "rerank_score": None, "original_rank": idx + 1}
        for idx, candidate in enumerate(candidates[:top_k])
    ]
