"""
Voyage AI rerank provider.

Best-effort reordering of the final result window. Every failure mode
(missing key, auth error, rate limit, timeout, malformed response, open
circuit) returns the candidates in their original order.
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional

import httpx

from memory_engineering.providers.rerank.noop import passthrough
from memory_engineering.providers.settings import RerankSettings
from memory_engineering.shared.errors import (
    MemoryEngineError,
    ProviderAuthError,
    ProviderUnavailable,
)
from memory_engineering.shared.observability.metrics import (
    rerank_latency_ms,
    rerank_request_total,
)
from memory_engineering.shared.resilience import CircuitBreaker

logger = logging.getLogger(__name__)


class VoyageRerankProvider:
    """Cross-encoder reranking via the Voyage ``/rerank`` endpoint."""

    DEFAULT_BASE_URL = "https://api.voyageai.com/v1"
    RERANK_ENDPOINT = "/rerank"

    def __init__(
        self,
        settings: RerankSettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self._settings = settings
        self._model_id = settings.model_id
        self._provider_name = settings.provider or "voyage-ai"
        self._api_key = api_key if api_key is not None else os.getenv("VOYAGE_API_KEY")
        self._base_url = (
            base_url or os.getenv("VOYAGE_API_BASE_URL") or self.DEFAULT_BASE_URL
        ).rstrip("/")
        self._client = client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(name="voyage-rerank")
        if not self._api_key:
            logger.warning(
                "VOYAGE_API_KEY not set; reranking will pass candidates through",
                extra={"model_id": self._model_id},
            )

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def provider_name(self) -> str:
        return self._provider_name

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.timeout_seconds)
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def rerank(
        self, query: str, candidates: List[Dict], top_k: int = 10
    ) -> List[Dict]:
        window = candidates[:top_k]
        if len(window) < 2 or not self._api_key or not query:
            rerank_request_total.labels(model_id=self._model_id, status="skipped").inc()
            return passthrough(window, top_k)
        if not self._circuit_breaker.allow_request():
            rerank_request_total.labels(model_id=self._model_id, status="skipped").inc()
            logger.info("Rerank circuit open; keeping fused order")
            return passthrough(window, top_k)

        start_time = time.time()
        try:
            scores = await self._call_api(query, window)
        except (MemoryEngineError, httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            self._circuit_breaker.record_failure()
            rerank_request_total.labels(model_id=self._model_id, status="failed").inc()
            logger.warning(
                "Rerank failed; keeping fused order",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return passthrough(window, top_k)

        self._circuit_breaker.record_success()
        rerank_latency_ms.labels(model_id=self._model_id).observe(
            (time.time() - start_time) * 1000
        )
        rerank_request_total.labels(model_id=self._model_id, status="applied").inc()
        return reorder_by_scores(window, scores)

    async def _call_api(self, query: str, window: List[Dict]) -> Dict[int, float]:
        limit = self._settings.max_document_chars
        payload: Dict[str, Any] = {
            "query": query,
            "documents": [str(candidate.get("text") or "")[:limit] for candidate in window],
            "model": self._model_id,
            "top_k": len(window),
            "truncation": True,
        }
        response = await self._get_client().post(
            f"{self._base_url}{self.RERANK_ENDPOINT}",
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if response.status_code in {401, 403}:
            raise ProviderAuthError(
                f"Voyage rerank authentication failed ({response.status_code})"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(
                f"Voyage rerank unavailable ({response.status_code})"
            )
        response.raise_for_status()
        body = response.json()
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise ValueError("Voyage rerank response missing 'data' list")
        scores: Dict[int, float] = {}
        for item in data:
            if not isinstance(item, dict):
                raise ValueError(f"Voyage rerank item is not an object: {item!r}")
            idx, score = item.get("index"), item.get("relevance_score")
            if not isinstance(idx, int) or not isinstance(score, (int, float)):
                raise ValueError(f"Voyage rerank item malformed: {item!r}")
            if 0 <= idx < len(window):
                scores[idx] = float(score)
        return scores


def reorder_by_scores(window: List[Dict], scores: Dict[int, float]) -> List[Dict]:
    """
    Sort scored candidates by score; unscored ones follow in original order.

    Membership of ``window`` is preserved exactly.
    """
    scored = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    ordered = [idx for idx, _ in scored]
    ordered.extend(idx for idx in range(len(window)) if idx not in scores)
    return [
        {**window[idx], "rerank_score": scores.get(idx), "original_rank": idx + 1}
        for idx in ordered
    ]
