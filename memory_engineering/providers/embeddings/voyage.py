from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from memory_engineering.providers.embeddings.contracts import EmbeddingBatchResult
from memory_engineering.providers.settings import EmbeddingSettings
from memory_engineering.shared.errors import (
    DimensionMismatch,
    ProviderAuthError,
    ProviderRequestRejected,
    ProviderUnavailable,
)
from memory_engineering.shared.observability.metrics import (
    embedding_error_total,
    embedding_flagged_items_total,
    embedding_latency_ms,
    embedding_request_total,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class VoyageEmbeddingProvider:
    """EmbeddingProvider for Voyage AI standard embeddings."""

    DEFAULT_BASE_URL = "https://api.voyageai.com/v1"
    EMBEDDINGS_ENDPOINT = "/embeddings"

    def __init__(
        self,
        settings: EmbeddingSettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        if settings is None:
            raise ValueError(
                "Embedding settings are required for VoyageEmbeddingProvider."
            )

        self._settings = settings
        self._dims = settings.dims
        self._model_id = settings.model_id
        self._provider_name = settings.provider or "voyage-ai"

        self._api_key = api_key or os.getenv("VOYAGE_API_KEY")
        if not self._api_key:
            raise ProviderAuthError(
                "VOYAGE_API_KEY is required for voyage-ai embeddings.",
                remediation="Export VOYAGE_API_KEY (or add it to .env) and restart.",
            )

        self._base_url = (
            base_url or os.getenv("VOYAGE_API_BASE_URL") or self.DEFAULT_BASE_URL
        ).rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {self._api_key}",
            "content-type": "application/json",
        }
        self._timeout = timeout or settings.timeout_seconds
        self._max_retries = max_retries or settings.max_retries
        self._min_backoff = float(os.getenv("VOYAGE_RETRY_BACKOFF_MIN_SEC", "0.5"))
        self._max_backoff = float(os.getenv("VOYAGE_RETRY_BACKOFF_MAX_SEC", "8.0"))
        self._max_inputs = int(os.getenv("VOYAGE_MAX_INPUTS", "1000"))

        # Created on first request and reused for the provider's lifetime
        self._client = client

    @property
    def dims(self) -> int:
        return self._dims

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def provider_name(self) -> str:
        return self._provider_name

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=self._headers,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def embed_documents(self, texts: Sequence[str]) -> EmbeddingBatchResult:
        if not texts:
            raise ValueError("Cannot embed an empty list of documents.")
        result = await self._embed(
            list(texts),
            input_type=self._settings.document_input_type,
            operation="documents",
        )
        if self._settings.strict_count:
            result.raise_for_mismatch()
        return result

    async def embed_query(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Query text must be non-empty.")
        result = await self._embed(
            [text], input_type=self._settings.query_input_type, operation="query"
        )
        vector = result.vectors[0]
        if vector is None:
            raise DimensionMismatch(
                f"Embedding provider returned no usable query vector "
                f"({result.flagged.get(0, 'missing')}).",
                expected=1,
                received=0,
                flagged=[0],
            )
        return vector

    async def _embed(
        self, texts: List[str], *, input_type: Optional[str], operation: str
    ) -> EmbeddingBatchResult:
        batch_size = max(1, min(self._settings.batch_size, self._max_inputs))
        vectors: List[Optional[List[float]]] = []
        flagged: Dict[int, str] = {}
        start = time.time()
        embedding_request_total.labels(model_id=self._model_id, operation=operation).inc()
        for offset in range(0, len(texts), batch_size):
            batch = texts[offset : offset + batch_size]
            batch_vectors, batch_flagged = await self._embed_batch(
                batch, input_type=input_type, batch_idx=str(offset // batch_size)
            )
            vectors.extend(batch_vectors)
            for local_idx, reason in batch_flagged.items():
                flagged[offset + local_idx] = reason
        embedding_latency_ms.labels(model_id=self._model_id, operation=operation).observe(
            (time.time() - start) * 1000
        )
        for reason in flagged.values():
            embedding_flagged_items_total.labels(
                model_id=self._model_id, reason=reason.split(":")[0]
            ).inc()
        if flagged:
            logger.warning(
                "Voyage embeddings response did not cover every input",
                extra={
                    "inputs": len(texts),
                    "flagged": len(flagged),
                    "operation": operation,
                },
            )
        return EmbeddingBatchResult(vectors=vectors, dims=self._dims, flagged=flagged)

    async def _embed_batch(
        self, batch: List[str], *, input_type: Optional[str], batch_idx: str
    ) -> tuple[List[Optional[List[float]]], Dict[int, str]]:
        payload: Dict[str, Any] = {
            "input": batch,
            "model": self._model_id,
            "input_type": input_type,
            "truncation": True,
        }
        payload = {key: value for key, value in payload.items() if value is not None}
        try:
            response = await self._post_json(
                self.EMBEDDINGS_ENDPOINT, payload, batch_idx=batch_idx
            )
        except ProviderRequestRejected as exc:
            if exc.splittable and len(batch) > 1:
                mid = len(batch) // 2
                head_vectors, head_flagged = await self._embed_batch(
                    batch[:mid], input_type=input_type, batch_idx=f"{batch_idx}a"
                )
                tail_vectors, tail_flagged = await self._embed_batch(
                    batch[mid:], input_type=input_type, batch_idx=f"{batch_idx}b"
                )
                merged = dict(head_flagged)
                merged.update({mid + idx: reason for idx, reason in tail_flagged.items()})
                return head_vectors + tail_vectors, merged
            raise
        return self._align_embeddings(response, expected=len(batch))

    def _align_embeddings(
        self, payload: Dict[str, Any], *, expected: int
    ) -> tuple[List[Optional[List[float]]], Dict[int, str]]:
        """Place returned vectors into input slots and flag every slot left unusable."""
        data = payload.get("data")
        if not isinstance(data, list):
            raise ProviderUnavailable(
                "Voyage embeddings response missing 'data' list.",
                remediation="Retry the request; if it persists check Voyage status.",
            )

        slots: List[Optional[List[float]]] = [None] * expected
        flagged: Dict[int, str] = {}
        indexed = all(isinstance(item.get("index"), int) for item in data)

        if not indexed and len(data) != expected:
            # Alignment is unknowable without indices
            for idx in range(expected):
                flagged[idx] = f"unaligned: {len(data)} vectors for {expected} inputs"
            return slots, flagged

        seen: Dict[int, int] = {}
        for position, item in enumerate(data):
            idx = item["index"] if indexed else position
            if idx < 0 or idx >= expected:
                logger.warning(
                    "Voyage returned an embedding for an unknown input",
                    extra={"index": idx, "expected": expected},
                )
                continue
            seen[idx] = seen.get(idx, 0) + 1
            embedding = item.get("embedding")
            if not isinstance(embedding, list):
                flagged[idx] = "missing: embedding data absent"
                continue
            if len(embedding) != self._dims:
                flagged[idx] = f"dims: expected {self._dims}, got {len(embedding)}"
                continue
            slots[idx] = [float(value) for value in embedding]

        for idx in range(expected):
            count = seen.get(idx, 0)
            if count == 0:
                flagged[idx] = "missing: no vector returned"
                slots[idx] = None
            elif count > 1:
                flagged[idx] = f"duplicate: {count} vectors returned"
                slots[idx] = None
            elif idx in flagged:
                slots[idx] = None
        return slots, flagged

    async def _post_json(
        self, endpoint: str, payload: Dict[str, Any], *, batch_idx: str
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{endpoint}"
        client = self._get_client()
        last_error: Optional[Exception] = None
        for attempt in range(self._max_retries):
            try:
                response = await client.post(url, json=payload, headers=self._headers)
                if response.status_code in RETRYABLE_STATUS:
                    raise httpx.HTTPStatusError(
                        f"Voyage API retryable error {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as exc:
                last_error = exc
                status = exc.response.status_code
                detail = self._extract_error_detail(exc.response)
                if status in {401, 403}:
                    embedding_error_total.labels(
                        model_id=self._model_id, error_type="auth"
                    ).inc()
                    raise ProviderAuthError(
                        f"Voyage API authentication failed ({status}): {detail}"
                    ) from exc
                if status == 400:
                    embedding_error_total.labels(
                        model_id=self._model_id, error_type="rejected"
                    ).inc()
                    raise self._rejected(detail) from exc
                if status in RETRYABLE_STATUS:
                    if attempt < self._max_retries - 1:
                        await self._sleep_backoff(attempt, batch_idx)
                    continue
                embedding_error_total.labels(
                    model_id=self._model_id, error_type=str(status)
                ).inc()
                raise ProviderUnavailable(
                    f"Voyage API error ({status}): {detail}"
                ) from exc
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = exc
                if attempt < self._max_retries - 1:
                    await self._sleep_backoff(attempt, batch_idx)
        embedding_error_total.labels(model_id=self._model_id, error_type="exhausted").inc()
        raise ProviderUnavailable(
            f"Voyage API request failed after {self._max_retries} attempts: {last_error}"
        )

    def _rejected(self, detail: str) -> ProviderRequestRejected:
        lowered = detail.lower()
        if "model" in lowered:
            error = ProviderRequestRejected(
                f"Voyage API rejected model '{self._model_id}': {detail}",
                remediation=(
                    "Set embedding.model_id to a model your Voyage account can use "
                    "(for example voyage-3) and keep embedding.dims in sync."
                ),
            )
            error.splittable = False
            return error
        error = ProviderRequestRejected(f"Voyage API rejected request (400): {detail}")
        error.splittable = True
        return error

    async def _sleep_backoff(self, attempt: int, batch_idx: str) -> None:
        base = min(self._max_backoff, self._min_backoff * (2**attempt))
        jitter = random.uniform(0, base / 4.0)
        delay = base + jitter
        logger.warning(
            "Voyage API retrying after backoff",
            extra={
                "attempt": attempt + 1,
                "batch_idx": batch_idx,
                "delay_sec": f"{delay:.2f}",
            },
        )
        await asyncio.sleep(delay)

    def _extract_error_detail(self, response: Optional[httpx.Response]) -> str:
        if response is None:
            return "no response body"
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(payload, dict):
            return str(payload.get("detail") or payload)
        return str(payload)
