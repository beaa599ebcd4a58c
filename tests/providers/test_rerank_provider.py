import json

import httpx
import pytest

from memory_engineering.providers.rerank.noop import NoopReranker
from memory_engineering.providers.rerank.voyage import VoyageRerankProvider, reorder_by_scores
from memory_engineering.providers.settings import RerankSettings
from memory_engineering.shared.resilience import CircuitBreaker

WINDOW = [
    {"id": "a", "text": "alpha", "index": 0},
    {"id": "b", "text": "bravo", "index": 1},
    {"id": "c", "text": "charlie", "index": 2},
]


def _reranker(handler, breaker=None, api_key="test-key"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return VoyageRerankProvider(
        RerankSettings(provider="voyage-ai", model_id="rerank-2.5"),
        client=client,
        api_key=api_key,
        circuit_breaker=breaker,
    )


@pytest.mark.asyncio
async def test_rerank_reorders_by_relevance():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["documents"] == ["alpha", "bravo", "charlie"]
        assert body["top_k"] == 3
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 2, "relevance_score": 0.9},
                    {"index": 0, "relevance_score": 0.5},
                    {"index": 1, "relevance_score": 0.1},
                ]
            },
        )

    ranked = await _reranker(handler).rerank("query", WINDOW, top_k=3)
    assert [item["id"] for item in ranked] == ["c", "a", "b"]
    assert ranked[0]["original_rank"] == 3
    assert ranked[0]["index"] == 2


@pytest.mark.asyncio
async def test_rerank_failure_keeps_original_order():
    breaker = CircuitBreaker(name="test-rerank", failure_threshold=1)
    ranked = await _reranker(lambda request: httpx.Response(503), breaker=breaker).rerank(
        "query", WINDOW, top_k=3
    )
    assert [item["id"] for item in ranked] == ["a", "b", "c"]
    assert all(item["rerank_score"] is None for item in ranked)
    assert not breaker.allow_request()


@pytest.mark.asyncio
async def test_open_circuit_skips_the_call():
    calls = []
    breaker = CircuitBreaker(name="test-rerank-open", failure_threshold=1, recovery_timeout=60)
    breaker.record_failure()

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"data": []})

    ranked = await _reranker(handler, breaker=breaker).rerank("query", WINDOW, top_k=3)
    assert calls == []
    assert [item["id"] for item in ranked] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_missing_key_passes_through(monkeypatch):
    monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
    ranked = await _reranker(lambda request: httpx.Response(500), api_key="").rerank(
        "query", WINDOW, top_k=2
    )
    assert [item["id"] for item in ranked] == ["a", "b"]


def test_partial_scores_preserve_membership():
    ranked = reorder_by_scores(WINDOW, {1: 0.8})
    assert [item["id"] for item in ranked] == ["b", "a", "c"]
    assert ranked[1]["rerank_score"] is None


@pytest.mark.asyncio
async def test_noop_reranker_is_identity():
    ranked = await NoopReranker().rerank("query", WINDOW, top_k=3)
    assert [item["id"] for item in ranked] == ["a", "b", "c"]
    assert [item["original_rank"] for item in ranked] == [1, 2, 3]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"data": [{"index": 0, "relevance_score": None}, {"index": 1, "relevance_score": 0.2}]},
        {"data": ["not-an-object", {"index": 1, "relevance_score": 0.2}]},
        {"data": [{"index": "0", "relevance_score": 0.4}]},
        ["unexpected", "shape"],
    ],
)
async def test_malformed_response_keeps_original_order(body):
    breaker = CircuitBreaker(name="test-rerank-malformed", failure_threshold=5)
    ranked = await _reranker(lambda request: httpx.Response(200, json=body), breaker=breaker).rerank(
        "query", WINDOW, top_k=2
    )
    assert [item["id"] for item in ranked] == ["a", "b"]
    assert all(item["rerank_score"] is None for item in ranked)
