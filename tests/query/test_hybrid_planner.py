import pytest

from memory_engineering.query.planner import HybridQueryPlanner, SearchFilters, SearchRequest
from memory_engineering.query.telemetry import QueryTelemetry
from memory_engineering.shared.errors import IndexNotReady
from memory_engineering.shared.records import CodeChunk, MemoryDocument, StoreRecord
from memory_engineering.store.base import ScopeFilter

PROJECT = "proj-search"
DAY = 86400.0


async def _add_memory(store, embedder, config, clock, name, content, **fields):
    fields.setdefault("created_at", clock.now)
    fields.setdefault("updated_at", clock.now)
    fields.setdefault("freshness", clock.now)
    doc = MemoryDocument(project_id=PROJECT, name=name, content=content, **fields)
    vector = (await embedder.embed_documents([f"{name}\n{content}"])).vectors[0]
    await store.upsert(
        config.store.memory_collection,
        PROJECT,
        [StoreRecord(id=doc.id, payload=doc.to_payload(), vector=vector)],
    )
    return doc


async def _add_chunk(store, embedder, config, clock, **fields):
    chunk = CodeChunk(
        project_id=PROJECT,
        start_line=1,
        last_modified=clock.now,
        indexed_at=clock.now,
        **fields,
    )
    vector = (await embedder.embed_documents([chunk.embedding_text()])).vectors[0]
    await store.upsert(
        config.store.code_collection,
        PROJECT,
        [StoreRecord(id=chunk.id, payload=chunk.to_payload(), vector=vector)],
    )
    return chunk


@pytest.fixture
async def corpus(store, embedder, config, clock):
    docs = {
        "jwt": await _add_memory(
            store, embedder, config, clock, "techContext", "Tokens are issued as JWT authentication"
        ),
        "db": await _add_memory(
            store, embedder, config, clock, "systemPatterns", "Database access goes through a repository"
        ),
        "cache": await _add_memory(
            store, embedder, config, clock, "progress", "Cache eviction was tuned"
        ),
        "scratch": await _add_memory(
            store,
            embedder,
            config,
            clock,
            "scratch",
            "Investigating login retries",
            memory_class="working",
            expires_at=clock.now + 30 * DAY,
        ),
        "expired": await _add_memory(
            store,
            embedder,
            config,
            clock,
            "old-scratch",
            "Old login notes",
            memory_class="working",
            expires_at=clock.now - DAY,
        ),
        "login": await _add_chunk(
            store,
            embedder,
            config,
            clock,
            file_path="src/auth.py",
            end_line=6,
            kind="method",
            name="AuthService.login",
            signature="def login(self, user, password):",
            content="token = jwt.encode({'sub': user}, 'secret')",
            pattern_tags=["authentication"],
            dependencies=["jwt"],
        ),
        "redis": await _add_chunk(
            store,
            embedder,
            config,
            clock,
            file_path="src/cache.ts",
            end_line=5,
            kind="function",
            name="getCached",
            signature="export async function getCached(key: string)",
            content="const value = await client.get(key);",
            pattern_tags=["cache", "async"],
            dependencies=["ioredis"],
        ),
    }
    return docs


@pytest.fixture
def telemetry(store, config, clock):
    return QueryTelemetry(store, config.store.memory_collection, config.telemetry, clock=clock)


@pytest.fixture
async def make_planner(store, embedder, config, clock):
    planners = []

    def build(**kwargs):
        planner = HybridQueryPlanner(store, embedder, config=config, clock=clock, **kwargs)
        planners.append(planner)
        return planner

    yield build
    for planner in planners:
        await planner.drain()


@pytest.fixture
def planner(make_planner, telemetry):
    return make_planner(telemetry=telemetry)


async def _telemetry_paths(store, config):
    records = await store.find(
        config.store.memory_collection,
        PROJECT,
        ScopeFilter(memory_classes=("telemetry",)),
        limit=50,
    )
    return [r.payload["metadata"]["path"] for r in records]


@pytest.mark.asyncio
async def test_fused_search_finds_semantic_matches_without_literal_overlap(
    planner, corpus, store, config
):
    results = await planner.search(SearchRequest(PROJECT, "authentication flow", limit=5))
    await planner.drain()

    top_ids = [r.id for r in results[:2]]
    assert set(top_ids) == {corpus["jwt"].id, corpus["login"].id}
    assert {r.kind for r in results[:2]} == {"memory", "code"}
    assert results[0].fused_score >= results[1].fused_score
    assert await _telemetry_paths(store, config) == ["native"]


@pytest.mark.asyncio
async def test_fallback_survives_a_failing_pipeline(planner, corpus, store, config):
    store.multi_search_error = IndexNotReady("payload index still building")
    store.pipeline_errors["lexical"] = RuntimeError("text index offline")

    results = await planner.search(SearchRequest(PROJECT, "JWT login", limit=3))
    await planner.drain()

    assert results
    assert len({r.id for r in results}) == len(results)
    assert results[0].id in {corpus["jwt"].id, corpus["login"].id, corpus["scratch"].id}
    assert all("lexical" not in r.pipelines for r in results)
    assert await _telemetry_paths(store, config) == ["fallback"]


@pytest.mark.asyncio
async def test_minmax_fallback_merge(planner, corpus, store, config):
    config.search.hybrid.fallback_merge = "minmax"
    store.multi_search_error = IndexNotReady("building")

    results = await planner.search(SearchRequest(PROJECT, "database repository", limit=3))
    assert results[0].id == corpus["db"].id
    assert results[0].fused_score > results[-1].fused_score


@pytest.mark.asyncio
async def test_native_fusion_disabled_uses_fallback(make_planner, config, corpus):
    config.search.hybrid.native_fusion = False
    planner = make_planner()

    results = await planner.search(SearchRequest(PROJECT, "cache eviction", limit=2))
    assert results[0].id in {corpus["cache"].id, corpus["redis"].id}


@pytest.mark.asyncio
async def test_single_pipeline_mode_runs_directly(planner, corpus, store, config):
    results = await planner.search(SearchRequest(PROJECT, "database", mode="vector", limit=1))
    await planner.drain()

    assert [r.id for r in results] == [corpus["db"].id]
    assert results[0].pipelines == {"semantic": 1}
    assert await _telemetry_paths(store, config) == ["direct"]


@pytest.mark.asyncio
async def test_temporal_mode_needs_no_query_or_embedding(planner, corpus, embedder):
    results = await planner.search(SearchRequest(PROJECT, "", mode="temporal", limit=50))
    assert embedder.query_calls == []
    assert corpus["expired"].id not in {r.id for r in results}
    assert len(results) == 6


@pytest.mark.asyncio
async def test_memory_class_filter_excludes_expired(planner, corpus):
    results = await planner.search(
        SearchRequest(PROJECT, "login", filters=SearchFilters(memory_class="working"))
    )
    assert [r.id for r in results] == [corpus["scratch"].id]


@pytest.mark.asyncio
async def test_code_search_variants(planner, corpus):
    implements = await planner.search(
        SearchRequest(PROJECT, "login", filters=SearchFilters(code_search="implements"))
    )
    assert [r.id for r in implements] == [corpus["login"].id]

    uses = await planner.search(
        SearchRequest(PROJECT, "ioredis", filters=SearchFilters(code_search="uses"))
    )
    assert [r.id for r in uses] == [corpus["redis"].id]

    pattern = await planner.search(
        SearchRequest(PROJECT, "auth", filters=SearchFilters(code_search="pattern"))
    )
    assert [r.id for r in pattern] == [corpus["login"].id]


@pytest.mark.asyncio
async def test_file_path_glob_filter(planner, corpus):
    results = await planner.search(
        SearchRequest(PROJECT, "login cache", filters=SearchFilters(scope="code", file_path="src/*.ts"))
    )
    assert [r.id for r in results] == [corpus["redis"].id]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"query": "x", "mode": "graph"},
        {"query": "   "},
        {"query": "x", "filters": SearchFilters(scope="everything")},
        {"query": "x", "filters": SearchFilters(code_search="callers")},
    ],
)
async def test_invalid_requests_are_rejected(planner, request_kwargs):
    with pytest.raises(ValueError):
        await planner.search(SearchRequest(PROJECT, **request_kwargs))


@pytest.mark.asyncio
async def test_limit_is_clamped(planner, corpus):
    request = SearchRequest(PROJECT, "login", limit=10_000)
    await planner.search(request)
    assert request.limit == 100


@pytest.mark.asyncio
async def test_access_counts_update_after_the_response(planner, corpus, store, config):
    results = await planner.search(SearchRequest(PROJECT, "JWT authentication", limit=2))
    await planner.drain()
    assert planner.pending_side_effects == 0

    memory_ids = [r.id for r in results if r.kind == "memory"]
    records = await store.get(config.store.memory_collection, PROJECT, memory_ids)
    assert records
    assert all(r.payload["access_count"] == 1 for r in records)


@pytest.mark.asyncio
async def test_side_effect_failure_does_not_fail_search(planner, corpus, store, monkeypatch):
    async def broken_touch(*args, **kwargs):
        raise RuntimeError("store went away")

    monkeypatch.setattr(store, "touch", broken_touch)
    results = await planner.search(SearchRequest(PROJECT, "database", limit=2))
    await planner.drain()
    assert results


class ReversingReranker:
    model_id = "reverse"
    provider_name = "test"

    def __init__(self, drop_last=False):
        self.drop_last = drop_last
        self.windows = []

    async def rerank(self, query, candidates, top_k=10):
        self.windows.append(candidates)
        window = list(reversed(candidates[:top_k]))
        if self.drop_last:
            window = window[:-1]
        return [
            {**item, "rerank_score": float(idx), "original_rank": item["index"] + 1}
            for idx, item in enumerate(window)
        ]

    async def aclose(self):
        return None


@pytest.mark.asyncio
async def test_reranker_reorders_only_the_window(make_planner, config, corpus):
    config.rerank.top_k = 2
    reranker = ReversingReranker()
    planner = make_planner(reranker=reranker)

    baseline = await make_planner().search(
        SearchRequest(PROJECT, "authentication flow", limit=4)
    )
    reranked = await planner.search(SearchRequest(PROJECT, "authentication flow", limit=4))

    assert [r.id for r in reranked] == [
        baseline[1].id,
        baseline[0].id,
        baseline[2].id,
        baseline[3].id,
    ]
    assert reranked[0].original_rank == 2
    assert len(reranker.windows[0]) == 2
    assert reranker.windows[0][0]["id"] == baseline[0].id


@pytest.mark.asyncio
async def test_reranker_membership_change_keeps_fused_order(make_planner, corpus):
    planner = make_planner(reranker=ReversingReranker(drop_last=True))
    baseline = await make_planner().search(
        SearchRequest(PROJECT, "authentication flow", limit=4)
    )
    results = await planner.search(SearchRequest(PROJECT, "authentication flow", limit=4))
    assert [r.id for r in results] == [r.id for r in baseline]


class ExplodingReranker(ReversingReranker):
    async def rerank(self, query, candidates, top_k=10):
        raise TypeError("float() argument must be a string or a real number")


@pytest.mark.asyncio
async def test_reranker_exception_keeps_fused_order(make_planner, corpus):
    planner = make_planner(reranker=ExplodingReranker())
    baseline = await make_planner().search(
        SearchRequest(PROJECT, "authentication flow", limit=4)
    )
    results = await planner.search(SearchRequest(PROJECT, "authentication flow", limit=4))
    assert [r.id for r in results] == [r.id for r in baseline]
    assert all(r.rerank_score is None for r in results)
