import asyncio

import pytest

from memory_engineering.providers.embeddings.voyage import VoyageEmbeddingProvider
from memory_engineering.providers.rerank.noop import NoopReranker
from memory_engineering.query.planner import SearchFilters
from memory_engineering.services.engine import MemoryEngine
from memory_engineering.shared.config import Settings
from memory_engineering.shared.errors import (
    ConfigurationMissing,
    DimensionMismatch,
    LoopDetected,
    NotFound,
)
from memory_engineering.shared.project import generate_project_id
from memory_engineering.shared.records import CORE_MEMORY_NAMES
from memory_engineering.store.memory_store import InMemoryDocumentStore


@pytest.fixture
async def engine(store, embedder, config, clock):
    engine = MemoryEngine(store, config=config, embedder=embedder, clock=clock)
    yield engine
    await engine.close()


@pytest.fixture
async def project(engine, sample_project):
    await engine.initialize_project(sample_project, "Sample")
    return sample_project


@pytest.mark.asyncio
async def test_initialize_project_writes_record_and_core_memories(engine, sample_project):
    first = await engine.initialize_project(sample_project, "Sample")
    assert first["project_id"] == generate_project_id(sample_project)
    assert first["display_name"] == "Sample"
    assert first["created"] == list(CORE_MEMORY_NAMES)
    assert (sample_project / ".memory-engineering" / "config.json").exists()

    again = await engine.initialize_project(sample_project)
    assert again["project_id"] == first["project_id"]
    assert again["created"] == []

    listed = await engine.list_memories(sample_project, "core")
    assert sorted(item["name"] for item in listed) == sorted(CORE_MEMORY_NAMES)


@pytest.mark.asyncio
async def test_operations_require_an_initialized_project(engine, tmp_path):
    fresh = tmp_path / "fresh"
    fresh.mkdir()
    with pytest.raises(ConfigurationMissing):
        await engine.search(fresh, "anything")
    with pytest.raises(ConfigurationMissing):
        await engine.get_memory(fresh, "projectbrief")


@pytest.mark.asyncio
async def test_index_project_updates_the_codebase_map(engine, project):
    report = await engine.index_project(project)
    assert report.files_processed == 2
    assert report.chunks_created == 5

    codebase_map = await engine.get_memory(project, "codebaseMap")
    assert "- Chunks created: 5" in codebase_map

    unchanged = await engine.index_project(project)
    assert unchanged.files_processed == 0
    assert "- Chunks created: 5" in await engine.get_memory(project, "codebaseMap")


@pytest.mark.asyncio
async def test_runs_without_new_chunks_leave_the_codebase_map_alone(engine, project):
    report = await engine.index_project(project, min_chunk_size=1000)
    assert report.files_processed == 2
    assert report.chunks_created == 0

    again = await engine.index_project(project, min_chunk_size=1000)
    assert again.files_processed == 2

    versions = {m["name"]: m["version"] for m in await engine.list_memories(project, "core")}
    assert versions["codebaseMap"] == 1


@pytest.mark.asyncio
async def test_repeated_indexing_trips_loop_prevention(engine, project):
    for _ in range(3):
        await engine.index_project(project)
    with pytest.raises(LoopDetected):
        await engine.index_project(project)


@pytest.mark.asyncio
async def test_index_refuses_embedder_with_other_dims(store, config, clock, make_embedder, project):
    other = MemoryEngine(store, config=config, embedder=make_embedder(dims=1024), clock=clock)
    with pytest.raises(DimensionMismatch):
        await other.index_project(project)


@pytest.mark.asyncio
async def test_concurrent_updates_do_not_lose_versions(engine, project):
    results = await asyncio.gather(
        *(engine.upsert_memory(project, "activeContext", f"update {i}") for i in range(5))
    )

    assert sorted(result["version"] for result in results) == [2, 3, 4, 5, 6]
    listed = {item["name"]: item for item in await engine.list_memories(project, "core")}
    assert listed["activeContext"]["version"] == 6


@pytest.mark.asyncio
async def test_search_spans_memories_and_code(engine, project):
    await engine.index_project(project)
    await engine.upsert_memory(
        project, "techContext", "Sessions are protected by JWT authentication"
    )

    results = await engine.search(project, "authentication flow", limit=10)
    await engine.drain()

    names = {r.name for r in results}
    assert "techContext" in names
    assert any(r.payload.get("file_path") == "src/auth.py" for r in results)

    code_only = await engine.search(
        project, "getCached", filters=SearchFilters(scope="code"), limit=3
    )
    assert code_only[0].name == "getCached"
    assert all(r.kind == "code" for r in code_only)


@pytest.mark.asyncio
async def test_index_lifecycle_operations(engine, project):
    statuses = await engine.index_status()
    assert {s["name"] for s in statuses} == {"memory_documents", "code_chunks"}
    assert all(s["ensured"] for s in statuses)

    outcomes = await engine.recreate_indexes()
    assert set(outcomes.values()) == {"created"}
    with pytest.raises(NotFound):
        await engine.get_memory(project, "projectbrief")


@pytest.mark.asyncio
async def test_from_config_builds_lazy_providers(config, monkeypatch):
    monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
    settings = Settings(VOYAGE_API_KEY="test-key")

    engine = MemoryEngine.from_config(config, settings)
    assert isinstance(engine.store, InMemoryDocumentStore)
    assert isinstance(engine.reranker, NoopReranker)
    assert engine._embedder is None

    embedder = engine.embedder
    assert isinstance(embedder, VoyageEmbeddingProvider)
    assert embedder.dims == config.embedding.dims
    assert engine.embedder is embedder
    await engine.close()


def test_engine_requires_an_embedder(store, config):
    with pytest.raises(ValueError):
        MemoryEngine(store, config=config)


class BuildingStore(InMemoryDocumentStore):
    """Collections exist and serve queries but never report ready."""

    def __init__(self):
        super().__init__()
        self.status_calls = 0

    async def collection_status(self, collection):
        status = await super().collection_status(collection)
        self.status_calls += 1
        status.ready = False
        return status


@pytest.mark.asyncio
async def test_pending_indexes_are_not_rechecked_in_the_foreground(
    config, embedder, clock, sample_project
):
    config.indexes.retry_delays_seconds = [3600.0]
    store = BuildingStore()
    engine = MemoryEngine(store, config=config, embedder=embedder, clock=clock)
    try:
        await engine.initialize_project(sample_project, "Sample")
        assert engine.index_manager.rechecking
        calls_after_init = store.status_calls

        for _ in range(3):
            await engine.search(sample_project, "authentication")
        await engine.upsert_memory(sample_project, "progress", "still building")

        assert store.status_calls == calls_after_init
    finally:
        await engine.close()
    assert not engine.index_manager.rechecking
