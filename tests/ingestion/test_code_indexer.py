import os

import pytest

from memory_engineering.ingestion.code_indexer import CodeIndexer
from memory_engineering.shared.errors import ProviderUnavailable
from memory_engineering.store.base import ScopeFilter

PROJECT = "proj-1"
COLLECTION = "code_chunks"


def _indexer(store, embedder, config):
    return CodeIndexer(store, embedder, collection=COLLECTION, config=config.ingestion)


async def _names(store):
    records = await store.find(COLLECTION, PROJECT, ScopeFilter(), limit=100)
    return sorted(r.payload["name"] for r in records)


def _bump_mtime(path, seconds=60):
    stat = path.stat()
    os.utime(path, (stat.st_atime + seconds, stat.st_mtime + seconds))


@pytest.mark.asyncio
async def test_min_chunk_size_filters_small_files(tmp_path, store, embedder, config):
    (tmp_path / "big.py").write_text("def big():\n" + "    x = 1\n" * 149)
    for name in ("a.py", "b.py"):
        (tmp_path / name).write_text("".join(f"v{i} = {i}\n" for i in range(10)))

    report = await _indexer(store, embedder, config).index_project(
        PROJECT, tmp_path, min_chunk_size=80
    )

    assert report.chunks_created == 1
    assert report.files_processed == 3
    assert report.errors == []
    (record,) = await store.find(COLLECTION, PROJECT, ScopeFilter(), limit=10)
    assert record.payload["name"] == "big"
    assert record.payload["size"] == 150
    assert record.vector is not None


@pytest.mark.asyncio
async def test_unchanged_files_are_skipped(sample_project, store, embedder, config):
    indexer = _indexer(store, embedder, config)
    first = await indexer.index_project(PROJECT, sample_project)
    assert first.files_processed == 2
    assert first.chunks_created == 5
    assert first.pattern_counts["authentication"] >= 2

    second = await indexer.index_project(PROJECT, sample_project)
    assert second.files_processed == 0
    assert second.files_skipped == 2
    assert len(embedder.document_calls) == 1
    assert len(await _names(store)) == 5


@pytest.mark.asyncio
async def test_reindex_replaces_the_file_generation(sample_project, store, embedder, config):
    indexer = _indexer(store, embedder, config)
    await indexer.index_project(PROJECT, sample_project)

    auth = sample_project / "src" / "auth.py"
    auth.write_text("def check_password(raw, hashed):\n    return raw == hashed\n")
    _bump_mtime(auth)
    report = await indexer.index_project(PROJECT, sample_project)

    assert report.files_processed == 1
    assert await _names(store) == ["check_password", "getCached"]


@pytest.mark.asyncio
async def test_flagged_embedding_keeps_previous_generation(
    sample_project, store, config, make_embedder
):
    await _indexer(store, make_embedder(), config).index_project(PROJECT, sample_project)
    before = await _names(store)

    auth = sample_project / "src" / "auth.py"
    auth.write_text(auth.read_text() + "\n\ndef logout_everyone():\n    return None\n")
    _bump_mtime(auth)
    cache = sample_project / "src" / "cache.ts"
    _bump_mtime(cache)

    flagging = make_embedder(flag_when=lambda text: "logout_everyone" in text)
    report = await _indexer(store, flagging, config).index_project(PROJECT, sample_project)

    assert report.files_processed == 1
    assert len(report.errors) == 1
    assert report.errors[0].startswith("src/auth.py: embedding flagged")
    assert await _names(store) == before
    records = await store.find(COLLECTION, PROJECT, ScopeFilter(), limit=100)
    assert all(r.vector is not None for r in records)


@pytest.mark.asyncio
async def test_provider_failure_propagates_without_partial_writes(
    sample_project, store, config, make_embedder
):
    failing = make_embedder(error=ProviderUnavailable("rate limited"))
    with pytest.raises(ProviderUnavailable):
        await _indexer(store, failing, config).index_project(PROJECT, sample_project)
    assert await _names(store) == []


@pytest.mark.asyncio
async def test_force_regenerate_reindexes_unchanged_files(sample_project, store, embedder, config):
    indexer = _indexer(store, embedder, config)
    await indexer.index_project(PROJECT, sample_project)
    report = await indexer.index_project(PROJECT, sample_project, force_regenerate=True)
    assert report.files_processed == 2
    assert report.files_skipped == 0
    assert len(await _names(store)) == 5


@pytest.mark.asyncio
async def test_chunks_are_scoped_to_their_project(sample_project, store, embedder, config):
    await _indexer(store, embedder, config).index_project(PROJECT, sample_project)
    assert await store.count(COLLECTION, "another-project", ScopeFilter()) == 0
