import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from qdrant_client.http import models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from memory_engineering.shared.errors import (
    DimensionMismatch,
    FusionUnsupported,
    IndexNotReady,
    ProviderUnavailable,
)
from memory_engineering.shared.qdrant_schema import build_schemas
from memory_engineering.shared.records import StoreRecord
from memory_engineering.store.base import PipelineRequest, ScopeFilter
from memory_engineering.store.qdrant_store import (
    QdrantDocumentStore,
    build_filter,
    translate_error,
)

PROJECT = "proj-qdrant"
COLLECTION = "code_chunks"


def _unexpected(status, content=b""):
    return UnexpectedResponse(status, "error", content, httpx.Headers())


def _collection_info(size, status=models.CollectionStatus.GREEN, payload_schema=None):
    return SimpleNamespace(
        status=status,
        points_count=3,
        payload_schema=payload_schema or {},
        config=SimpleNamespace(
            params=SimpleNamespace(
                vectors={"content": models.VectorParams(size=size, distance=models.Distance.COSINE)}
            )
        ),
    )


def _point(point_id, score=0.0, **payload):
    payload.setdefault("project_id", PROJECT)
    return models.ScoredPoint(id=point_id, version=0, score=score, payload=payload)


@pytest.fixture
def client():
    return AsyncMock()


@pytest.fixture
def qdrant(client, config):
    return QdrantDocumentStore(client, build_schemas(config))


def test_build_filter_scopes_to_project():
    scope = ScopeFilter(
        memory_classes=("core", "working"),
        equals=(("metadata.telemetry_day", "2025-10-09"),),
        not_expired_at=100.0,
    )
    flt = build_filter(PROJECT, scope)

    project, classes, day = flt.must
    assert project.key == "project_id"
    assert project.match.value == PROJECT
    assert classes.match.any == ["core", "working"]
    assert day.key == "metadata.telemetry_day"
    (expired,) = flt.must_not
    assert expired.key == "expires_at"
    assert expired.range.lt == 100.0
    assert flt.should is None


@pytest.mark.parametrize(
    "exc, native, expected",
    [
        (_unexpected(404, b"Collection `code_chunks` doesn't exist"), False, IndexNotReady),
        (_unexpected(405), False, FusionUnsupported),
        (_unexpected(400, b"Index required but not found for \"kind\""), False, IndexNotReady),
        (_unexpected(500), False, ProviderUnavailable),
        (_unexpected(500), True, FusionUnsupported),
        (ResponseHandlingException(ConnectionError("refused")), False, ProviderUnavailable),
        (TypeError("unexpected keyword"), True, FusionUnsupported),
    ],
)
def test_translate_error(exc, native, expected):
    assert isinstance(translate_error(exc, COLLECTION, native=native), expected)


@pytest.mark.asyncio
async def test_existing_collection_with_other_dims_is_rejected(qdrant, client, config):
    client.collection_exists.return_value = True
    client.get_collection.return_value = _collection_info(size=1024)

    with pytest.raises(DimensionMismatch):
        await qdrant.create_collection(build_schemas(config)[1])
    client.create_collection.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_collection_treats_conflict_as_existing(qdrant, client, config):
    client.collection_exists.return_value = False
    client.create_collection.side_effect = _unexpected(409, b"already exists")
    assert await qdrant.create_collection(build_schemas(config)[1]) is False


@pytest.mark.asyncio
async def test_payload_index_created_once(qdrant, client):
    client.get_collection.return_value = _collection_info(8, payload_schema={"project_id": {}})
    assert await qdrant.create_payload_index(COLLECTION, "project_id", "keyword") is False
    assert await qdrant.create_payload_index(COLLECTION, "kind", "keyword") is True
    client.create_payload_index.assert_awaited_once()


@pytest.mark.asyncio
async def test_collection_status_reports_failed_collection(qdrant, client):
    client.collection_exists.return_value = True
    client.get_collection.return_value = _collection_info(8, status=models.CollectionStatus.RED)
    status = await qdrant.collection_status(COLLECTION)
    assert status.exists and not status.ready
    assert status.vector_size == 8


@pytest.mark.asyncio
async def test_optimizing_collection_is_usable(qdrant, client):
    client.collection_exists.return_value = True
    client.get_collection.return_value = _collection_info(8, status=models.CollectionStatus.YELLOW)
    status = await qdrant.collection_status(COLLECTION)
    assert status.exists and status.ready


@pytest.mark.asyncio
async def test_upsert_validates_project_and_dims(qdrant, client):
    with pytest.raises(ValueError):
        await qdrant.upsert(COLLECTION, PROJECT, [StoreRecord("x", {"project_id": "other"})])
    with pytest.raises(DimensionMismatch):
        await qdrant.upsert(
            COLLECTION, PROJECT, [StoreRecord("x", {"project_id": PROJECT}, vector=[1.0])]
        )

    await qdrant.upsert(
        COLLECTION, PROJECT, [StoreRecord("x", {"project_id": PROJECT}, vector=[0.5] * 8)]
    )
    (point,) = client.upsert.await_args.kwargs["points"]
    assert point.vector == {"content": [0.5] * 8}


@pytest.mark.asyncio
async def test_multi_search_batches_active_pipelines(qdrant, client):
    client.query_batch_points.return_value = [
        models.QueryResponse(points=[_point("a", 0.9), _point("b", 0.4)]),
        models.QueryResponse(
            points=[
                _point("b", 0.0, searchable_text="login session"),
                _point("a", 0.0, searchable_text="nothing relevant"),
            ]
        ),
        models.QueryResponse(points=[_point("c", 0.0, access_count=7)]),
    ]
    requests = [
        PipelineRequest("semantic", limit=5, vector=[0.1] * 8, candidates=50),
        PipelineRequest("lexical", limit=5, terms=("login",)),
        PipelineRequest("frequency", limit=5, min_access=3),
    ]

    results = await qdrant.multi_search(COLLECTION, PROJECT, requests, ScopeFilter())

    sent = client.query_batch_points.await_args.kwargs["requests"]
    assert len(sent) == 3
    assert sent[0].params.hnsw_ef == 50
    assert [h.id for h in results["semantic"]] == ["a", "b"]
    assert [h.id for h in results["lexical"]] == ["b"]
    assert [(h.id, h.score) for h in results["frequency"]] == [("c", 7.0)]


@pytest.mark.asyncio
async def test_multi_search_skips_empty_pipelines(qdrant, client):
    requests = [PipelineRequest("lexical", limit=5, terms=())]
    results = await qdrant.multi_search(COLLECTION, PROJECT, requests, ScopeFilter())
    assert results == {"lexical": []}
    client.query_batch_points.assert_not_awaited()


@pytest.mark.asyncio
async def test_multi_search_failure_maps_to_fusion_unsupported(qdrant, client):
    client.query_batch_points.side_effect = _unexpected(500)
    requests = [PipelineRequest("semantic", limit=5, vector=[0.1] * 8)]
    with pytest.raises(FusionUnsupported):
        await qdrant.multi_search(COLLECTION, PROJECT, requests, ScopeFilter())


@pytest.mark.asyncio
async def test_find_applies_glob_client_side(qdrant, client):
    client.scroll.return_value = (
        [
            models.Record(id="a", payload={"project_id": PROJECT, "file_path": "src/auth.py"}),
            models.Record(id="b", payload={"project_id": PROJECT, "file_path": "lib/cache.ts"}),
        ],
        None,
    )
    found = await qdrant.find(COLLECTION, PROJECT, ScopeFilter(file_glob="src/*"), limit=5)
    assert [r.id for r in found] == ["a"]
    assert client.scroll.await_args.kwargs["limit"] == 20


@pytest.mark.asyncio
async def test_touch_increments_through_payload_updates(qdrant, client):
    client.retrieve.return_value = [
        models.Record(id="a", payload={"project_id": PROJECT, "access_count": 2, "freshness": 50.0}),
    ]
    await qdrant.touch(COLLECTION, PROJECT, ["a"], now=80.0)

    (operation,) = client.batch_update_points.await_args.kwargs["update_operations"]
    assert operation.set_payload.payload == {"access_count": 3, "freshness": 80.0}
    assert operation.set_payload.points == ["a"]


@pytest.mark.asyncio
async def test_concurrent_touches_keep_every_increment(qdrant, client):
    stored = {"a": {"project_id": PROJECT, "access_count": 0, "freshness": 10.0}}

    async def retrieve(collection_name, ids, **kwargs):
        await asyncio.sleep(0)
        return [models.Record(id=i, payload=dict(stored[i])) for i in ids if i in stored]

    async def batch_update_points(collection_name, update_operations, **kwargs):
        await asyncio.sleep(0)
        for operation in update_operations:
            for point_id in operation.set_payload.points:
                stored[point_id].update(operation.set_payload.payload)

    client.retrieve.side_effect = retrieve
    client.batch_update_points.side_effect = batch_update_points

    await asyncio.gather(*(qdrant.touch(COLLECTION, PROJECT, ["a"], now=20.0) for _ in range(5)))

    assert stored["a"]["access_count"] == 5
    assert client.batch_update_points.await_args.kwargs["wait"] is True


@pytest.mark.asyncio
async def test_lexical_scan_is_capped_and_ranked_by_overlap(qdrant, client):
    client.scroll.return_value = (
        [
            models.Record(id="a", payload={"project_id": PROJECT, "searchable_text": "login"}),
            models.Record(
                id="b", payload={"project_id": PROJECT, "searchable_text": "login session token"}
            ),
        ],
        None,
    )
    request = PipelineRequest("lexical", limit=5, terms=("login", "session"), scan_limit=40)

    hits = await qdrant.run_pipeline(COLLECTION, PROJECT, request, ScopeFilter())

    assert client.scroll.await_args.kwargs["limit"] == 40
    assert [h.id for h in hits] == ["b", "a"]
