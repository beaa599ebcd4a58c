"""
Qdrant-backed document store.

Mapping of the retrieval pipelines onto Qdrant:
- semantic: dense query on the named vector with an hnsw_ef of the candidate pool
- lexical: scroll filtered by MatchText on the analyzed ``searchable_text``
  index, ranked client-side by term overlap. Only the first ``scan_limit``
  matching points (in point-id order) are scored, so when more documents match
  than that, strong lexical hits beyond the scan are not seen.
- temporal: scroll ordered by ``freshness`` within a Range
- frequency: scroll ordered by ``access_count`` within a Range

``multi_search`` sends all pipelines as one Query API batch request.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from memory_engineering.shared.errors import (
    DimensionMismatch,
    FusionUnsupported,
    IndexNotReady,
    MemoryEngineError,
    ProviderUnavailable,
)
from memory_engineering.shared.execution_state import KeyedLocks
from memory_engineering.shared.observability import get_logger
from memory_engineering.shared.qdrant_schema import (
    CollectionSchema,
    validate_vector_params,
)
from memory_engineering.shared.records import StoreHit, StoreRecord
from memory_engineering.shared.text import term_overlap_score
from memory_engineering.store.base import (
    FREQUENCY,
    LEXICAL,
    SEMANTIC,
    TEMPORAL,
    CollectionStatus,
    PipelineRequest,
    ScopeFilter,
)

logger = get_logger(__name__)

# Client-side glob filtering needs a larger window from the server
GLOB_OVERFETCH = 4
SCROLL_PAGE = 256


def _error_text(exc: UnexpectedResponse) -> str:
    content = exc.content
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    return f"{exc.reason_phrase} {content}".lower()


def translate_error(exc: Exception, collection: str, *, native: bool = False) -> MemoryEngineError:
    """Map Qdrant client errors onto the engine's error taxonomy."""
    if isinstance(exc, MemoryEngineError):
        return exc
    if isinstance(exc, UnexpectedResponse):
        text = _error_text(exc)
        if exc.status_code == 404 and "collection" in text:
            return IndexNotReady(f"Collection '{collection}' does not exist yet.")
        if exc.status_code in (404, 405, 501):
            return FusionUnsupported(
                f"Qdrant rejected the query endpoint ({exc.status_code})."
            )
        if exc.status_code == 400 and "index" in text:
            return IndexNotReady(
                f"Collection '{collection}' is missing a required payload index."
            )
        if native:
            return FusionUnsupported(f"Batch query failed ({exc.status_code}).")
        return ProviderUnavailable(f"Qdrant request failed ({exc.status_code}).")
    if native and isinstance(exc, (AttributeError, TypeError, ValueError)):
        return FusionUnsupported(f"Batch query not supported by client: {exc}")
    return ProviderUnavailable(f"Qdrant unreachable: {exc}")


def _already_exists(exc: UnexpectedResponse) -> bool:
    return exc.status_code == 409 or "already exists" in _error_text(exc)


def _project_condition(project_id: str) -> models.FieldCondition:
    return models.FieldCondition(
        key="project_id", match=models.MatchValue(value=project_id)
    )


def build_filter(
    project_id: str,
    scope: Optional[ScopeFilter] = None,
    *,
    extra_must: Sequence[Any] = (),
    should: Sequence[Any] = (),
) -> models.Filter:
    must: List[Any] = [_project_condition(project_id)]
    must_not: List[Any] = []
    if scope is not None:
        for key, values in (
            ("memory_class", scope.memory_classes),
            ("kind", scope.kinds),
            ("pattern_tags", scope.pattern_tags),
            ("dependencies", scope.dependencies),
        ):
            if values:
                must.append(
                    models.FieldCondition(key=key, match=models.MatchAny(any=list(values)))
                )
        for key, value in scope.equals:
            must.append(models.FieldCondition(key=key, match=models.MatchValue(value=value)))
        if scope.not_expired_at is not None:
            must_not.append(
                models.FieldCondition(
                    key="expires_at", range=models.Range(lt=scope.not_expired_at)
                )
            )
    must.extend(extra_must)
    return models.Filter(
        must=must,
        must_not=must_not or None,
        should=list(should) or None,
    )


def _lexical_should(terms: Sequence[str]) -> List[models.FieldCondition]:
    return [
        models.FieldCondition(key="searchable_text", match=models.MatchText(text=term))
        for term in terms
    ]


def _order_condition(request: PipelineRequest) -> Optional[models.FieldCondition]:
    if request.name == TEMPORAL and request.since is not None:
        return models.FieldCondition(key="freshness", range=models.Range(gte=request.since))
    if request.name == FREQUENCY:
        return models.FieldCondition(
            key="access_count", range=models.Range(gt=request.min_access or 0)
        )
    return None


_ORDER_KEYS = {TEMPORAL: "freshness", FREQUENCY: "access_count"}


class QdrantDocumentStore:
    def __init__(
        self,
        client: AsyncQdrantClient,
        schemas: Sequence[CollectionSchema],
        *,
        native_fusion: bool = True,
    ):
        self.client = client
        self._schemas: Dict[str, CollectionSchema] = {s.name: s for s in schemas}
        self._native_fusion = native_fusion
        self._touch_locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        url: str,
        schemas: Sequence[CollectionSchema],
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        native_fusion: bool = True,
    ) -> "QdrantDocumentStore":
        client = AsyncQdrantClient(url=url, api_key=api_key, timeout=int(timeout))
        return cls(client, schemas, native_fusion=native_fusion)

    @property
    def supports_native_fusion(self) -> bool:
        return self._native_fusion and hasattr(self.client, "query_batch_points")

    def _vector_name(self, collection: str) -> str:
        schema = self._schemas.get(collection)
        return schema.vector_name if schema else "content"

    # ---- index / collection lifecycle ----
    async def create_collection(self, schema: CollectionSchema) -> bool:
        self._schemas[schema.name] = schema
        try:
            if await self.client.collection_exists(schema.name):
                info = await self.client.get_collection(schema.name)
                validate_vector_params(schema, info.config.params.vectors)
                return False
            await self.client.create_collection(
                collection_name=schema.name,
                vectors_config=schema.vectors_config,
            )
        except UnexpectedResponse as exc:
            if _already_exists(exc):
                return False
            raise translate_error(exc, schema.name) from exc
        except ResponseHandlingException as exc:
            raise translate_error(exc, schema.name) from exc
        logger.info(
            "Created Qdrant collection",
            collection=schema.name,
            dims=schema.dims,
            distance=str(schema.distance),
        )
        return True

    async def create_payload_index(
        self, collection: str, field_name: str, field_schema: Any
    ) -> bool:
        try:
            info = await self.client.get_collection(collection)
            if field_name in (info.payload_schema or {}):
                return False
            await self.client.create_payload_index(
                collection_name=collection,
                field_name=field_name,
                field_schema=field_schema,
                wait=True,
            )
        except UnexpectedResponse as exc:
            if _already_exists(exc):
                return False
            raise translate_error(exc, collection) from exc
        except ResponseHandlingException as exc:
            raise translate_error(exc, collection) from exc
        return True

    async def drop_collection(self, collection: str) -> None:
        try:
            await self.client.delete_collection(collection_name=collection)
        except UnexpectedResponse as exc:
            if exc.status_code != 404:
                raise translate_error(exc, collection) from exc

    async def collection_status(self, collection: str) -> CollectionStatus:
        try:
            if not await self.client.collection_exists(collection):
                return CollectionStatus(name=collection, exists=False, ready=False)
            info = await self.client.get_collection(collection)
        except (UnexpectedResponse, ResponseHandlingException) as exc:
            raise translate_error(exc, collection) from exc
        vectors = info.config.params.vectors
        params = vectors.get(self._vector_name(collection)) if isinstance(vectors, dict) else vectors
        return CollectionStatus(
            name=collection,
            exists=True,
            # YELLOW (optimizing) and GREY (optimization pending) still serve queries
            ready=info.status != models.CollectionStatus.RED,
            points=info.points_count or 0,
            payload_indexes=sorted(info.payload_schema or {}),
            vector_size=getattr(params, "size", None),
        )

    # ---- CRUD ----
    async def upsert(
        self, collection: str, project_id: str, records: Sequence[StoreRecord]
    ) -> int:
        if not records:
            return 0
        schema = self._schemas.get(collection)
        vector_name = self._vector_name(collection)
        points = []
        for record in records:
            if record.payload.get("project_id") != project_id:
                raise ValueError(
                    f"Record {record.id} belongs to project "
                    f"{record.payload.get('project_id')!r}, not {project_id!r}"
                )
            vector: Dict[str, List[float]] = {}
            if record.vector is not None:
                if schema and len(record.vector) != schema.dims:
                    raise DimensionMismatch(
                        f"Vector for {record.id} has {len(record.vector)} dims, "
                        f"collection '{collection}' expects {schema.dims}.",
                        expected=schema.dims,
                        received=len(record.vector),
                    )
                vector[vector_name] = list(record.vector)
            points.append(models.PointStruct(id=record.id, vector=vector, payload=record.payload))
        try:
            await self.client.upsert(collection_name=collection, points=points, wait=True)
        except (UnexpectedResponse, ResponseHandlingException) as exc:
            raise translate_error(exc, collection) from exc
        return len(points)

    async def get(
        self, collection: str, project_id: str, ids: Sequence[str]
    ) -> List[StoreRecord]:
        if not ids:
            return []
        try:
            points = await self.client.retrieve(
                collection_name=collection,
                ids=list(ids),
                with_payload=True,
                with_vectors=False,
            )
        except (UnexpectedResponse, ResponseHandlingException) as exc:
            raise translate_error(exc, collection) from exc
        return [
            StoreRecord(id=str(point.id), payload=dict(point.payload or {}))
            for point in points
            if (point.payload or {}).get("project_id") == project_id
        ]

    async def _scroll(
        self,
        collection: str,
        scroll_filter: models.Filter,
        limit: int,
        order_by: Optional[models.OrderBy] = None,
        with_payload: Any = True,
    ) -> List[models.Record]:
        try:
            points, _ = await self.client.scroll(
                collection_name=collection,
                scroll_filter=scroll_filter,
                limit=limit,
                order_by=order_by,
                with_payload=with_payload,
                with_vectors=False,
            )
        except (UnexpectedResponse, ResponseHandlingException) as exc:
            raise translate_error(exc, collection) from exc
        return points

    async def find(
        self,
        collection: str,
        project_id: str,
        scope: ScopeFilter,
        limit: int,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[StoreRecord]:
        ordering = None
        if order_by:
            ordering = models.OrderBy(
                key=order_by,
                direction=models.Direction.DESC if descending else models.Direction.ASC,
            )
        fetch = limit * GLOB_OVERFETCH if scope.file_glob else limit
        points = await self._scroll(
            collection, build_filter(project_id, scope), fetch, order_by=ordering
        )
        records = [
            StoreRecord(id=str(point.id), payload=dict(point.payload or {}))
            for point in points
            if scope.matches(point.payload or {})
        ]
        return records[:limit]

    async def count(self, collection: str, project_id: str, scope: ScopeFilter) -> int:
        try:
            result = await self.client.count(
                collection_name=collection,
                count_filter=build_filter(project_id, scope),
                exact=True,
            )
        except (UnexpectedResponse, ResponseHandlingException) as exc:
            raise translate_error(exc, collection) from exc
        return result.count

    async def _delete_by_filter(self, collection: str, selector: models.Filter) -> None:
        try:
            await self.client.delete(
                collection_name=collection,
                points_selector=models.FilterSelector(filter=selector),
                wait=True,
            )
        except (UnexpectedResponse, ResponseHandlingException) as exc:
            raise translate_error(exc, collection) from exc

    async def delete(self, collection: str, project_id: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        await self._delete_by_filter(
            collection,
            build_filter(
                project_id, extra_must=[models.HasIdCondition(has_id=list(ids))]
            ),
        )

    async def delete_file_chunks(
        self, collection: str, project_id: str, file_path: str, keep_ids: Sequence[str]
    ) -> None:
        selector = build_filter(
            project_id,
            extra_must=[
                models.FieldCondition(key="file_path", match=models.MatchValue(value=file_path))
            ],
        )
        if keep_ids:
            selector.must_not = [models.HasIdCondition(has_id=list(keep_ids))]
        await self._delete_by_filter(collection, selector)

    async def file_index_times(self, collection: str, project_id: str) -> Dict[str, float]:
        times: Dict[str, float] = {}
        offset = None
        while True:
            try:
                points, offset = await self.client.scroll(
                    collection_name=collection,
                    scroll_filter=build_filter(project_id),
                    limit=SCROLL_PAGE,
                    offset=offset,
                    with_payload=["file_path", "last_modified"],
                    with_vectors=False,
                )
            except (UnexpectedResponse, ResponseHandlingException) as exc:
                raise translate_error(exc, collection) from exc
            for point in points:
                payload = point.payload or {}
                path = payload.get("file_path")
                if path is None:
                    continue
                stamp = float(payload.get("last_modified") or 0.0)
                times[path] = max(times.get(path, 0.0), stamp)
            if offset is None:
                return times

    async def touch(
        self, collection: str, project_id: str, ids: Sequence[str], now: float
    ) -> None:
        # Read-modify-write, serialised per collection within this process;
        # writers in other processes can still interleave.
        async with self._touch_locks.hold(collection):
            await self._touch(collection, project_id, ids, now)

    async def _touch(
        self, collection: str, project_id: str, ids: Sequence[str], now: float
    ) -> None:
        records = await self.get(collection, project_id, ids)
        if not records:
            return
        operations = [
            models.SetPayloadOperation(
                set_payload=models.SetPayload(
                    payload={
                        "access_count": int(record.payload.get("access_count") or 0) + 1,
                        "freshness": max(float(record.payload.get("freshness") or 0.0), now),
                    },
                    points=[record.id],
                )
            )
            for record in records
        ]
        try:
            await self.client.batch_update_points(
                collection_name=collection, update_operations=operations, wait=True
            )
        except (UnexpectedResponse, ResponseHandlingException) as exc:
            raise translate_error(exc, collection) from exc

    # ---- retrieval ----
    def _fetch_limit(self, request: PipelineRequest, scope: ScopeFilter) -> int:
        if request.name == LEXICAL:
            return max(request.scan_limit, request.limit)
        return request.limit * GLOB_OVERFETCH if scope.file_glob else request.limit

    def _rank(
        self,
        request: PipelineRequest,
        points: Sequence[Any],
        scope: ScopeFilter,
    ) -> List[StoreHit]:
        hits: List[StoreHit] = []
        for point in points:
            payload = dict(point.payload or {})
            if not scope.matches(payload):
                continue
            if request.name == LEXICAL:
                score = term_overlap_score(request.terms, str(payload.get("searchable_text") or ""))
                if score <= 0:
                    continue
            elif request.name in _ORDER_KEYS:
                score = float(payload.get(_ORDER_KEYS[request.name]) or 0.0)
            else:
                score = float(point.score)
            hits.append(StoreHit(id=str(point.id), score=score, payload=payload))
        if request.name != SEMANTIC:
            hits.sort(key=lambda hit: (-hit.score, hit.id))
        return hits[: request.limit]

    async def run_pipeline(
        self, collection: str, project_id: str, request: PipelineRequest, scope: ScopeFilter
    ) -> List[StoreHit]:
        limit = self._fetch_limit(request, scope)
        if request.name == SEMANTIC:
            if not request.vector:
                return []
            try:
                response = await self.client.query_points(
                    collection_name=collection,
                    query=list(request.vector),
                    using=self._vector_name(collection),
                    limit=limit,
                    query_filter=build_filter(project_id, scope),
                    search_params=models.SearchParams(hnsw_ef=request.candidates or None),
                    with_payload=True,
                    with_vectors=False,
                )
            except (UnexpectedResponse, ResponseHandlingException) as exc:
                raise translate_error(exc, collection) from exc
            return self._rank(request, response.points, scope)

        if request.name == LEXICAL:
            if not request.terms:
                return []
            points = await self._scroll(
                collection,
                build_filter(project_id, scope, should=_lexical_should(request.terms)),
                limit,
            )
            return self._rank(request, points, scope)

        if request.name in _ORDER_KEYS:
            condition = _order_condition(request)
            points = await self._scroll(
                collection,
                build_filter(project_id, scope, extra_must=[condition] if condition else ()),
                limit,
                order_by=models.OrderBy(
                    key=_ORDER_KEYS[request.name], direction=models.Direction.DESC
                ),
            )
            return self._rank(request, points, scope)

        raise ValueError(f"Unknown pipeline: {request.name}")

    def _query_request(
        self, collection: str, project_id: str, request: PipelineRequest, scope: ScopeFilter
    ) -> models.QueryRequest:
        limit = self._fetch_limit(request, scope)
        if request.name == SEMANTIC:
            return models.QueryRequest(
                query=list(request.vector or []),
                using=self._vector_name(collection),
                filter=build_filter(project_id, scope),
                params=models.SearchParams(hnsw_ef=request.candidates or None),
                limit=limit,
                with_payload=True,
            )
        if request.name == LEXICAL:
            return models.QueryRequest(
                filter=build_filter(project_id, scope, should=_lexical_should(request.terms)),
                limit=limit,
                with_payload=True,
            )
        condition = _order_condition(request)
        return models.QueryRequest(
            query=models.OrderByQuery(
                order_by=models.OrderBy(
                    key=_ORDER_KEYS[request.name], direction=models.Direction.DESC
                )
            ),
            filter=build_filter(project_id, scope, extra_must=[condition] if condition else ()),
            limit=limit,
            with_payload=True,
        )

    async def multi_search(
        self,
        collection: str,
        project_id: str,
        requests: Sequence[PipelineRequest],
        scope: ScopeFilter,
    ) -> Dict[str, List[StoreHit]]:
        if not self.supports_native_fusion:
            raise FusionUnsupported("Qdrant client does not expose query_batch_points.")
        # Pipelines with nothing to query are answered locally
        active = [
            req
            for req in requests
            if not (req.name == SEMANTIC and not req.vector)
            and not (req.name == LEXICAL and not req.terms)
        ]
        results: Dict[str, List[StoreHit]] = {req.name: [] for req in requests}
        if not active:
            return results
        try:
            responses = await self.client.query_batch_points(
                collection_name=collection,
                requests=[
                    self._query_request(collection, project_id, req, scope) for req in active
                ],
            )
        except (UnexpectedResponse, ResponseHandlingException, AttributeError, TypeError, ValueError) as exc:
            raise translate_error(exc, collection, native=True) from exc
        for req, response in zip(active, responses):
            results[req.name] = self._rank(req, response.points, scope)
        return results

    async def close(self) -> None:
        await self.client.close()
