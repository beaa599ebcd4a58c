"""
In-process document store.

Implements the full DocumentStore protocol with exact (brute force) cosine
similarity over numpy arrays. Used for tests, offline runs and as the
reference behaviour the Qdrant adapter is checked against.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from memory_engineering.shared.errors import (
    DimensionMismatch,
    FusionUnsupported,
    IndexNotReady,
)
from memory_engineering.shared.observability import get_logger
from memory_engineering.shared.qdrant_schema import CollectionSchema
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
    get_path,
)

logger = get_logger(__name__)


class InMemoryDocumentStore:
    def __init__(
        self,
        *,
        native_fusion: bool = True,
        auto_create: bool = True,
    ):
        self._native_fusion = native_fusion
        self._auto_create = auto_create
        self._collections: Dict[str, Dict[str, StoreRecord]] = {}
        self._schemas: Dict[str, CollectionSchema] = {}
        self._indexes: Dict[str, Dict[str, Any]] = {}
        # Test hook: exception raised by the next multi_search calls
        self.multi_search_error: Optional[Exception] = None
        self.pipeline_errors: Dict[str, Exception] = {}

    @property
    def supports_native_fusion(self) -> bool:
        return self._native_fusion

    # ---- index / collection lifecycle ----
    async def create_collection(self, schema: CollectionSchema) -> bool:
        if schema.name in self._collections and schema.name in self._schemas:
            return False
        self._collections.setdefault(schema.name, {})
        self._schemas[schema.name] = schema
        self._indexes.setdefault(schema.name, {})
        return True

    async def create_payload_index(
        self, collection: str, field_name: str, field_schema: Any
    ) -> bool:
        indexes = self._indexes.setdefault(collection, {})
        if field_name in indexes:
            return False
        indexes[field_name] = field_schema
        return True

    async def drop_collection(self, collection: str) -> None:
        self._collections.pop(collection, None)
        self._schemas.pop(collection, None)
        self._indexes.pop(collection, None)

    async def collection_status(self, collection: str) -> CollectionStatus:
        exists = collection in self._schemas
        schema = self._schemas.get(collection)
        return CollectionStatus(
            name=collection,
            exists=exists,
            ready=exists,
            points=len(self._collections.get(collection, {})),
            payload_indexes=sorted(self._indexes.get(collection, {})),
            vector_size=schema.dims if schema else None,
        )

    def _records(self, collection: str) -> Dict[str, StoreRecord]:
        if collection not in self._collections:
            if not self._auto_create:
                raise IndexNotReady(f"Collection '{collection}' does not exist yet.")
            self._collections[collection] = {}
        return self._collections[collection]

    def _scoped(
        self, collection: str, project_id: str, scope: Optional[ScopeFilter] = None
    ) -> List[StoreRecord]:
        return [
            record
            for record in self._records(collection).values()
            if record.payload.get("project_id") == project_id
            and (scope is None or scope.matches(record.payload))
        ]

    # ---- CRUD ----
    async def upsert(
        self, collection: str, project_id: str, records: Sequence[StoreRecord]
    ) -> int:
        schema = self._schemas.get(collection)
        for record in records:
            if record.payload.get("project_id") != project_id:
                raise ValueError(
                    f"Record {record.id} belongs to project "
                    f"{record.payload.get('project_id')!r}, not {project_id!r}"
                )
            if schema and record.vector is not None and len(record.vector) != schema.dims:
                raise DimensionMismatch(
                    f"Vector for {record.id} has {len(record.vector)} dims, "
                    f"collection '{collection}' expects {schema.dims}.",
                    expected=schema.dims,
                    received=len(record.vector),
                )
        target = self._records(collection)
        for record in records:
            target[record.id] = StoreRecord(
                id=record.id,
                payload=copy.deepcopy(record.payload),
                vector=list(record.vector) if record.vector is not None else None,
            )
        return len(records)

    async def get(
        self, collection: str, project_id: str, ids: Sequence[str]
    ) -> List[StoreRecord]:
        records = self._records(collection)
        found = []
        for point_id in ids:
            record = records.get(point_id)
            if record and record.payload.get("project_id") == project_id:
                found.append(copy.deepcopy(record))
        return found

    async def find(
        self,
        collection: str,
        project_id: str,
        scope: ScopeFilter,
        limit: int,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[StoreRecord]:
        records = self._scoped(collection, project_id, scope)
        if order_by:
            records.sort(
                key=lambda r: (get_path(r.payload, order_by) or 0, r.id),
                reverse=descending,
            )
        else:
            records.sort(key=lambda r: r.id)
        return [copy.deepcopy(r) for r in records[:limit]]

    async def count(self, collection: str, project_id: str, scope: ScopeFilter) -> int:
        return len(self._scoped(collection, project_id, scope))

    async def delete(self, collection: str, project_id: str, ids: Sequence[str]) -> None:
        records = self._records(collection)
        for point_id in ids:
            record = records.get(point_id)
            if record and record.payload.get("project_id") == project_id:
                del records[point_id]

    async def delete_file_chunks(
        self, collection: str, project_id: str, file_path: str, keep_ids: Sequence[str]
    ) -> None:
        keep = set(keep_ids)
        records = self._records(collection)
        stale = [
            record.id
            for record in records.values()
            if record.payload.get("project_id") == project_id
            and record.payload.get("file_path") == file_path
            and record.id not in keep
        ]
        for point_id in stale:
            del records[point_id]

    async def file_index_times(self, collection: str, project_id: str) -> Dict[str, float]:
        times: Dict[str, float] = {}
        for record in self._scoped(collection, project_id):
            path = record.payload.get("file_path")
            if path is None:
                continue
            stamp = float(record.payload.get("last_modified") or 0.0)
            times[path] = max(times.get(path, 0.0), stamp)
        return times

    async def touch(
        self, collection: str, project_id: str, ids: Sequence[str], now: float
    ) -> None:
        records = self._records(collection)
        for point_id in ids:
            record = records.get(point_id)
            if record and record.payload.get("project_id") == project_id:
                record.payload["access_count"] = int(record.payload.get("access_count") or 0) + 1
                record.payload["freshness"] = max(
                    float(record.payload.get("freshness") or 0.0), now
                )

    # ---- retrieval ----
    async def run_pipeline(
        self, collection: str, project_id: str, request: PipelineRequest, scope: ScopeFilter
    ) -> List[StoreHit]:
        error = self.pipeline_errors.get(request.name)
        if error is not None:
            raise error
        records = self._scoped(collection, project_id, scope)
        if request.name == SEMANTIC:
            hits = self._semantic(records, request)
        elif request.name == LEXICAL:
            hits = self._lexical(records, request)
        elif request.name == TEMPORAL:
            hits = [
                StoreHit(r.id, float(r.payload.get("freshness") or 0.0), copy.deepcopy(r.payload))
                for r in records
                if request.since is None or float(r.payload.get("freshness") or 0.0) >= request.since
            ]
        elif request.name == FREQUENCY:
            threshold = request.min_access or 0
            hits = [
                StoreHit(r.id, float(r.payload.get("access_count") or 0), copy.deepcopy(r.payload))
                for r in records
                if int(r.payload.get("access_count") or 0) > threshold
            ]
        else:
            raise ValueError(f"Unknown pipeline: {request.name}")
        hits.sort(key=lambda hit: (-hit.score, hit.id))
        return hits[: request.limit]

    def _semantic(self, records: List[StoreRecord], request: PipelineRequest) -> List[StoreHit]:
        with_vectors = [r for r in records if r.vector is not None]
        if not with_vectors or not request.vector:
            return []
        matrix = np.asarray([r.vector for r in with_vectors], dtype=float)
        query = np.asarray(request.vector, dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        scores = matrix @ query / norms
        return [
            StoreHit(record.id, float(score), copy.deepcopy(record.payload))
            for record, score in zip(with_vectors, scores)
        ]

    def _lexical(self, records: List[StoreRecord], request: PipelineRequest) -> List[StoreHit]:
        hits = []
        for record in records:
            score = term_overlap_score(
                request.terms, str(record.payload.get("searchable_text") or "")
            )
            if score > 0:
                hits.append(StoreHit(record.id, score, copy.deepcopy(record.payload)))
        return hits

    async def multi_search(
        self,
        collection: str,
        project_id: str,
        requests: Sequence[PipelineRequest],
        scope: ScopeFilter,
    ) -> Dict[str, List[StoreHit]]:
        if not self._native_fusion:
            raise FusionUnsupported("In-memory store configured without native fusion.")
        if self.multi_search_error is not None:
            raise self.multi_search_error
        results = await asyncio.gather(
            *(self.run_pipeline(collection, project_id, req, scope) for req in requests)
        )
        return {req.name: hits for req, hits in zip(requests, results)}

    async def close(self) -> None:
        logger.debug("In-memory store closed", collections=len(self._collections))
