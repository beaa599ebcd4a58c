"""
Document store protocol and the request types the query planner hands it.

Every method takes the project id explicitly; implementations must scope
both reads and writes to it.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from memory_engineering.shared.qdrant_schema import CollectionSchema
from memory_engineering.shared.records import StoreHit, StoreRecord

SEMANTIC = "semantic"
LEXICAL = "lexical"
TEMPORAL = "temporal"
FREQUENCY = "frequency"
PIPELINE_ORDER: Tuple[str, ...] = (SEMANTIC, LEXICAL, TEMPORAL, FREQUENCY)


def get_path(payload: Dict[str, Any], key: str) -> Any:
    """Resolve a dotted key (``metadata.telemetry_day``) inside a payload."""
    value: Any = payload
    for part in key.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def glob_match(path: str, pattern: str) -> bool:
    if fnmatch.fnmatch(path, pattern):
        return True
    if pattern.startswith("**/") and fnmatch.fnmatch(path, pattern[3:]):
        return True
    # A bare fragment ("auth/") matches anywhere in the path
    if not any(ch in pattern for ch in "*?["):
        return pattern in path
    return False


@dataclass(frozen=True)
class ScopeFilter:
    """Conditions applied on top of the mandatory project scope."""

    memory_classes: Tuple[str, ...] = ()
    kinds: Tuple[str, ...] = ()
    pattern_tags: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()
    equals: Tuple[Tuple[str, Any], ...] = ()
    file_glob: Optional[str] = None
    not_expired_at: Optional[float] = None

    def matches(self, payload: Dict[str, Any]) -> bool:
        if self.memory_classes and payload.get("memory_class") not in self.memory_classes:
            return False
        if self.kinds and payload.get("kind") not in self.kinds:
            return False
        if self.pattern_tags and not set(self.pattern_tags) & set(
            payload.get("pattern_tags") or ()
        ):
            return False
        if self.dependencies and not set(self.dependencies) & set(
            payload.get("dependencies") or ()
        ):
            return False
        for key, expected in self.equals:
            if get_path(payload, key) != expected:
                return False
        if self.not_expired_at is not None:
            expires_at = payload.get("expires_at")
            if expires_at is not None and expires_at < self.not_expired_at:
                return False
        if self.file_glob and not glob_match(
            str(payload.get("file_path") or ""), self.file_glob
        ):
            return False
        return True


@dataclass(frozen=True)
class PipelineRequest:
    """One retrieval pipeline: what to rank by and how many results to return."""

    name: str
    limit: int
    vector: Optional[List[float]] = None
    candidates: int = 0
    terms: Tuple[str, ...] = ()
    scan_limit: int = 256
    since: Optional[float] = None
    min_access: Optional[int] = None


@dataclass
class CollectionStatus:
    name: str
    exists: bool
    ready: bool
    points: int = 0
    payload_indexes: List[str] = field(default_factory=list)
    vector_size: Optional[int] = None


@runtime_checkable
class DocumentStore(Protocol):
    """Backing store for memory documents and code chunks."""

    @property
    def supports_native_fusion(self) -> bool:
        """True when ``multi_search`` can run all pipelines as one store request."""
        ...

    # ---- index / collection lifecycle ----
    async def create_collection(self, schema: CollectionSchema) -> bool:
        """Create the collection; return False when it already existed."""
        ...

    async def create_payload_index(self, collection: str, field_name: str, field_schema: Any) -> bool:
        """Create a payload index; return False when it already existed."""
        ...

    async def drop_collection(self, collection: str) -> None:
        ...

    async def collection_status(self, collection: str) -> CollectionStatus:
        ...

    # ---- CRUD ----
    async def upsert(self, collection: str, project_id: str, records: Sequence[StoreRecord]) -> int:
        ...

    async def get(self, collection: str, project_id: str, ids: Sequence[str]) -> List[StoreRecord]:
        ...

    async def find(
        self,
        collection: str,
        project_id: str,
        scope: ScopeFilter,
        limit: int,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[StoreRecord]:
        ...

    async def count(self, collection: str, project_id: str, scope: ScopeFilter) -> int:
        ...

    async def delete(self, collection: str, project_id: str, ids: Sequence[str]) -> None:
        ...

    async def delete_file_chunks(
        self, collection: str, project_id: str, file_path: str, keep_ids: Sequence[str]
    ) -> None:
        ...

    async def file_index_times(self, collection: str, project_id: str) -> Dict[str, float]:
        """file_path -> source mtime recorded when its chunks were indexed."""
        ...

    async def touch(self, collection: str, project_id: str, ids: Sequence[str], now: float) -> None:
        """Increment access_count and set freshness for each id."""
        ...

    # ---- retrieval ----
    async def run_pipeline(
        self, collection: str, project_id: str, request: PipelineRequest, scope: ScopeFilter
    ) -> List[StoreHit]:
        ...

    async def multi_search(
        self,
        collection: str,
        project_id: str,
        requests: Sequence[PipelineRequest],
        scope: ScopeFilter,
    ) -> Dict[str, List[StoreHit]]:
        """
        Native multi-pipeline query.

        Raises:
            FusionUnsupported: the store cannot serve a combined request
            IndexNotReady: a required index or collection is still building
        """
        ...

    async def close(self) -> None:
        ...
