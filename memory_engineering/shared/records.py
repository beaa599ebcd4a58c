"""
Record types shared by ingestion, the stores and the query planner.

Timestamps are epoch seconds (float) so the stores can range-filter and order
on them without conversions.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

from memory_engineering.shared.text import memory_searchable_text, split_identifier

DOC_TYPE_MEMORY = "memory"
DOC_TYPE_CODE = "code"

MEMORY_CLASS_CORE = "core"
MEMORY_CLASS_WORKING = "working"
MEMORY_CLASS_INSIGHT = "insight"
MEMORY_CLASS_TELEMETRY = "telemetry"
EVENT_MEMORY_CLASSES = (MEMORY_CLASS_WORKING, MEMORY_CLASS_INSIGHT, MEMORY_CLASS_TELEMETRY)
MEMORY_CLASSES = (MEMORY_CLASS_CORE,) + EVENT_MEMORY_CLASSES

CORE_MEMORY_NAMES = (
    "projectbrief",
    "productContext",
    "activeContext",
    "systemPatterns",
    "techContext",
    "progress",
    "codebaseMap",
)

CHUNK_KINDS = ("function", "class", "method", "module", "other")

_ID_NAMESPACE = uuid.UUID("6f0c1d2e-8a44-4c1b-9a55-5d0f7d1c2b10")


def stable_id(*parts: Any) -> str:
    """Deterministic UUID string for store point ids."""
    return str(uuid.uuid5(_ID_NAMESPACE, "|".join(str(p) for p in parts)))


@dataclass
class CodeChunk:
    project_id: str
    file_path: str
    start_line: int
    end_line: int
    kind: str
    name: str
    signature: str
    content: str
    context: str = ""
    pattern_tags: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    last_modified: float = field(default_factory=time.time)
    indexed_at: float = field(default_factory=time.time)
    access_count: int = 0
    embedding: Optional[List[float]] = None
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = stable_id(
                self.project_id, self.file_path, self.start_line, self.kind, self.name
            )

    @property
    def size(self) -> int:
        """Chunk size in lines, inclusive of both ends."""
        return self.end_line - self.start_line + 1

    @property
    def searchable_text(self) -> str:
        ext = PurePosixPath(self.file_path).suffix
        parts = [
            self.name,
            split_identifier(self.name),
            self.kind,
            ext,
            self.signature,
            " ".join(self.pattern_tags),
        ]
        return " ".join(part for part in parts if part)

    def embedding_text(self) -> str:
        """Composite text handed to the embedding provider."""
        patterns = ", ".join(self.pattern_tags) or "none"
        return (
            f"{self.signature or self.name}\n{self.content}\n"
            f"File: {self.file_path} | Type: {self.kind} | Patterns: {patterns}"
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("embedding", None)
        payload.update(
            {
                "doc_type": DOC_TYPE_CODE,
                "size": self.size,
                "searchable_text": self.searchable_text,
                "freshness": self.indexed_at,
            }
        )
        return payload

    @classmethod
    def from_payload(
        cls, payload: Dict[str, Any], embedding: Optional[List[float]] = None
    ) -> "CodeChunk":
        fields = {
            key: payload[key]
            for key in cls.__dataclass_fields__
            if key in payload and key != "embedding"
        }
        return cls(embedding=embedding, **fields)


@dataclass
class MemoryDocument:
    project_id: str
    name: str
    content: str
    memory_class: str = MEMORY_CLASS_CORE
    importance: int = 5
    access_count: int = 0
    version: int = 1
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    freshness: float = field(default_factory=time.time)
    expires_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            if self.memory_class == MEMORY_CLASS_CORE:
                # Core memories are singletons per (project, name)
                self.id = stable_id(self.project_id, MEMORY_CLASS_CORE, self.name)
            else:
                self.id = str(uuid.uuid4())

    @property
    def searchable_text(self) -> str:
        return memory_searchable_text(self.name, self.content)

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("embedding", None)
        payload.update(
            {"doc_type": DOC_TYPE_MEMORY, "searchable_text": self.searchable_text}
        )
        return payload

    @classmethod
    def from_payload(
        cls, payload: Dict[str, Any], embedding: Optional[List[float]] = None
    ) -> "MemoryDocument":
        fields = {
            key: payload[key]
            for key in cls.__dataclass_fields__
            if key in payload and key != "embedding"
        }
        return cls(embedding=embedding, **fields)


@dataclass
class StoreRecord:
    """A point as written to the store: id, optional vector, payload."""

    id: str
    payload: Dict[str, Any]
    vector: Optional[List[float]] = None


@dataclass
class StoreHit:
    """A point as returned from one retrieval pipeline."""

    id: str
    score: float
    payload: Dict[str, Any]


@dataclass
class FusedHit:
    id: str
    fused_score: float
    payload: Dict[str, Any]
    pipelines: Dict[str, int] = field(default_factory=dict)  # pipeline -> 1-based rank
    semantic_score: Optional[float] = None

    @property
    def freshness(self) -> float:
        return float(self.payload.get("freshness") or 0.0)


@dataclass
class SearchResult:
    id: str
    kind: str
    name: str
    score: float
    fused_score: float
    snippet: str
    pipelines: Dict[str, int] = field(default_factory=dict)
    semantic_score: Optional[float] = None
    freshness: Optional[float] = None
    rerank_score: Optional[float] = None
    original_rank: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IndexReport:
    files_processed: int = 0
    files_skipped: int = 0
    chunks_created: int = 0
    errors: List[str] = field(default_factory=list)
    pattern_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
