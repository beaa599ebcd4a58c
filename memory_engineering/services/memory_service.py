"""
Memory document lifecycle.

Core memories are per-project singletons addressed by name: every update
bumps ``version`` under a per-(project, name) lock, so concurrent updates
serialise and none is lost. Embedding happens before the lock is taken.
Event memories (working, insight) are append-only; working memories expire.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from memory_engineering.providers.embeddings.base import EmbeddingProvider
from memory_engineering.shared.config import MemoryConfig
from memory_engineering.shared.errors import MemoryEngineError, NotFound
from memory_engineering.shared.execution_state import KeyedLocks
from memory_engineering.shared.observability import get_logger
from memory_engineering.shared.records import (
    CORE_MEMORY_NAMES,
    MEMORY_CLASS_CORE,
    MEMORY_CLASS_WORKING,
    MEMORY_CLASSES,
    IndexReport,
    MemoryDocument,
    StoreRecord,
    stable_id,
)
from memory_engineering.store.base import DocumentStore, ScopeFilter

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400.0
CODE_STATISTICS_HEADING = "### Code Statistics"

CORE_SECTIONS: Dict[str, Tuple[str, ...]] = {
    "projectbrief": ("Core Requirements", "Project Scope", "Success Criteria", "Key Features"),
    "productContext": ("Problem Being Solved", "Target Users", "User Journey", "Expected Impact"),
    "activeContext": ("Current Work Session", "Recent Actions", "Key Decisions Made", "Next Immediate Steps"),
    "systemPatterns": ("High-Level Architecture", "Key Design Patterns", "Component Relationships", "Data Flow"),
    "techContext": ("Core Technology Stack", "Key Dependencies", "Development Setup", "Technical Constraints"),
    "progress": ("Completed Features", "Currently In Progress", "TODO Queue", "Known Issues"),
    "codebaseMap": ("Directory Layout", "Key Files and Their Purposes", "Entry Points", "Code Statistics"),
}


def placeholder_content(name: str, display_name: str = "") -> str:
    title = f"# {name}" + (f": {display_name}" if display_name else "")
    sections = CORE_SECTIONS.get(name, ())
    body = "\n\n".join(f"### {section}\n\n_Not documented yet._" for section in sections)
    return f"{title}\n\n{body}\n" if body else f"{title}\n"


def render_code_statistics(report: IndexReport, now: float) -> str:
    synced = datetime.fromtimestamp(now, tz=timezone.utc).isoformat(timespec="seconds")
    lines = [
        CODE_STATISTICS_HEADING,
        "",
        f"- Files processed: {report.files_processed}",
        f"- Files unchanged: {report.files_skipped}",
        f"- Chunks created: {report.chunks_created}",
        f"- Errors: {len(report.errors)}",
        f"- Last sync: {synced}",
    ]
    if report.pattern_counts:
        top = sorted(report.pattern_counts.items(), key=lambda item: (-item[1], item[0]))[:10]
        lines.append("- Patterns: " + ", ".join(f"{tag} ({count})" for tag, count in top))
    return "\n".join(lines)


def replace_section(content: str, heading: str, section: str) -> str:
    """Replace the ``heading`` section (up to the next heading) or append it."""
    pattern = re.compile(
        rf"^{re.escape(heading)}\s*$.*?(?=^#{{1,3}} |\Z)", re.MULTILINE | re.DOTALL
    )
    if pattern.search(content):
        return pattern.sub(lambda _: section.rstrip() + "\n\n", content, count=1).rstrip() + "\n"
    return content.rstrip() + "\n\n" + section.rstrip() + "\n"


class MemoryService:
    def __init__(
        self,
        store: DocumentStore,
        embedder_getter: Callable[[], EmbeddingProvider],
        *,
        collection: str,
        config: Optional[MemoryConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._embedder_getter = embedder_getter
        self.collection = collection
        self.config = config or MemoryConfig()
        self._clock = clock
        self._locks = KeyedLocks()

    def _lock(self, project_id: str, name: str):
        return self._locks.hold((project_id, name))

    async def _embed(self, text: str) -> Optional[List[float]]:
        """Vector for memory text, or None when the provider could not produce one."""
        try:
            result = await self._embedder_getter().embed_documents([text])
        except MemoryEngineError as exc:
            logger.warning(
                "Memory embedding failed; stored without vector",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        if not result.ok:
            logger.warning("Memory embedding flagged", flagged=result.flagged)
            return None
        return result.vectors[0]

    async def _write(self, doc: MemoryDocument) -> None:
        payload = doc.to_payload()
        if doc.embedding is None:
            payload["embedding_stale"] = True
        await self.store.upsert(
            self.collection,
            doc.project_id,
            [StoreRecord(id=doc.id, payload=payload, vector=doc.embedding)],
        )

    async def initialize_core(self, project_id: str, display_name: str = "") -> List[str]:
        """Create missing core memories; return the names created."""
        ids = {name: stable_id(project_id, MEMORY_CLASS_CORE, name) for name in CORE_MEMORY_NAMES}
        existing = {
            record.payload.get("name")
            for record in await self.store.get(self.collection, project_id, list(ids.values()))
        }
        missing = [name for name in CORE_MEMORY_NAMES if name not in existing]
        if not missing:
            return []
        contents = [placeholder_content(name, display_name) for name in missing]
        vectors: List[Optional[List[float]]] = [None] * len(missing)
        try:
            result = await self._embedder_getter().embed_documents(
                [f"{name}\n{content}" for name, content in zip(missing, contents)]
            )
            vectors = [
                vector if idx not in result.flagged else None
                for idx, vector in enumerate(result.vectors)
            ]
        except MemoryEngineError as exc:
            logger.warning("Core memory embedding failed; stored without vectors", error=str(exc))

        now = self._clock()
        for name, content, vector in zip(missing, contents, vectors):
            async with self._lock(project_id, name):
                await self._write(
                    MemoryDocument(
                        project_id=project_id,
                        name=name,
                        content=content,
                        memory_class=MEMORY_CLASS_CORE,
                        importance=self.config.default_importance,
                        created_at=now,
                        updated_at=now,
                        freshness=now,
                        embedding=vector,
                    )
                )
        logger.info("Core memories created", project_id=project_id, names=missing)
        return missing

    async def upsert_memory(
        self,
        project_id: str,
        name: str,
        content: str,
        *,
        memory_class: str = MEMORY_CLASS_CORE,
        importance: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryDocument:
        if not name or not name.strip():
            raise ValueError("Memory name must not be empty.")
        if memory_class not in MEMORY_CLASSES:
            raise ValueError(f"Unknown memory class '{memory_class}'. Use one of {MEMORY_CLASSES}.")
        if importance is not None and not 1 <= importance <= 10:
            raise ValueError(f"importance must be within 1..10, got {importance}")

        vector = await self._embed(f"{name}\n{content}")

        if memory_class != MEMORY_CLASS_CORE:
            now = self._clock()
            doc = MemoryDocument(
                project_id=project_id,
                name=name,
                content=content,
                memory_class=memory_class,
                importance=importance or self.config.default_importance,
                created_at=now,
                updated_at=now,
                freshness=now,
                expires_at=(
                    now + self.config.working_ttl_days * SECONDS_PER_DAY
                    if memory_class == MEMORY_CLASS_WORKING
                    else None
                ),
                metadata=dict(metadata or {}),
                embedding=vector,
            )
            await self._write(doc)
            return doc

        async with self._lock(project_id, name):
            doc_id = stable_id(project_id, MEMORY_CLASS_CORE, name)
            found = await self.store.get(self.collection, project_id, [doc_id])
            now = self._clock()
            if found:
                previous = MemoryDocument.from_payload(found[0].payload)
                doc = MemoryDocument(
                    id=doc_id,
                    project_id=project_id,
                    name=name,
                    content=content,
                    memory_class=MEMORY_CLASS_CORE,
                    importance=importance or previous.importance,
                    access_count=previous.access_count,
                    version=previous.version + 1,
                    created_at=previous.created_at,
                    updated_at=now,
                    freshness=now,
                    metadata={**previous.metadata, **(metadata or {})},
                    embedding=vector,
                )
            else:
                doc = MemoryDocument(
                    id=doc_id,
                    project_id=project_id,
                    name=name,
                    content=content,
                    memory_class=MEMORY_CLASS_CORE,
                    importance=importance or self.config.default_importance,
                    created_at=now,
                    updated_at=now,
                    freshness=now,
                    metadata=dict(metadata or {}),
                    embedding=vector,
                )
            await self._write(doc)

        logger.info(
            "Memory updated",
            project_id=project_id,
            name=name,
            version=doc.version,
            embedded=vector is not None,
        )
        return doc

    async def get_memory(self, project_id: str, name: str) -> MemoryDocument:
        """Core memory by name, else the newest event memory with that name."""
        found = await self.store.get(
            self.collection, project_id, [stable_id(project_id, MEMORY_CLASS_CORE, name)]
        )
        if not found:
            found = await self.store.find(
                self.collection,
                project_id,
                ScopeFilter(equals=(("name", name),), not_expired_at=self._clock()),
                limit=1,
                order_by="created_at",
            )
        if not found:
            raise NotFound(f"Memory '{name}' does not exist for this project.")
        return MemoryDocument.from_payload(found[0].payload)

    async def list_memories(
        self, project_id: str, memory_class: Optional[str] = None, limit: int = 100
    ) -> List[MemoryDocument]:
        scope = ScopeFilter(
            memory_classes=(memory_class,) if memory_class else (),
            not_expired_at=self._clock(),
        )
        records = await self.store.find(
            self.collection, project_id, scope, limit=limit, order_by="updated_at"
        )
        return [MemoryDocument.from_payload(record.payload) for record in records]

    async def update_codebase_map(self, project_id: str, report: IndexReport) -> MemoryDocument:
        try:
            current = (await self.get_memory(project_id, "codebaseMap")).content
        except NotFound:
            current = placeholder_content("codebaseMap")
        section = render_code_statistics(report, self._clock())
        return await self.upsert_memory(
            project_id,
            "codebaseMap",
            replace_section(current, CODE_STATISTICS_HEADING, section),
        )
