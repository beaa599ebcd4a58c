"""
MemoryEngine: the operation surface used by tool adapters.

Every operation takes a project path, resolves it to the persisted project
record and scopes all store access to that project's id. The embedding
provider is created on first use so that operations which never embed
(status, index management) work without credentials.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from memory_engineering.ingestion.code_indexer import CodeIndexer
from memory_engineering.providers.embeddings.base import EmbeddingProvider
from memory_engineering.providers.factory import ProviderFactory
from memory_engineering.providers.rerank.base import RerankProvider
from memory_engineering.query.planner import HybridQueryPlanner, SearchFilters, SearchRequest
from memory_engineering.query.telemetry import QueryTelemetry
from memory_engineering.registry.index_registry import IndexManager
from memory_engineering.services.memory_service import MemoryService
from memory_engineering.shared.config import (
    Config,
    Settings,
    get_config,
    get_embedding_settings,
    get_rerank_settings,
    get_settings,
)
from memory_engineering.shared.execution_state import ExecutionGuard
from memory_engineering.shared.models import ProjectRecord
from memory_engineering.shared.observability import get_logger, set_correlation_id
from memory_engineering.shared.project import (
    ensure_project_record,
    find_project_root,
    load_project_record,
)
from memory_engineering.shared.qdrant_schema import build_schemas
from memory_engineering.shared.records import (
    MEMORY_CLASS_CORE,
    IndexReport,
    SearchResult,
)
from memory_engineering.shared.resilience import CircuitBreaker
from memory_engineering.store.base import DocumentStore
from memory_engineering.store.memory_store import InMemoryDocumentStore

logger = get_logger(__name__)

PathLike = Union[str, Path]

OP_INITIALIZE = "initialize_project"
OP_INDEX = "index_project"


class MemoryEngine:
    def __init__(
        self,
        store: DocumentStore,
        *,
        config: Config,
        embedder: Optional[EmbeddingProvider] = None,
        embedder_factory: Optional[Callable[[], EmbeddingProvider]] = None,
        reranker: Optional[RerankProvider] = None,
        guard: Optional[ExecutionGuard] = None,
        clock: Callable[[], float] = time.time,
    ):
        if embedder is None and embedder_factory is None:
            raise ValueError("MemoryEngine needs an embedder or an embedder_factory")
        self.config = config
        self.store = store
        self._embedder = embedder
        self._embedder_factory = embedder_factory
        self.reranker = reranker
        self._clock = clock
        self.guard = guard or ExecutionGuard(
            max_calls=config.execution.max_calls,
            window_seconds=config.execution.window_seconds,
            max_entries=config.execution.max_entries,
        )
        self.index_manager = IndexManager(
            store,
            build_schemas(config),
            retry_delays=config.indexes.retry_delays_seconds,
        )
        self.telemetry = QueryTelemetry(
            store, config.store.memory_collection, config.telemetry, clock=clock
        )
        self.memories = MemoryService(
            store,
            lambda: self.embedder,
            collection=config.store.memory_collection,
            config=config.memory,
            clock=clock,
        )
        self._native_breaker = CircuitBreaker(name="native-fusion")
        self._planner: Optional[HybridQueryPlanner] = None
        self._indexer: Optional[CodeIndexer] = None

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        settings: Optional[Settings] = None,
        *,
        store: Optional[DocumentStore] = None,
    ) -> "MemoryEngine":
        """Build an engine with providers and store selected by configuration."""
        config = config or get_config()
        settings = settings or get_settings()

        if store is None:
            if config.store.backend == "memory":
                store = InMemoryDocumentStore(
                    native_fusion=config.search.hybrid.native_fusion
                )
            else:
                from memory_engineering.store.qdrant_store import QdrantDocumentStore

                store = QdrantDocumentStore.from_settings(
                    settings.qdrant_url,
                    build_schemas(config),
                    api_key=settings.qdrant_api_key,
                    timeout=config.store.timeout_seconds,
                    native_fusion=config.search.hybrid.native_fusion,
                )

        def embedder_factory() -> EmbeddingProvider:
            return ProviderFactory.create_embedding_provider(
                get_embedding_settings(config),
                api_key=settings.voyage_api_key,
                base_url=settings.voyage_api_base_url,
            )

        rerank_kwargs: Dict[str, Any] = {}
        if settings.voyage_api_key:
            rerank_kwargs["api_key"] = settings.voyage_api_key
        reranker = ProviderFactory.create_rerank_provider(
            get_rerank_settings(config), **rerank_kwargs
        )
        return cls(store, config=config, embedder_factory=embedder_factory, reranker=reranker)

    # ---- wiring ----
    @property
    def embedder(self) -> EmbeddingProvider:
        if self._embedder is None:
            self._embedder = self._embedder_factory()
            logger.info(
                "Embedding provider ready",
                provider=self._embedder.provider_name,
                model=self._embedder.model_id,
                dims=self._embedder.dims,
            )
        return self._embedder

    @property
    def planner(self) -> HybridQueryPlanner:
        if self._planner is None:
            self._planner = HybridQueryPlanner(
                self.store,
                self.embedder,
                config=self.config,
                reranker=self.reranker,
                telemetry=self.telemetry,
                native_breaker=self._native_breaker,
                clock=self._clock,
            )
        return self._planner

    @property
    def indexer(self) -> CodeIndexer:
        if self._indexer is None:
            self._indexer = CodeIndexer(
                self.store,
                self.embedder,
                collection=self.config.store.code_collection,
                config=self.config.ingestion,
            )
        return self._indexer

    def _resolve(self, project_path: PathLike) -> Tuple[Path, ProjectRecord]:
        root = find_project_root(project_path)
        return root, load_project_record(root, self.config.app.project_dir_name)

    async def _ensure_ready(self) -> None:
        if self.index_manager.rechecking:
            return
        if not all(self.index_manager.is_ensured(s.name) for s in self.index_manager.schemas):
            await self.ensure_indexes()

    # ---- operations ----
    async def start(self) -> Dict[str, str]:
        """Ensure indexes at startup; pending ones are re-checked in the background."""
        if not self.config.indexes.ensure_on_startup:
            return {}
        return await self.ensure_indexes()

    async def initialize_project(
        self, project_path: PathLike, display_name: Optional[str] = None
    ) -> Dict[str, Any]:
        set_correlation_id()
        root = Path(project_path).expanduser().resolve()
        record = ensure_project_record(root, display_name, self.config.app.project_dir_name)
        self.guard.record_call(OP_INITIALIZE, record.project_id)
        await self._ensure_ready()
        created = await self.memories.initialize_core(record.project_id, record.display_name)
        logger.info(
            "Project initialized",
            project_id=record.project_id,
            root=str(root),
            core_created=len(created),
        )
        return {
            "project_id": record.project_id,
            "display_name": record.display_name,
            "created": created,
        }

    async def index_project(
        self,
        project_path: PathLike,
        *,
        patterns: Optional[Sequence[str]] = None,
        excludes: Optional[Sequence[str]] = None,
        min_chunk_size: Optional[int] = None,
        force_regenerate: bool = False,
        include_tests: bool = False,
    ) -> IndexReport:
        set_correlation_id()
        root, record = self._resolve(project_path)
        self.guard.record_call(OP_INDEX, record.project_id)
        await self._ensure_ready()
        self.index_manager.enforce_compatibility(self.config.store.code_collection, self.embedder)
        report = await self.indexer.index_project(
            record.project_id,
            root,
            patterns=patterns,
            excludes=excludes,
            min_chunk_size=min_chunk_size,
            force_regenerate=force_regenerate,
            include_tests=include_tests,
        )
        # Files with no chunks are re-read every run; only new chunks refresh the map
        if report.chunks_created:
            await self.memories.update_codebase_map(record.project_id, report)
        return report

    async def search(
        self,
        project_path: PathLike,
        query: str,
        *,
        mode: str = "fused",
        limit: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchResult]:
        set_correlation_id()
        _, record = self._resolve(project_path)
        await self._ensure_ready()
        request = SearchRequest(
            project_id=record.project_id,
            query=query,
            mode=mode,
            limit=limit or self.config.search.default_limit,
            filters=filters or SearchFilters(),
        )
        return await self.planner.search(request)

    async def upsert_memory(
        self,
        project_path: PathLike,
        name: str,
        content: str,
        *,
        memory_class: str = MEMORY_CLASS_CORE,
        importance: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        set_correlation_id()
        _, record = self._resolve(project_path)
        await self._ensure_ready()
        doc = await self.memories.upsert_memory(
            record.project_id,
            name,
            content,
            memory_class=memory_class,
            importance=importance,
            metadata=metadata,
        )
        return {"id": doc.id, "name": doc.name, "version": doc.version}

    async def get_memory(self, project_path: PathLike, name: str) -> str:
        set_correlation_id()
        _, record = self._resolve(project_path)
        return (await self.memories.get_memory(record.project_id, name)).content

    async def list_memories(
        self, project_path: PathLike, memory_class: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        _, record = self._resolve(project_path)
        docs = await self.memories.list_memories(record.project_id, memory_class, limit)
        return [
            {
                "name": doc.name,
                "memory_class": doc.memory_class,
                "version": doc.version,
                "updated_at": doc.updated_at,
            }
            for doc in docs
        ]

    async def ensure_indexes(self) -> Dict[str, str]:
        outcomes = await self.index_manager.ensure_indexes()
        self.index_manager.schedule_background_checks()
        return outcomes

    async def recreate_indexes(self) -> Dict[str, str]:
        return await self.index_manager.recreate_indexes()

    async def index_status(self) -> List[Dict]:
        return await self.index_manager.status()

    async def drain(self) -> None:
        if self._planner is not None:
            await self._planner.drain()

    async def close(self) -> None:
        await self.drain()
        await self.index_manager.aclose()
        if self._embedder is not None:
            await self._embedder.aclose()
        if self.reranker is not None:
            await self.reranker.aclose()
        await self.store.close()
