"""
Hybrid query planner.

Per query: accept -> embed -> fan out pipelines -> fuse -> rerank window ->
respond, then dispatch side effects (access counters, telemetry) as
background tasks that never delay or fail the response.

Native path: the store answers all pipelines in one request
(``multi_search``) and rankings are fused with weighted RRF.
Fallback path (native fusion unsupported, index not ready, timeout, error):
each pipeline runs on its own with a timeout, failures count as empty
rankings, and the lists are merged with the configured policy
(``first_seen`` or ``minmax``), deduplicated by id.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence, Set, Tuple

from memory_engineering.providers.embeddings.base import EmbeddingProvider
from memory_engineering.providers.rerank.base import RerankProvider
from memory_engineering.query.code_search import (
    CODE_SEARCH_VARIANTS,
    CodeSearchPlan,
    plan_code_search,
)
from memory_engineering.query.fusion import (
    merge_first_seen,
    merge_minmax,
    merge_rankings,
    weighted_rrf,
)
from memory_engineering.query.pipelines import (
    MODE_FUSED,
    MODE_PIPELINES,
    MODE_TEMPORAL,
    MODES,
    build_requests,
    weights_for,
)
from memory_engineering.query.telemetry import QueryTelemetry
from memory_engineering.shared.config import Config
from memory_engineering.shared.errors import MemoryEngineError
from memory_engineering.shared.observability import get_logger
from memory_engineering.shared.observability.metrics import (
    search_latency_ms,
    search_pipeline_failures_total,
    search_requests_total,
    search_results_count,
    search_side_effect_failures_total,
)
from memory_engineering.shared.records import (
    DOC_TYPE_CODE,
    DOC_TYPE_MEMORY,
    MEMORY_CLASS_CORE,
    MEMORY_CLASS_INSIGHT,
    MEMORY_CLASS_WORKING,
    FusedHit,
    SearchResult,
    StoreHit,
)
from memory_engineering.shared.resilience import CircuitBreaker
from memory_engineering.shared.text import snippet, tokenize
from memory_engineering.store.base import (
    SEMANTIC,
    DocumentStore,
    PipelineRequest,
    ScopeFilter,
)

logger = get_logger(__name__)

SCOPE_ALL = "all"
SCOPE_MEMORY = "memory"
SCOPE_CODE = "code"
SCOPES = (SCOPE_ALL, SCOPE_MEMORY, SCOPE_CODE)

PATH_NATIVE = "native"
PATH_FALLBACK = "fallback"
PATH_DIRECT = "direct"

SEARCHABLE_MEMORY_CLASSES = (MEMORY_CLASS_CORE, MEMORY_CLASS_WORKING, MEMORY_CLASS_INSIGHT)


@dataclass
class SearchFilters:
    scope: str = SCOPE_ALL
    memory_class: Optional[str] = None
    file_path: Optional[str] = None  # glob over chunk file paths
    code_search: Optional[str] = None


@dataclass
class SearchRequest:
    project_id: str
    query: str
    mode: str = MODE_FUSED
    limit: int = 10
    filters: SearchFilters = field(default_factory=SearchFilters)


@dataclass(frozen=True)
class SearchTarget:
    collection: str
    scope: ScopeFilter


@dataclass
class QueryPlan:
    pipelines: Tuple[str, ...]
    weights: Dict[str, float]
    targets: List[SearchTarget]
    terms: Tuple[str, ...]
    code_plan: Optional[CodeSearchPlan] = None


class HybridQueryPlanner:
    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingProvider,
        *,
        config: Config,
        reranker: Optional[RerankProvider] = None,
        telemetry: Optional[QueryTelemetry] = None,
        native_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config
        self.hybrid = config.search.hybrid
        self.reranker = reranker
        self.telemetry = telemetry
        self.native_breaker = native_breaker or CircuitBreaker(name="native-fusion")
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    # ---- planning ----
    def _validate(self, request: SearchRequest) -> SearchRequest:
        if request.mode not in MODES:
            raise ValueError(f"Unknown search mode '{request.mode}'. Use one of {MODES}.")
        filters = request.filters
        if filters.scope not in SCOPES:
            raise ValueError(f"Unknown search scope '{filters.scope}'. Use one of {SCOPES}.")
        if filters.code_search and filters.code_search not in CODE_SEARCH_VARIANTS:
            raise ValueError(
                f"Unknown code search variant '{filters.code_search}'. "
                f"Use one of {CODE_SEARCH_VARIANTS}."
            )
        if request.mode != MODE_TEMPORAL and not request.query.strip():
            raise ValueError("Search query must not be empty.")
        request.limit = max(1, min(request.limit, self.config.search.max_limit))
        return request

    def plan(self, request: SearchRequest) -> QueryPlan:
        filters = request.filters
        now = self._clock()
        terms = tokenize(request.query)

        code_plan = None
        if filters.code_search:
            code_plan = plan_code_search(filters.code_search, request.query)
            pipelines = code_plan.pipelines
            terms = terms + [t for t in tokenize(" ".join(code_plan.pattern_tags)) if t not in terms]
            scopes = [SCOPE_CODE]
        else:
            pipelines = MODE_PIPELINES[request.mode]
            scopes = [SCOPE_MEMORY, SCOPE_CODE] if filters.scope == SCOPE_ALL else [filters.scope]
        if filters.memory_class and not filters.code_search:
            scopes = [SCOPE_MEMORY]

        targets = []
        for scope in scopes:
            if scope == SCOPE_MEMORY:
                classes = (filters.memory_class,) if filters.memory_class else SEARCHABLE_MEMORY_CLASSES
                targets.append(
                    SearchTarget(
                        self.config.store.memory_collection,
                        ScopeFilter(memory_classes=classes, not_expired_at=now),
                    )
                )
            else:
                targets.append(
                    SearchTarget(
                        self.config.store.code_collection,
                        ScopeFilter(
                            kinds=code_plan.kinds if code_plan else (),
                            pattern_tags=code_plan.pattern_tags if code_plan else (),
                            dependencies=code_plan.dependencies if code_plan else (),
                            file_glob=filters.file_path,
                        ),
                    )
                )
        return QueryPlan(
            pipelines=tuple(pipelines),
            weights=weights_for(pipelines, self.hybrid),
            targets=targets,
            terms=tuple(dict.fromkeys(terms)),
            code_plan=code_plan,
        )

    # ---- execution ----
    async def search(self, request: SearchRequest) -> List[SearchResult]:
        request = self._validate(request)
        plan = self.plan(request)
        start_time = time.time()

        vector = None
        if SEMANTIC in plan.pipelines:
            vector = await self.embedder.embed_query(request.query)

        requests = build_requests(
            plan.pipelines,
            request.limit,
            self.hybrid,
            now=self._clock(),
            vector=vector,
            terms=plan.terms,
        )
        rankings, path = await self._retrieve(request.project_id, plan, requests)

        if path == PATH_FALLBACK and self.hybrid.fallback_merge == "minmax":
            fused = merge_minmax(rankings, plan.weights, limit=request.limit)
        elif path == PATH_FALLBACK:
            fused = merge_first_seen(rankings, k=self.hybrid.rrf_k, limit=request.limit)
        else:
            fused = weighted_rrf(rankings, plan.weights, k=self.hybrid.rrf_k, limit=request.limit)

        results = [self._to_result(hit) for hit in fused]
        results = await self._rerank(request.query, results)

        latency_ms = (time.time() - start_time) * 1000
        search_requests_total.labels(mode=request.mode, path=path).inc()
        search_latency_ms.labels(mode=request.mode).observe(latency_ms)
        search_results_count.observe(len(results))
        logger.info(
            "Search complete",
            project_id=request.project_id,
            mode=request.mode,
            code_search=request.filters.code_search,
            path=path,
            results=len(results),
            latency_ms=round(latency_ms, 2),
        )

        self._dispatch_side_effects(request, results, path, latency_ms)
        return results

    async def _retrieve(
        self,
        project_id: str,
        plan: QueryPlan,
        requests: Sequence[PipelineRequest],
    ) -> Tuple[Dict[str, List[StoreHit]], str]:
        if len(requests) == 1:
            per_target = await asyncio.gather(
                *(self._run_isolated(project_id, target, requests) for target in plan.targets)
            )
            return self._combine(requests, per_target), PATH_DIRECT

        if (
            self.hybrid.native_fusion
            and self.store.supports_native_fusion
            and self.native_breaker.allow_request()
        ):
            try:
                per_target = await asyncio.wait_for(
                    asyncio.gather(
                        *(
                            self.store.multi_search(
                                target.collection, project_id, requests, target.scope
                            )
                            for target in plan.targets
                        )
                    ),
                    timeout=self.hybrid.pipeline_timeout_seconds,
                )
                self.native_breaker.record_success()
                return self._combine(requests, per_target), PATH_NATIVE
            except (MemoryEngineError, asyncio.TimeoutError) as exc:
                self.native_breaker.record_failure()
                logger.warning(
                    "Native fusion unavailable; running pipelines independently",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        per_target = await asyncio.gather(
            *(self._run_isolated(project_id, target, requests) for target in plan.targets)
        )
        return self._combine(requests, per_target), PATH_FALLBACK

    async def _run_isolated(
        self,
        project_id: str,
        target: SearchTarget,
        requests: Sequence[PipelineRequest],
    ) -> Dict[str, List[StoreHit]]:
        results = await asyncio.gather(
            *(self._run_one(project_id, target, req) for req in requests)
        )
        return {req.name: hits for req, hits in zip(requests, results)}

    async def _run_one(
        self, project_id: str, target: SearchTarget, request: PipelineRequest
    ) -> List[StoreHit]:
        try:
            return await asyncio.wait_for(
                self.store.run_pipeline(target.collection, project_id, request, target.scope),
                timeout=self.hybrid.pipeline_timeout_seconds,
            )
        except Exception as exc:
            # One failing pipeline must not empty the whole response
            search_pipeline_failures_total.labels(
                pipeline=request.name, error_type=type(exc).__name__
            ).inc()
            logger.warning(
                "Pipeline failed; continuing without it",
                pipeline=request.name,
                collection=target.collection,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return []

    @staticmethod
    def _combine(
        requests: Sequence[PipelineRequest],
        per_target: Sequence[Dict[str, List[StoreHit]]],
    ) -> Dict[str, List[StoreHit]]:
        if len(per_target) == 1:
            return {req.name: list(per_target[0].get(req.name, [])) for req in requests}
        return {
            req.name: merge_rankings(
                (rankings.get(req.name, []) for rankings in per_target), req.limit
            )
            for req in requests
        }

    # ---- results ----
    @staticmethod
    def _to_result(hit: FusedHit) -> SearchResult:
        payload = hit.payload
        kind = payload.get("doc_type") or DOC_TYPE_MEMORY
        return SearchResult(
            id=hit.id,
            kind=kind,
            name=str(payload.get("name") or ""),
            score=hit.fused_score,
            fused_score=hit.fused_score,
            snippet=snippet(str(payload.get("content") or "")),
            pipelines=dict(hit.pipelines),
            semantic_score=hit.semantic_score,
            freshness=payload.get("freshness"),
            payload=payload,
        )

    @staticmethod
    def _rerank_text(result: SearchResult) -> str:
        payload = result.payload
        if result.kind == DOC_TYPE_CODE:
            return f"{payload.get('signature') or result.name}\n{payload.get('content') or ''}"
        return f"{result.name}\n{payload.get('content') or ''}"

    async def _rerank(self, query: str, results: List[SearchResult]) -> List[SearchResult]:
        if self.reranker is None or len(results) < 2:
            return results
        top_k = min(self.config.rerank.top_k, len(results))
        window = [
            {"id": result.id, "text": self._rerank_text(result), "index": idx}
            for idx, result in enumerate(results[:top_k])
        ]
        try:
            reranked = await self.reranker.rerank(query, window, top_k=top_k)
            indexes = sorted(item["index"] for item in reranked)
        except Exception as exc:
            logger.warning(
                "Reranker failed; keeping fused order",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return results
        if indexes != list(range(top_k)):
            logger.warning("Reranker changed window membership; keeping fused order")
            return results
        ordered = []
        for item in reranked:
            result = results[item["index"]]
            result.rerank_score = item.get("rerank_score")
            result.original_rank = item.get("original_rank")
            ordered.append(result)
        return ordered + results[top_k:]

    # ---- side effects ----
    def _dispatch_side_effects(
        self, request: SearchRequest, results: List[SearchResult], path: str, latency_ms: float
    ) -> None:
        by_collection: Dict[str, List[str]] = {}
        for result in results:
            collection = (
                self.config.store.code_collection
                if result.kind == DOC_TYPE_CODE
                else self.config.store.memory_collection
            )
            by_collection.setdefault(collection, []).append(result.id)
        now = self._clock()
        for collection, ids in by_collection.items():
            self._spawn(
                self.store.touch(collection, request.project_id, ids, now), effect="touch"
            )
        if self.telemetry is not None and self.config.telemetry.enabled:
            self._spawn(
                self.telemetry.record(
                    request.project_id,
                    request.query,
                    mode=request.filters.code_search or request.mode,
                    result_count=len(results),
                    latency_ms=latency_ms,
                    path=path,
                ),
                effect="telemetry",
            )

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, effect: str) -> None:
        task = asyncio.create_task(self._guard_effect(coro, effect))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _guard_effect(self, coro: Coroutine[Any, Any, Any], effect: str) -> None:
        try:
            await coro
        except Exception as exc:
            search_side_effect_failures_total.labels(effect=effect).inc()
            logger.warning(
                "Search side effect failed", effect=effect, error=str(exc)
            )

    @property
    def pending_side_effects(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for outstanding side-effect tasks (tests, shutdown)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
