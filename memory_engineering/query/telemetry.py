"""
Query telemetry records with per-project, per-day compaction.

Every search appends one raw ``telemetry`` memory. When a project/day holds
more than ``compact_threshold`` raw entries, all but the newest
``keep_recent`` are folded into a single aggregate document for that day.
The aggregate is written before the folded entries are deleted, so a crash
can over-count but never lose data.
"""

import time
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from memory_engineering.shared.config import TelemetryConfig
from memory_engineering.shared.execution_state import KeyedLocks
from memory_engineering.shared.observability.metrics import telemetry_compactions_total
from memory_engineering.shared.records import (
    MEMORY_CLASS_TELEMETRY,
    MemoryDocument,
    StoreRecord,
    stable_id,
)
from memory_engineering.store.base import DocumentStore, ScopeFilter

logger = structlog.get_logger(__name__)

KIND_RAW = "raw"
KIND_AGGREGATE = "aggregate"
TOP_QUERIES = 20


def telemetry_day(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def _scope(day: str, kind: str) -> ScopeFilter:
    return ScopeFilter(
        memory_classes=(MEMORY_CLASS_TELEMETRY,),
        equals=(("metadata.telemetry_day", day), ("metadata.telemetry_kind", kind)),
    )


def aggregate_id(project_id: str, day: str) -> str:
    return stable_id(project_id, "telemetry-aggregate", day)


class QueryTelemetry:
    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        config: Optional[TelemetryConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.collection = collection
        self.config = config or TelemetryConfig()
        self._clock = clock
        self._locks = KeyedLocks()

    def _lock(self, project_id: str, day: str):
        return self._locks.hold((project_id, day))

    async def record(
        self,
        project_id: str,
        query: str,
        *,
        mode: str,
        result_count: int,
        latency_ms: float,
        path: str,
    ) -> MemoryDocument:
        now = self._clock()
        day = telemetry_day(now)
        doc = MemoryDocument(
            project_id=project_id,
            name=f"telemetry:{day}",
            content=f"query: {query}\nmode: {mode}\nresults: {result_count}",
            memory_class=MEMORY_CLASS_TELEMETRY,
            importance=1,
            created_at=now,
            updated_at=now,
            freshness=now,
            metadata={
                "telemetry_day": day,
                "telemetry_kind": KIND_RAW,
                "query": query,
                "mode": mode,
                "result_count": result_count,
                "latency_ms": round(latency_ms, 3),
                "path": path,
            },
        )
        await self.store.upsert(
            self.collection,
            project_id,
            [StoreRecord(id=doc.id, payload=doc.to_payload())],
        )
        raw_count = await self.store.count(self.collection, project_id, _scope(day, KIND_RAW))
        if raw_count > self.config.compact_threshold:
            await self.compact(project_id, day)
        return doc

    async def compact(self, project_id: str, day: str) -> int:
        """Fold all but the newest ``keep_recent`` raw entries; return how many were folded."""
        async with self._lock(project_id, day):
            scope = _scope(day, KIND_RAW)
            total = await self.store.count(self.collection, project_id, scope)
            if total <= self.config.compact_threshold:
                return 0
            raw = await self.store.find(
                self.collection, project_id, scope, limit=total, order_by="created_at"
            )
            folded = raw[self.config.keep_recent :]
            if not folded:
                return 0

            agg_id = aggregate_id(project_id, day)
            existing = await self.store.get(self.collection, project_id, [agg_id])
            stats = self._fold(existing[0].payload["metadata"] if existing else None, folded)
            now = self._clock()
            aggregate = MemoryDocument(
                id=agg_id,
                project_id=project_id,
                name=f"telemetry:{day}:aggregate",
                content=(
                    f"{stats['query_count']} queries on {day}, "
                    f"avg latency {stats['avg_latency_ms']} ms, "
                    f"{stats['zero_result_count']} without results"
                ),
                memory_class=MEMORY_CLASS_TELEMETRY,
                importance=1,
                created_at=existing[0].payload.get("created_at", now) if existing else now,
                updated_at=now,
                freshness=now,
                metadata=stats,
            )
            await self.store.upsert(
                self.collection,
                project_id,
                [StoreRecord(id=aggregate.id, payload=aggregate.to_payload())],
            )
            await self.store.delete(self.collection, project_id, [r.id for r in folded])
            telemetry_compactions_total.inc()
            logger.info(
                "Telemetry compacted",
                project_id=project_id,
                day=day,
                folded=len(folded),
                kept=len(raw) - len(folded),
            )
            return len(folded)

    @staticmethod
    def _fold(previous: Optional[Dict[str, Any]], folded) -> Dict[str, Any]:
        previous = previous or {}
        queries: Counter = Counter(previous.get("top_queries") or {})
        paths: Counter = Counter(previous.get("paths") or {})
        count = int(previous.get("query_count") or 0)
        latency = float(previous.get("total_latency_ms") or 0.0)
        zero = int(previous.get("zero_result_count") or 0)
        for record in folded:
            meta = record.payload.get("metadata") or {}
            count += 1
            latency += float(meta.get("latency_ms") or 0.0)
            if not meta.get("result_count"):
                zero += 1
            queries[str(meta.get("query", ""))] += 1
            paths[str(meta.get("path", "unknown"))] += 1
        return {
            "telemetry_day": previous.get("telemetry_day") or (
                folded[0].payload.get("metadata", {}).get("telemetry_day")
            ),
            "telemetry_kind": KIND_AGGREGATE,
            "query_count": count,
            "total_latency_ms": round(latency, 3),
            "avg_latency_ms": round(latency / count, 3) if count else 0.0,
            "zero_result_count": zero,
            "top_queries": dict(
                sorted(queries.items(), key=lambda item: (-item[1], item[0]))[:TOP_QUERIES]
            ),
            "paths": dict(paths),
        }
