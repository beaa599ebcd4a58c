"""
Project indexing: scan -> chunk -> embed -> store.

Files are processed in batches. Within a batch every chunk is embedded
before anything is written, so an embedding provider failure aborts the call
with the store still holding complete previous generations for every file in
the batch. A file is written as upsert-new-then-delete-stale, so it never
holds two chunk generations and never ends up empty mid-way.
"""

from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from memory_engineering.ingestion.chunker import CodeChunker, filter_by_size
from memory_engineering.ingestion.scanner import (
    SourceFile,
    read_source,
    scan_files,
    select_changed,
)
from memory_engineering.providers.embeddings.base import EmbeddingProvider
from memory_engineering.shared.config import IngestionConfig
from memory_engineering.shared.observability.metrics import (
    chunks_created_total,
    files_indexed_total,
)
from memory_engineering.shared.records import CodeChunk, IndexReport, StoreRecord
from memory_engineering.store.base import DocumentStore

logger = structlog.get_logger(__name__)


class CodeIndexer:
    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingProvider,
        *,
        collection: str,
        config: Optional[IngestionConfig] = None,
        chunker: Optional[CodeChunker] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.collection = collection
        self.config = config or IngestionConfig()
        self.chunker = chunker or CodeChunker(self.config)

    async def index_project(
        self,
        project_id: str,
        root: Path,
        *,
        patterns: Optional[Sequence[str]] = None,
        excludes: Optional[Sequence[str]] = None,
        min_chunk_size: Optional[int] = None,
        force_regenerate: bool = False,
        include_tests: bool = False,
    ) -> IndexReport:
        """
        Index changed source files under ``root``.

        Raises:
            ProviderAuthError / ProviderUnavailable / ProviderRequestRejected:
                embedding provider failures; already-written batches stay intact
        """
        min_size = self.config.min_chunk_size if min_chunk_size is None else min_chunk_size
        files = scan_files(
            root,
            patterns or self.config.patterns,
            self.config.excludes if excludes is None else excludes,
            include_tests=include_tests,
            test_excludes=self.config.test_excludes,
        )
        indexed_times = {} if force_regenerate else await self.store.file_index_times(
            self.collection, project_id
        )
        to_index, unchanged = select_changed(files, indexed_times, force=force_regenerate)

        report = IndexReport(files_skipped=len(unchanged))
        files_indexed_total.labels(outcome="skipped").inc(len(unchanged))
        patterns_seen: Counter = Counter()

        logger.info(
            "Indexing project",
            project_id=project_id,
            root=str(root),
            files_found=len(files),
            files_changed=len(to_index),
            min_chunk_size=min_size,
            force=force_regenerate,
        )

        batch_size = self.config.file_batch_size
        for offset in range(0, len(to_index), batch_size):
            batch = to_index[offset : offset + batch_size]
            await self._index_batch(project_id, batch, min_size, report, patterns_seen)

        report.pattern_counts = dict(sorted(patterns_seen.items()))
        logger.info(
            "Indexing complete",
            project_id=project_id,
            files_processed=report.files_processed,
            files_skipped=report.files_skipped,
            chunks_created=report.chunks_created,
            errors=len(report.errors),
        )
        return report

    def _chunk_file(
        self, project_id: str, source: SourceFile, min_size: int, report: IndexReport
    ) -> Optional[List[CodeChunk]]:
        try:
            text = read_source(source)
        except (OSError, UnicodeDecodeError) as exc:
            report.errors.append(f"{source.rel_path}: unreadable ({exc})")
            files_indexed_total.labels(outcome="error").inc()
            logger.warning("Skipping unreadable file", path=source.rel_path, error=str(exc))
            return None
        try:
            chunks = self.chunker.chunk_text(text, source.rel_path, project_id, source.mtime)
        except (ValueError, IndexError) as exc:
            report.errors.append(f"{source.rel_path}: could not be chunked ({exc})")
            files_indexed_total.labels(outcome="error").inc()
            logger.warning("Skipping unparsable file", path=source.rel_path, error=str(exc))
            return None
        return filter_by_size(chunks, min_size)

    async def _index_batch(
        self,
        project_id: str,
        batch: Sequence[SourceFile],
        min_size: int,
        report: IndexReport,
        patterns_seen: Counter,
    ) -> None:
        per_file: List[Tuple[SourceFile, List[CodeChunk]]] = []
        for source in batch:
            chunks = self._chunk_file(project_id, source, min_size, report)
            if chunks is not None:
                per_file.append((source, chunks))

        all_chunks = [chunk for _, chunks in per_file for chunk in chunks]
        flagged_files: Dict[str, List[str]] = {}
        if all_chunks:
            result = await self.embedder.embed_documents(
                [chunk.embedding_text() for chunk in all_chunks]
            )
            for idx, chunk in enumerate(all_chunks):
                if idx in result.flagged or result.vectors[idx] is None:
                    reason = result.flagged.get(idx, "missing")
                    flagged_files.setdefault(chunk.file_path, []).append(
                        f"{chunk.name}@{chunk.start_line}-{chunk.end_line} ({reason})"
                    )
                else:
                    chunk.embedding = result.vectors[idx]

        for source, chunks in per_file:
            if source.rel_path in flagged_files:
                # Keep the previous generation; the next run retries this file
                report.errors.append(
                    f"{source.rel_path}: embedding flagged for "
                    + ", ".join(flagged_files[source.rel_path])
                )
                files_indexed_total.labels(outcome="error").inc()
                continue
            records = [
                StoreRecord(id=chunk.id, payload=chunk.to_payload(), vector=chunk.embedding)
                for chunk in chunks
            ]
            if records:
                await self.store.upsert(self.collection, project_id, records)
            await self.store.delete_file_chunks(
                self.collection, project_id, source.rel_path, [r.id for r in records]
            )
            report.files_processed += 1
            report.chunks_created += len(records)
            chunks_created_total.inc(len(records))
            files_indexed_total.labels(outcome="indexed").inc()
            for chunk in chunks:
                patterns_seen.update(chunk.pattern_tags)
