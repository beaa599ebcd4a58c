"""Source scanning, chunking and code indexing."""

from memory_engineering.ingestion.chunker import CodeChunker, filter_by_size
from memory_engineering.ingestion.code_indexer import CodeIndexer
from memory_engineering.ingestion.pattern_rules import PATTERN_RULES, detect_patterns
from memory_engineering.ingestion.scanner import SourceFile, scan_files, select_changed

__all__ = [
    "CodeChunker",
    "CodeIndexer",
    "PATTERN_RULES",
    "SourceFile",
    "detect_patterns",
    "filter_by_size",
    "scan_files",
    "select_changed",
]
