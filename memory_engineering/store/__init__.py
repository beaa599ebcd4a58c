from .base import (
    FREQUENCY,
    LEXICAL,
    PIPELINE_ORDER,
    SEMANTIC,
    TEMPORAL,
    CollectionStatus,
    DocumentStore,
    PipelineRequest,
    ScopeFilter,
)
from .memory_store import InMemoryDocumentStore

__all__ = [
    "FREQUENCY",
    "LEXICAL",
    "PIPELINE_ORDER",
    "SEMANTIC",
    "TEMPORAL",
    "CollectionStatus",
    "DocumentStore",
    "InMemoryDocumentStore",
    "PipelineRequest",
    "ScopeFilter",
]
