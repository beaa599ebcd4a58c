from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(frozen=True)
class EmbeddingSettings:
    provider: str
    model_id: str
    version: str
    dims: int
    similarity: str = "cosine"
    batch_size: int = 100
    document_input_type: Optional[str] = "document"
    query_input_type: Optional[str] = "query"
    timeout_seconds: float = 30.0
    max_retries: int = 4
    strict_count: bool = False
    extra: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RerankSettings:
    provider: str
    model_id: str
    enabled: bool = True
    top_k: int = 10
    max_document_chars: int = 1000
    timeout_seconds: float = 10.0


def build_embedding_telemetry(settings: "EmbeddingSettings") -> Dict[str, str]:
    """Return standardized telemetry tags for embedding settings."""

    return {
        "embedding_provider": settings.provider,
        "embedding_model": settings.model_id,
        "embedding_version": settings.version,
        "embedding_dims": str(settings.dims),
        "embedding_batch_size": str(settings.batch_size),
    }
