"""
Embedding provider interfaces and implementations.
"""

from .base import EmbeddingProvider
from .contracts import EmbeddingBatchResult
from .voyage import VoyageEmbeddingProvider

__all__ = ["EmbeddingProvider", "EmbeddingBatchResult", "VoyageEmbeddingProvider"]
