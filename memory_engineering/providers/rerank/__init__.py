"""
Rerank provider interfaces and implementations.
"""

from .base import RerankProvider
from .noop import NoopReranker
from .voyage import VoyageRerankProvider

__all__ = ["RerankProvider", "NoopReranker", "VoyageRerankProvider"]
