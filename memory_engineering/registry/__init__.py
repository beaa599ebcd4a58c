"""
Registry package for collection and index lifecycle management.
"""

from memory_engineering.registry.index_registry import IndexManager

__all__ = ["IndexManager"]
