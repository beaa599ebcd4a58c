"""Engine facade and memory document lifecycle."""

from memory_engineering.services.engine import MemoryEngine
from memory_engineering.services.memory_service import MemoryService

__all__ = ["MemoryEngine", "MemoryService"]
