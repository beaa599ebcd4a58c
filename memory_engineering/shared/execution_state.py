"""
Call-count based loop prevention.

A caller that re-issues the same heavy operation for the same project over and
over is usually stuck; after ``max_calls`` inside ``window_seconds`` the guard
refuses further calls until the window expires.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Hashable, List, Optional

from memory_engineering.shared.errors import LoopDetected
from memory_engineering.shared.observability import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_CALLS = 3
DEFAULT_WINDOW_SECONDS = 600.0
DEFAULT_MAX_ENTRIES = 512


@dataclass
class CallState:
    count: int
    first_called: float
    last_called: float


class ExecutionGuard:
    """Bounded LRU map of ``operation:project_id`` -> call state."""

    def __init__(
        self,
        max_calls: int = DEFAULT_MAX_CALLS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._states: "OrderedDict[str, CallState]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key(operation: str, project_id: str) -> str:
        return f"{operation}:{project_id}"

    def record_call(self, operation: str, project_id: str) -> int:
        """Count one call; raise LoopDetected once the limit is exceeded."""
        key = self.key(operation, project_id)
        now = self._clock()
        with self._lock:
            state = self._states.get(key)
            if state is None or now - state.last_called > self.window_seconds:
                state = CallState(count=0, first_called=now, last_called=now)
            state.count += 1
            state.last_called = now
            self._states[key] = state
            self._states.move_to_end(key)
            while len(self._states) > self.max_entries:
                self._states.popitem(last=False)
            count = state.count

        if count > self.max_calls:
            logger.warning(
                "Loop prevention tripped",
                operation=operation,
                project_id=project_id,
                call_count=count,
            )
            raise LoopDetected(
                f"{operation} was called {count} times for this project within "
                f"{int(self.window_seconds)}s (limit {self.max_calls})."
            )
        return count

    def reset(self, operation: str, project_id: str) -> None:
        with self._lock:
            self._states.pop(self.key(operation, project_id), None)

    def call_count(self, operation: str, project_id: str) -> int:
        with self._lock:
            state: Optional[CallState] = self._states.get(self.key(operation, project_id))
            return state.count if state else 0

    def __len__(self) -> int:
        return len(self._states)


class KeyedLocks:
    """
    Per-key asyncio locks that exist only while someone holds or awaits them.

    Each entry is ``[lock, users]``; the entry is dropped when its last user
    leaves, so the map never outgrows the number of keys currently in use.
    """

    def __init__(self) -> None:
        self._entries: Dict[Hashable, List] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
