"""
Circuit breaker for best-effort external calls.

The reranker and the native fusion path both degrade instead of failing; the
breaker lets them skip a dependency that keeps failing instead of paying its
timeout on every request.

Usage:
    cb = CircuitBreaker(name="reranker", failure_threshold=5, recovery_timeout=30.0)

    if cb.allow_request():
        try:
            result = await call_external_service()
            cb.record_success()
            return result
        except ProviderUnavailable:
            cb.record_failure()
            return degraded_response()
    return degraded_response()
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT = 30.0


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Failing, skip the dependency
    HALF_OPEN = "half_open"  # Testing recovery with the next request


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    CLOSED counts consecutive failures and opens at ``failure_threshold``.
    OPEN rejects until ``recovery_timeout`` has elapsed, then lets one probe
    through in HALF_OPEN; its outcome closes or reopens the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time is not None:
                    elapsed = self._clock() - self._last_failure_time
                    if elapsed >= self.recovery_timeout:
                        self._state = CircuitState.HALF_OPEN
                        logger.info(
                            "circuit_breaker_half_open",
                            extra={"breaker": self.name, "elapsed_seconds": elapsed},
                        )
                        return True
                return False

            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(
                    "circuit_breaker_closed",
                    extra={"breaker": self.name, "reason": "recovery_success"},
                )
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(
                    "circuit_breaker_reopened",
                    extra={"breaker": self.name, "reason": "recovery_failed"},
                )
            elif self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(
                    "circuit_breaker_opened",
                    extra={
                        "breaker": self.name,
                        "failure_count": self._failure_count,
                        "threshold": self.failure_threshold,
                    },
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
