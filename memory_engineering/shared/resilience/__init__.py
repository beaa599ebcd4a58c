"""Resilience patterns for calls to external providers and the store."""

from memory_engineering.shared.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
)

__all__ = ["CircuitBreaker", "CircuitState"]
