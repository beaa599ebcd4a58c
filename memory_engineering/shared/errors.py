"""
Error taxonomy for the memory engine.

Every error raised past a component boundary carries a remediation line so the
protocol layer can show the caller a concrete next step instead of a trace.
"""

from typing import Any, Dict, List, Optional, Sequence


class MemoryEngineError(Exception):
    """Base class for all surfaced engine errors."""

    code = "memory_engine_error"
    default_remediation = "Check the server logs for details and retry."

    def __init__(self, message: str, *, remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation or self.default_remediation

    def __str__(self) -> str:
        return f"{self.message} Next step: {self.remediation}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "remediation": self.remediation,
        }


class ConfigurationMissing(MemoryEngineError):
    code = "configuration_missing"
    default_remediation = (
        "Initialize the project first (initialize_project) so that "
        ".memory-engineering/config.json exists in the project root."
    )


class ProviderAuthError(MemoryEngineError):
    code = "provider_auth_error"
    default_remediation = (
        "Set a valid VOYAGE_API_KEY in the environment or .env file and restart."
    )


class ProviderUnavailable(MemoryEngineError):
    code = "provider_unavailable"
    default_remediation = (
        "The provider is rate limiting or unreachable; wait a few seconds and retry."
    )


class ProviderRequestRejected(MemoryEngineError):
    code = "provider_request_rejected"
    # True when retrying the inputs in smaller batches may succeed
    splittable = False
    default_remediation = (
        "Verify the configured model name (embedding.model_id / rerank.model) and "
        "that inputs are within the provider limits."
    )


class IndexNotReady(MemoryEngineError):
    code = "index_not_ready"
    default_remediation = (
        "Search indexes are still being built; retry in a minute or run "
        "ensure_indexes() to create them."
    )


class DimensionMismatch(MemoryEngineError):
    code = "dimension_mismatch"
    default_remediation = (
        "Re-run indexing for the affected items; if it persists, confirm the "
        "embedding model and embedding.dims setting agree."
    )

    def __init__(
        self,
        message: str,
        *,
        expected: Optional[int] = None,
        received: Optional[int] = None,
        flagged: Optional[Sequence[int]] = None,
        remediation: Optional[str] = None,
    ):
        super().__init__(message, remediation=remediation)
        self.expected = expected
        self.received = received
        self.flagged: List[int] = list(flagged or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {"expected": self.expected, "received": self.received, "flagged": self.flagged}
        )
        return data


class FusionUnsupported(MemoryEngineError):
    code = "fusion_unsupported"
    default_remediation = (
        "Upgrade the vector store to a version with the Query API, or set "
        "search.native_fusion=false to always use manual merging."
    )


class NotFound(MemoryEngineError):
    code = "not_found"
    default_remediation = "Create it with upsert_memory or check the name for typos."


class LoopDetected(MemoryEngineError):
    code = "loop_detected"
    default_remediation = (
        "The same operation was requested repeatedly for this project; review the "
        "previous results instead of calling it again."
    )
