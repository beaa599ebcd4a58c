# Shared utilities package
from .config import Config, Settings, get_config, get_settings, init_config
from .errors import (
    ConfigurationMissing,
    DimensionMismatch,
    FusionUnsupported,
    IndexNotReady,
    LoopDetected,
    MemoryEngineError,
    NotFound,
    ProviderAuthError,
    ProviderRequestRejected,
    ProviderUnavailable,
)

__all__ = [
    "Config",
    "Settings",
    "get_config",
    "get_settings",
    "init_config",
    "MemoryEngineError",
    "ConfigurationMissing",
    "ProviderAuthError",
    "ProviderUnavailable",
    "ProviderRequestRejected",
    "IndexNotReady",
    "DimensionMismatch",
    "FusionUnsupported",
    "NotFound",
    "LoopDetected",
]
