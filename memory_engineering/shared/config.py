# Configuration loader with environment variable support
# YAML file (config/{ENV}.yaml) for engine tuning, environment for secrets and endpoints

import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings

from memory_engineering.providers.settings import EmbeddingSettings, RerankSettings

from .models import EngineBaseModel

logger = logging.getLogger(__name__)

VALID_SIMILARITIES = {"cosine", "dot", "euclidean"}
VALID_FALLBACK_MERGES = {"first_seen", "minmax"}


class AppConfig(BaseModel):
    name: str = "memory-engineering"
    version: str = "0.1.0"
    project_dir_name: str = Field(
        default=".memory-engineering",
        description="Directory inside the project root holding config.json",
    )


class EmbeddingConfig(EngineBaseModel):
    """
    Embedding configuration.
    This is the single source of truth for all embedding parameters.
    """

    provider: str = Field(default="voyage-ai")
    model_id: str = Field(default="voyage-3", alias="model_name")
    dims: int = Field(default=1024)
    similarity: str = Field(default="cosine")
    version: str = Field(default="voyage-3-v1")
    batch_size: int = Field(default=100, gt=0)
    document_input_type: Optional[str] = "document"
    query_input_type: Optional[str] = "query"
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=4, gt=0)
    # Raise DimensionMismatch instead of flagging individual items
    strict_count: bool = False

    @validator("similarity")
    def validate_similarity(cls, v):
        if v not in VALID_SIMILARITIES:
            raise ValueError(f"similarity must be one of {VALID_SIMILARITIES}, got {v}")
        return v

    @validator("dims")
    def validate_dims(cls, v):
        if v <= 0:
            raise ValueError(f"dims must be positive, got {v}")
        return v

    class Config:
        populate_by_name = True


class RerankConfig(BaseModel):
    enabled: bool = True
    provider: str = Field(default="voyage-ai")
    model: str = Field(default="rerank-2.5")
    top_k: int = Field(default=10, gt=0)
    max_document_chars: int = Field(default=1000, gt=0)
    timeout_seconds: float = Field(default=10.0, gt=0)


class StoreConfig(BaseModel):
    backend: str = Field(default="qdrant", description="qdrant or memory")
    memory_collection: str = "memory_documents"
    code_collection: str = "code_chunks"
    vector_name: str = "content"
    timeout_seconds: float = Field(default=10.0, gt=0)

    @validator("backend")
    def validate_backend(cls, v):
        if v not in {"qdrant", "memory"}:
            raise ValueError(f"store.backend must be 'qdrant' or 'memory', got {v}")
        return v


class PipelineWeights(BaseModel):
    semantic: float = 0.4
    lexical: float = 0.3
    temporal: float = 0.2
    frequency: float = 0.1

    @validator("semantic", "lexical", "temporal", "frequency")
    def validate_weight(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"pipeline weights must be within [0, 1], got {v}")
        return v

    def as_dict(self) -> Dict[str, float]:
        return {
            "semantic": self.semantic,
            "lexical": self.lexical,
            "temporal": self.temporal,
            "frequency": self.frequency,
        }


class HybridSearchConfig(BaseModel):
    rrf_k: int = Field(default=60, gt=0)
    weights: PipelineWeights = Field(default_factory=PipelineWeights)
    two_pipeline_weights: PipelineWeights = Field(
        default_factory=lambda: PipelineWeights(
            semantic=0.7, lexical=0.3, temporal=0.0, frequency=0.0
        )
    )
    candidate_multiplier: int = Field(default=10, gt=0)
    temporal_window_days: int = Field(default=7, gt=0)
    frequency_min_access: int = Field(default=3, ge=0)
    lexical_scan_limit: int = Field(
        default=256,
        gt=0,
        description="Matching documents scored per lexical query; matches past the cap are unranked",
    )
    native_fusion: bool = True
    fallback_merge: str = "first_seen"
    pipeline_timeout_seconds: float = Field(default=5.0, gt=0)

    @validator("fallback_merge")
    def validate_fallback_merge(cls, v):
        if v not in VALID_FALLBACK_MERGES:
            raise ValueError(
                f"fallback_merge must be one of {VALID_FALLBACK_MERGES}, got {v}"
            )
        return v


class SearchConfig(BaseModel):
    default_limit: int = Field(default=10, gt=0)
    max_limit: int = Field(default=100, gt=0)
    hybrid: HybridSearchConfig = Field(default_factory=HybridSearchConfig)


class IngestionConfig(BaseModel):
    patterns: List[str] = Field(
        default_factory=lambda: [
            "**/*.py",
            "**/*.ts",
            "**/*.tsx",
            "**/*.js",
            "**/*.jsx",
            "**/*.go",
            "**/*.rs",
            "**/*.java",
        ]
    )
    excludes: List[str] = Field(
        default_factory=lambda: [
            "**/node_modules/**",
            "**/dist/**",
            "**/build/**",
            "**/.git/**",
            "**/coverage/**",
        ]
    )
    test_excludes: List[str] = Field(
        default_factory=lambda: ["**/*.test.*", "**/*.spec.*", "**/test_*.py"]
    )
    min_chunk_size: int = Field(default=10, ge=0)
    file_batch_size: int = Field(default=10, gt=0)
    function_max_lines: int = Field(default=200, gt=0)
    class_max_lines: int = Field(default=300, gt=0)
    context_lines: int = Field(default=50, ge=0)
    module_max_chars: int = Field(default=2000, gt=0)


class IndexesConfig(BaseModel):
    ensure_on_startup: bool = True
    retry_delays_seconds: List[float] = Field(default_factory=lambda: [30.0, 120.0])


class MemoryConfig(BaseModel):
    default_importance: int = Field(default=5, ge=1, le=10)
    working_ttl_days: int = Field(default=30, gt=0)


class TelemetryConfig(BaseModel):
    enabled: bool = True
    compact_threshold: int = Field(
        default=100, gt=0, description="Raw entries per project/day before compacting"
    )
    keep_recent: int = Field(default=20, ge=0)


class ExecutionConfig(BaseModel):
    max_calls: int = Field(default=3, gt=0)
    window_seconds: float = Field(default=600.0, gt=0)
    max_entries: int = Field(default=512, gt=0)


class Config(EngineBaseModel):
    """Main configuration model"""

    app: AppConfig = Field(default_factory=AppConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    rerank: RerankConfig = Field(default_factory=RerankConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    indexes: IndexesConfig = Field(default_factory=IndexesConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)


class Settings(BaseSettings):
    """Environment-based settings"""

    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Qdrant
    qdrant_url: str = Field(default="http://localhost:6333", alias="QDRANT_URL")
    qdrant_api_key: Optional[str] = Field(default=None, alias="QDRANT_API_KEY")

    # Voyage AI
    voyage_api_key: Optional[str] = Field(default=None, alias="VOYAGE_API_KEY")
    voyage_api_base_url: Optional[str] = Field(
        default=None, alias="VOYAGE_API_BASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


def load_config() -> tuple[Config, Settings]:
    """
    Load configuration from YAML file and environment variables.

    Returns:
        tuple: (Config, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    settings = Settings()

    if settings.config_path:
        config_path = Path(settings.config_path)
    else:
        config_path = (
            Path(__file__).parent.parent.parent / "config" / f"{settings.env}.yaml"
        )

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from: {config_path}")

    with open(config_path, "r") as f:
        config_dict = yaml.safe_load(f) or {}

    config = Config(**config_dict)
    validate_config_at_startup(config)
    return config, settings


def validate_config_at_startup(config: Config) -> None:
    """Cross-field checks that single-field validators cannot express."""
    hybrid = config.search.hybrid
    if sum(hybrid.weights.as_dict().values()) <= 0:
        raise ValueError("search.hybrid.weights must not all be zero")
    if config.search.default_limit > config.search.max_limit:
        raise ValueError(
            "search.default_limit "
            f"({config.search.default_limit}) exceeds max_limit ({config.search.max_limit})"
        )
    if any(delay < 0 for delay in config.indexes.retry_delays_seconds):
        raise ValueError("indexes.retry_delays_seconds must be non-negative")
    if config.telemetry.keep_recent >= config.telemetry.compact_threshold:
        logger.warning(
            "telemetry.keep_recent >= compact_threshold; compaction will never drop entries"
        )


def get_embedding_settings(config: Optional[Config] = None) -> EmbeddingSettings:
    """Build provider-facing embedding settings from the config model."""
    config = config or get_config()
    embedding = config.embedding
    return EmbeddingSettings(
        provider=embedding.provider,
        model_id=embedding.model_id,
        version=embedding.version,
        dims=embedding.dims,
        similarity=embedding.similarity,
        batch_size=embedding.batch_size,
        document_input_type=embedding.document_input_type,
        query_input_type=embedding.query_input_type,
        timeout_seconds=embedding.timeout_seconds,
        max_retries=embedding.max_retries,
        strict_count=embedding.strict_count,
    )


def get_rerank_settings(config: Optional[Config] = None) -> RerankSettings:
    config = config or get_config()
    rerank = config.rerank
    return RerankSettings(
        provider=rerank.provider,
        model_id=rerank.model,
        enabled=rerank.enabled,
        top_k=rerank.top_k,
        max_document_chars=rerank.max_document_chars,
        timeout_seconds=rerank.timeout_seconds,
    )


# Global config instances (loaded once at startup)
_config: Optional[Config] = None
_settings: Optional[Settings] = None


def get_config() -> Config:
    """Get the global Config instance"""
    global _config
    if _config is None:
        _config, _ = load_config()
    return _config


def get_settings() -> Settings:
    """Get the global Settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def init_config() -> tuple[Config, Settings]:
    """Initialize and cache global config instances"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings


def reload_config() -> tuple[Config, Settings]:
    """Force reload of config/settings from disk and environment."""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings
