"""
Provider factory for config-selectable embedding and rerank providers.

Supported providers:
- Embedding: voyage-ai
- Rerank: voyage-ai, noop

Configuration via config YAML (embedding.*, rerank.*) with environment overrides:
- EMBEDDINGS_PROVIDER: Embedding provider name
- RERANK_PROVIDER: Reranker provider ("none" disables)
- RERANK_MODEL: Reranker model
- VOYAGE_API_KEY: Credential shared by both Voyage providers
"""

import logging
import os
from dataclasses import replace
from typing import Callable, Dict, Optional

from memory_engineering.providers.embeddings.base import EmbeddingProvider
from memory_engineering.providers.rerank.base import RerankProvider
from memory_engineering.providers.settings import (
    EmbeddingSettings,
    RerankSettings,
    build_embedding_telemetry,
)
from memory_engineering.shared.observability.metrics import embedding_provider_info

logger = logging.getLogger(__name__)


class ProviderFactory:
    """
    Builds providers from settings so the engine receives injected clients
    instead of reaching for module-level singletons.
    """

    _EMBEDDING_PROVIDER_ALIASES = {
        "voyage": "voyage-ai",
        "voyageai": "voyage-ai",
        "voyage_ai": "voyage-ai",
    }

    @classmethod
    def create_embedding_provider(
        cls,
        settings: Optional[EmbeddingSettings] = None,
        *,
        provider: Optional[str] = None,
        **kwargs,
    ) -> EmbeddingProvider:
        from memory_engineering.shared.config import get_embedding_settings

        settings = settings or get_embedding_settings()
        provider = provider or os.getenv("EMBEDDINGS_PROVIDER")
        if provider and provider != settings.provider:
            logger.warning(
                "EMBEDDINGS_PROVIDER overrides configured provider '%s'",
                settings.provider,
            )
            settings = replace(settings, provider=provider)

        provider_key = cls._normalize_provider(settings.provider)
        creator = cls._embedding_creators().get(provider_key)
        if not creator:
            raise ValueError(
                f"Unknown embedding provider: {settings.provider}. "
                f"Supported: {sorted(cls._embedding_creators().keys())}"
            )

        telemetry = build_embedding_telemetry(settings)
        logger.info("Creating embedding provider", extra=telemetry)
        embedding_provider_info.info(telemetry)

        return creator(settings, **kwargs)

    @classmethod
    def _embedding_creators(
        cls,
    ) -> Dict[str, Callable[..., EmbeddingProvider]]:
        return {"voyage-ai": cls._create_voyage_embedding_provider}

    @classmethod
    def _normalize_provider(cls, provider: Optional[str]) -> str:
        base = (provider or "").strip().lower()
        return cls._EMBEDDING_PROVIDER_ALIASES.get(base, base)

    @staticmethod
    def _create_voyage_embedding_provider(
        settings: EmbeddingSettings, **kwargs
    ) -> EmbeddingProvider:
        from memory_engineering.providers.embeddings.voyage import (
            VoyageEmbeddingProvider,
        )

        return VoyageEmbeddingProvider(settings, **kwargs)

    @staticmethod
    def create_rerank_provider(
        settings: Optional[RerankSettings] = None, **kwargs
    ) -> RerankProvider:
        """
        Create rerank provider from config or environment.

        Args:
            settings: Rerank settings (from config when omitted)
            **kwargs: Provider-specific parameters (client, api_key, base_url)

        Returns:
            RerankProvider instance; a NoopReranker when reranking is disabled
            or no credential is available

        Raises:
            ValueError: If provider unknown
        """
        from memory_engineering.providers.rerank.noop import NoopReranker
        from memory_engineering.shared.config import get_rerank_settings

        settings = settings or get_rerank_settings()

        def _normalize_provider(value: Optional[str]) -> Optional[str]:
            if value is None:
                return None
            normalized = value.strip().lower()
            if not normalized:
                return None
            if normalized in {"voyage", "voyageai", "voyage-ai"}:
                return "voyage-ai"
            if normalized in {"none", "disabled"}:
                return "noop"
            return normalized

        provider = (
            _normalize_provider(os.getenv("RERANK_PROVIDER"))
            or _normalize_provider(settings.provider)
            or "voyage-ai"
        )
        model = (os.getenv("RERANK_MODEL") or settings.model_id).strip()
        if model != settings.model_id:
            settings = replace(settings, model_id=model)

        if not settings.enabled or provider == "noop":
            return NoopReranker(reason="disabled")

        logger.info(f"Creating rerank provider: provider={provider}, model={model}")

        if provider == "voyage-ai":
            api_key = kwargs.pop("api_key", None) or os.getenv("VOYAGE_API_KEY")
            if not api_key:
                return NoopReranker(reason="missing_credential")
            from memory_engineering.providers.rerank.voyage import VoyageRerankProvider

            return VoyageRerankProvider(settings, api_key=api_key, **kwargs)

        raise ValueError(
            f"Unknown rerank provider: {provider}. Supported: voyage-ai, noop"
        )

    @staticmethod
    def get_provider_info(provider: EmbeddingProvider) -> dict:
        return {
            "provider": provider.provider_name,
            "model": provider.model_id,
            "dims": provider.dims,
        }


def create_embedding_provider(**kwargs) -> EmbeddingProvider:
    return ProviderFactory.create_embedding_provider(**kwargs)


def create_rerank_provider(**kwargs) -> RerankProvider:
    return ProviderFactory.create_rerank_provider(**kwargs)
