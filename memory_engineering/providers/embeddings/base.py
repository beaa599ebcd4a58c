"""
Base embedding provider protocol.

This abstraction enables:
1. Swapping the Voyage client for a fake in tests
2. Consistent API across different embedding models
3. Type safety through Protocol typing
"""

from typing import List, Protocol, Sequence, runtime_checkable

from memory_engineering.providers.embeddings.contracts import EmbeddingBatchResult


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Protocol for embedding providers.

    Document embedding never silently aligns a short or long provider
    response with its inputs: every input gets a slot in the returned
    ``EmbeddingBatchResult`` and unusable slots are flagged.
    """

    @property
    def dims(self) -> int:
        """
        Get the dimensionality of embeddings produced by this provider.

        Returns:
            int: Number of dimensions in the embedding vector
        """
        ...

    @property
    def model_id(self) -> str:
        """
        Get the model identifier.

        Returns:
            str: Model identifier (e.g., "voyage-3")
        """
        ...

    @property
    def provider_name(self) -> str:
        """
        Get the provider name.

        Returns:
            str: Provider name (e.g., "voyage-ai", "fake")
        """
        ...

    async def embed_documents(self, texts: Sequence[str]) -> EmbeddingBatchResult:
        """
        Generate embeddings for an ordered list of documents.

        Args:
            texts: Texts to embed, in order

        Returns:
            EmbeddingBatchResult with one slot per input

        Raises:
            ValueError: If texts is empty
            ProviderAuthError: Credential rejected
            ProviderRequestRejected: Invalid model or malformed request
            ProviderUnavailable: Rate limited or unreachable after retries
        """
        ...

    async def embed_query(self, text: str) -> List[float]:
        """
        Generate the embedding for a search query.

        The vector has the same dimensionality as document vectors.

        Raises:
            DimensionMismatch: If the provider returned no usable vector
        """
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
