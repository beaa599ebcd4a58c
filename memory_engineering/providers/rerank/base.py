"""
Base rerank provider protocol.

Reranking is applied after fusion to refine the ordering of the final result
set using a cross-encoder relevance model.
"""

from typing import Dict, List, Protocol, runtime_checkable


@runtime_checkable
class RerankProvider(Protocol):
    """
    Protocol for reranking providers.

    Implementations are fail-open: on any provider problem they return the
    candidates in their original order. They reorder, they never add or drop.
    """

    @property
    def model_id(self) -> str:
        """
        Get the model identifier.

        Returns:
            str: Model identifier (e.g., "rerank-2.5")
        """
        ...

    @property
    def provider_name(self) -> str:
        """
        Get the provider name.

        Returns:
            str: Provider name (e.g., "voyage-ai", "noop")
        """
        ...

    async def rerank(
        self, query: str, candidates: List[Dict], top_k: int = 10
    ) -> List[Dict]:
        """
        Rerank candidates based on relevance to query.

        Args:
            query: Query text
            candidates: Candidate documents, each with at minimum:
                - 'text': Document text content
                - 'id': Unique identifier
                Additional fields are preserved.
            top_k: Size of the result window being ordered

        Returns:
            The same candidates (first ``top_k``), reordered, each with added fields:
            - 'rerank_score': Relevance score from reranker (None when not applied)
            - 'original_rank': 1-based rank before reranking
        """
        ...

    async def aclose(self) -> None:
        ...
