"""External model providers: embeddings and reranking."""
