# Prometheus metrics for the memory engine

from prometheus_client import Counter, Histogram, Info, generate_latest

from .logging import get_logger

logger = get_logger(__name__)

# ===== Search metrics =====
search_requests_total = Counter(
    "memory_search_requests_total",
    "Total search requests",
    ["mode", "path"],  # path: native, fallback, single
)

search_latency_ms = Histogram(
    "memory_search_latency_ms",
    "End-to-end search latency in milliseconds",
    ["mode"],
    buckets=(10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

search_pipeline_failures_total = Counter(
    "memory_search_pipeline_failures_total",
    "Retrieval pipelines that errored or timed out",
    ["pipeline", "error_type"],
)

search_results_count = Histogram(
    "memory_search_results_count",
    "Number of results returned per search",
    buckets=(0, 1, 5, 10, 20, 50, 100),
)

search_side_effect_failures_total = Counter(
    "memory_search_side_effect_failures_total",
    "Background side effects (access counters, telemetry) that failed",
    ["effect"],
)

# ===== Embedding provider metrics =====
embedding_request_total = Counter(
    "embedding_request_total",
    "Total embedding requests",
    ["model_id", "operation"],  # operation: documents, query
)

embedding_error_total = Counter(
    "embedding_error_total",
    "Total embedding errors",
    ["model_id", "error_type"],
)

embedding_flagged_items_total = Counter(
    "embedding_flagged_items_total",
    "Inputs whose embedding was missing or malformed in a provider response",
    ["model_id", "reason"],
)

embedding_latency_ms = Histogram(
    "embedding_latency_ms",
    "Embedding generation latency in milliseconds",
    ["model_id", "operation"],
    buckets=(10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

embedding_provider_info = Info(
    "embedding_provider",
    "Active embedding provider configuration",
)

# ===== Reranking metrics =====
rerank_request_total = Counter(
    "rerank_request_total",
    "Total reranking requests",
    ["model_id", "status"],  # status: applied, skipped, failed
)

rerank_latency_ms = Histogram(
    "rerank_latency_ms",
    "Reranking latency in milliseconds",
    ["model_id"],
    buckets=(10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

# ===== Index lifecycle metrics =====
index_ensure_total = Counter(
    "search_index_ensure_total",
    "Index ensure attempts by outcome",
    ["collection_name", "outcome"],  # outcome: created, exists, failed
)

# ===== Ingestion metrics =====
chunks_created_total = Counter(
    "code_chunks_created_total",
    "Code chunks written to the store",
)

files_indexed_total = Counter(
    "code_files_indexed_total",
    "Files seen by the code indexer",
    ["outcome"],  # outcome: processed, skipped, error
)

telemetry_compactions_total = Counter(
    "query_telemetry_compactions_total",
    "Query telemetry compactions performed",
)


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus exposition format.

    Returns:
        Metrics as bytes
    """
    return generate_latest()
