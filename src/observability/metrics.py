"""Prometheus metrics for ingestion and query.

Exposed at /metrics by the API app.
"""

from prometheus_client import Counter, Gauge, Histogram

# Uploads
UPLOAD_BYTES = Counter(
    "knowledge_upload_bytes_total",
    "Bytes buffered from accepted file parts",
)

UPLOAD_PARTS_REJECTED = Counter(
    "knowledge_upload_parts_rejected_total",
    "Multipart parts rejected (type, size, count limits)",
)

UPLOAD_SESSIONS_ACTIVE = Gauge(
    "knowledge_upload_sessions_active",
    "Upload sessions currently held in memory",
)

# Ingestion
FILES_PROCESSED = Counter(
    "knowledge_files_processed_total",
    "Files run through extraction and chunking",
    ["status"],  # completed, error
)

CHUNKS_CREATED = Counter(
    "knowledge_chunks_created_total",
    "Chunks produced by the chunker",
)

VECTOR_WRITE_FAILURES = Counter(
    "knowledge_vector_write_failures_total",
    "Background embedding/upsert batches that failed",
)

VECTORS_UPSERTED = Counter(
    "knowledge_vectors_upserted_total",
    "Vector entries written to the index",
)

EMBEDDING_CACHE = Counter(
    "knowledge_embedding_cache_total",
    "Embedding cache lookups",
    ["result"],  # hit, miss
)

# Generation
GENERATION_ATTEMPTS = Counter(
    "knowledge_generation_attempts_total",
    "Model generation attempts",
    ["model", "outcome"],  # success, transient, quota, non_retryable, timeout
)

GENERATION_LATENCY = Histogram(
    "knowledge_generation_duration_seconds",
    "Successful generation latency in seconds",
    ["model"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

RETRIEVAL_FAILURES = Counter(
    "knowledge_retrieval_failures_total",
    "Query embedding or vector search failures (answered without context)",
)
