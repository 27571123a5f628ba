from prometheus_client import REGISTRY, Counter, Histogram, write_to_textfile

# Embedder
embed_latency = Histogram(
    'embedpipe_embed_latency_seconds',
    'Single text embedding latency',
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1)
)

model_runner_invocations = Counter(
    'embedpipe_model_runner_invocations_total',
    'Forward passes executed by the model runner'
)

embed_errors = Counter(
    'embedpipe_embed_errors_total',
    'Embedding errors',
    ['error_type']  # empty_input, model_failure, not_initialized
)

# Cache
cache_hits = Counter(
    'embedpipe_cache_hits_total',
    'Embedding cache hits'
)

cache_misses = Counter(
    'embedpipe_cache_misses_total',
    'Embedding cache misses'
)

# Batch pipeline
batch_records = Counter(
    'embedpipe_batch_records_total',
    'Records produced by batch runs',
    ['outcome']  # ok, failed
)

batch_chunk_latency = Histogram(
    'embedpipe_batch_chunk_latency_seconds',
    'Time to embed one input chunk',
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60)
)

# Model download
model_downloads = Counter(
    'embedpipe_model_download_attempts_total',
    'Model download attempts',
    ['outcome']  # success, failure
)


def write_metrics(path: str) -> None:
    """Dump the default registry in the Prometheus text format (textfile collector)."""
    write_to_textfile(path, REGISTRY)
