"""
Prometheus metrics for the AI request pipeline and the RAG indexer.

Naming follows Prometheus conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for durations
- Gauges: no suffix
"""
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

registry = REGISTRY

# ============================================================================
# PIPELINE METRICS
# ============================================================================

ai_requests_total = Counter(
    "ai_requests_total",
    "Total number of generate_response calls by terminal status",
    ["feature", "status"],
    registry=registry,
)

ai_request_duration_seconds = Histogram(
    "ai_request_duration_seconds",
    "End-to-end generate_response latency in seconds",
    ["feature"],
    buckets=[0.005, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

ai_fallbacks_total = Counter(
    "ai_fallbacks_total",
    "Total number of fallback responses returned",
    ["feature", "reason"],
    registry=registry,
)

ai_confidence_distribution = Histogram(
    "ai_confidence_distribution",
    "Distribution of confidence scores",
    ["feature"],
    buckets=[0, 25, 50, 60, 70, 80, 90, 100],
    registry=registry,
)

quota_denials_total = Counter(
    "quota_denials_total",
    "Requests denied by the daily quota (including fail-closed denials)",
    ["reason"],
    registry=registry,
)

agent_schema_failures_total = Counter(
    "agent_schema_failures_total",
    "Model answers that were not valid JSON for the feature payload",
    ["feature"],
    registry=registry,
)

ai_feedback_total = Counter(
    "ai_feedback_total",
    "User feedback on AI responses",
    ["feature", "feedback"],
    registry=registry,
)

# ============================================================================
# CONTENT SAFETY
# ============================================================================

content_filter_verdicts_total = Counter(
    "content_filter_verdicts_total",
    "Content filter verdicts",
    ["context", "allowed", "reason"],
    registry=registry,
)

# ============================================================================
# CACHE
# ============================================================================

cache_hits_total = Counter(
    "cache_hits_total",
    "Total number of cache hits",
    ["cache_type"],
    registry=registry,
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total number of cache misses",
    ["cache_type"],
    registry=registry,
)

cache_entries = Gauge(
    "cache_entries",
    "Number of entries currently held by an in-process cache",
    ["cache_type"],
    registry=registry,
)

# ============================================================================
# UPSTREAM COLLABORATORS
# ============================================================================

llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of LLM completion requests",
    ["model"],
    registry=registry,
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "LLM completion latency in seconds",
    ["model"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=registry,
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Total tokens reported by the LLM",
    ["model", "kind"],
    registry=registry,
)

llm_cost_usd_total = Counter(
    "llm_cost_usd_total",
    "Estimated LLM spend in USD",
    ["feature"],
    registry=registry,
)

upstream_errors_total = Counter(
    "upstream_errors_total",
    "Errors raised by upstream collaborators",
    ["collaborator", "error_type"],
    registry=registry,
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0 = closed, 1 = half_open, 2 = open)",
    ["name"],
    registry=registry,
)

# ============================================================================
# RAG INDEXING
# ============================================================================

rag_records_indexed_total = Counter(
    "rag_records_indexed_total",
    "Records upserted into the vector store",
    ["collection"],
    registry=registry,
)

rag_records_removed_total = Counter(
    "rag_records_removed_total",
    "Records deleted from the vector store",
    ["collection"],
    registry=registry,
)

rag_indexing_failures_total = Counter(
    "rag_indexing_failures_total",
    "Records that failed to index (isolated and skipped)",
    ["collection"],
    registry=registry,
)

rag_indexing_duration_seconds = Histogram(
    "rag_indexing_duration_seconds",
    "Duration of an indexing run in seconds",
    ["mode"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
    registry=registry,
)

vector_collection_size = Gauge(
    "vector_collection_size",
    "Number of records per vector collection",
    ["collection"],
    registry=registry,
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def record_ai_request(feature: str, status: str, duration_seconds: float) -> None:
    ai_requests_total.labels(feature=feature, status=status).inc()
    ai_request_duration_seconds.labels(feature=feature).observe(duration_seconds)


def record_fallback(feature: str, reason: str) -> None:
    ai_fallbacks_total.labels(feature=feature, reason=reason).inc()


def record_confidence(feature: str, confidence: float) -> None:
    ai_confidence_distribution.labels(feature=feature).observe(confidence)


def record_quota_denial(reason: str) -> None:
    quota_denials_total.labels(reason=reason).inc()


def record_agent_schema_failure(feature: str) -> None:
    agent_schema_failures_total.labels(feature=feature).inc()


def record_feedback(feature: str, feedback: str) -> None:
    ai_feedback_total.labels(feature=feature, feedback=feedback).inc()


def record_content_verdict(context: str, allowed: bool, reason: str) -> None:
    content_filter_verdicts_total.labels(
        context=context,
        allowed=str(allowed).lower(),
        reason=reason,
    ).inc()


def record_cache_hit(cache_type: str) -> None:
    cache_hits_total.labels(cache_type=cache_type).inc()


def record_cache_miss(cache_type: str) -> None:
    cache_misses_total.labels(cache_type=cache_type).inc()


def update_cache_size(cache_type: str, size: int) -> None:
    cache_entries.labels(cache_type=cache_type).set(size)


def record_llm_request(model: str, duration_seconds: float) -> None:
    llm_requests_total.labels(model=model).inc()
    llm_request_duration_seconds.labels(model=model).observe(duration_seconds)


def record_llm_tokens(model: str, prompt_tokens: int, completion_tokens: int) -> None:
    if prompt_tokens:
        llm_tokens_total.labels(model=model, kind="prompt").inc(prompt_tokens)
    if completion_tokens:
        llm_tokens_total.labels(model=model, kind="completion").inc(completion_tokens)


def record_llm_cost(feature: str, cost_usd: float) -> None:
    if cost_usd > 0:
        llm_cost_usd_total.labels(feature=feature).inc(cost_usd)


def record_upstream_error(collaborator: str, error_type: str) -> None:
    upstream_errors_total.labels(collaborator=collaborator, error_type=error_type).inc()


def record_circuit_state(name: str, state: str) -> None:
    circuit_breaker_state.labels(name=name).set(_CIRCUIT_STATE_VALUES.get(state, 0))


def record_indexed(collection: str, count: int = 1) -> None:
    rag_records_indexed_total.labels(collection=collection).inc(count)


def record_removed(collection: str, count: int = 1) -> None:
    rag_records_removed_total.labels(collection=collection).inc(count)


def record_indexing_failure(collection: str, count: int = 1) -> None:
    rag_indexing_failures_total.labels(collection=collection).inc(count)


def record_indexing_run(mode: str, duration_seconds: float) -> None:
    rag_indexing_duration_seconds.labels(mode=mode).observe(duration_seconds)


def update_collection_size(collection: str, size: int) -> None:
    vector_collection_size.labels(collection=collection).set(size)


def get_metrics() -> bytes:
    """Prometheus text exposition of all pipeline metrics."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
