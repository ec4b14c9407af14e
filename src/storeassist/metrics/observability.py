"""Observability helpers for StoreAssist."""

from __future__ import annotations

import logging
from typing import Any, Iterable, MutableMapping

import structlog
from prometheus_client import Counter, Gauge, Histogram

_configured = False

# Keys whose values must never reach a log line.
_SECRET_KEYS = frozenset({"api_key", "authorization", "password", "secret", "token", "embedding_api_key", "generation_api_key"})


def _redact_secrets(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in list(event_dict):
        if key.lower() in _SECRET_KEYS and event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def configure_logging(level: int | str = logging.INFO, *, json_logs: bool = True, force: bool = False) -> None:
    """Configure structlog once per process; ``force`` re-applies new settings."""

    global _configured  # noqa: PLW0603 - module-level guard
    if _configured and not force:
        return
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_secrets,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=not force,
    )
    _configured = True


def bind_correlation_id(correlation_id: str) -> None:
    """Attach ``correlation_id`` to every log line emitted by this thread/context."""

    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.unbind_contextvars("correlation_id")


def get_correlation_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def get_logger(name: str = "storeassist") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(f"storeassist.{name}" if name != "storeassist" else name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    chunking_latency = Histogram(
        "storeassist_chunking_duration_seconds",
        "Time spent chunking one source.",
        buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    )
    chunk_count = Histogram(
        "storeassist_chunk_count",
        "Chunks produced per source.",
        buckets=(0, 1, 2, 5, 10, 20, 50, 100, 1000),
    )
    chunking_truncations = Counter(
        "storeassist_chunking_truncations_total",
        "Chunking calls stopped early by a safety cap.",
        ["cap"],
    )
    embedding_requests = Counter(
        "storeassist_embedding_requests_total",
        "Embedding provider requests by outcome.",
        ["provider", "outcome"],
    )
    embedding_cache_hits = Counter(
        "storeassist_embedding_cache_hits_total",
        "Embedding cache hits.",
    )
    embedding_fallbacks = Counter(
        "storeassist_embedding_fallback_vectors_total",
        "Fallback vectors handed out instead of real embeddings.",
    )
    embedding_latency = Histogram(
        "storeassist_embedding_duration_seconds",
        "Time spent per embedding sub-batch.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
    )
    search_latency = Histogram(
        "storeassist_search_duration_seconds",
        "Time spent in vector similarity search.",
        buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0),
    )
    retrieved_chunk_count = Histogram(
        "storeassist_retrieved_chunk_count",
        "Number of chunks returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "storeassist_grounding_score",
        "Similarity score of retrieved chunks.",
        buckets=(0.0, 0.25, 0.5, 0.7, 0.8, 0.9, 1.0),
    )
    generation_latency = Histogram(
        "storeassist_generation_duration_seconds",
        "Time spent generating answers.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
    )
    provider_failures = Counter(
        "storeassist_provider_failures_total",
        "Generation provider failures.",
        ["provider", "error"],
    )
    safety_triggers = Counter(
        "storeassist_safety_filter_triggers_total",
        "Responses replaced by a safety filter.",
        ["filter"],
    )
    rate_limited = Counter(
        "storeassist_rate_limited_total",
        "Requests rejected by the rate limiter.",
        ["limit"],
    )
    rag_outcomes = Counter(
        "storeassist_rag_outcomes_total",
        "RAG requests by final state.",
        ["state"],
    )
    indexed_chunks = Gauge(
        "storeassist_indexed_chunk_count",
        "Number of vectors in the store.",
    )

    @classmethod
    def observe_chunking(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.chunking_latency.observe(duration_seconds)
        cls.chunk_count.observe(chunk_count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.search_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            cls.grounding_score.observe(min(1.0, max(0.0, score)))

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
