"""Embedding service with caching, bounded batches, retry and fallback vectors."""

from __future__ import annotations

import hashlib
import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Sequence, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from storeassist.cache import Cache, InMemoryCache, NamespacedCache
from storeassist.embeddings.providers import EmbeddingProvider, HashEmbeddingProvider
from storeassist.errors import (
    AuthenticationError,
    InvalidInputError,
    RateLimitedError,
    StoreAssistError,
    TransientProviderError,
    UnavailableError,
)
from storeassist.metrics.observability import PipelineMetrics, get_logger
from storeassist.metrics.stats import StatsCounter
from storeassist.vectors.ops import normalize, zero_vector

Vector = Tuple[float, ...]

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for the embedding service."""

    model: str = "text-embedding-3-small"
    dim: int = 1536
    max_batch_size: int = 100
    max_chars: int = 8000
    cache_ttl_seconds: float = 86400
    use_cache: bool = True
    retry_attempts: int = 5
    retry_base_seconds: float = 1.0
    inter_batch_delay_seconds: float = 1.0
    dummy_mode: bool = False

    def __post_init__(self) -> None:
        if self.dim <= 0:
            raise InvalidInputError("Embedding dimension must be positive")
        if self.max_batch_size <= 0:
            raise InvalidInputError("max_batch_size must be positive")
        if self.max_chars <= 0:
            raise InvalidInputError("max_chars must be positive")
        if self.retry_attempts < 0 or self.retry_base_seconds < 0 or self.inter_batch_delay_seconds < 0:
            raise InvalidInputError("Retry and delay settings must not be negative")


class BatchStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class EmbeddingFailure:
    """Slots of a batch that received the fallback vector, and why."""

    indices: Tuple[int, ...]
    error: StoreAssistError


@dataclass
class BatchEmbeddingReport:
    vectors: List[Vector]
    failures: List[EmbeddingFailure] = field(default_factory=list)
    cache_hits: int = 0
    status: BatchStatus = BatchStatus.OK

    @property
    def failed_indices(self) -> set[int]:
        return {index for failure in self.failures for index in failure.indices}


class EmbeddingService:
    """Turns text into fixed-dimension unit vectors.

    ``embed`` and ``embed_batch`` are total for well-formed input: provider
    outages, throttling and malformed responses produce the zero fallback
    vector instead of an exception. Empty text raises ``InvalidInputError``
    and rejected credentials raise ``AuthenticationError``.
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        config: EmbeddingConfig | None = None,
        *,
        cache: Cache | None = None,
        stats: StatsCounter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or EmbeddingConfig()
        if self._config.dummy_mode:
            provider = HashEmbeddingProvider(self._config.dim)
        self._provider = provider
        self._cache = NamespacedCache(cache or InMemoryCache(), "embedding", default_ttl=self._config.cache_ttl_seconds)
        self._stats = stats or StatsCounter()
        self._sleep = sleep
        self._fallback: Vector = zero_vector(self._config.dim)
        self._logger = get_logger("embeddings")

    @property
    def config(self) -> EmbeddingConfig:
        return self._config

    @property
    def dimension(self) -> int:
        return self._config.dim

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def stats(self) -> StatsCounter:
        return self._stats

    @property
    def fallback_vector(self) -> Vector:
        return self._fallback

    def is_available(self) -> bool:
        return self._provider is not None and self._provider.configured

    def sanitize(self, text: str) -> str:
        cleaned = _WHITESPACE_RE.sub(" ", text or "").strip()
        if len(cleaned) > self._config.max_chars:
            cleaned = cleaned[: self._config.max_chars]
        return cleaned

    def embed(self, text: str) -> Vector:
        if not self.sanitize(text):
            raise InvalidInputError("Text is empty after sanitization", operation="embed")
        return self.embed_batch_detailed([text]).vectors[0]

    def embed_batch(self, texts: Sequence[str]) -> List[Vector]:
        return self.embed_batch_detailed(texts).vectors

    def embed_batch_detailed(self, texts: Sequence[str]) -> BatchEmbeddingReport:
        """Embed ``texts`` in order, reporting which slots fell back and why."""

        report = BatchEmbeddingReport(vectors=[self._fallback] * len(texts))
        if not texts:
            return report

        pending: list[tuple[int, str]] = []
        empty: list[int] = []
        for index, raw in enumerate(texts):
            text = self.sanitize(raw)
            if not text:
                empty.append(index)
                continue
            cached = self._cache_get(text) if self._config.use_cache else None
            if cached is not None:
                report.vectors[index] = cached
                report.cache_hits += 1
                continue
            pending.append((index, text))
        if empty:
            report.failures.append(
                EmbeddingFailure(tuple(empty), InvalidInputError("Text is empty after sanitization", operation="embed"))
            )
            self._count_fallbacks(len(empty))

        self._stats.incr("texts_processed", len(texts))
        if pending:
            self._embed_pending(pending, report)

        provider_failures = [f for f in report.failures if not isinstance(f.error, InvalidInputError)]
        failed_slots = sum(len(f.indices) for f in provider_failures)
        # cached vectors are real vectors, so a batch with hits is at worst partial
        if pending and failed_slots >= len(pending) and not report.cache_hits:
            report.status = BatchStatus.UNAVAILABLE
        elif report.failures:
            report.status = BatchStatus.PARTIAL
        return report

    def clear_cache(self) -> int:
        return self._cache.clear()

    def _embed_pending(self, pending: list[tuple[int, str]], report: BatchEmbeddingReport) -> None:
        if not self.is_available():
            indices = tuple(index for index, _ in pending)
            report.failures.append(
                EmbeddingFailure(indices, UnavailableError("No embedding provider is configured", operation="embed"))
            )
            self._count_fallbacks(len(indices))
            self._logger.warning("embedding.unavailable", texts_count=len(indices))
            return

        size = self._config.max_batch_size
        batches = [pending[i : i + size] for i in range(0, len(pending), size)]
        for batch_number, batch in enumerate(batches):
            indices = tuple(index for index, _ in batch)
            try:
                vectors = self._request_with_retry([text for _, text in batch], batch_number)
            except AuthenticationError:
                self._stats.incr("failed_requests")
                self._logger.error("embedding.auth_failed", provider=self._provider.name, batch=batch_number)
                raise
            except (RateLimitedError, TransientProviderError, UnavailableError, InvalidInputError) as exc:
                self._stats.incr("failed_requests")
                report.failures.append(EmbeddingFailure(indices, exc))
                self._count_fallbacks(len(indices))
                self._logger.error(
                    "embedding.batch_failed",
                    provider=self._provider.name,
                    batch=batch_number,
                    texts_in_batch=len(batch),
                    error=str(exc),
                    error_code=exc.code,
                )
            else:
                missing: list[int] = []
                for position, (index, text) in enumerate(batch):
                    vector = self._accept(vectors[position] if position < len(vectors) else None)
                    if vector is None:
                        missing.append(index)
                        continue
                    report.vectors[index] = vector
                    if self._config.use_cache:
                        self._cache.set(self._cache_key(text), vector)
                if missing:
                    report.failures.append(
                        EmbeddingFailure(tuple(missing), UnavailableError("Malformed embedding in response", operation="embed"))
                    )
                    self._count_fallbacks(len(missing))
                    self._logger.warning("embedding.malformed_vectors", batch=batch_number, missing=len(missing))
            if batch_number < len(batches) - 1 and self._config.inter_batch_delay_seconds:
                self._sleep(self._config.inter_batch_delay_seconds)

    def _request_with_retry(self, texts: list[str], batch_number: int) -> List[List[float]]:
        base = self._config.retry_base_seconds
        retrying = Retrying(
            stop=stop_after_attempt(self._config.retry_attempts + 1),
            wait=wait_exponential(multiplier=base, min=0, max=base * 16),
            retry=retry_if_exception_type(TransientProviderError),
            sleep=self._sleep,
            before_sleep=lambda state: self._logger.warning(
                "embedding.retry",
                provider=self._provider.name,
                batch=batch_number,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
            reraise=True,
        )
        start = time.perf_counter()
        try:
            vectors = retrying(
                self._provider.embed_documents,
                texts,
                model=self._config.model,
                dimensions=self._config.dim,
            )
        except StoreAssistError as exc:
            PipelineMetrics.embedding_requests.labels(provider=self._provider.name, outcome=exc.code).inc()
            raise
        PipelineMetrics.embedding_latency.observe(time.perf_counter() - start)
        PipelineMetrics.embedding_requests.labels(provider=self._provider.name, outcome="ok").inc()
        self._stats.incr("api_requests")
        return vectors

    def _accept(self, vector: Sequence[float] | None) -> Vector | None:
        if not vector or len(vector) != self._config.dim:
            return None
        try:
            return normalize([float(value) for value in vector])
        except (TypeError, ValueError):
            return None

    def _cache_key(self, text: str) -> str:
        payload = json.dumps([text, self._config.model, self._config.dim], ensure_ascii=False)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def _cache_get(self, text: str) -> Vector | None:
        cached = self._cache.get(self._cache_key(text))
        if cached is None:
            self._stats.incr("cache_misses")
            return None
        self._stats.incr("cache_hits")
        PipelineMetrics.embedding_cache_hits.inc()
        return cached

    def _count_fallbacks(self, count: int) -> None:
        self._stats.incr("fallback_vectors", count)
        PipelineMetrics.embedding_fallbacks.inc(count)


__all__ = [
    "BatchEmbeddingReport",
    "BatchStatus",
    "EmbeddingConfig",
    "EmbeddingFailure",
    "EmbeddingService",
    "Vector",
]
