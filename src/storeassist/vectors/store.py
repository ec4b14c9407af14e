"""Vector store: normalized upserts and ranked cosine search over a pluggable backend."""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, Sequence

from storeassist.cache import Cache, InMemoryCache, NamespacedCache
from storeassist.errors import InvalidInputError, UnavailableError
from storeassist.metrics.observability import PipelineMetrics, get_logger
from storeassist.metrics.stats import StatsCounter
from storeassist.models import Chunk, EmbeddingRecord, RetrievalResult, SearchResponse, SearchStatus, utcnow
from storeassist.storage import KeyedLocks
from storeassist.vectors.backends import InMemoryVectorBackend, StoredVector, VectorBackend, rank_key
from storeassist.vectors.ops import normalize, validate_vector

if TYPE_CHECKING:
    from storeassist.embeddings.service import EmbeddingService

# Keys lifted out of upsert metadata into first-class record fields.
_RESERVED_KEYS = ("source_id", "source_type", "content", "model", "generated_at")


@dataclass(frozen=True)
class VectorStoreConfig:
    """Configuration for :class:`VectorStore`."""

    dim: int = 1536
    default_top_k: int = 5
    max_top_k: int = 100
    threshold: float = 0.7
    cache_ttl_seconds: float = 300
    use_cache: bool = True
    allow_mock: bool = False
    max_mock_results: int = 5

    def __post_init__(self) -> None:
        if self.dim <= 0:
            raise InvalidInputError("Vector dimension must be positive")
        if not 1 <= self.default_top_k <= self.max_top_k:
            raise InvalidInputError("default_top_k must be between 1 and max_top_k")
        if not 0.0 <= self.threshold <= 1.0:
            raise InvalidInputError("threshold must be between 0 and 1")


class VectorStore:
    """Persists chunk vectors and answers top-K similarity queries.

    Both backends are asked for candidates only; thresholding, metadata
    filtering, ranking and truncation happen here so the output does not
    depend on which backend is configured.
    """

    def __init__(
        self,
        backend: VectorBackend | None = None,
        config: VectorStoreConfig | None = None,
        *,
        embeddings: "EmbeddingService | None" = None,
        cache: Cache | None = None,
        stats: StatsCounter | None = None,
    ) -> None:
        self._backend = backend or InMemoryVectorBackend()
        self._config = config or VectorStoreConfig()
        self._embeddings = embeddings
        self._cache = NamespacedCache(cache or InMemoryCache(), "search", default_ttl=self._config.cache_ttl_seconds)
        self._stats = stats or StatsCounter()
        self._locks = KeyedLocks()
        self._logger = get_logger("vectors")

    @property
    def config(self) -> VectorStoreConfig:
        return self._config

    @property
    def backend(self) -> VectorBackend:
        return self._backend

    @property
    def stats(self) -> StatsCounter:
        return self._stats

    def upsert(self, chunk_id: str, vector: Sequence[float], metadata: Mapping[str, Any] | None = None) -> bool:
        """Store ``vector`` for ``chunk_id``, overwriting any previous vector.

        Returns ``False`` when the backend is unreachable. Malformed vectors
        raise :class:`InvalidInputError`.
        """

        if not chunk_id:
            raise InvalidInputError("chunk_id is required", operation="upsert")
        values = normalize(validate_vector(vector, self._config.dim))
        meta = dict(metadata or {})
        generated_at = meta.get("generated_at")
        record = StoredVector(
            chunk_id=chunk_id,
            vector=values,
            source_id=str(meta.get("source_id", "")),
            source_type=str(meta.get("source_type", "")),
            content=str(meta.get("content", "")),
            model=str(meta.get("model", "")),
            metadata={key: value for key, value in meta.items() if key not in _RESERVED_KEYS},
            generated_at=generated_at if isinstance(generated_at, datetime) else utcnow(),
        )
        try:
            with self._locks.hold(chunk_id):
                self._backend.upsert(record)
        except UnavailableError as exc:
            self._stats.incr("failed_upserts")
            self._logger.error("vectors.upsert_failed", chunk_id=chunk_id, error=str(exc))
            return False
        finally:
            self._invalidate()
        self._stats.incr("upserts")
        return True

    def upsert_records(self, chunks: Sequence[Chunk], records: Sequence[EmbeddingRecord]) -> int:
        """Upsert embedding records alongside their chunks; return how many were stored."""

        if len(chunks) != len(records):
            raise InvalidInputError("chunks and records must have the same length", operation="upsert")
        stored = 0
        for chunk, record in zip(chunks, records):
            if chunk.chunk_id != record.chunk_id:
                raise InvalidInputError(
                    f"Record {record.chunk_id} does not belong to chunk {chunk.chunk_id}", operation="upsert"
                )
            metadata = dict(chunk.metadata)
            metadata.update(
                source_id=chunk.source_id,
                source_type=chunk.source_type,
                content=chunk.text,
                model=record.model,
                generated_at=record.generated_at,
                chunk_index=chunk.index,
                content_hash=chunk.content_hash,
            )
            if self.upsert(record.chunk_id, record.vector, metadata):
                stored += 1
        return stored

    def search(
        self,
        query_vector: Sequence[float],
        top_k: int | None = None,
        threshold: float | None = None,
        source_types: Iterable[str] | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        limit = self._config.default_top_k if top_k is None else top_k
        if limit < 1:
            raise InvalidInputError("top_k must be at least 1", operation="search")
        limit = min(limit, self._config.max_top_k)
        minimum = self._config.threshold if threshold is None else threshold
        if not 0.0 <= minimum <= 1.0:
            raise InvalidInputError("threshold must be between 0 and 1", operation="search")
        types = sorted({str(getattr(t, "value", t)) for t in source_types}) if source_types else None
        query = normalize(validate_vector(query_vector, self._config.dim))

        key = self._cache_key(query, limit, minimum, types, filters)
        generation = self._cache.generation
        if self._config.use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                self._stats.incr("search_cache_hits")
                return cached
            self._stats.incr("search_cache_misses")

        start = time.perf_counter()
        try:
            candidates = self._backend.query(
                query,
                limit=None if filters else limit,
                threshold=minimum,
                source_types=types,
            )
        except UnavailableError as exc:
            self._stats.incr("backend_failures")
            if not self._config.allow_mock:
                self._logger.error("vectors.search_failed", error=str(exc))
                raise
            self._logger.warning("vectors.mock_search", error=str(exc), top_k=limit)
            # not cached
            return self._mock_response(limit, minimum, types)

        results = self._finalize(candidates, limit, minimum, types, filters)
        PipelineMetrics.observe_retrieval(
            time.perf_counter() - start,
            len(results),
            (item.similarity_score for item in results),
        )
        response = SearchResponse(results=tuple(results), status=SearchStatus.LIVE)
        self._stats.incr("searches")
        if self._config.use_cache:
            self._cache.set(key, response, generation=generation)
        return response

    def search_text(
        self,
        query: str,
        top_k: int | None = None,
        threshold: float | None = None,
        source_types: Iterable[str] | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        """Embed ``query`` and search with the resulting vector."""

        if self._embeddings is None:
            raise UnavailableError("No embedding service attached to the vector store", operation="search")
        vector = self._embeddings.embed(query)
        return self.search(vector, top_k=top_k, threshold=threshold, source_types=source_types, filters=filters)

    def delete(self, source_id: str, source_type: str) -> int:
        """Remove every vector for the source. Returns 0 when nothing matched."""

        removed = self._backend.delete_source(str(source_id), str(getattr(source_type, "value", source_type)))
        self._invalidate()
        if removed:
            self._stats.incr("deleted", removed)
            self._logger.info("vectors.deleted", source_id=source_id, source_type=source_type, count=removed)
        return removed

    def count(self) -> int:
        return self._backend.count()

    def clear(self) -> None:
        self._backend.clear()
        self._invalidate()

    def statistics(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = dict(self._stats.snapshot())
        try:
            snapshot["vectors"] = self._backend.count()
        except UnavailableError:
            snapshot["vectors"] = None
        snapshot["backend"] = type(self._backend).__name__
        return snapshot

    def _finalize(
        self,
        candidates: Sequence[RetrievalResult],
        limit: int,
        minimum: float,
        types: Sequence[str] | None,
        filters: Mapping[str, Any] | None,
    ) -> List[RetrievalResult]:
        allowed = set(types) if types else None
        kept = [
            item
            for item in candidates
            if item.similarity_score >= minimum
            and (allowed is None or item.source_type in allowed)
            and _matches(item, filters)
        ]
        kept.sort(key=rank_key)
        return kept[:limit]

    def _mock_response(self, limit: int, minimum: float, types: Sequence[str] | None) -> SearchResponse:
        source_type = types[0] if types else "product"
        results = []
        for index in range(min(limit, self._config.max_mock_results)):
            score = round(0.95 - 0.1 * index, 4)
            if score < minimum:
                break
            results.append(
                RetrievalResult(
                    chunk_id=f"mock-{source_type}-{index}",
                    similarity_score=score,
                    content=f"Sample {source_type} information {index + 1} (development data, not from the live catalog).",
                    source_type=source_type,
                    metadata={"title": f"Sample {source_type} {index + 1}", "mock": True},
                    source_id=f"mock-{index}",
                    is_mock=True,
                )
            )
        self._stats.incr("mock_searches")
        return SearchResponse(results=tuple(results), status=SearchStatus.MOCK)

    def _cache_key(
        self,
        query: Sequence[float],
        limit: int,
        minimum: float,
        types: Sequence[str] | None,
        filters: Mapping[str, Any] | None,
    ) -> str:
        digest = hashlib.sha256()
        digest.update(json.dumps([round(value, 8) for value in query]).encode("utf-8"))
        options = {"k": limit, "t": minimum, "types": types or [], "filters": filters or {}}
        digest.update(json.dumps(options, sort_keys=True, default=str).encode("utf-8"))
        return digest.hexdigest()

    def _invalidate(self) -> None:
        self._cache.clear()


def _matches(item: RetrievalResult, filters: Mapping[str, Any] | None) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        if key == "source_id":
            actual: Any = item.source_id
        else:
            actual = item.metadata.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected and str(actual) not in {str(value) for value in expected}:
                return False
        elif actual != expected and str(actual) != str(expected):
            return False
    return True


__all__ = ["VectorStore", "VectorStoreConfig"]
