"""Knowledge-base indexing: content items to chunks, embeddings and stored vectors."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Protocol, Sequence

from storeassist.chunking.service import ContentChunker, compose_item_text, content_fingerprint, normalize_text
from storeassist.embeddings.service import BatchStatus, EmbeddingService
from storeassist.errors import (
    AuthenticationError,
    InvalidInputError,
    Result,
    StoreAssistError,
    UnavailableError,
)
from storeassist.metrics.observability import PipelineMetrics, get_logger
from storeassist.metrics.stats import StatsCounter
from storeassist.models import Chunk, ContentItem, ContentType, EmbeddingRecord, utcnow
from storeassist.storage import BackingStore, InMemoryBackingStore, KeyedLocks, SourceState
from storeassist.vectors.store import VectorStore

ChangeListener = Callable[[], None]


class ContentSource(Protocol):
    """Paginated supplier of storefront content."""

    def fetch(self, content_type: str, page: int, page_size: int) -> Sequence[ContentItem]:
        """Return one page (1-based) of items; an empty page ends iteration."""


@dataclass(frozen=True)
class IndexingConfig:
    """Configuration for the knowledge-base indexer."""

    batch_size: int = 25
    max_workers: int = 4
    page_size: int = 50
    max_pages: int = 1000

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise InvalidInputError("batch_size must be positive")
        if self.max_workers <= 0:
            raise InvalidInputError("max_workers must be positive")
        if self.page_size <= 0 or self.max_pages <= 0:
            raise InvalidInputError("page_size and max_pages must be positive")


class ItemStatus(str, Enum):
    INDEXED = "indexed"
    PARTIAL = "partial"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ItemOutcome:
    source_id: str
    source_type: str
    status: ItemStatus
    chunk_count: int = 0
    fallback_chunks: int = 0
    duplicate_of: str | None = None
    removed_chunks: int = 0


@dataclass
class IndexingReport:
    """Per-item results of one indexing run, keyed by ``"{type}:{id}"``."""

    results: Dict[str, Result[ItemOutcome]] = field(default_factory=dict)

    def merge(self, other: "IndexingReport") -> "IndexingReport":
        self.results.update(other.results)
        return self

    def _count(self, status: ItemStatus) -> int:
        return sum(1 for result in self.results.values() if result.ok and result.value.status is status)

    @property
    def indexed(self) -> int:
        return self._count(ItemStatus.INDEXED) + self._count(ItemStatus.PARTIAL)

    @property
    def unchanged(self) -> int:
        return self._count(ItemStatus.UNCHANGED)

    @property
    def duplicates(self) -> int:
        return self._count(ItemStatus.DUPLICATE)

    @property
    def failures(self) -> Dict[str, StoreAssistError]:
        return {key: result.error for key, result in self.results.items() if result.error is not None}

    @property
    def chunk_count(self) -> int:
        return sum(result.value.chunk_count for result in self.results.values() if result.ok)

    @property
    def ok(self) -> bool:
        return not self.failures


def _type_value(value: object) -> str:
    return str(getattr(value, "value", value))


def _key(source_type: str, source_id: str) -> str:
    return f"{source_type}:{source_id}"


class KnowledgeBaseIndexer:
    """Keeps the vector store and backing store in step with the content source.

    Items are processed in batches; batches run on a bounded thread pool
    and each batch performs its own writes. Failures are recorded per item
    and never abort the batch, except rejected embedding credentials which
    propagate immediately.
    """

    def __init__(
        self,
        chunker: ContentChunker,
        embeddings: EmbeddingService,
        vector_store: VectorStore,
        backing_store: BackingStore | None = None,
        config: IndexingConfig | None = None,
        *,
        stats: StatsCounter | None = None,
    ) -> None:
        self._chunker = chunker
        self._embeddings = embeddings
        self._vector_store = vector_store
        self._backing_store = backing_store or InMemoryBackingStore()
        self._config = config or IndexingConfig()
        self._stats = stats or StatsCounter()
        self._locks = KeyedLocks()
        self._listeners: List[ChangeListener] = []
        self._logger = get_logger("ingestion")

    @property
    def backing_store(self) -> BackingStore:
        return self._backing_store

    @property
    def vector_store(self) -> VectorStore:
        return self._vector_store

    @property
    def stats(self) -> StatsCounter:
        return self._stats

    def add_change_listener(self, callback: ChangeListener) -> None:
        """Register ``callback`` to run after any batch that wrote to the knowledge base."""

        self._listeners.append(callback)

    def index_items(self, items: Iterable[ContentItem], force: bool = False) -> IndexingReport:
        items = list(items)
        size = self._config.batch_size
        batches = [items[i : i + size] for i in range(0, len(items), size)]
        report = IndexingReport()
        if not batches:
            return report

        workers = min(self._config.max_workers, len(batches))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="storeassist-index") as pool:
            futures = [pool.submit(self._index_batch, number, batch, force) for number, batch in enumerate(batches)]
            for future in futures:
                report.merge(future.result())

        self._logger.info(
            "indexing.complete",
            items=len(items),
            indexed=report.indexed,
            unchanged=report.unchanged,
            duplicates=report.duplicates,
            failed=len(report.failures),
            chunks=report.chunk_count,
        )
        return report

    def index_source(
        self,
        source: ContentSource,
        content_types: Iterable[ContentType | str] | None = None,
        force: bool = False,
    ) -> IndexingReport:
        """Walk every page of ``source`` for each content type and index it."""

        report = IndexingReport()
        for content_type in content_types or tuple(ContentType):
            type_name = _type_value(content_type)
            for page in range(1, self._config.max_pages + 1):
                try:
                    items = source.fetch(type_name, page, self._config.page_size)
                except StoreAssistError as exc:
                    self._logger.error("indexing.fetch_failed", content_type=type_name, page=page, error=str(exc))
                    report.results[_key(type_name, f"page-{page}")] = Result.failure(exc)
                    break
                if not items:
                    break
                report.merge(self.index_items(items, force=force))
            else:
                self._logger.warning("indexing.page_cap", content_type=type_name, max_pages=self._config.max_pages)
        return report

    def remove_source(self, source_id: str, source_type: ContentType | str) -> int:
        """Delete a source's chunks and vectors; return the number of chunks removed."""

        type_name = _type_value(source_type)
        with self._locks.hold(_key(type_name, str(source_id))):
            vectors = self._vector_store.delete(str(source_id), type_name)
            chunks = self._backing_store.delete_source(str(source_id), type_name)
        removed = max(vectors, chunks)
        if removed:
            self._stats.incr("sources_removed")
            self._notify()
        return removed

    def statistics(self) -> dict[str, object]:
        snapshot: dict[str, object] = dict(self._stats.snapshot())
        snapshot["vector_store"] = self._vector_store.statistics()
        source_count = getattr(self._backing_store, "source_count", None)
        if callable(source_count):
            snapshot["sources"] = source_count()
        return snapshot

    def _index_batch(self, number: int, items: Sequence[ContentItem], force: bool) -> IndexingReport:
        report = IndexingReport()
        wrote = False
        for item in items:
            key = _key(_type_value(item.type), str(item.id))
            try:
                outcome = self._index_item(item, force)
            except AuthenticationError:
                raise
            except StoreAssistError as exc:
                self._stats.incr("items_failed")
                self._logger.error(
                    "indexing.item_failed",
                    batch=number,
                    source_id=str(item.id),
                    source_type=_type_value(item.type),
                    error=str(exc),
                    error_code=exc.code,
                )
                report.results[key] = Result.failure(exc)
                continue
            report.results[key] = Result.success(outcome)
            if outcome.status in (ItemStatus.INDEXED, ItemStatus.PARTIAL) or outcome.removed_chunks:
                wrote = True
        if wrote:
            self._refresh_gauge()
            self._notify()
        return report

    def _index_item(self, item: ContentItem, force: bool) -> ItemOutcome:
        source_id = str(item.id)
        source_type = _type_value(item.type)
        text = compose_item_text(item)
        if not normalize_text(text):
            raise InvalidInputError("Content item has no indexable text", operation="index")
        fingerprint = content_fingerprint(text)

        if not force:
            state = self._backing_store.get_source_state(source_id, source_type)
            if state is not None and state.fingerprint == fingerprint:
                self._stats.incr("items_unchanged")
                return ItemOutcome(source_id, source_type, ItemStatus.UNCHANGED, chunk_count=len(state.chunk_ids))
            duplicate = self._backing_store.find_source_by_fingerprint(fingerprint)
            if duplicate is not None and (duplicate.source_id, duplicate.source_type) != (source_id, source_type):
                self._stats.incr("items_duplicate")
                removed = 0
                if state is not None:
                    # superseded content goes even though nothing new is stored
                    with self._locks.hold(_key(source_type, source_id)):
                        vectors = self._vector_store.delete(source_id, source_type)
                        chunks = self._backing_store.delete_source(source_id, source_type)
                    removed = max(vectors, chunks)
                self._logger.info(
                    "indexing.duplicate",
                    source_id=source_id,
                    source_type=source_type,
                    duplicate_of=_key(duplicate.source_type, duplicate.source_id),
                    removed_chunks=removed,
                )
                return ItemOutcome(
                    source_id,
                    source_type,
                    ItemStatus.DUPLICATE,
                    duplicate_of=_key(duplicate.source_type, duplicate.source_id),
                    removed_chunks=removed,
                )

        chunks = self._chunker.chunk_item(item)
        embedded = self._embeddings.embed_batch_detailed([chunk.text for chunk in chunks])
        if embedded.status is BatchStatus.UNAVAILABLE:
            raise UnavailableError("Embedding provider unavailable for every chunk", operation="index")
        failed = embedded.failed_indices
        generated_at = utcnow()
        records = [
            (chunk, EmbeddingRecord(chunk.chunk_id, vector, self._embeddings.model, generated_at))
            for position, (chunk, vector) in enumerate(zip(chunks, embedded.vectors))
            if position not in failed
        ]
        state = SourceState(
            source_id=source_id,
            source_type=source_type,
            # an incomplete source keeps no fingerprint so the next run retries it
            fingerprint="" if failed else fingerprint,
            chunk_ids=tuple(chunk.chunk_id for chunk in chunks),
            last_modified=item.last_modified,
        )
        self._write(state, chunks, records)

        status = ItemStatus.PARTIAL if failed else ItemStatus.INDEXED
        self._stats.incr("items_indexed")
        self._stats.incr("chunks_indexed", len(records))
        if failed:
            self._stats.incr("fallback_chunks", len(failed))
            self._logger.warning(
                "indexing.partial",
                source_id=source_id,
                source_type=source_type,
                failed_chunks=len(failed),
                chunk_count=len(chunks),
            )
        return ItemOutcome(source_id, source_type, status, chunk_count=len(records), fallback_chunks=len(failed))

    def _write(
        self,
        state: SourceState,
        chunks: Sequence[Chunk],
        records: Sequence[tuple[Chunk, EmbeddingRecord]],
    ) -> None:
        with self._locks.hold(_key(state.source_type, state.source_id)):
            self._vector_store.delete(state.source_id, state.source_type)
            self._backing_store.replace_source_chunks(replace(state, fingerprint=""), chunks)
            stored = self._vector_store.upsert_records(
                [chunk for chunk, _ in records],
                [record for _, record in records],
            )
            if stored == len(records) and state.fingerprint:
                # only a fully stored source is recorded as up to date
                self._backing_store.replace_source_chunks(state, chunks)
        if stored < len(records):
            raise UnavailableError(
                f"Stored {stored} of {len(records)} vectors for {state.source_type}:{state.source_id}",
                operation="index",
            )

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as exc:  # listeners belong to other components
                self._logger.error("indexing.listener_failed", listener=repr(listener), error=str(exc))

    def _refresh_gauge(self) -> None:
        try:
            PipelineMetrics.indexed_chunks.set(self._vector_store.count())
        except UnavailableError as exc:
            self._logger.debug("indexing.gauge_skipped", error=str(exc))


__all__ = [
    "ChangeListener",
    "ContentSource",
    "IndexingConfig",
    "IndexingReport",
    "ItemOutcome",
    "ItemStatus",
    "KnowledgeBaseIndexer",
]
