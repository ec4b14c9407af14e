from __future__ import annotations

import pytest

from storeassist.chunking import ChunkingConfig, ContentChunker
from storeassist.embeddings import EmbeddingConfig, EmbeddingService, HashEmbeddingProvider
from storeassist.errors import AuthenticationError, InvalidInputError, UnavailableError
from storeassist.ingestion import IndexingConfig, ItemStatus, KnowledgeBaseIndexer
from storeassist.models import ContentItem, ContentType
from storeassist.storage import InMemoryBackingStore
from storeassist.vectors import InMemoryVectorBackend, VectorStore, VectorStoreConfig

DIM = 16

TEE = "Soft organic cotton tee with a relaxed fit. Machine washable and made to last."
SHIPPING = "We ship worldwide within three business days. Free shipping on orders over fifty dollars."


class _PickyProvider(HashEmbeddingProvider):
    """Returns an empty vector for any chunk mentioning ``broken``."""

    def embed_documents(self, texts, *, model="", dimensions=None):
        vectors = super().embed_documents(texts, model=model, dimensions=dimensions)
        return [[] if "broken" in text else vector for text, vector in zip(texts, vectors)]


class _RejectingProvider(HashEmbeddingProvider):
    def embed_documents(self, texts, *, model="", dimensions=None):
        raise AuthenticationError("invalid api key")


class _FlakyBackend(InMemoryVectorBackend):
    """Rejects the first ``failures`` upserts as if the vector database were down."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    def upsert(self, record):
        if self.failures:
            self.failures -= 1
            raise UnavailableError("vector database offline")
        super().upsert(record)


class _PagedSource:
    def __init__(self, items_by_type, fail_type=None) -> None:
        self.items_by_type = items_by_type
        self.fail_type = fail_type
        self.requests = []

    def fetch(self, content_type, page, page_size):
        self.requests.append((content_type, page))
        if content_type == self.fail_type:
            raise UnavailableError("content API offline")
        items = self.items_by_type.get(content_type, [])
        start = (page - 1) * page_size
        return items[start : start + page_size]


def _item(item_id: str, body: str, item_type: ContentType = ContentType.PRODUCT, title: str = "") -> ContentItem:
    return ContentItem(id=item_id, type=item_type, title=title, body=body)


def _indexer(provider=None, backend=None, **config) -> KnowledgeBaseIndexer:
    embeddings = EmbeddingService(
        provider or HashEmbeddingProvider(DIM),
        EmbeddingConfig(dim=DIM, inter_batch_delay_seconds=0),
    )
    store = VectorStore(backend, VectorStoreConfig(dim=DIM), embeddings=embeddings)
    return KnowledgeBaseIndexer(
        ContentChunker(ChunkingConfig()),
        embeddings,
        store,
        InMemoryBackingStore(),
        IndexingConfig(**config),
    )


def test_index_items_writes_chunks_and_vectors():
    indexer = _indexer()
    report = indexer.index_items([_item("1", TEE, title="Relaxed tee"), _item("2", SHIPPING, ContentType.PAGE)])
    assert report.ok
    assert report.indexed == 2
    assert report.chunk_count == 2
    assert indexer.vector_store.count() == 2
    assert indexer.backing_store.get_source_state("1", "product").chunk_ids == ("product-1-0",)
    assert indexer.stats.get("items_indexed") == 2


def test_unchanged_items_are_skipped_and_changes_replace_chunks():
    indexer = _indexer()
    indexer.index_items([_item("1", TEE)])
    again = indexer.index_items([_item("1", "<p>" + TEE + "</p>")])
    assert again.unchanged == 1
    assert again.indexed == 0

    long_body = " ".join([TEE] * 30)
    changed = indexer.index_items([_item("1", long_body)])
    assert changed.indexed == 1
    chunk_count = changed.chunk_count
    assert chunk_count > 1
    assert indexer.vector_store.count() == chunk_count

    shorter = indexer.index_items([_item("1", SHIPPING)])
    assert shorter.chunk_count == 1
    assert indexer.vector_store.count() == 1


def test_duplicate_content_is_detected_unless_forced():
    indexer = _indexer()
    indexer.index_items([_item("1", SHIPPING, ContentType.PAGE)])
    report = indexer.index_items([_item("2", SHIPPING, ContentType.POST)])
    outcome = report.results["post:2"].value
    assert outcome.status is ItemStatus.DUPLICATE
    assert outcome.duplicate_of == "page:1"
    assert indexer.vector_store.count() == 1

    forced = indexer.index_items([_item("2", SHIPPING, ContentType.POST)], force=True)
    assert forced.indexed == 1
    assert indexer.vector_store.count() == 2

def test_failed_vector_write_is_retried_next_run():
    indexer = _indexer(backend=_FlakyBackend(failures=1))
    first = indexer.index_items([_item("1", TEE)])
    assert isinstance(first.failures["product:1"], UnavailableError)
    assert indexer.vector_store.count() == 0
    assert indexer.backing_store.get_source_state("1", "product").fingerprint == ""

    second = indexer.index_items([_item("1", TEE)])
    assert second.results["product:1"].value.status is ItemStatus.INDEXED
    assert indexer.vector_store.count() == 1
    assert indexer.backing_store.get_source_state("1", "product").fingerprint != ""
    assert indexer.index_items([_item("1", TEE)]).unchanged == 1


def test_source_changed_into_a_duplicate_drops_its_old_content():
    indexer = _indexer()
    calls = []
    indexer.index_items([_item("1", TEE), _item("2", SHIPPING)])
    indexer.add_change_listener(lambda: calls.append("changed"))

    report = indexer.index_items([_item("2", TEE)])
    outcome = report.results["product:2"].value
    assert outcome.status is ItemStatus.DUPLICATE
    assert outcome.duplicate_of == "product:1"
    assert outcome.removed_chunks == 1
    assert indexer.backing_store.get_source_state("2", "product") is None
    assert [item.source_id for item in indexer.vector_store.search_text(SHIPPING, threshold=0.99)] == []
    assert indexer.vector_store.count() == 1
    assert calls == ["changed"]



def test_failed_item_does_not_abort_batch():
    indexer = _indexer(batch_size=10)
    report = indexer.index_items([_item("1", TEE), _item("2", "<p></p>"), _item("3", SHIPPING, ContentType.PAGE)])
    assert report.indexed == 2
    assert isinstance(report.failures["product:2"], InvalidInputError)
    assert not report.ok
    assert indexer.stats.get("items_failed") == 1


def test_partially_embedded_item_is_retried_next_run():
    indexer = _indexer(provider=_PickyProvider(DIM))
    body = " ".join([TEE] * 12) + " " + " ".join(["This broken sentence will not embed."] * 30)
    report = indexer.index_items([_item("1", body)])
    outcome = report.results["product:1"].value
    assert outcome.status is ItemStatus.PARTIAL
    assert outcome.fallback_chunks > 0
    assert indexer.vector_store.count() == outcome.chunk_count
    assert indexer.backing_store.get_source_state("1", "product").fingerprint == ""

    retry = indexer.index_items([_item("1", body)])
    assert retry.results["product:1"].value.status is ItemStatus.PARTIAL


def test_unavailable_embeddings_fail_the_item():
    embeddings = EmbeddingService(None, EmbeddingConfig(dim=DIM))
    store = VectorStore(config=VectorStoreConfig(dim=DIM))
    indexer = KnowledgeBaseIndexer(ContentChunker(), embeddings, store)
    report = indexer.index_items([_item("1", TEE)])
    assert isinstance(report.failures["product:1"], UnavailableError)
    assert store.count() == 0
    assert indexer.backing_store.get_source_state("1", "product") is None


def test_authentication_failure_propagates():
    indexer = _indexer(provider=_RejectingProvider(DIM))
    with pytest.raises(AuthenticationError):
        indexer.index_items([_item("1", TEE)])


def test_remove_source_deletes_everything_and_notifies():
    indexer = _indexer()
    calls = []
    indexer.add_change_listener(lambda: calls.append("changed"))
    indexer.index_items([_item("1", TEE)])
    assert calls == ["changed"]
    assert indexer.remove_source("1", ContentType.PRODUCT) == 1
    assert indexer.vector_store.count() == 0
    assert indexer.backing_store.get_source_state("1", "product") is None
    assert calls == ["changed", "changed"]
    assert indexer.remove_source("1", "product") == 0
    assert len(calls) == 2


def test_failing_listener_does_not_break_indexing():
    indexer = _indexer()

    def boom() -> None:
        raise RuntimeError("listener exploded")

    indexer.add_change_listener(boom)
    assert indexer.index_items([_item("1", TEE)]).indexed == 1


def test_index_source_walks_pages_until_empty():
    products = [_item(str(n), f"Product number {n}. {TEE} Variant {n}.") for n in range(5)]
    source = _PagedSource({"product": products, "page": [_item("p1", SHIPPING, ContentType.PAGE)]})
    indexer = _indexer(page_size=2, batch_size=2)
    report = indexer.index_source(source, [ContentType.PRODUCT, "page"])
    assert report.indexed == 6
    assert source.requests == [("product", 1), ("product", 2), ("product", 3), ("product", 4), ("page", 1), ("page", 2)]


def test_index_source_records_fetch_failures():
    source = _PagedSource({"page": [_item("p1", SHIPPING, ContentType.PAGE)]}, fail_type="product")
    report = _indexer().index_source(source, ["product", "page"])
    assert isinstance(report.failures["product:page-1"], UnavailableError)
    assert report.indexed == 1


def test_indexed_content_is_searchable_end_to_end():
    indexer = _indexer()
    indexer.index_items([_item("1", TEE), _item("2", SHIPPING, ContentType.PAGE)])
    response = indexer.vector_store.search_text(SHIPPING, threshold=0.99)
    assert [item.source_id for item in response] == ["2"]
    assert response.results[0].content == SHIPPING
    assert response.results[0].metadata["chunk_index"] == 0
