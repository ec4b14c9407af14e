from __future__ import annotations

import itertools

import pytest

from storeassist.chunking import (
    ChunkingConfig,
    ContentChunker,
    compose_item_text,
    content_fingerprint,
    estimate_tokens,
    normalize_text,
)
from storeassist.errors import InvalidInputError
from storeassist.models import ContentItem, ContentType

# 49 characters; joined with single spaces every sentence occupies 50.
SENTENCE = "Soft organic cotton tee with a relaxed fit today."


def _description(sentences: int) -> str:
    return " ".join([SENTENCE] * sentences)


def _assert_covers(chunks, text: str) -> None:
    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    assert chunks[0].start_offset == 0
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_offset <= previous.end_offset
        assert current.start_offset > previous.start_offset
    assert chunks[-1].end_offset == len(text)


def test_normalize_strips_markup_entities_and_punctuation_runs():
    raw = "<p>Hello world.</p> Great!!! deals &amp;amp; more<script>alert(1)</script>"
    assert normalize_text(raw) == "Hello world. Great! deals & more"


def test_short_text_returns_single_chunk_equal_to_normalized_input():
    raw = "<p>Hello world.</p>   Great!!! deals &amp;amp; more"
    chunks = ContentChunker().chunk(raw, chunk_size=200, overlap=20)
    assert len(chunks) == 1
    assert chunks[0].text == normalize_text(raw)
    assert (chunks[0].start_offset, chunks[0].end_offset) == (0, len(normalize_text(raw)))


@pytest.mark.parametrize("sentences,size,overlap", [(30, 300, 50), (80, 1000, 200), (45, 120, 0), (200, 500, 100)])
def test_chunks_cover_text_without_gaps_or_index_skips(sentences, size, overlap):
    text = _description(sentences)
    chunks = ContentChunker().chunk(text, chunk_size=size, overlap=overlap)
    _assert_covers(chunks, text)
    for chunk in chunks:
        assert len(chunk.text) <= size


def test_uneven_text_without_sentence_breaks_still_covers():
    text = "x" * 3333
    chunks = ContentChunker().chunk(text, chunk_size=1000, overlap=150)
    _assert_covers(chunks, text)


def test_product_description_produces_three_overlapping_chunks():
    text = _description(50)
    assert len(text) >= 2490
    chunks = ContentChunker().chunk(text, chunk_size=1000, overlap=200, source_id="42", source_type="product")
    assert len(chunks) == 3
    assert all(len(chunk.text) >= 100 for chunk in chunks)
    for previous, current in zip(chunks, chunks[1:]):
        shared = previous.end_offset - current.start_offset
        assert 0 < shared <= 200
    assert chunks[0].text.endswith(".")
    assert chunks[0].chunk_id == "product-42-0"


def test_without_sentence_preservation_windows_are_exact():
    text = _description(50)
    chunks = ContentChunker().chunk(text, chunk_size=1000, overlap=200, preserve_sentences=False)
    assert (chunks[0].start_offset, chunks[0].end_offset) == (0, 1000)
    assert chunks[1].start_offset == 800


def test_chunk_cap_truncates_instead_of_raising():
    chunker = ContentChunker(ChunkingConfig(max_chunks=2))
    chunks = chunker.chunk(_description(100), chunk_size=500, overlap=50)
    assert len(chunks) == 2


def test_time_budget_truncates_after_first_chunk():
    ticks = itertools.count(0, 100)
    chunker = ContentChunker(ChunkingConfig(time_budget_seconds=30), clock=lambda: next(ticks))
    chunks = chunker.chunk(_description(100), chunk_size=500, overlap=50)
    assert len(chunks) == 1


@pytest.mark.parametrize("size,overlap", [(10, 0), (5000, 100), (500, 500), (500, -1)])
def test_invalid_sizes_are_rejected(size, overlap):
    with pytest.raises(InvalidInputError):
        ContentChunker().chunk(_description(5), chunk_size=size, overlap=overlap)


def test_empty_text_after_normalization_is_rejected():
    with pytest.raises(InvalidInputError):
        ContentChunker().chunk("<p>  </p>&nbsp;")


def test_fingerprint_ignores_markup_case_and_whitespace():
    assert content_fingerprint("Hello   World") == content_fingerprint("<b>hello</b> world")
    assert content_fingerprint("Hello World") != content_fingerprint("Hello Worlds")


def test_chunk_hash_is_stable_and_case_insensitive():
    first = ContentChunker().chunk("Blue ceramic mug.")[0]
    second = ContentChunker().chunk("BLUE CERAMIC MUG.")[0]
    assert first.content_hash == second.content_hash
    assert first.word_count == 3
    assert first.sentence_count == 1


def test_chunk_item_uses_content_type_defaults():
    item = ContentItem(
        id="7",
        type=ContentType.PRODUCT,
        title="Relaxed tee",
        body=_description(40),
        metadata={"sku": "TEE-1", "price": "19.00"},
    )
    chunks = ContentChunker().chunk_item(item)
    assert len(chunks) > 1
    assert all(len(chunk.text) <= 800 for chunk in chunks)
    assert chunks[0].text.startswith("Relaxed tee.")
    assert chunks[0].metadata["sku"] == "TEE-1"
    assert all(chunk.source_type == "product" and chunk.source_id == "7" for chunk in chunks)


def test_compose_item_text_includes_catalog_metadata():
    item = ContentItem(
        id="1",
        type=ContentType.PRODUCT,
        title="Mug",
        body="Holds 350ml.",
        metadata={"categories": ["Kitchen", "Gifts"], "price": "12.50"},
    )
    text = compose_item_text(item)
    assert "Categories: Kitchen, Gifts." in text
    assert "Price: 12.50." in text


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcde") == 2
