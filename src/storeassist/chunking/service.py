"""Sentence-aware text chunking for the knowledge base."""

from __future__ import annotations

import hashlib
import html
import math
import re
import time
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping

from storeassist.errors import InvalidInputError
from storeassist.metrics.observability import PipelineMetrics, get_logger
from storeassist.models import Chunk, ContentItem

_SCRIPT_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_TERMINAL_RUN_RE = re.compile(r"([.!?])[.!?]+")
_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_END_RE = re.compile(r"[.!?](?=\s|$)")

SENTENCE_TERMINATORS = frozenset(".!?:;")

# Catalog metadata worth folding into the indexed text.
_SEARCHABLE_METADATA = ("sku", "price", "categories", "tags", "attributes")


@dataclass(frozen=True)
class TypeChunking:
    chunk_size: int
    overlap: int


DEFAULT_TYPE_CHUNKING: Mapping[str, TypeChunking] = {
    "product": TypeChunking(800, 80),
    "page": TypeChunking(1000, 100),
    "post": TypeChunking(1200, 120),
    "setting": TypeChunking(600, 60),
    "taxonomy_term": TypeChunking(400, 40),
    "category": TypeChunking(400, 40),
    "tag": TypeChunking(300, 30),
}


@dataclass(frozen=True)
class ChunkingConfig:
    """Configuration for the content chunker."""

    chunk_size: int = 1000
    overlap: int = 200
    min_chunk_size: int = 50
    max_chunk_size: int = 2000
    preserve_sentences: bool = True
    max_chunks: int = 1000
    max_iterations: int = 10000
    time_budget_seconds: float = 30.0
    type_overrides: Mapping[str, TypeChunking] = field(default_factory=lambda: dict(DEFAULT_TYPE_CHUNKING))

    def __post_init__(self) -> None:
        if self.min_chunk_size <= 0 or self.min_chunk_size > self.max_chunk_size:
            raise InvalidInputError("min_chunk_size must be positive and not exceed max_chunk_size")
        if self.max_chunks <= 0 or self.max_iterations <= 0:
            raise InvalidInputError("chunk caps must be positive")
        if self.time_budget_seconds <= 0:
            raise InvalidInputError("time_budget_seconds must be positive")


def normalize_text(raw: str) -> str:
    """Strip markup, decode entities and collapse whitespace and punctuation runs."""

    text = unicodedata.normalize("NFKC", raw or "")
    text = _SCRIPT_RE.sub(" ", text)
    text = _TAG_RE.sub(" ", text)
    # catalog text is often double-encoded (&amp;amp;)
    text = html.unescape(html.unescape(text))
    text = text.replace("\u00a0", " ")
    text = _TERMINAL_RUN_RE.sub(r"\1", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()


def content_fingerprint(text: str) -> str:
    """Stable hash of the lower-cased normalized text, used for deduplication."""

    return hashlib.sha256(normalize_text(text).lower().encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def count_sentences(text: str) -> int:
    if not text.strip():
        return 0
    return max(1, len(_SENTENCE_END_RE.findall(text)))


def compose_item_text(item: ContentItem) -> str:
    """Render a content item as the text that gets chunked."""

    parts: list[str] = []
    if item.title:
        parts.append(f"{item.title.strip()}.")
    if item.body:
        parts.append(item.body)
    for key in _SEARCHABLE_METADATA:
        value = item.metadata.get(key) if item.metadata else None
        if value in (None, "", [], {}):
            continue
        parts.append(f"{key.capitalize()}: {_render_metadata(value)}.")
    return " ".join(parts)


def _render_metadata(value: Any) -> str:
    if isinstance(value, Mapping):
        return "; ".join(f"{k}: {_render_metadata(v)}" for k, v in value.items())
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(v) for v in value)
    return str(value)


class ContentChunker:
    """Splits normalized text into overlapping, sentence-aware chunks.

    Chunking is a pure function of its input. Safety caps (chunk count,
    loop iterations, wall-clock budget) never raise: the chunks produced so
    far are returned and the truncation is logged.
    """

    def __init__(self, config: ChunkingConfig | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config or ChunkingConfig()
        self._clock = clock
        self._logger = get_logger("chunking")

    @property
    def config(self) -> ChunkingConfig:
        return self._config

    def chunk(
        self,
        text: str,
        chunk_size: int | None = None,
        overlap: int | None = None,
        preserve_sentences: bool | None = None,
        *,
        source_id: str = "",
        source_type: str = "",
        metadata: Mapping[str, Any] | None = None,
    ) -> List[Chunk]:
        size = self._config.chunk_size if chunk_size is None else chunk_size
        step_back = self._config.overlap if overlap is None else overlap
        keep_sentences = self._config.preserve_sentences if preserve_sentences is None else preserve_sentences
        self._validate(size, step_back)

        normalized = normalize_text(text)
        if not normalized:
            raise InvalidInputError("Text is empty after normalization", operation="chunk")

        start_time = self._clock()
        source_hash = content_fingerprint(normalized)
        spans = self._spans(normalized, size, step_back, keep_sentences, source_id=source_id)
        chunks = [
            self._make_chunk(
                normalized,
                index,
                start,
                end,
                source_id=source_id,
                source_type=source_type,
                source_hash=source_hash,
                metadata=metadata or {},
            )
            for index, (start, end) in enumerate(spans)
        ]
        duration = self._clock() - start_time
        PipelineMetrics.observe_chunking(duration, len(chunks))
        self._logger.debug(
            "chunking.complete",
            source_id=source_id,
            source_type=source_type,
            chunk_count=len(chunks),
            text_length=len(normalized),
        )
        return chunks

    def chunk_item(
        self,
        item: ContentItem,
        chunk_size: int | None = None,
        overlap: int | None = None,
        preserve_sentences: bool | None = None,
    ) -> List[Chunk]:
        """Chunk a content item using its content-type defaults when no size is given."""

        source_type = getattr(item.type, "value", item.type)
        if chunk_size is None and overlap is None:
            override = self._config.type_overrides.get(str(source_type))
            if override is not None:
                chunk_size, overlap = override.chunk_size, override.overlap
        metadata: dict[str, Any] = {"title": item.title, "url": item.url}
        metadata.update(item.metadata or {})
        return self.chunk(
            compose_item_text(item),
            chunk_size,
            overlap,
            preserve_sentences,
            source_id=str(item.id),
            source_type=str(source_type),
            metadata=metadata,
        )

    def _validate(self, chunk_size: int, overlap: int) -> None:
        cfg = self._config
        if chunk_size < cfg.min_chunk_size or chunk_size > cfg.max_chunk_size:
            raise InvalidInputError(
                f"Chunk size must be between {cfg.min_chunk_size} and {cfg.max_chunk_size}",
                operation="chunk",
            )
        if overlap < 0 or overlap >= chunk_size:
            raise InvalidInputError("Overlap must be between 0 and chunk size", operation="chunk")

    def _spans(
        self,
        text: str,
        chunk_size: int,
        overlap: int,
        preserve_sentences: bool,
        *,
        source_id: str,
    ) -> list[tuple[int, int]]:
        length = len(text)
        if length <= chunk_size:
            return [(0, length)]

        deadline = self._clock() + self._config.time_budget_seconds
        spans: list[tuple[int, int]] = []
        start = 0
        iterations = 0
        while start < length:
            iterations += 1
            cap = None
            if iterations > self._config.max_iterations:
                cap = "iterations"
            elif len(spans) >= self._config.max_chunks:
                cap = "chunks"
            elif spans and self._clock() > deadline:
                cap = "time"
            if cap is not None:
                PipelineMetrics.chunking_truncations.labels(cap=cap).inc()
                self._logger.warning(
                    "chunking.truncated",
                    source_id=source_id,
                    cap=cap,
                    chunk_count=len(spans),
                    covered_chars=spans[-1][1] if spans else 0,
                    text_length=length,
                )
                break

            end = min(start + chunk_size, length)
            if end < length and preserve_sentences:
                end = self._find_boundary(text, start, end)
            spans.append((start, end))
            if end >= length:
                break

            next_start = end - overlap
            if next_start <= start:
                next_start = min(start + max(1, chunk_size // 10), end)
            start = next_start
        return spans

    @staticmethod
    def _find_boundary(text: str, start: int, end: int) -> int:
        window = text[start:end]
        width = len(window)
        for pos in range(width - 1, -1, -1):
            if window[pos] in SENTENCE_TERMINATORS:
                if pos + 1 > width * 0.5:
                    return start + pos + 1
                break
        space = window.rfind(" ")
        if space > width * 0.8:
            return start + space
        return end

    @staticmethod
    def _make_chunk(
        text: str,
        index: int,
        start: int,
        end: int,
        *,
        source_id: str,
        source_type: str,
        source_hash: str,
        metadata: Mapping[str, Any],
    ) -> Chunk:
        piece = text[start:end].strip()
        return Chunk(
            source_id=source_id,
            source_type=source_type,
            index=index,
            text=piece,
            start_offset=start,
            end_offset=end,
            word_count=len(piece.split()),
            sentence_count=count_sentences(piece),
            content_hash=hashlib.sha256(piece.lower().encode("utf-8")).hexdigest(),
            source_hash=source_hash,
            metadata=dict(metadata),
        )


__all__ = [
    "ChunkingConfig",
    "ContentChunker",
    "DEFAULT_TYPE_CHUNKING",
    "TypeChunking",
    "compose_item_text",
    "content_fingerprint",
    "count_sentences",
    "estimate_tokens",
    "normalize_text",
]
