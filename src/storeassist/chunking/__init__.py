"""Content chunking."""

from .service import (
    DEFAULT_TYPE_CHUNKING,
    ChunkingConfig,
    ContentChunker,
    TypeChunking,
    compose_item_text,
    content_fingerprint,
    count_sentences,
    estimate_tokens,
    normalize_text,
)

__all__ = [
    "DEFAULT_TYPE_CHUNKING",
    "ChunkingConfig",
    "ContentChunker",
    "TypeChunking",
    "compose_item_text",
    "content_fingerprint",
    "count_sentences",
    "estimate_tokens",
    "normalize_text",
]
