"""Shared domain models used across the StoreAssist pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentType(str, Enum):
    """Kinds of storefront content handed over by the content source."""

    PRODUCT = "product"
    PAGE = "page"
    POST = "post"
    SETTING = "setting"
    TAXONOMY_TERM = "taxonomy_term"
    CATEGORY = "category"
    TAG = "tag"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ContentItem:
    """Immutable snapshot of one piece of storefront content."""

    id: str
    type: ContentType
    title: str
    body: str
    url: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    last_modified: datetime | None = None


@dataclass(frozen=True)
class Chunk:
    """Bounded segment of normalized source text ready for embedding."""

    source_id: str
    source_type: str
    index: int
    text: str
    start_offset: int
    end_offset: int
    word_count: int
    sentence_count: int
    content_hash: str
    source_hash: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return make_chunk_id(self.source_type, self.source_id, self.index)


def make_chunk_id(source_type: str, source_id: str, index: int) -> str:
    return f"{source_type}-{source_id}-{index}"


@dataclass(frozen=True)
class EmbeddingRecord:
    """Unit-length vector stored for a chunk."""

    chunk_id: str
    vector: tuple[float, ...]
    model: str
    generated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ConversationTurn:
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RetrievalResult:
    """Chunk returned from the vector store during retrieval."""

    chunk_id: str
    similarity_score: float
    content: str
    source_type: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    source_id: str = ""
    generated_at: datetime | None = None
    is_mock: bool = False


class SearchStatus(str, Enum):
    LIVE = "live"
    MOCK = "mock"


@dataclass(frozen=True)
class SearchResponse:
    """Ranked search results plus whether they came from live data."""

    results: Sequence[RetrievalResult]
    status: SearchStatus = SearchStatus.LIVE

    @property
    def is_mock(self) -> bool:
        return self.status is SearchStatus.MOCK

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)
