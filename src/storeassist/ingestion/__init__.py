"""Knowledge-base indexing pipeline."""

from .service import (
    ContentSource,
    IndexingConfig,
    IndexingReport,
    ItemOutcome,
    ItemStatus,
    KnowledgeBaseIndexer,
)

__all__ = [
    "ContentSource",
    "IndexingConfig",
    "IndexingReport",
    "ItemOutcome",
    "ItemStatus",
    "KnowledgeBaseIndexer",
]
