"""Embedding services."""

from .providers import EmbeddingProvider, HashEmbeddingProvider, LangChainEmbeddingProvider, OpenAIEmbeddingProvider
from .service import BatchEmbeddingReport, BatchStatus, EmbeddingConfig, EmbeddingFailure, EmbeddingService

__all__ = [
    "BatchEmbeddingReport",
    "BatchStatus",
    "EmbeddingConfig",
    "EmbeddingFailure",
    "EmbeddingProvider",
    "EmbeddingService",
    "HashEmbeddingProvider",
    "LangChainEmbeddingProvider",
    "OpenAIEmbeddingProvider",
]
