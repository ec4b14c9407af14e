"""Runtime configuration for the StoreAssist services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="storeassist_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"
    json_logs: bool = True
    store_name: str = "Store"
    store_url: str = ""
    store_currency: str | None = None

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_size: int = 50
    max_chunk_size: int = 2000
    max_chunks_per_source: int = 1000
    max_chunk_iterations: int = 10000
    chunking_time_budget_seconds: float = 30.0

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536
    embedding_api_base: str = "https://api.openai.com/v1"
    embedding_api_key: str | None = None
    embedding_max_batch_size: int = 100
    embedding_max_chars: int = 8000
    embedding_cache_ttl_seconds: int = 86400
    embedding_timeout_seconds: float = 30.0
    embedding_retry_attempts: int = 5
    embedding_retry_base_seconds: float = 1.0
    embedding_inter_batch_delay_seconds: float = 1.0
    use_dummy_embeddings: bool | None = None
    # Optional local sentence-embedding model via LangChain
    use_local_embedding_model: bool = False
    local_embedding_model: str = "BAAI/bge-small-en-v1.5"

    # Vector store
    vector_backend: Literal["memory", "chroma"] = "memory"
    chroma_persist_dir: Path | None = None
    chroma_collection: str = "storeassist-kb"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False
    search_top_k: int = 5
    search_max_top_k: int = 100
    search_threshold: float = 0.7
    search_cache_ttl_seconds: int = 300
    allow_mock_search: bool | None = None

    # Generation
    generation_api_base: str = "https://openrouter.ai/api/v1"
    generation_api_key: str | None = None
    fallback_generation_api_base: str | None = None
    fallback_generation_api_key: str | None = None
    primary_model: str = "google/gemini-2.0-flash-exp:free"
    fallback_model: str = "google/gemini-2.0-flash-thinking-exp:free"
    generation_max_tokens: int = 2000
    generation_temperature: float = 0.7
    generation_timeout_seconds: float = 60.0
    generation_retry_attempts: int = 3
    allow_mock_generation: bool | None = None
    stream_queue_size: int = 32

    # Orchestration
    safety_level: Literal["strict", "moderate", "relaxed"] = "moderate"
    rate_limit_requests_per_minute: int = 60
    rate_limit_tokens_per_minute: int = 100000
    rag_top_k: int = 5
    rag_threshold: float = 0.7
    history_token_budget: int = 4000
    response_cache_ttl_seconds: int = 3600
    conversation_cache_ttl_seconds: int = 1800
    confidence_default: float = 0.5
    confidence_count_weight: float = 0.4
    confidence_similarity_weight: float = 0.6

    # Indexing
    indexing_batch_size: int = 25
    indexing_workers: int = 4

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def is_dev(self) -> bool:
        return self.environment in {"dev", "test"}

    @property
    def dummy_embeddings_enabled(self) -> bool:
        if self.use_dummy_embeddings is not None:
            return self.use_dummy_embeddings
        return self.is_dev and not self.embedding_api_key and not self.use_local_embedding_model

    @property
    def mock_search_enabled(self) -> bool:
        if self.allow_mock_search is not None:
            return self.allow_mock_search
        return self.is_dev

    @property
    def mock_generation_enabled(self) -> bool:
        if self.allow_mock_generation is not None:
            return self.allow_mock_generation
        return self.is_dev


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
