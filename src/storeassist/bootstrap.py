"""Wire every StoreAssist component from :class:`~storeassist.config.Settings`."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import chromadb
from chromadb.api import ClientAPI

from storeassist.cache import Cache, InMemoryCache
from storeassist.chunking import ChunkingConfig, ContentChunker
from storeassist.config import Settings, get_settings
from storeassist.embeddings import (
    EmbeddingConfig,
    EmbeddingProvider,
    EmbeddingService,
    LangChainEmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from storeassist.ingestion import IndexingConfig, KnowledgeBaseIndexer
from storeassist.metrics.observability import configure_logging, get_logger
from storeassist.services import (
    ConversationStore,
    GenerationProvider,
    MockGenerationProvider,
    OpenAICompatibleProvider,
    ProviderChain,
    RagConfig,
    RagOrchestrator,
    RateLimitConfig,
    SafetyFilter,
    SlidingWindowRateLimiter,
    StoreContext,
)
from storeassist.storage import BackingStore, InMemoryBackingStore
from storeassist.vectors import ChromaVectorBackend, InMemoryVectorBackend, VectorBackend, VectorStore, VectorStoreConfig


@dataclass(frozen=True)
class Pipeline:
    settings: Settings
    cache: Cache
    backing_store: BackingStore
    chunker: ContentChunker
    embeddings: EmbeddingService
    vector_store: VectorStore
    indexer: KnowledgeBaseIndexer
    conversations: ConversationStore
    orchestrator: RagOrchestrator


def build_pipeline(
    settings: Settings | None = None,
    *,
    backing_store: BackingStore | None = None,
    cache: Cache | None = None,
    embedding_provider: EmbeddingProvider | None = None,
    generation_providers: Sequence[GenerationProvider] | None = None,
    chroma_client: ClientAPI | None = None,
) -> Pipeline:
    """Construct the indexing and answering pipeline.

    Collaborators passed explicitly win over what ``settings`` would build,
    which is how tests substitute fakes.
    """

    settings = settings or get_settings()
    configure_logging(settings.log_level, json_logs=settings.json_logs)
    logger = get_logger("bootstrap")
    cache = cache or InMemoryCache()
    backing_store = backing_store or InMemoryBackingStore()

    chunker = ContentChunker(
        ChunkingConfig(
            chunk_size=settings.chunk_size,
            overlap=settings.chunk_overlap,
            min_chunk_size=settings.min_chunk_size,
            max_chunk_size=settings.max_chunk_size,
            max_chunks=settings.max_chunks_per_source,
            max_iterations=settings.max_chunk_iterations,
            time_budget_seconds=settings.chunking_time_budget_seconds,
        )
    )

    dummy = embedding_provider is None and settings.dummy_embeddings_enabled
    embeddings = EmbeddingService(
        embedding_provider or (None if dummy else _embedding_provider(settings)),
        EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            max_batch_size=settings.embedding_max_batch_size,
            max_chars=settings.embedding_max_chars,
            cache_ttl_seconds=settings.embedding_cache_ttl_seconds,
            retry_attempts=settings.embedding_retry_attempts,
            retry_base_seconds=settings.embedding_retry_base_seconds,
            inter_batch_delay_seconds=settings.embedding_inter_batch_delay_seconds,
            dummy_mode=dummy,
        ),
        cache=cache,
    )

    vector_store = VectorStore(
        _vector_backend(settings, chroma_client),
        VectorStoreConfig(
            dim=settings.embedding_dim,
            default_top_k=settings.search_top_k,
            max_top_k=settings.search_max_top_k,
            threshold=settings.search_threshold,
            cache_ttl_seconds=settings.search_cache_ttl_seconds,
            allow_mock=settings.mock_search_enabled,
        ),
        embeddings=embeddings,
        cache=cache,
    )

    indexer = KnowledgeBaseIndexer(
        chunker,
        embeddings,
        vector_store,
        backing_store,
        IndexingConfig(batch_size=settings.indexing_batch_size, max_workers=settings.indexing_workers),
    )

    conversations = ConversationStore(
        backing_store,
        cache=cache,
        cache_ttl_seconds=settings.conversation_cache_ttl_seconds,
        token_budget=settings.history_token_budget,
    )

    providers = ProviderChain(
        generation_providers if generation_providers is not None else _generation_providers(settings),
        mock=MockGenerationProvider() if settings.mock_generation_enabled else None,
    )
    orchestrator = RagOrchestrator(
        vector_store,
        providers,
        RagConfig(
            top_k=settings.rag_top_k,
            threshold=settings.rag_threshold,
            confidence_default=settings.confidence_default,
            count_weight=settings.confidence_count_weight,
            similarity_weight=settings.confidence_similarity_weight,
            history_token_budget=settings.history_token_budget,
            response_cache_ttl_seconds=settings.response_cache_ttl_seconds,
            max_tokens=settings.generation_max_tokens,
            temperature=settings.generation_temperature,
            stream_queue_size=settings.stream_queue_size,
        ),
        rate_limiter=SlidingWindowRateLimiter(
            RateLimitConfig(
                requests_per_minute=settings.rate_limit_requests_per_minute,
                tokens_per_minute=settings.rate_limit_tokens_per_minute,
            )
        ),
        safety=SafetyFilter(level=settings.safety_level),
        conversations=conversations,
        store_context=StoreContext(
            store_name=settings.store_name,
            store_url=settings.store_url,
            currency=settings.store_currency,
        ),
        cache=cache,
    )
    indexer.add_change_listener(orchestrator.invalidate_cache)

    logger.info(
        "pipeline.ready",
        environment=settings.environment,
        vector_backend=type(vector_store.backend).__name__,
        dummy_embeddings=dummy,
        generation_providers=[provider.name for provider in providers.providers if provider.configured],
        mock_generation=providers.has_mock,
    )
    return Pipeline(
        settings=settings,
        cache=cache,
        backing_store=backing_store,
        chunker=chunker,
        embeddings=embeddings,
        vector_store=vector_store,
        indexer=indexer,
        conversations=conversations,
        orchestrator=orchestrator,
    )


def _embedding_provider(settings: Settings) -> EmbeddingProvider:
    if settings.use_local_embedding_model:
        return LangChainEmbeddingProvider.from_model_name(settings.local_embedding_model)
    return OpenAIEmbeddingProvider(
        settings.embedding_api_key,
        base_url=settings.embedding_api_base,
        timeout=settings.embedding_timeout_seconds,
    )


def _vector_backend(settings: Settings, client: ClientAPI | None) -> VectorBackend:
    if settings.vector_backend != "chroma":
        return InMemoryVectorBackend()
    if client is None and settings.chroma_host:
        client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    return ChromaVectorBackend(
        settings.chroma_collection,
        client=client,
        persist_directory=None if client else settings.chroma_persist_dir,
    )


def _generation_providers(settings: Settings) -> list[GenerationProvider]:
    headers = {"X-Title": settings.store_name}
    if settings.store_url:
        headers["HTTP-Referer"] = settings.store_url
    primary = OpenAICompatibleProvider(
        "primary",
        settings.generation_api_key,
        model=settings.primary_model,
        base_url=settings.generation_api_base,
        timeout=settings.generation_timeout_seconds,
        retry_attempts=settings.generation_retry_attempts,
        extra_headers=headers,
    )
    fallback = OpenAICompatibleProvider(
        "fallback",
        settings.fallback_generation_api_key or settings.generation_api_key,
        model=settings.fallback_model,
        base_url=settings.fallback_generation_api_base or settings.generation_api_base,
        timeout=settings.generation_timeout_seconds,
        retry_attempts=settings.generation_retry_attempts,
        extra_headers=headers,
    )
    return [primary, fallback]


__all__ = ["Pipeline", "build_pipeline"]
