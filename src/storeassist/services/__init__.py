"""Service layer orchestrations for StoreAssist."""

from .conversation import ConversationStore
from .generation import (
    ChatMessage,
    Completion,
    CompletionDelta,
    GenerationParams,
    GenerationProvider,
    MockGenerationProvider,
    OpenAICompatibleProvider,
    ProviderChain,
    TokenUsage,
)
from .prompt import PromptBuilder, StoreContext, classify_query, truncate_history
from .rag import RagConfig, RagOrchestrator, RagRequest, RagResponse, RagState, ResponseStream, StreamChunk
from .ratelimit import RateLimitConfig, SlidingWindowRateLimiter
from .safety import SafetyFilter, SafetyLevel, SafetyVerdict, UnsafeQueryError

__all__ = [
    "ChatMessage",
    "Completion",
    "CompletionDelta",
    "ConversationStore",
    "GenerationParams",
    "GenerationProvider",
    "MockGenerationProvider",
    "OpenAICompatibleProvider",
    "PromptBuilder",
    "ProviderChain",
    "RagConfig",
    "RagOrchestrator",
    "RagRequest",
    "RagResponse",
    "RagState",
    "RateLimitConfig",
    "ResponseStream",
    "SafetyFilter",
    "SafetyLevel",
    "SafetyVerdict",
    "SlidingWindowRateLimiter",
    "StoreContext",
    "StreamChunk",
    "TokenUsage",
    "UnsafeQueryError",
    "classify_query",
    "truncate_history",
]
