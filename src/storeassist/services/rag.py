"""RAG orchestration: retrieval, prompt assembly, provider fallback, streaming."""

from __future__ import annotations

import hashlib
import json
import queue
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterator, List, Sequence, Tuple
from uuid import uuid4

from storeassist.cache import Cache, InMemoryCache, NamespacedCache
from storeassist.chunking.service import estimate_tokens
from storeassist.errors import InvalidInputError, ServiceUnavailableError, StoreAssistError
from storeassist.metrics.observability import (
    PipelineMetrics,
    bind_correlation_id,
    clear_correlation_id,
    get_logger,
)
from storeassist.metrics.stats import StatsCounter
from storeassist.models import ConversationTurn, RetrievalResult, SearchStatus
from storeassist.services.conversation import ConversationStore
from storeassist.services.generation import ChatMessage, GenerationParams, ProviderChain, TokenUsage
from storeassist.services.prompt import PromptBuilder, StoreContext, truncate_history
from storeassist.services.ratelimit import SlidingWindowRateLimiter
from storeassist.services.safety import SafetyFilter
from storeassist.vectors.store import VectorStore


class RagState(str, Enum):
    RECEIVED = "received"
    RATE_LIMIT_CHECK = "rate_limit_check"
    CONTEXT_RETRIEVAL = "context_retrieval"
    PROMPT_ASSEMBLY = "prompt_assembly"
    MODEL_CALL = "model_call"
    RESPONSE_PROCESSING = "response_processing"
    CACHED = "cached"
    DELIVERED = "delivered"
    FALLBACK_DELIVERED = "fallback_delivered"


@dataclass(frozen=True)
class RagConfig:
    """Configuration for the RAG orchestrator."""

    top_k: int = 5
    max_top_k: int = 10
    threshold: float = 0.7
    max_expected_chunks: int = 5
    confidence_default: float = 0.5
    count_weight: float = 0.4
    similarity_weight: float = 0.6
    history_token_budget: int = 4000
    response_cache_ttl_seconds: float = 3600
    use_cache: bool = True
    max_tokens: int = 2000
    temperature: float = 0.7
    max_query_chars: int = 2000
    stream_queue_size: int = 32

    def __post_init__(self) -> None:
        if not 1 <= self.top_k <= self.max_top_k:
            raise InvalidInputError("top_k must be between 1 and max_top_k")
        if not 0.0 <= self.threshold <= 1.0:
            raise InvalidInputError("threshold must be between 0 and 1")
        if not 0.0 <= self.confidence_default <= 1.0:
            raise InvalidInputError("confidence_default must be between 0 and 1")
        if self.max_expected_chunks <= 0 or self.history_token_budget < 0:
            raise InvalidInputError("max_expected_chunks must be positive and history budget non-negative")
        if self.count_weight < 0 or self.similarity_weight < 0:
            raise InvalidInputError("confidence weights must not be negative")
        if self.stream_queue_size <= 0:
            raise InvalidInputError("stream_queue_size must be positive")


@dataclass(frozen=True)
class RagRequest:
    """Per-request options. ``history`` overrides the stored conversation."""

    caller_id: str = "anonymous"
    conversation_id: str | None = None
    history: Sequence[ConversationTurn] | None = None
    store_context: StoreContext | None = None
    content_types: Sequence[str] | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    use_cache: bool = True
    top_k: int | None = None
    threshold: float | None = None
    safety_level: str | None = None


@dataclass(frozen=True)
class RagResponse:
    success: bool
    content: str
    error_code: str | None = None
    is_fallback: bool = False
    is_mock: bool = False
    confidence: float = 0.0
    model: str | None = None
    provider: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    context: Tuple[RetrievalResult, ...] = ()
    retrieval_status: SearchStatus | None = None
    safety_filter: str | None = None
    cached: bool = False
    conversation_id: str | None = None
    processing_ms: float = 0.0
    states: Tuple[RagState, ...] = ()


@dataclass(frozen=True)
class StreamChunk:
    """One increment delivered to a streaming caller."""

    content: str
    index: int
    is_final: bool = False
    tokens_used: int = 0
    safety_filter: str | None = None
    error_code: str | None = None
    is_fallback: bool = False
    is_mock: bool = False


@dataclass(frozen=True)
class _Prepared:
    messages: List[ChatMessage]
    context: Tuple[RetrievalResult, ...]
    retrieval_status: SearchStatus | None
    params: GenerationParams


class _Trail:
    def __init__(self) -> None:
        self.states: List[RagState] = [RagState.RECEIVED]

    def enter(self, state: RagState) -> None:
        self.states.append(state)

    def freeze(self) -> Tuple[RagState, ...]:
        return tuple(self.states)


_END = object()


class ResponseStream:
    """Bounded channel between the producer thread and the caller.

    Iterate to receive :class:`StreamChunk` items; the last one has
    ``is_final=True``. ``cancel()`` (or leaving the ``with`` block, or
    abandoning iteration) stops the producer and closes the upstream
    provider stream. Content already delivered is not retracted.
    """

    def __init__(self, *, queue_size: int = 32, poll_seconds: float = 0.05) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=queue_size)
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self._poll = poll_seconds
        self._thread: threading.Thread | None = None
        self.response: RagResponse | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the producer has finished; return whether it did."""

        return self._finished.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        if not self._finished.is_set():
            self.cancel()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def __iter__(self) -> Iterator[StreamChunk]:
        try:
            while not self._cancelled.is_set():
                try:
                    item = self._queue.get(timeout=self._poll)
                except queue.Empty:
                    if self._finished.is_set() and self._queue.empty():
                        return
                    continue
                if item is _END:
                    return
                yield item  # type: ignore[misc]
        finally:
            if not self._finished.is_set():
                self.cancel()

    def __enter__(self) -> "ResponseStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _start(self, target, *args: Any) -> None:
        self._thread = threading.Thread(target=target, args=(self, *args), name="storeassist-stream", daemon=True)
        self._thread.start()

    def _offer(self, item: object) -> bool:
        while not self._cancelled.is_set():
            try:
                self._queue.put(item, timeout=self._poll)
                return True
            except queue.Full:
                continue
        return False

    def _finish(self, response: RagResponse) -> None:
        self.response = response
        self._finished.set()
        if not self._cancelled.is_set():
            self._offer(_END)


class RagOrchestrator:
    """Turns a shopper's question into a grounded, filtered answer.

    ``generate_response`` and ``stream_response`` never raise: every
    failure ends in a response carrying ``success=False``, an error code
    and a friendly message.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        providers: ProviderChain,
        config: RagConfig | None = None,
        *,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        safety: SafetyFilter | None = None,
        prompt_builder: PromptBuilder | None = None,
        conversations: ConversationStore | None = None,
        store_context: StoreContext | None = None,
        cache: Cache | None = None,
        stats: StatsCounter | None = None,
    ) -> None:
        self._vector_store = vector_store
        self._providers = providers
        self._config = config or RagConfig()
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self._safety = safety or SafetyFilter()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._conversations = conversations
        self._store_context = store_context or StoreContext()
        self._cache = NamespacedCache(cache or InMemoryCache(), "response", default_ttl=self._config.response_cache_ttl_seconds)
        self._stats = stats or StatsCounter()
        self._logger = get_logger("rag")

    @property
    def config(self) -> RagConfig:
        return self._config

    def generate_response(self, query: str, request: RagRequest | None = None) -> RagResponse:
        request = request or RagRequest()
        trail = _Trail()
        start = time.perf_counter()
        bind_correlation_id(uuid4().hex)
        self._stats.incr("requests")
        try:
            response = self._generate(query, request, trail, start)
        except StoreAssistError as exc:
            response = self._fallback(query, request, trail, start, exc)
        except Exception as exc:  # the caller must never see a raw exception
            self._logger.exception("rag.unexpected_error", error=str(exc))
            response = self._fallback(query, request, trail, start, ServiceUnavailableError(str(exc)))
        finally:
            clear_correlation_id()
        return response

    def stream_response(self, query: str, request: RagRequest | None = None) -> ResponseStream:
        """Stream the answer on a worker thread.

        Each increment is screened together with everything before it; the
        stream stops at the first increment that would make the answer unsafe,
        and the final chunk then carries the safe replacement message.
        """

        stream = ResponseStream(queue_size=self._config.stream_queue_size)
        self._stats.incr("stream_requests")
        stream._start(self._stream_worker, query, request or RagRequest())
        return stream

    def confidence(self, context: Sequence[RetrievalResult]) -> float:
        """Weighted blend of retrieved-chunk count and mean similarity, capped at 1."""

        if not context:
            return self._config.confidence_default
        count_score = min(1.0, len(context) / self._config.max_expected_chunks)
        mean_similarity = sum(item.similarity_score for item in context) / len(context)
        score = self._config.count_weight * count_score + self._config.similarity_weight * mean_similarity
        return round(min(1.0, max(0.0, score)), 4)

    def invalidate_cache(self) -> int:
        removed = self._cache.clear()
        if removed:
            self._logger.info("rag.cache_invalidated", entries=removed)
        return removed

    def statistics(self) -> dict[str, int]:
        return self._stats.snapshot()

    def _generate(self, query: str, request: RagRequest, trail: _Trail, start: float) -> RagResponse:
        text = self._validate(query)
        trail.enter(RagState.RATE_LIMIT_CHECK)
        self._rate_limiter.check(request.caller_id, tokens=estimate_tokens(text))
        self._safety.screen_query(text, request.safety_level)

        key = self._cache_key(text, request) if self._config.use_cache and request.use_cache else None
        generation = self._cache.generation
        if key is not None:
            cached = self._cache.get(key)
            if cached is not None:
                trail.enter(RagState.CACHED)
                self._stats.incr("cache_hits")
                self._persist(request, text, cached.content)
                self._outcome(RagState.CACHED)
                return replace(
                    cached,
                    cached=True,
                    conversation_id=request.conversation_id,
                    processing_ms=self._elapsed_ms(start),
                    states=trail.freeze(),
                )

        prepared = self._prepare(text, request, trail)
        trail.enter(RagState.MODEL_CALL)
        completion = self._providers.complete(prepared.messages, prepared.params)

        trail.enter(RagState.RESPONSE_PROCESSING)
        content, verdict = self._safety.apply(completion.content)
        self._rate_limiter.record_tokens(request.caller_id, completion.usage.completion_tokens)
        self._persist(request, text, content)
        if completion.is_mock:
            self._stats.incr("mock_responses")

        cacheable = (
            key is not None
            and verdict.safe
            and not completion.is_mock
            and prepared.retrieval_status is not SearchStatus.MOCK
            # the knowledge base changed while this answer was being produced
            and self._cache.generation == generation
        )
        final = RagState.CACHED if cacheable else RagState.DELIVERED
        trail.enter(final)
        response = RagResponse(
            success=True,
            content=content,
            is_mock=completion.is_mock,
            confidence=self.confidence(prepared.context),
            model=completion.model,
            provider=completion.provider,
            usage=completion.usage,
            context=prepared.context,
            retrieval_status=prepared.retrieval_status,
            safety_filter=verdict.filter_name,
            conversation_id=request.conversation_id,
            processing_ms=self._elapsed_ms(start),
            states=trail.freeze(),
        )
        if cacheable:
            self._cache.set(key, replace(response, conversation_id=None), generation=generation)
        self._stats.incr("successes")
        self._outcome(final)
        self._logger.info(
            "rag.delivered",
            provider=completion.provider,
            model=completion.model,
            context_count=len(prepared.context),
            confidence=response.confidence,
            tokens=completion.usage.total_tokens,
            safety_filter=verdict.filter_name,
            cached=cacheable,
        )
        return response

    def _prepare(self, text: str, request: RagRequest, trail: _Trail) -> _Prepared:
        trail.enter(RagState.CONTEXT_RETRIEVAL)
        context, status = self._retrieve(text, request)

        trail.enter(RagState.PROMPT_ASSEMBLY)
        history = self._history(request)
        store = request.store_context or self._store_context
        messages = self._prompt_builder.build(text, context, history, store)
        params = GenerationParams(
            max_tokens=request.max_tokens or self._config.max_tokens,
            temperature=self._config.temperature if request.temperature is None else request.temperature,
        )
        return _Prepared(messages=messages, context=context, retrieval_status=status, params=params)

    def _retrieve(self, text: str, request: RagRequest) -> tuple[Tuple[RetrievalResult, ...], SearchStatus | None]:
        top_k = min(request.top_k or self._config.top_k, self._config.max_top_k)
        threshold = self._config.threshold if request.threshold is None else request.threshold
        try:
            found = self._vector_store.search_text(
                text,
                top_k=top_k,
                threshold=threshold,
                source_types=request.content_types,
            )
        except StoreAssistError as exc:
            self._stats.incr("retrieval_failures")
            self._logger.warning("rag.retrieval_degraded", error=str(exc), error_code=exc.code)
            return (), None
        if found.is_mock:
            self._logger.warning("rag.mock_context", results=len(found))
        return tuple(found.results), found.status

    def _history(self, request: RagRequest) -> List[ConversationTurn]:
        budget = self._config.history_token_budget
        if request.history is not None:
            return truncate_history(list(request.history), budget)
        if self._conversations is not None and request.conversation_id:
            return self._conversations.history(request.conversation_id, budget)
        return []

    def _stream_worker(self, stream: ResponseStream, query: str, request: RagRequest) -> None:
        trail = _Trail()
        start = time.perf_counter()
        bind_correlation_id(uuid4().hex)
        parts: List[str] = []
        index = 0
        response: RagResponse | None = None
        try:
            text = self._validate(query)
            trail.enter(RagState.RATE_LIMIT_CHECK)
            self._rate_limiter.check(request.caller_id, tokens=estimate_tokens(text))
            self._safety.screen_query(text, request.safety_level)
            prepared = self._prepare(text, request, trail)

            trail.enter(RagState.MODEL_CALL)
            provider = model = None
            usage: TokenUsage | None = None
            is_mock = False
            upstream = self._providers.stream(prepared.messages, prepared.params)
            with closing(upstream):
                for delta in upstream:
                    if stream.cancelled:
                        break
                    provider, model = delta.provider or provider, delta.model or model
                    usage = delta.usage or usage
                    is_mock = is_mock or delta.is_mock
                    if not delta.content:
                        continue
                    parts.append(delta.content)
                    if not self._safety.check_response("".join(parts)).safe:
                        # the increment that made the answer unsafe is never forwarded
                        break
                    chunk = StreamChunk(
                        content=delta.content,
                        index=index,
                        tokens_used=estimate_tokens("".join(parts)),
                        is_mock=delta.is_mock,
                    )
                    if not stream._offer(chunk):
                        break
                    index += 1

            generated = "".join(parts)
            if stream.cancelled:
                self._stats.incr("streams_cancelled")
                self._logger.info("rag.stream_cancelled", delivered_chunks=index)
                response = RagResponse(
                    success=False,
                    content=generated,
                    error_code="cancelled",
                    provider=provider,
                    model=model,
                    context=prepared.context,
                    retrieval_status=prepared.retrieval_status,
                    conversation_id=request.conversation_id,
                    processing_ms=self._elapsed_ms(start),
                    states=trail.freeze(),
                )
                return

            trail.enter(RagState.RESPONSE_PROCESSING)
            delivered, verdict = self._safety.apply(generated)
            usage = usage or TokenUsage.estimate(prepared.messages, generated)
            self._rate_limiter.record_tokens(request.caller_id, usage.completion_tokens)
            self._persist(request, text, delivered)
            trail.enter(RagState.DELIVERED)
            stream._offer(
                StreamChunk(
                    content="" if verdict.safe else delivered,
                    index=index,
                    is_final=True,
                    tokens_used=usage.total_tokens,
                    safety_filter=verdict.filter_name,
                    is_mock=is_mock,
                )
            )
            self._stats.incr("successes")
            self._outcome(RagState.DELIVERED)
            response = RagResponse(
                success=True,
                content=delivered,
                is_mock=is_mock,
                confidence=self.confidence(prepared.context),
                model=model,
                provider=provider,
                usage=usage,
                context=prepared.context,
                retrieval_status=prepared.retrieval_status,
                safety_filter=verdict.filter_name,
                conversation_id=request.conversation_id,
                processing_ms=self._elapsed_ms(start),
                states=trail.freeze(),
            )
        except StoreAssistError as exc:
            response = self._stream_failure(stream, query, request, trail, start, exc, index, parts)
        except Exception as exc:  # the caller must never see a raw exception
            self._logger.exception("rag.unexpected_error", error=str(exc))
            response = self._stream_failure(
                stream, query, request, trail, start, ServiceUnavailableError(str(exc)), index, parts
            )
        finally:
            stream._finish(
                response
                or RagResponse(success=False, content="", error_code="cancelled", states=trail.freeze())
            )
            clear_correlation_id()

    def _stream_failure(
        self,
        stream: ResponseStream,
        query: str,
        request: RagRequest,
        trail: _Trail,
        start: float,
        exc: StoreAssistError,
        index: int,
        parts: Sequence[str],
    ) -> RagResponse:
        response = self._fallback(query, request, trail, start, exc)
        if index:
            # part of the answer is already with the caller; only flag the failure
            stream._offer(StreamChunk(content="", index=index, is_final=True, error_code=exc.code, is_fallback=True))
            return replace(response, content="".join(parts))
        stream._offer(
            StreamChunk(
                content=response.content,
                index=0,
                is_final=True,
                error_code=response.error_code,
                is_fallback=True,
            )
        )
        return response

    def _fallback(
        self,
        query: str,
        request: RagRequest,
        trail: _Trail,
        start: float,
        exc: StoreAssistError,
    ) -> RagResponse:
        trail.enter(RagState.FALLBACK_DELIVERED)
        self._stats.incr("fallbacks")
        self._outcome(RagState.FALLBACK_DELIVERED)
        self._logger.warning(
            "rag.fallback",
            error=str(exc),
            error_code=exc.code,
            operation=exc.operation,
            caller_id=request.caller_id,
            states=[state.value for state in trail.states],
        )
        return RagResponse(
            success=False,
            content=self._prompt_builder.fallback_message(query, exc.code),
            error_code=exc.code,
            is_fallback=True,
            safety_filter=getattr(exc, "filter_name", None),
            conversation_id=request.conversation_id,
            processing_ms=self._elapsed_ms(start),
            states=trail.freeze(),
        )

    def _validate(self, query: str) -> str:
        text = (query or "").strip()
        if not text:
            raise InvalidInputError("Query is empty", operation="generate")
        if len(text) > self._config.max_query_chars:
            raise InvalidInputError(
                f"Query exceeds {self._config.max_query_chars} characters", operation="generate"
            )
        return text

    def _persist(self, request: RagRequest, query: str, answer: str) -> None:
        if self._conversations is None or not request.conversation_id:
            return
        try:
            self._conversations.record_exchange(request.conversation_id, query, answer)
        except StoreAssistError as exc:
            self._logger.error(
                "rag.persist_failed",
                conversation_id=request.conversation_id,
                error=str(exc),
                error_code=exc.code,
            )

    def _cache_key(self, text: str, request: RagRequest) -> str:
        store = request.store_context or self._store_context
        payload = {
            "query": " ".join(text.lower().split()),
            "models": [getattr(provider, "model", provider.name) for provider in self._providers.providers],
            "store": store.cache_fields(),
            "types": sorted(str(getattr(t, "value", t)) for t in request.content_types or ()),
            "top_k": request.top_k,
            "threshold": request.threshold,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    @staticmethod
    def _outcome(state: RagState) -> None:
        PipelineMetrics.rag_outcomes.labels(state=state.value).inc()

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return round((time.perf_counter() - start) * 1000, 3)


__all__ = [
    "RagConfig",
    "RagOrchestrator",
    "RagRequest",
    "RagResponse",
    "RagState",
    "ResponseStream",
    "StreamChunk",
]
