"""Generation backends for StoreAssist."""

from __future__ import annotations

import json
import logging
import time
from contextlib import closing
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Mapping, Protocol, Sequence

import httpx
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from storeassist.chunking.service import estimate_tokens
from storeassist.errors import (
    AuthenticationError,
    InvalidInputError,
    RateLimitedError,
    ServiceUnavailableError,
    StoreAssistError,
    TransientProviderError,
    UnavailableError,
)
from storeassist.httpclient import authorize, build_client, raise_for_provider_status, translate_transport_error
from storeassist.metrics.observability import PipelineMetrics

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def estimate(cls, messages: Sequence[ChatMessage], completion: str) -> "TokenUsage":
        prompt = sum(estimate_tokens(message.content) for message in messages)
        generated = estimate_tokens(completion)
        return cls(prompt, generated, prompt + generated)


@dataclass(frozen=True)
class GenerationParams:
    """Per-call sampling parameters; ``model`` overrides the provider's default."""

    max_tokens: int = 2000
    temperature: float = 0.7
    model: str | None = None

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise InvalidInputError("max_tokens must be positive")
        if not 0.0 <= self.temperature <= 2.0:
            raise InvalidInputError("temperature must be between 0 and 2")


@dataclass(frozen=True)
class Completion:
    content: str
    model: str
    provider: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None
    is_mock: bool = False


@dataclass(frozen=True)
class CompletionDelta:
    """One streamed content increment."""

    content: str
    provider: str = ""
    model: str = ""
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    is_mock: bool = False


class GenerationProvider(Protocol):
    """Protocol describing a chat-completion backend."""

    name: str

    @property
    def configured(self) -> bool:
        """Whether credentials are in place to serve requests."""

    def complete(self, messages: Sequence[ChatMessage], params: GenerationParams) -> Completion:
        """Return the full completion for ``messages``."""

    def stream(self, messages: Sequence[ChatMessage], params: GenerationParams) -> Iterator[CompletionDelta]:
        """Yield content increments as the provider produces them."""


class OpenAICompatibleProvider:
    """Chat completions over an OpenAI-compatible HTTP API (OpenRouter, OpenAI, vLLM...)."""

    def __init__(
        self,
        name: str,
        api_key: str | None,
        *,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 60.0,
        retry_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        extra_headers: Mapping[str, str] | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self.model = model
        self._api_key = api_key
        self._retry_attempts = retry_attempts
        self._retry_base = retry_base_seconds
        self._sleep = sleep
        self._client = authorize(client, api_key) if client is not None else build_client(base_url, api_key, timeout)
        if extra_headers:
            self._client.headers.update(extra_headers)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def complete(self, messages: Sequence[ChatMessage], params: GenerationParams) -> Completion:
        self._require_configured()
        body = self._body(messages, params, stream=False)
        retrying = Retrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_base, min=0, max=self._retry_base * 8),
            retry=retry_if_exception_type(TransientProviderError),
            sleep=self._sleep,
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )
        payload = retrying(self._post, body)
        try:
            choice = payload["choices"][0]
            content = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise UnavailableError(f"{self.name} returned an unexpected response shape", operation="generate") from exc
        usage = payload.get("usage") or {}
        if usage:
            tokens = TokenUsage(
                int(usage.get("prompt_tokens", 0)),
                int(usage.get("completion_tokens", 0)),
                int(usage.get("total_tokens", 0)),
            )
        else:
            tokens = TokenUsage.estimate(messages, content)
        return Completion(
            content=content,
            model=str(payload.get("model") or body["model"]),
            provider=self.name,
            usage=tokens,
            finish_reason=choice.get("finish_reason"),
        )

    def stream(self, messages: Sequence[ChatMessage], params: GenerationParams) -> Iterator[CompletionDelta]:
        self._require_configured()
        body = self._body(messages, params, stream=True)
        headers = {"Accept": "text/event-stream"}
        try:
            with self._client.stream("POST", "/chat/completions", json=body, headers=headers) as response:
                if response.status_code >= 400:
                    response.read()
                    raise_for_provider_status(response, provider=self.name, operation="stream")
                event: list[str] = []
                # iter_lines decodes incrementally, so multi-byte characters may span network chunks
                for line in response.iter_lines():
                    if line:
                        event.append(line)
                        continue
                    delta = self._parse_event("\n".join(event), body["model"])
                    event = []
                    if delta is _DONE:
                        return
                    if delta is not None:
                        yield delta
                if event:
                    delta = self._parse_event("\n".join(event), body["model"])
                    if delta is not None and delta is not _DONE:
                        yield delta
        except httpx.HTTPError as exc:
            raise translate_transport_error(exc, provider=self.name, operation="stream") from exc

    def close(self) -> None:
        self._client.close()

    def _require_configured(self) -> None:
        if not self.configured:
            raise UnavailableError(f"{self.name} API key is not configured", operation="generate")

    def _body(self, messages: Sequence[ChatMessage], params: GenerationParams, *, stream: bool) -> dict[str, object]:
        if not messages:
            raise InvalidInputError("At least one message is required", operation="generate")
        return {
            "model": params.model or self.model,
            "messages": [message.as_dict() for message in messages],
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "stream": stream,
        }

    def _post(self, body: Mapping[str, object]) -> dict:
        try:
            response = self._client.post("/chat/completions", json=body)
        except httpx.HTTPError as exc:
            raise translate_transport_error(exc, provider=self.name, operation="generate") from exc
        raise_for_provider_status(response, provider=self.name, operation="generate")
        try:
            return response.json()
        except ValueError as exc:
            raise UnavailableError(f"{self.name} returned invalid JSON", operation="generate") from exc

    def _parse_event(self, event: str, model: object) -> "CompletionDelta | object | None":
        data_lines = [line[5:].strip() for line in event.split("\n") if line.startswith("data:")]
        if not data_lines:
            # comments such as ": OPENROUTER PROCESSING"
            return None
        data = "\n".join(data_lines)
        if data == "[DONE]":
            return _DONE
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping malformed stream event from %s", self.name)
            return None
        if isinstance(payload, dict) and payload.get("error"):
            raise UnavailableError(f"{self.name} stream error: {payload['error']}", operation="stream")
        choices = payload.get("choices") or [{}]
        choice = choices[0] or {}
        usage = payload.get("usage")
        return CompletionDelta(
            content=(choice.get("delta") or {}).get("content") or "",
            provider=self.name,
            model=str(payload.get("model") or model),
            finish_reason=choice.get("finish_reason"),
            usage=TokenUsage(
                int(usage.get("prompt_tokens", 0)),
                int(usage.get("completion_tokens", 0)),
                int(usage.get("total_tokens", 0)),
            )
            if usage
            else None,
        )


_DONE = object()


class MockGenerationProvider:
    """Deterministic provider used for tests and offline development."""

    name = "mock"
    model = "mock"

    def __init__(self, reply: str | None = None) -> None:
        self._reply = reply

    @property
    def configured(self) -> bool:
        return True

    def complete(self, messages: Sequence[ChatMessage], params: GenerationParams) -> Completion:
        content = self._content(messages)
        return Completion(
            content=content,
            model=self.model,
            provider=self.name,
            usage=TokenUsage.estimate(messages, content),
            finish_reason="stop",
            is_mock=True,
        )

    def stream(self, messages: Sequence[ChatMessage], params: GenerationParams) -> Iterator[CompletionDelta]:
        words = self._content(messages).split(" ")
        for index, word in enumerate(words):
            last = index == len(words) - 1
            yield CompletionDelta(
                content=word if last else f"{word} ",
                provider=self.name,
                model=self.model,
                finish_reason="stop" if last else None,
                is_mock=True,
            )

    def _content(self, messages: Sequence[ChatMessage]) -> str:
        if self._reply is not None:
            return self._reply
        question = next((m.content for m in reversed(messages) if m.role == "user"), "")
        return (
            "[Development mode] The assistant is running without a live model. "
            f"Your question was: {question[:200]}"
        )


class ProviderChain:
    """Ordered provider strategies tried until one succeeds.

    Authentication and invalid-input errors stop the chain immediately.
    When every provider fails, the optional mock provider answers; without
    one, :class:`ServiceUnavailableError` is raised.
    """

    def __init__(self, providers: Sequence[GenerationProvider], *, mock: GenerationProvider | None = None) -> None:
        self._providers = list(providers)
        self._mock = mock

    @property
    def providers(self) -> List[GenerationProvider]:
        return list(self._providers)

    @property
    def has_mock(self) -> bool:
        return self._mock is not None

    def complete(self, messages: Sequence[ChatMessage], params: GenerationParams) -> Completion:
        last_error: StoreAssistError | None = None
        for provider in self._candidates():
            start = time.perf_counter()
            try:
                completion = provider.complete(messages, params)
            except (AuthenticationError, InvalidInputError) as exc:
                self._record_failure(provider, exc)
                raise
            except (TransientProviderError, RateLimitedError, UnavailableError) as exc:
                self._record_failure(provider, exc)
                last_error = exc
                continue
            PipelineMetrics.observe_generation(time.perf_counter() - start)
            return completion
        if self._mock is not None:
            LOGGER.warning("All generation providers failed; answering from the mock provider")
            return self._mock.complete(messages, params)
        raise ServiceUnavailableError("All generation providers failed", operation="generate") from last_error

    def stream(self, messages: Sequence[ChatMessage], params: GenerationParams) -> Iterator[CompletionDelta]:
        """Stream from the first provider that produces an increment.

        Falling back is only possible before the first increment; errors
        after that propagate to the consumer.
        """

        last_error: StoreAssistError | None = None
        for provider in self._candidates():
            upstream = provider.stream(messages, params)
            with closing(upstream):
                try:
                    first = next(upstream)
                except StopIteration:
                    return
                except (AuthenticationError, InvalidInputError) as exc:
                    self._record_failure(provider, exc)
                    raise
                except (TransientProviderError, RateLimitedError, UnavailableError) as exc:
                    self._record_failure(provider, exc)
                    last_error = exc
                    continue
                yield first
                yield from upstream
                return
        if self._mock is not None:
            LOGGER.warning("All streaming providers failed; streaming from the mock provider")
            yield from self._mock.stream(messages, params)
            return
        raise ServiceUnavailableError("All generation providers failed", operation="stream") from last_error

    def _candidates(self) -> List[GenerationProvider]:
        return [provider for provider in self._providers if provider.configured]

    @staticmethod
    def _record_failure(provider: GenerationProvider, exc: StoreAssistError) -> None:
        PipelineMetrics.provider_failures.labels(provider=provider.name, error=exc.code).inc()
        LOGGER.warning("Generation provider %s failed: %s (%s)", provider.name, exc.code, exc)


__all__ = [
    "ChatMessage",
    "Completion",
    "CompletionDelta",
    "GenerationParams",
    "GenerationProvider",
    "MockGenerationProvider",
    "OpenAICompatibleProvider",
    "ProviderChain",
    "TokenUsage",
]
