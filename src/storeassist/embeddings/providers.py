"""Embedding providers: remote HTTP, LangChain-wrapped local models and hash vectors."""

from __future__ import annotations

import hashlib
import logging
import math
from typing import List, Protocol, Sequence

import httpx
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from storeassist.errors import UnavailableError
from storeassist.httpclient import authorize, build_client, raise_for_provider_status, translate_transport_error

LOGGER = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Protocol describing an external embedding backend."""

    name: str

    @property
    def configured(self) -> bool:
        """Whether credentials/models are in place to serve requests."""

    def embed_documents(self, texts: Sequence[str], *, model: str, dimensions: int) -> List[List[float]]:
        """Return one vector per text, in input order."""


class HashEmbeddingProvider:
    """Deterministic pseudo-random vectors derived from the text hash.

    Same text always yields the same unit vector, which keeps dev and test
    runs reproducible without a live provider.
    """

    name = "hash"

    def __init__(self, dim: int = 1536) -> None:
        self._dim = dim

    @property
    def configured(self) -> bool:
        return True

    def embed_documents(self, texts: Sequence[str], *, model: str = "", dimensions: int | None = None) -> List[List[float]]:
        dim = dimensions or self._dim
        return [self.hash_to_vector(text, dim) for text in texts]

    @staticmethod
    def hash_to_vector(text: str, dim: int) -> List[float]:
        seed = hashlib.sha256(text.encode("utf-8")).digest()
        raw = bytearray()
        counter = 0
        while len(raw) < dim:
            raw.extend(hashlib.sha256(seed + counter.to_bytes(4, "big")).digest())
            counter += 1
        vector = [(byte - 127.5) / 127.5 for byte in raw[:dim]]
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return [value / norm for value in vector]


class OpenAIEmbeddingProvider:
    """OpenAI-compatible ``/embeddings`` endpoint over httpx."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._client = authorize(client, api_key) if client is not None else build_client(base_url, api_key, timeout)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def embed_documents(self, texts: Sequence[str], *, model: str, dimensions: int) -> List[List[float]]:
        if not self.configured:
            raise UnavailableError("Embedding API key is not configured", operation="embed")
        body: dict[str, object] = {"input": list(texts), "model": model}
        if model.startswith("text-embedding-3"):
            body["dimensions"] = dimensions
        try:
            response = self._client.post("/embeddings", json=body)
        except httpx.HTTPError as exc:
            raise translate_transport_error(exc, provider=self.name, operation="embed") from exc
        raise_for_provider_status(response, provider=self.name, operation="embed")
        try:
            payload = response.json()
            items = payload["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise UnavailableError("Invalid response structure from embedding API", operation="embed") from exc
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        usage = payload.get("usage") or {}
        LOGGER.debug("Embedding request used %s tokens", usage.get("total_tokens", 0))
        return [list(item.get("embedding") or []) for item in ordered]

    def close(self) -> None:
        self._client.close()


class LangChainEmbeddingProvider:
    """Delegates to any LangChain ``Embeddings`` implementation."""

    name = "langchain"

    def __init__(self, client: LangChainEmbeddings) -> None:
        self._client = client

    @classmethod
    def from_model_name(
        cls,
        model: str,
        *,
        device: str | None = None,
        cache_folder: str | None = None,
    ) -> "LangChainEmbeddingProvider":
        from langchain_community.embeddings import HuggingFaceEmbeddings

        model_kwargs = {"device": device} if device else {}
        client = HuggingFaceEmbeddings(
            model_name=model,
            model_kwargs=model_kwargs,
            cache_folder=cache_folder,
            encode_kwargs={"normalize_embeddings": True},
        )
        LOGGER.info("Loaded embedding model %s", model)
        return cls(client)

    @property
    def configured(self) -> bool:
        return True

    def embed_documents(self, texts: Sequence[str], *, model: str = "", dimensions: int | None = None) -> List[List[float]]:
        try:
            vectors = self._client.embed_documents(list(texts))
        except Exception as exc:  # local model errors are not retryable
            raise UnavailableError(f"Local embedding model failed: {exc}", operation="embed") from exc
        if len(vectors) != len(texts):
            LOGGER.error("Embedding backend returned %d vectors for %d texts", len(vectors), len(texts))
        return [list(vector) for vector in vectors]


__all__ = [
    "EmbeddingProvider",
    "HashEmbeddingProvider",
    "LangChainEmbeddingProvider",
    "OpenAIEmbeddingProvider",
]
