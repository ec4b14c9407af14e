"""httpx helpers shared by the embedding and generation providers."""

from __future__ import annotations

import httpx

from storeassist.errors import (
    AuthenticationError,
    InvalidInputError,
    RateLimitedError,
    StoreAssistError,
    TransientProviderError,
    UnavailableError,
)

RETRYABLE_STATUS = frozenset({408, 409, 425, 500, 502, 503, 504})


def build_client(base_url: str, api_key: str | None, timeout: float, *, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    client = httpx.Client(
        base_url=base_url.rstrip("/"),
        headers={"Content-Type": "application/json"},
        timeout=timeout,
        transport=transport,
    )
    return authorize(client, api_key)


def authorize(client: httpx.Client, api_key: str | None) -> httpx.Client:
    """Attach the bearer credential to ``client``, including caller-supplied clients."""

    if api_key:
        client.headers["Authorization"] = f"Bearer {api_key}"
    return client


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))[:200]
        if error:
            return str(error)[:200]
    return ""


def raise_for_provider_status(response: httpx.Response, *, provider: str, operation: str) -> None:
    """Translate a non-2xx provider response into the error taxonomy."""

    status = response.status_code
    if status < 400:
        return
    message = f"{provider} returned {status}: {_error_message(response)}".rstrip(": ")
    if status in (401, 403):
        raise AuthenticationError(message, operation=operation)
    if status == 429:
        retry_after = response.headers.get("retry-after")
        try:
            delay = float(retry_after) if retry_after else None
        except ValueError:
            delay = None
        raise RateLimitedError(message, retry_after=delay, operation=operation)
    if status in RETRYABLE_STATUS or status >= 500:
        raise TransientProviderError(message, operation=operation)
    if status in (400, 413, 422):
        raise InvalidInputError(message, operation=operation)
    raise UnavailableError(message, operation=operation)


def translate_transport_error(exc: httpx.HTTPError, *, provider: str, operation: str) -> StoreAssistError:
    """Timeouts and connection errors are retryable."""

    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientProviderError(f"{provider} request failed: {exc.__class__.__name__}", operation=operation)
    return UnavailableError(f"{provider} request failed: {exc}", operation=operation)
