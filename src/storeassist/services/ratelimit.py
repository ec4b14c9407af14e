"""Per-caller sliding-window rate limiting."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Tuple

from storeassist.errors import InvalidInputError, RateLimitedError
from storeassist.metrics.observability import PipelineMetrics


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_minute: int = 60
    tokens_per_minute: int = 100_000
    window_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.requests_per_minute <= 0 or self.tokens_per_minute <= 0:
            raise InvalidInputError("Rate limits must be positive")
        if self.window_seconds <= 0:
            raise InvalidInputError("window_seconds must be positive")


@dataclass
class _Window:
    requests: Deque[float] = field(default_factory=deque)
    tokens: Deque[Tuple[float, int]] = field(default_factory=deque)
    token_total: int = 0


class SlidingWindowRateLimiter:
    """Requests/minute and tokens/minute limits scoped per caller identity.

    Checking and recording happen under one lock, so concurrent requests
    from the same caller cannot both slip under the limit.
    """

    def __init__(self, config: RateLimitConfig | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config or RateLimitConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}
        self._last_sweep = clock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def caller_count(self) -> int:
        with self._lock:
            return len(self._windows)

    def check(self, caller_id: str, tokens: int = 0) -> None:
        """Admit one request estimated at ``tokens`` or raise :class:`RateLimitedError`."""

        now = self._clock()
        with self._lock:
            self._sweep(now)
            window = self._windows.setdefault(caller_id, _Window())
            self._prune(window, now)
            if len(window.requests) >= self._config.requests_per_minute:
                retry_after = window.requests[0] + self._config.window_seconds - now
                self._reject("requests", caller_id, retry_after)
            if window.token_total + tokens > self._config.tokens_per_minute:
                retry_after = (window.tokens[0][0] + self._config.window_seconds - now) if window.tokens else self._config.window_seconds
                if not window.requests and not window.tokens:
                    del self._windows[caller_id]
                self._reject("tokens", caller_id, retry_after)
            window.requests.append(now)
            if tokens:
                window.tokens.append((now, tokens))
                window.token_total += tokens

    def record_tokens(self, caller_id: str, tokens: int) -> None:
        """Charge tokens consumed after admission (e.g. the completion)."""

        if tokens <= 0:
            return
        now = self._clock()
        with self._lock:
            window = self._windows.setdefault(caller_id, _Window())
            self._prune(window, now)
            window.tokens.append((now, tokens))
            window.token_total += tokens

    def usage(self, caller_id: str) -> dict[str, int]:
        now = self._clock()
        with self._lock:
            window = self._windows.get(caller_id)
            if window is None:
                return {"requests": 0, "tokens": 0}
            self._prune(window, now)
            if not window.requests and not window.tokens:
                del self._windows[caller_id]
            return {"requests": len(window.requests), "tokens": window.token_total}

    def reset(self, caller_id: str | None = None) -> None:
        with self._lock:
            if caller_id is None:
                self._windows.clear()
            else:
                self._windows.pop(caller_id, None)

    def _sweep(self, now: float) -> None:
        # at most once per window, drop callers whose every entry has expired
        if now - self._last_sweep < self._config.window_seconds:
            return
        self._last_sweep = now
        for caller_id in list(self._windows):
            window = self._windows[caller_id]
            self._prune(window, now)
            if not window.requests and not window.tokens:
                del self._windows[caller_id]

    def _prune(self, window: _Window, now: float) -> None:
        horizon = now - self._config.window_seconds
        while window.requests and window.requests[0] <= horizon:
            window.requests.popleft()
        while window.tokens and window.tokens[0][0] <= horizon:
            _, spent = window.tokens.popleft()
            window.token_total -= spent

    @staticmethod
    def _reject(limit: str, caller_id: str, retry_after: float) -> None:
        PipelineMetrics.rate_limited.labels(limit=limit).inc()
        raise RateLimitedError(
            f"Rate limit exceeded ({limit} per minute) for caller {caller_id}",
            retry_after=max(0.0, retry_after),
            operation="generate",
        )


__all__ = ["RateLimitConfig", "SlidingWindowRateLimiter"]
