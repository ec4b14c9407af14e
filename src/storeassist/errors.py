"""Error taxonomy shared by the StoreAssist pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class StoreAssistError(RuntimeError):
    """Base class for pipeline errors."""

    code = "error"

    def __init__(self, message: str = "", *, operation: str | None = None) -> None:
        super().__init__(message or self.code)
        self.operation = operation


class InvalidInputError(StoreAssistError, ValueError):
    """Malformed or empty arguments; the caller's bug."""

    code = "invalid_input"


class UnavailableError(StoreAssistError):
    """A dependency is unreachable or unconfigured."""

    code = "unavailable"


class AuthenticationError(UnavailableError):
    """Credentials were rejected. Never retried."""

    code = "authentication_failed"


class RateLimitedError(StoreAssistError):
    """Self-imposed or provider-imposed throttling."""

    code = "rate_limited"

    def __init__(self, message: str = "", *, retry_after: float | None = None, operation: str | None = None) -> None:
        super().__init__(message, operation=operation)
        self.retry_after = retry_after


class TransientProviderError(StoreAssistError):
    """Retryable provider failure (5xx, timeout, transport error)."""

    code = "transient_provider_error"


class PartialFailureError(StoreAssistError):
    """A sub-operation failed while the overall operation continued."""

    code = "partial_failure"

    def __init__(self, message: str = "", *, failures: int = 0, operation: str | None = None) -> None:
        super().__init__(message, operation=operation)
        self.failures = failures


class ServiceUnavailableError(StoreAssistError):
    """Every provider has been exhausted."""

    code = "service_unavailable"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a typed error, never both."""

    value: T | None = None
    error: StoreAssistError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: StoreAssistError) -> "Result[T]":
        return cls(error=error)


__all__ = [
    "AuthenticationError",
    "InvalidInputError",
    "PartialFailureError",
    "RateLimitedError",
    "Result",
    "ServiceUnavailableError",
    "StoreAssistError",
    "TransientProviderError",
    "UnavailableError",
]
