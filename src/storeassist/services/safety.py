"""Pattern-based safety filters for queries and model output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Pattern, Sequence

from storeassist.errors import InvalidInputError
from storeassist.metrics.observability import PipelineMetrics, get_logger

SAFE_MESSAGE = (
    "I'm sorry, but I can't help with that. I can answer questions about our products, "
    "orders, shipping and store policies."
)

PROMPT_INJECTION_PATTERNS: Sequence[str] = (
    r"(?:ignore|forget|disregard)\s+(?:all\s+)?(?:the\s+)?(?:previous|prior|your\s+previous|above)\s+(?:instructions?|prompts?|rules?|guidelines?)",
    r"you\s+are\s+(?:no\s+longer|not)\s+(?:bound|constrained|limited)\s+by",
    r"(?:act\s+as|pretend\s+to\s+be|roleplay\s+as)\s+(?:a\s+)?(?:malicious|evil|harmful|jailbroken|unrestricted)",
    r"your\s+(?:safety|ethical?)\s+(?:guidelines?|constraints?|limitations?)\s+(?:are|have\s+been)\s+(?:disabled|removed|overridden)",
    r"(?:enable|activate|turn\s+on)\s+(?:developer|debug|admin|god)\s+mode",
    r"\b(?:jailbreak|do\s+anything\s+now|unrestricted\s+mode)\b",
    r"(?:override|bypass|disable)\s+(?:your\s+)?(?:safety|content\s+policy|restrictions?)",
    r"from\s+now\s+on,?\s+you\s+(?:will|shall|must)\s+(?:act|behave|respond)\s+as",
    r"(?:reveal|show|print|repeat)\s+(?:your\s+|the\s+)?(?:system\s+prompt|hidden\s+instructions?|secret\s+instructions?)",
)

CODE_INJECTION_PATTERNS: Sequence[str] = (
    r"<script[^>]*>.*?</script>",
    r"<script\b",
    r"\b(?:eval|exec|shell_exec|passthru|system)\(",
    r"\b(?:import|require)\s+(?:os|sys|subprocess)\b",
    r"(?-i:\b(?:DROP|TRUNCATE)\s+TABLE\b|\bDELETE\s+FROM\b|\bINSERT\s+INTO\b)",
    r"javascript:\s*\S",
)


class SafetyLevel(str, Enum):
    STRICT = "strict"
    MODERATE = "moderate"
    RELAXED = "relaxed"


# Topic words a shopper's query may not contain. Only queries are screened
# this way; product copy legitimately says "crack-resistant" or "exploit".
DISALLOWED_CONTENT_PATTERNS: Mapping[SafetyLevel, Sequence[str]] = {
    SafetyLevel.STRICT: (
        r"\b(?:hack|exploit|crack|pirate)\b",
        r"\b(?:porn|adult|xxx)\b",
        r"\b(?:spam|scam|phishing)\b",
    ),
    SafetyLevel.MODERATE: (
        r"\b(?:hack|exploit|crack)\b",
        r"\b(?:porn|xxx)\b",
    ),
    SafetyLevel.RELAXED: (r"\b(?:hack|exploit)\b",),
}


def query_filters(level: SafetyLevel | str = SafetyLevel.MODERATE) -> Dict[str, Sequence[str]]:
    """Filters applied to incoming queries at ``level``."""

    return {
        "prompt_injection": PROMPT_INJECTION_PATTERNS,
        "disallowed_content": DISALLOWED_CONTENT_PATTERNS[_level(level)],
    }


RESPONSE_FILTERS: Mapping[str, Sequence[str]] = {
    "code_injection": CODE_INJECTION_PATTERNS,
    "prompt_injection": PROMPT_INJECTION_PATTERNS,
}


class UnsafeQueryError(InvalidInputError):
    """The query tripped a safety filter and never reached a provider."""

    code = "unsafe_query"

    def __init__(self, filter_name: str, *, operation: str | None = None) -> None:
        super().__init__(f"Query rejected by the {filter_name} filter", operation=operation)
        self.filter_name = filter_name


@dataclass(frozen=True)
class SafetyVerdict:
    safe: bool
    filter_name: str | None = None
    pattern: str | None = None


def _level(value: SafetyLevel | str) -> SafetyLevel:
    try:
        return SafetyLevel(value)
    except ValueError as exc:
        raise InvalidInputError(f"Unknown safety level: {value!r}") from exc


def _compile(filters: Mapping[str, Sequence[str]]) -> Dict[str, List[Pattern[str]]]:
    return {
        name: [re.compile(pattern, re.IGNORECASE | re.DOTALL) for pattern in patterns]
        for name, patterns in filters.items()
    }


class SafetyFilter:
    """Screens queries before the model call and responses after it."""

    def __init__(
        self,
        custom_query_filters: Mapping[str, Sequence[str]] | None = None,
        response_filters: Mapping[str, Sequence[str]] | None = None,
        *,
        level: SafetyLevel | str = SafetyLevel.MODERATE,
        safe_message: str = SAFE_MESSAGE,
    ) -> None:
        self.level = _level(level)
        if custom_query_filters is not None:
            compiled = _compile(custom_query_filters)
            self._query_filters = {each: compiled for each in SafetyLevel}
        else:
            self._query_filters = {each: _compile(query_filters(each)) for each in SafetyLevel}
        self._response_filters = _compile(response_filters if response_filters is not None else RESPONSE_FILTERS)
        self.safe_message = safe_message
        self._logger = get_logger("safety")

    def check_query(self, query: str, level: SafetyLevel | str | None = None) -> SafetyVerdict:
        return self._check(query, self._query_filters[_level(level or self.level)])

    def check_response(self, text: str) -> SafetyVerdict:
        return self._check(text, self._response_filters)

    def screen_query(self, query: str, level: SafetyLevel | str | None = None) -> None:
        """Raise :class:`UnsafeQueryError` when the query trips a filter at ``level``."""

        verdict = self.check_query(query, level)
        if not verdict.safe:
            self._record(verdict, "query")
            raise UnsafeQueryError(verdict.filter_name or "safety", operation="generate")

    def apply(self, text: str) -> tuple[str, SafetyVerdict]:
        """Return the text to deliver: the original, or the safe message on a match."""

        verdict = self.check_response(text)
        if verdict.safe:
            return text, verdict
        self._record(verdict, "response")
        return self.safe_message, verdict

    def _check(self, text: str, filters: Mapping[str, List[Pattern[str]]]) -> SafetyVerdict:
        for name, patterns in filters.items():
            for pattern in patterns:
                if pattern.search(text or ""):
                    return SafetyVerdict(safe=False, filter_name=name, pattern=pattern.pattern)
        return SafetyVerdict(safe=True)

    def _record(self, verdict: SafetyVerdict, stage: str) -> None:
        PipelineMetrics.safety_triggers.labels(filter=verdict.filter_name or "unknown").inc()
        self._logger.warning("safety.triggered", stage=stage, filter=verdict.filter_name)


__all__ = [
    "CODE_INJECTION_PATTERNS",
    "DISALLOWED_CONTENT_PATTERNS",
    "PROMPT_INJECTION_PATTERNS",
    "RESPONSE_FILTERS",
    "SAFE_MESSAGE",
    "SafetyFilter",
    "SafetyLevel",
    "SafetyVerdict",
    "UnsafeQueryError",
    "query_filters",
]
