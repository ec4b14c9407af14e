"""Prompt assembly, history truncation and fallback messages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Sequence

from storeassist.chunking.service import estimate_tokens
from storeassist.models import ConversationTurn, RetrievalResult, Role
from storeassist.services.generation import ChatMessage


@dataclass(frozen=True)
class StoreContext:
    """Situational context for one request: which store, page and shopper."""

    store_name: str = "Store"
    store_url: str = ""
    currency: str | None = None
    current_page: str | None = None
    product: Mapping[str, Any] | None = None
    user_type: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def cache_fields(self) -> dict[str, Any]:
        return {
            "store": self.store_name,
            "url": self.store_url,
            "currency": self.currency,
            "page": self.current_page,
            "product": dict(self.product) if self.product else None,
            "user_type": self.user_type,
            "extra": dict(self.extra),
        }


def truncate_history(turns: Sequence[ConversationTurn], token_budget: int) -> List[ConversationTurn]:
    """Keep the newest turns that fit in ``token_budget``, in chronological order."""

    kept: List[ConversationTurn] = []
    used = 0
    for turn in reversed(turns):
        cost = estimate_tokens(turn.content)
        if used + cost > token_budget:
            break
        kept.append(turn)
        used += cost
    kept.reverse()
    return kept


_QUERY_TYPES: Sequence[tuple[str, re.Pattern[str]]] = (
    ("product_inquiry", re.compile(r"product|item|buy|purchase|price|cost|available|stock", re.I)),
    ("shipping_inquiry", re.compile(r"ship|deliver|transport|courier|mail|postal", re.I)),
    ("return_policy", re.compile(r"return|refund|exchange|warranty|guarantee", re.I)),
    ("payment_inquiry", re.compile(r"pay|card|checkout|billing|invoice|transaction", re.I)),
    ("support_request", re.compile(r"help|support|problem|issue|trouble|assistance", re.I)),
)

FALLBACK_TEMPLATES: Mapping[str, str] = {
    "product_inquiry": (
        "I apologize, but I'm having trouble accessing product information at the moment. "
        "Please browse our store directly or contact our support team for help with specific product questions."
    ),
    "shipping_inquiry": (
        "I'm sorry, I cannot access shipping information right now. Please check our shipping policy page "
        "or contact customer service for current shipping options and rates."
    ),
    "return_policy": (
        "I apologize, but I cannot access return policy information at the moment. Please visit our return "
        "policy page or contact our support team for help with returns or exchanges."
    ),
    "payment_inquiry": (
        "I'm sorry, I cannot provide payment information right now. Please contact our support team for "
        "help with payment methods and billing questions."
    ),
    "support_request": (
        "I apologize, but I'm experiencing technical difficulties. Please contact our customer support team "
        "directly for immediate help with your issue."
    ),
    "general_inquiry": (
        "I apologize, but I'm having trouble processing your request at the moment. Please try again later "
        "or contact our support team for personalized assistance."
    ),
}

ERROR_MESSAGES: Mapping[str, str] = {
    "rate_limited": "You're sending messages a little too quickly. Please wait a moment and try again.",
    "invalid_input": "I couldn't understand that request. Could you rephrase your question?",
    "unsafe_query": (
        "I'm sorry, but I can't help with that. I can answer questions about our products, "
        "orders, shipping and store policies."
    ),
}


def classify_query(query: str) -> str:
    for name, pattern in _QUERY_TYPES:
        if pattern.search(query or ""):
            return name
    return "general_inquiry"


class PromptBuilder:
    """Builds the chat messages sent to the generation provider."""

    def __init__(self, *, max_chunk_chars: int = 1500) -> None:
        self._max_chunk_chars = max_chunk_chars

    def build(
        self,
        query: str,
        context: Sequence[RetrievalResult],
        history: Sequence[ConversationTurn],
        store: StoreContext,
    ) -> List[ChatMessage]:
        messages = [ChatMessage(Role.SYSTEM.value, self.system_prompt(context, store))]
        for turn in history:
            role = getattr(turn.role, "value", turn.role)
            if role == Role.SYSTEM.value:
                continue
            messages.append(ChatMessage(role, turn.content))
        messages.append(ChatMessage(Role.USER.value, f"User Question: {query}"))
        return messages

    def system_prompt(self, context: Sequence[RetrievalResult], store: StoreContext) -> str:
        sections = [
            f"You are a helpful AI assistant for {store.store_name}, specializing in providing accurate "
            "information about products, policies, and customer service.",
            self._store_section(store),
        ]
        relevant = self._relevant_section(context)
        sections.append(
            "Relevant Information:\n" + relevant if relevant else "Relevant Information:\nNo matching store content was found."
        )
        user = self._user_section(store)
        if user:
            sections.append("User Context:\n" + user)
        sections.append(
            "Response Guidelines:\n"
            "- Use the relevant information provided above to answer accurately\n"
            "- Be helpful, professional, and friendly\n"
            "- If information is not available, say so honestly\n"
            "- Focus on the user's specific question"
        )
        sections.append(
            "Safety Guidelines:\n"
            "- Never provide harmful, illegal, or inappropriate content\n"
            "- Protect customer privacy and data\n"
            "- Stay within your role as a store assistant\n"
            "- Redirect complex technical issues to human support when appropriate"
        )
        return "\n\n".join(section for section in sections if section)

    def fallback_message(self, query: str, error_code: str | None = None) -> str:
        if error_code in ERROR_MESSAGES:
            return ERROR_MESSAGES[error_code]
        return FALLBACK_TEMPLATES[classify_query(query)]

    def _store_section(self, store: StoreContext) -> str:
        lines = [f"Store: {store.store_name}"]
        if store.store_url:
            lines.append(f"URL: {store.store_url}")
        if store.currency:
            lines.append(f"Currency: {store.currency}")
        return "\n".join(lines)

    def _relevant_section(self, context: Sequence[RetrievalResult]) -> str:
        entries = []
        for index, item in enumerate(context, start=1):
            label = item.source_type.replace("_", " ").capitalize() or "Content"
            source = item.metadata.get("title") or item.source_id or item.chunk_id
            content = item.content
            if len(content) > self._max_chunk_chars:
                content = content[: self._max_chunk_chars].rsplit(" ", 1)[0] + "..."
            entries.append(f"{index}. [{label}] {source}:\n{content}")
        return "\n".join(entries)

    @staticmethod
    def _user_section(store: StoreContext) -> str:
        lines = []
        if store.current_page:
            lines.append(f"Current Page: {store.current_page}")
        if store.product:
            name = store.product.get("name") or store.product.get("title") or store.product.get("id")
            details = [f"Viewing Product: {name}"]
            if store.product.get("price") is not None:
                details.append(f"price {store.product['price']}")
            lines.append(", ".join(details))
        if store.user_type:
            lines.append(f"User Type: {store.user_type}")
        return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "FALLBACK_TEMPLATES",
    "PromptBuilder",
    "StoreContext",
    "classify_query",
    "truncate_history",
]
