"""Conversation history backed by the record store with a read-through cache."""

from __future__ import annotations

from typing import List

from storeassist.cache import Cache, InMemoryCache, NamespacedCache
from storeassist.errors import InvalidInputError
from storeassist.models import ConversationTurn, Role, utcnow
from storeassist.services.prompt import truncate_history
from storeassist.storage import BackingStore


class ConversationStore:
    """Append-only conversation turns; reads are truncated to a token budget."""

    def __init__(
        self,
        backing_store: BackingStore,
        *,
        cache: Cache | None = None,
        cache_ttl_seconds: float = 1800,
        token_budget: int = 4000,
    ) -> None:
        self._backing_store = backing_store
        self._cache = NamespacedCache(cache or InMemoryCache(), "conversation", default_ttl=cache_ttl_seconds)
        self._token_budget = token_budget

    def append(self, conversation_id: str, role: Role | str, content: str) -> ConversationTurn:
        if not conversation_id:
            raise InvalidInputError("conversation_id is required", operation="append_turn")
        turn = ConversationTurn(conversation_id=conversation_id, role=Role(role), content=content, created_at=utcnow())
        self._backing_store.append_turn(turn)
        self._cache.delete(conversation_id)
        return turn

    def record_exchange(self, conversation_id: str, user_message: str, assistant_message: str) -> None:
        self.append(conversation_id, Role.USER, user_message)
        self.append(conversation_id, Role.ASSISTANT, assistant_message)

    def turns(self, conversation_id: str) -> List[ConversationTurn]:
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return list(cached)
        turns = list(self._backing_store.list_turns(conversation_id))
        self._cache.set(conversation_id, tuple(turns))
        return turns

    def history(self, conversation_id: str, token_budget: int | None = None) -> List[ConversationTurn]:
        budget = self._token_budget if token_budget is None else token_budget
        return truncate_history(self.turns(conversation_id), budget)


__all__ = ["ConversationStore"]
