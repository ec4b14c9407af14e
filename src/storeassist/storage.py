"""Backing-store boundary for chunks, source state and conversations."""

from __future__ import annotations

import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Protocol, Sequence

from storeassist.models import Chunk, ConversationTurn, utcnow


@dataclass(frozen=True)
class SourceState:
    """What is currently indexed for one content source."""

    source_id: str
    source_type: str
    fingerprint: str
    chunk_ids: tuple[str, ...]
    last_modified: datetime | None = None
    indexed_at: datetime = field(default_factory=utcnow)


class BackingStore(Protocol):
    """Record persistence consumed by the indexer and conversation store."""

    def get_source_state(self, source_id: str, source_type: str) -> SourceState | None:
        """Return the indexed state for a source, if any."""

    def find_source_by_fingerprint(self, fingerprint: str) -> SourceState | None:
        """Return any indexed source whose normalized text hashes to ``fingerprint``."""

    def replace_source_chunks(self, state: SourceState, chunks: Sequence[Chunk]) -> None:
        """Drop previous chunks for the source and store ``chunks``."""

    def delete_source(self, source_id: str, source_type: str) -> int:
        """Delete the source and its chunks; return the number of chunks removed."""

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        """Fetch a chunk by id."""

    def iter_chunks(self, source_type: str | None = None) -> Iterator[Chunk]:
        """Range scan over stored chunks, optionally by content type."""

    def append_turn(self, turn: ConversationTurn) -> None:
        """Append a conversation turn."""

    def list_turns(self, conversation_id: str) -> Sequence[ConversationTurn]:
        """Return turns for a conversation in creation order."""


class InMemoryBackingStore:
    """Thread-safe reference implementation of :class:`BackingStore`."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sources: dict[tuple[str, str], SourceState] = {}
        self._chunks: dict[str, Chunk] = {}
        self._turns: dict[str, list[ConversationTurn]] = defaultdict(list)

    def get_source_state(self, source_id: str, source_type: str) -> SourceState | None:
        with self._lock:
            return self._sources.get((source_id, source_type))

    def find_source_by_fingerprint(self, fingerprint: str) -> SourceState | None:
        with self._lock:
            for state in self._sources.values():
                if state.fingerprint == fingerprint:
                    return state
            return None

    def replace_source_chunks(self, state: SourceState, chunks: Sequence[Chunk]) -> None:
        with self._lock:
            self._drop_chunks(state.source_id, state.source_type)
            for chunk in chunks:
                self._chunks[chunk.chunk_id] = chunk
            self._sources[(state.source_id, state.source_type)] = state

    def delete_source(self, source_id: str, source_type: str) -> int:
        with self._lock:
            removed = self._drop_chunks(source_id, source_type)
            self._sources.pop((source_id, source_type), None)
            return removed

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        with self._lock:
            return self._chunks.get(chunk_id)

    def iter_chunks(self, source_type: str | None = None) -> Iterator[Chunk]:
        with self._lock:
            snapshot = list(self._chunks.values())
        for chunk in snapshot:
            if source_type is None or chunk.source_type == source_type:
                yield chunk

    def append_turn(self, turn: ConversationTurn) -> None:
        with self._lock:
            self._turns[turn.conversation_id].append(turn)

    def list_turns(self, conversation_id: str) -> Sequence[ConversationTurn]:
        with self._lock:
            turns = list(self._turns.get(conversation_id, ()))
        return sorted(turns, key=lambda turn: turn.created_at)

    def source_count(self) -> int:
        with self._lock:
            return len(self._sources)

    def chunk_count(self) -> int:
        with self._lock:
            return len(self._chunks)

    def _drop_chunks(self, source_id: str, source_type: str) -> int:
        doomed = [
            chunk_id
            for chunk_id, chunk in self._chunks.items()
            if chunk.source_id == source_id and chunk.source_type == source_type
        ]
        for chunk_id in doomed:
            del self._chunks[chunk_id]
        return len(doomed)


class KeyedLocks:
    """One lock per key so writes to the same id are serialized."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] <= 0:
                    self._refs.pop(key, None)
                    self._locks.pop(key, None)


__all__ = ["BackingStore", "InMemoryBackingStore", "KeyedLocks", "SourceState"]
