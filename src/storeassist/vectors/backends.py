"""Vector persistence backends: local brute-force scan and Chroma."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Protocol, Sequence, Tuple

import chromadb
from chromadb.api import ClientAPI

from storeassist.errors import UnavailableError
from storeassist.models import RetrievalResult, utcnow
from storeassist.vectors.ops import cosine_similarity


@dataclass(frozen=True)
class StoredVector:
    """A normalized vector plus everything needed to answer a search."""

    chunk_id: str
    vector: Tuple[float, ...]
    source_id: str
    source_type: str
    content: str = ""
    model: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=utcnow)


class VectorBackend(Protocol):
    """Storage and similarity scan behind :class:`~storeassist.vectors.store.VectorStore`."""

    def upsert(self, record: StoredVector) -> None:
        """Insert or overwrite the vector for ``record.chunk_id``."""

    def query(
        self,
        vector: Sequence[float],
        *,
        limit: int | None,
        threshold: float,
        source_types: Sequence[str] | None = None,
    ) -> Sequence[RetrievalResult]:
        """Return candidates scoring at least ``threshold``; ``limit=None`` means all."""

    def delete_source(self, source_id: str, source_type: str) -> int:
        """Remove every vector for the source; return how many were removed."""

    def count(self) -> int:
        """Return the number of stored vectors."""

    def clear(self) -> None:
        """Remove every stored vector."""


def rank_key(result: RetrievalResult) -> tuple[float, float, str]:
    """Descending score, then most recent ``generated_at``, then chunk id."""

    generated = result.generated_at.timestamp() if result.generated_at else 0.0
    return (-result.similarity_score, -generated, result.chunk_id)


class InMemoryVectorBackend:
    """Computes cosine similarity locally over every stored row."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: Dict[str, StoredVector] = {}

    def upsert(self, record: StoredVector) -> None:
        with self._lock:
            self._rows[record.chunk_id] = record

    def query(
        self,
        vector: Sequence[float],
        *,
        limit: int | None,
        threshold: float,
        source_types: Sequence[str] | None = None,
    ) -> Sequence[RetrievalResult]:
        with self._lock:
            rows = list(self._rows.values())
        allowed = set(source_types) if source_types else None
        results: List[RetrievalResult] = []
        for row in rows:
            if allowed is not None and row.source_type not in allowed:
                continue
            score = cosine_similarity(vector, row.vector)
            if score < threshold:
                continue
            results.append(
                RetrievalResult(
                    chunk_id=row.chunk_id,
                    similarity_score=score,
                    content=row.content,
                    source_type=row.source_type,
                    metadata=dict(row.metadata),
                    source_id=row.source_id,
                    generated_at=row.generated_at,
                )
            )
        results.sort(key=rank_key)
        return results if limit is None else results[:limit]

    def delete_source(self, source_id: str, source_type: str) -> int:
        with self._lock:
            doomed = [
                chunk_id
                for chunk_id, row in self._rows.items()
                if row.source_id == source_id and row.source_type == source_type
            ]
            for chunk_id in doomed:
                del self._rows[chunk_id]
            return len(doomed)

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()


class ChromaVectorBackend:
    """Chroma-backed vector index using cosine distance."""

    def __init__(
        self,
        collection_name: str = "storeassist",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def upsert(self, record: StoredVector) -> None:
        try:
            self._collection.upsert(
                ids=[record.chunk_id],
                embeddings=[list(record.vector)],
                documents=[record.content],
                metadatas=[self._serialize(record)],
            )
        except Exception as exc:
            raise UnavailableError(f"Chroma upsert failed: {exc}", operation="upsert") from exc

    def query(
        self,
        vector: Sequence[float],
        *,
        limit: int | None,
        threshold: float,
        source_types: Sequence[str] | None = None,
    ) -> Sequence[RetrievalResult]:
        try:
            total = int(self._collection.count())
            if total == 0:
                return []
            n_results = total if limit is None else min(limit, total)
            where = self._where_source_types(source_types)
            results = self._collection.query(
                query_embeddings=[list(vector)],
                n_results=n_results,
                where=where,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise UnavailableError(f"Chroma query failed: {exc}", operation="search") from exc
        return [item for item in self._deserialize_results(results) if item.similarity_score >= threshold]

    def delete_source(self, source_id: str, source_type: str) -> int:
        try:
            found = self._collection.get(
                where={"$and": [{"source_id": source_id}, {"source_type": source_type}]},
                include=[],
            )
            ids = list(found.get("ids") or [])
            if ids:
                self._collection.delete(ids=ids)
        except Exception as exc:
            raise UnavailableError(f"Chroma delete failed: {exc}", operation="delete") from exc
        return len(ids)

    def count(self) -> int:
        try:
            return int(self._collection.count())
        except Exception as exc:
            raise UnavailableError(f"Chroma count failed: {exc}", operation="count") from exc

    def clear(self) -> None:
        try:
            ids = list(self._collection.get(include=[]).get("ids") or [])
            if ids:
                self._collection.delete(ids=ids)
        except Exception as exc:
            raise UnavailableError(f"Chroma clear failed: {exc}", operation="clear") from exc

    @staticmethod
    def _where_source_types(source_types: Sequence[str] | None) -> Mapping[str, object] | None:
        if not source_types:
            return None
        types = sorted(set(source_types))
        if len(types) == 1:
            return {"source_type": types[0]}
        return {"source_type": {"$in": types}}

    def _serialize(self, record: StoredVector) -> MutableMapping[str, object]:
        return {
            "source_id": record.source_id,
            "source_type": record.source_type,
            "model": record.model,
            "generated_at": record.generated_at.timestamp(),
            "extra": self._dumps(record.metadata),
        }

    def _deserialize_results(self, results: Mapping[str, object]) -> List[RetrievalResult]:
        ids = self._first(results.get("ids", []))
        documents = self._first(results.get("documents", []))
        metadatas = self._first(results.get("metadatas", []))
        distances = self._first(results.get("distances", []))
        retrieved: List[RetrievalResult] = []
        for chunk_id, document, metadata, distance in zip(ids, documents, metadatas, distances, strict=False):
            metadata = metadata or {}
            score = 1.0 - float(distance) if distance is not None else 0.0
            generated = metadata.get("generated_at")
            retrieved.append(
                RetrievalResult(
                    chunk_id=str(chunk_id),
                    similarity_score=min(1.0, max(0.0, score)),
                    content=document or "",
                    source_type=str(metadata.get("source_type", "")),
                    metadata=self._loads_dict(metadata.get("extra")),
                    source_id=str(metadata.get("source_id", "")),
                    generated_at=datetime.fromtimestamp(float(generated), tz=timezone.utc) if generated is not None else None,
                )
            )
        return retrieved

    @staticmethod
    def _first(value: object) -> Iterable:
        if isinstance(value, list):
            return value[0] if value else []
        return []

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(value, default=str)
        except TypeError:
            return json.dumps({}, default=str)

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
                if isinstance(loaded, dict):
                    return loaded
            except json.JSONDecodeError:
                return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {}


__all__ = ["ChromaVectorBackend", "InMemoryVectorBackend", "StoredVector", "VectorBackend", "rank_key"]
