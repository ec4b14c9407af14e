"""Vector storage and similarity search."""

from .backends import ChromaVectorBackend, InMemoryVectorBackend, StoredVector, VectorBackend
from .ops import cosine_similarity, magnitude, normalize, validate_vector, zero_vector
from .store import VectorStore, VectorStoreConfig

__all__ = [
    "ChromaVectorBackend",
    "InMemoryVectorBackend",
    "StoredVector",
    "VectorBackend",
    "VectorStore",
    "VectorStoreConfig",
    "cosine_similarity",
    "magnitude",
    "normalize",
    "validate_vector",
    "zero_vector",
]
