"""Vector index helpers backed by pluggable backends."""

from __future__ import annotations

from cvrag.config import Settings

from .base import QueryResult, VectorIndex, VectorIndexEntry
from .errors import VectorStoreUnavailableError
from .memory import InMemoryVectorIndex
from .registry import IndexRegistry, IndexState, namespace_for


def build_vector_index(settings: Settings) -> VectorIndex:
    """Return the vector index selected by ``settings.vector_store``."""

    backend = settings.vector_store
    if backend == "memory":
        return InMemoryVectorIndex()
    if backend == "chroma":
        from .chroma import ChromaVectorIndex

        return ChromaVectorIndex(settings.chroma_persist_dir)
    raise ValueError(f"Unsupported vector_store backend: {backend!r}")


__all__ = [
    "InMemoryVectorIndex",
    "IndexRegistry",
    "IndexState",
    "QueryResult",
    "VectorIndex",
    "VectorIndexEntry",
    "VectorStoreUnavailableError",
    "build_vector_index",
    "namespace_for",
]
