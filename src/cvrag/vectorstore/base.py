"""Vector index contract shared by every backend."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, Sequence


@dataclass(frozen=True, slots=True)
class VectorIndexEntry:
    chunk_id: str
    embedding: List[float]
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Nearest-neighbour hit; ``similarity`` is cosine similarity in ``[-1, 1]``."""

    chunk_id: str
    text: str
    similarity: float
    metadata: Dict[str, Any]


class VectorIndex(Protocol):
    """Namespaced vector storage.

    The indexing pipeline is the only writer; the retrieval engine only reads.
    A namespace holds exactly one (profile version, index version) build.
    """

    def upsert(self, namespace: str, entries: Sequence[VectorIndexEntry]) -> None:
        ...

    def query(self, namespace: str, embedding: Sequence[float], k: int) -> List[QueryResult]:
        ...

    def get_entries(self, namespace: str) -> List[VectorIndexEntry]:
        ...

    def delete_namespace(self, namespace: str) -> int:
        ...

    def count(self, namespace: str) -> int:
        ...


__all__ = ["QueryResult", "VectorIndex", "VectorIndexEntry"]
