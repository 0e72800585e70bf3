"""In-memory vector index using numpy cosine similarity."""
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Sequence

import numpy as np

from cvrag.cache import KeyedLocks

from .base import QueryResult, VectorIndexEntry

LOGGER = logging.getLogger(__name__)


class InMemoryVectorIndex:
    """Process-local index with one lock per namespace."""

    def __init__(self) -> None:
        self._namespaces: Dict[str, Dict[str, VectorIndexEntry]] = {}
        self._guard = threading.Lock()
        self._locks = KeyedLocks()

    def _namespace(self, namespace: str) -> Dict[str, VectorIndexEntry]:
        with self._guard:
            return self._namespaces.setdefault(namespace, {})

    def upsert(self, namespace: str, entries: Sequence[VectorIndexEntry]) -> None:
        if not entries:
            return
        dimensions = {len(entry.embedding) for entry in entries}
        if len(dimensions) != 1:
            raise ValueError("All embeddings in a namespace must share one dimension")
        store = self._namespace(namespace)
        with self._locks.lock(namespace):
            existing = next(iter(store.values()), None)
            if existing is not None and len(existing.embedding) not in dimensions:
                raise ValueError("Embedding dimension does not match the namespace")
            for entry in entries:
                store[entry.chunk_id] = VectorIndexEntry(
                    chunk_id=entry.chunk_id,
                    embedding=[float(value) for value in entry.embedding],
                    text=entry.text,
                    metadata=dict(entry.metadata),
                )

    def query(self, namespace: str, embedding: Sequence[float], k: int) -> List[QueryResult]:
        if k <= 0:
            return []
        with self._locks.lock(namespace):
            entries = list(self._namespaces.get(namespace, {}).values())
        if not entries:
            return []

        matrix = np.asarray([entry.embedding for entry in entries], dtype=np.float64)
        vector = np.asarray(list(embedding), dtype=np.float64)
        if matrix.shape[1] != vector.shape[0]:
            raise ValueError(
                f"Query dimension {vector.shape[0]} does not match index dimension {matrix.shape[1]}"
            )
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
        norms[norms == 0] = 1.0
        similarities = (matrix @ vector) / norms

        ranked = sorted(
            zip(similarities.tolist(), entries),
            key=lambda item: (-item[0], item[1].chunk_id),
        )[:k]
        return [
            QueryResult(
                chunk_id=entry.chunk_id,
                text=entry.text,
                similarity=float(similarity),
                metadata=dict(entry.metadata),
            )
            for similarity, entry in ranked
        ]

    def get_entries(self, namespace: str) -> List[VectorIndexEntry]:
        with self._locks.lock(namespace):
            return list(self._namespaces.get(namespace, {}).values())

    def delete_namespace(self, namespace: str) -> int:
        with self._locks.lock(namespace):
            with self._guard:
                removed = self._namespaces.pop(namespace, {})
        return len(removed)

    def count(self, namespace: str) -> int:
        with self._locks.lock(namespace):
            return len(self._namespaces.get(namespace, {}))

    def namespaces(self) -> List[str]:
        with self._guard:
            return sorted(self._namespaces)

    def create_snapshot(self, snapshot_dir: Path) -> Path:
        """Dump every namespace to a JSON file for inspection or backup."""

        snapshot_dir = Path(snapshot_dir)
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        timestamp = time.strftime("%Y%m%d%H%M%S")
        snapshot_path = snapshot_dir / f"vector-index-{timestamp}.json"

        payload = {
            namespace: [
                {
                    "id": entry.chunk_id,
                    "content": entry.text,
                    "metadata": entry.metadata,
                    "embedding": entry.embedding,
                }
                for entry in self.get_entries(namespace)
            ]
            for namespace in self.namespaces()
        }
        snapshot_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        LOGGER.info("Wrote vector index snapshot to %s", snapshot_path)
        return snapshot_path


__all__ = ["InMemoryVectorIndex"]
