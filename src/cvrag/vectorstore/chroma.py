"""Chroma-backed vector index.

All namespaces share one collection; each record carries its namespace in
metadata and in its id prefix so that two builds of the same chunk coexist.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Sequence

from .base import QueryResult, VectorIndexEntry
from .errors import VectorStoreUnavailableError

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from chromadb.api import ClientAPI

LOGGER = logging.getLogger(__name__)

DEFAULT_COLLECTION_NAME = "cv_chunks"
NAMESPACE_KEY = "namespace"


class ChromaVectorIndex:
    """Persist chunk embeddings in a Chroma collection using cosine distance."""

    def __init__(
        self,
        persist_dir: str | Path = "chroma_db",
        *,
        collection_name: str = DEFAULT_COLLECTION_NAME,
        client: "ClientAPI | None" = None,
    ) -> None:
        self.persist_dir = Path(persist_dir)
        if client is None:
            try:
                import chromadb
            except ImportError as exc:
                raise VectorStoreUnavailableError(
                    "vector_store=chroma requires the 'chromadb' package to be installed",
                    cause=exc,
                ) from exc
            self.persist_dir.mkdir(parents=True, exist_ok=True)
            try:
                client = chromadb.PersistentClient(path=str(self.persist_dir))
            except Exception as exc:  # pragma: no cover - depends on chromadb runtime
                raise VectorStoreUnavailableError("Failed to initialise Chroma persistent client", cause=exc) from exc

        self._client = client
        self._collection = client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    @staticmethod
    def _where(namespace: str) -> Dict[str, Any]:
        return {NAMESPACE_KEY: namespace}

    @staticmethod
    def _storage_id(namespace: str, chunk_id: str) -> str:
        return f"{namespace}::{chunk_id}"

    @staticmethod
    def _chunk_id(namespace: str, storage_id: object) -> str:
        return str(storage_id).removeprefix(f"{namespace}::")

    @staticmethod
    def _strip(metadata: Dict[str, Any] | None) -> Dict[str, Any]:
        cleaned = dict(metadata or {})
        cleaned.pop(NAMESPACE_KEY, None)
        return cleaned

    def upsert(self, namespace: str, entries: Sequence[VectorIndexEntry]) -> None:
        if not entries:
            return
        try:
            self._collection.upsert(
                ids=[self._storage_id(namespace, entry.chunk_id) for entry in entries],
                embeddings=[[float(value) for value in entry.embedding] for entry in entries],
                documents=[entry.text for entry in entries],
                metadatas=[{**entry.metadata, NAMESPACE_KEY: namespace} for entry in entries],
            )
        except Exception as exc:
            raise VectorStoreUnavailableError("Failed to upsert chunks into Chroma", cause=exc) from exc

    def count(self, namespace: str) -> int:
        records = self._collection.get(where=self._where(namespace), include=["metadatas"])
        return len(records.get("ids") or [])

    def query(self, namespace: str, embedding: Sequence[float], k: int) -> List[QueryResult]:
        if k <= 0:
            return []
        available = self.count(namespace)
        if available == 0:
            return []
        try:
            result = self._collection.query(
                query_embeddings=[[float(value) for value in embedding]],
                n_results=min(k, available),
                where=self._where(namespace),
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise VectorStoreUnavailableError("Chroma query failed", cause=exc) from exc

        ids = (result.get("ids") or [[]])[0]
        documents = (result.get("documents") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]

        hits: List[QueryResult] = []
        for chunk_id, document, metadata, distance in zip(ids, documents, metadatas, distances):
            hits.append(
                QueryResult(
                    chunk_id=self._chunk_id(namespace, chunk_id),
                    text=str(document or ""),
                    similarity=1.0 - float(distance if distance is not None else 1.0),
                    metadata=self._strip(metadata),
                )
            )
        hits.sort(key=lambda hit: (-hit.similarity, hit.chunk_id))
        return hits

    def get_entries(self, namespace: str) -> List[VectorIndexEntry]:
        records = self._collection.get(
            where=self._where(namespace),
            include=["embeddings", "documents", "metadatas"],
        )
        ids = records.get("ids") or []
        documents = records.get("documents")
        metadatas = records.get("metadatas")
        embeddings = records.get("embeddings")
        if documents is None:
            documents = [""] * len(ids)
        if metadatas is None:
            metadatas = [{}] * len(ids)
        if embeddings is None:
            embeddings = [[]] * len(ids)
        return [
            VectorIndexEntry(
                chunk_id=self._chunk_id(namespace, chunk_id),
                embedding=[float(value) for value in embedding],
                text=str(document or ""),
                metadata=self._strip(metadata),
            )
            for chunk_id, embedding, document, metadata in zip(ids, embeddings, documents, metadatas)
        ]

    def delete_namespace(self, namespace: str) -> int:
        records = self._collection.get(where=self._where(namespace), include=["metadatas"])
        ids = records.get("ids") or []
        if ids:
            self._collection.delete(ids=list(ids))
        LOGGER.debug("Deleted %s chunk(s) from Chroma namespace %s", len(ids), namespace)
        return len(ids)


__all__ = ["ChromaVectorIndex"]
