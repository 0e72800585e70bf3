"""Build and publish the vector index for a profile version."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from cvrag.cache import KeyedLocks
from cvrag.chunking import ProfileChunker
from cvrag.errors import IndexVersionMismatch, TransientEmbeddingError
from cvrag.embeddings import EmbeddingProvider
from cvrag.models import Chunk, EnrichedProfile
from cvrag.ratelimit import RetryPolicy
from cvrag.telemetry import emit_index_event
from cvrag.vectorstore import IndexRegistry, IndexState, VectorIndex, VectorIndexEntry, namespace_for

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IndexBuildResult:
    subject_id: str
    profile_version: int
    index_version: int
    model_version: str
    namespace: str
    indexed: int
    reused: int
    failed: Tuple[str, ...]
    duration_ms: float


class IndexingPipeline:
    """Chunk a profile, embed what changed and publish a new index build.

    Embeddings are reused by content hash from the live build when the model
    version is unchanged. Chunks that cannot be embedded are left out of the
    build and reported in :attr:`IndexBuildResult.failed`.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        index: VectorIndex,
        registry: IndexRegistry,
        *,
        chunker: ProfileChunker | None = None,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = 16,
        embed_timeout: float = 30.0,
        grace_seconds: float = 3600.0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be a positive integer")
        self._embedder = embedder
        self._index = index
        self.registry = registry
        self._chunker = chunker or ProfileChunker()
        self._retry = retry_policy or RetryPolicy()
        self._batch_size = batch_size
        self._embed_timeout = embed_timeout
        self._grace_seconds = grace_seconds
        self._subject_locks = KeyedLocks(asyncio.Lock)

    async def build_index(self, profile: EnrichedProfile) -> IndexBuildResult:
        lock = self._subject_locks.lock(profile.subject_id)
        async with lock:
            return await self._build(profile)

    async def _build(self, profile: EnrichedProfile) -> IndexBuildResult:
        started = time.perf_counter()
        subject_id = profile.subject_id
        current = self.registry.current(subject_id)
        if current is not None and profile.version < current.profile_version:
            raise IndexVersionMismatch(
                f"Profile v{profile.version} of {subject_id} is older than indexed v{current.profile_version}"
            )

        chunks = self._chunker.chunk_profile(profile)
        model_version = self._embedder.model_version

        reusable: Dict[str, List[float]] = {}
        if current is not None and current.model_version == model_version:
            for entry in self._index.get_entries(current.namespace):
                digest = entry.metadata.get("content_hash")
                if digest:
                    reusable[str(digest)] = entry.embedding

        embeddings: Dict[str, List[float]] = {}
        pending: List[Chunk] = []
        for chunk in chunks:
            cached = reusable.get(chunk.content_hash)
            if cached is not None:
                embeddings[chunk.id] = cached
            else:
                pending.append(chunk)
        reused = len(embeddings)

        failed: List[str] = []
        for offset in range(0, len(pending), self._batch_size):
            batch = pending[offset : offset + self._batch_size]
            try:
                vectors = await self._embed([chunk.text for chunk in batch])
            except (RuntimeError, ValueError) as error:
                LOGGER.warning("Embedding batch of %s chunk(s) failed (%s); retrying one by one", len(batch), error)
                for chunk in batch:
                    try:
                        embeddings[chunk.id] = (await self._embed([chunk.text]))[0]
                    except (RuntimeError, ValueError) as chunk_error:
                        failed.append(chunk.id)
                        emit_index_event(
                            "index.chunk_excluded",
                            subject_id=subject_id,
                            profile_version=profile.version,
                            model_version=model_version,
                            error=chunk_error,
                        )
                continue
            for chunk, vector in zip(batch, vectors):
                embeddings[chunk.id] = vector

        index_version = self.registry.reserve_index_version(subject_id)
        namespace = namespace_for(subject_id, profile.version, index_version)
        entries = [
            VectorIndexEntry(
                chunk_id=chunk.id,
                embedding=embeddings[chunk.id],
                text=chunk.text,
                metadata=chunk.metadata(),
            )
            for chunk in chunks
            if chunk.id in embeddings
        ]
        self._index.upsert(namespace, entries)

        state = IndexState(
            subject_id=subject_id,
            profile_version=profile.version,
            index_version=index_version,
            model_version=model_version,
            dimension=self._embedder.dimension,
            namespace=namespace,
            chunk_count=len(entries),
            published_at=time.time(),
        )
        self.registry.publish(state)

        result = IndexBuildResult(
            subject_id=subject_id,
            profile_version=profile.version,
            index_version=index_version,
            model_version=model_version,
            namespace=namespace,
            indexed=len(entries),
            reused=reused,
            failed=tuple(failed),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        emit_index_event(
            "index.publish",
            subject_id=subject_id,
            profile_version=profile.version,
            index_version=index_version,
            model_version=model_version,
            indexed=result.indexed,
            reused=result.reused,
            failed=len(failed),
            duration_ms=result.duration_ms,
        )
        self.collect_garbage()
        return result

    async def _embed(self, texts: Sequence[str]) -> List[List[float]]:
        async def attempt() -> List[List[float]]:
            try:
                return await asyncio.wait_for(self._embedder.embed_batch(list(texts)), timeout=self._embed_timeout)
            except asyncio.TimeoutError as exc:
                raise TransientEmbeddingError("Embedding request timed out", cause=exc) from exc

        vectors = await self._retry.run(attempt, description="embedding batch")
        if len(vectors) != len(texts):
            raise ValueError(f"Embedder returned {len(vectors)} vectors for {len(texts)} texts")
        for vector in vectors:
            if len(vector) != self._embedder.dimension:
                raise ValueError(
                    f"Embedding dimension {len(vector)} does not match model dimension {self._embedder.dimension}"
                )
        return [list(vector) for vector in vectors]

    def collect_garbage(self) -> int:
        """Delete retired builds whose grace period has elapsed."""

        removed = 0
        for state in self.registry.due_for_collection(self._grace_seconds):
            removed += self._index.delete_namespace(state.namespace)
            self.registry.forget(state.namespace)
            LOGGER.info("Collected retired index %s", state.namespace)
        return removed


__all__ = ["IndexBuildResult", "IndexingPipeline"]
