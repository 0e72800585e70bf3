"""Similarity search over a pinned index build."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, List, Mapping

from cvrag.embeddings import EmbeddingProvider
from cvrag.errors import IndexVersionMismatch
from cvrag.models import Category, RankedChunk, attributions_from_json, utcnow
from cvrag.telemetry import emit_retrieval_event
from cvrag.vectorstore import IndexRegistry, IndexState, QueryResult, VectorIndex

LOGGER = logging.getLogger(__name__)

SIMILARITY_WEIGHT = 0.8
CONFIDENCE_WEIGHT = 0.1
RECENCY_WEIGHT = 0.1
RECENCY_HORIZON_DAYS = 730.0
CANDIDATE_MULTIPLIER = 3
EXACT_MATCH_SIMILARITY = 0.999


def _parse_observed(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class RetrievalEngine:
    """Embed a query, search the live index and re-rank the hits."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        index: VectorIndex,
        registry: IndexRegistry,
        *,
        min_similarity: float = 0.2,
        default_k: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._registry = registry
        self.min_similarity = min_similarity
        self.default_k = default_k
        self._clock = clock

    def resolve(self, subject_id: str, profile_version: int) -> IndexState:
        """Return the live build for ``profile_version`` or raise on any mismatch."""

        state = self._registry.current(subject_id)
        if state is None:
            raise IndexVersionMismatch(f"No index has been published for {subject_id!r}")
        if state.profile_version != profile_version:
            raise IndexVersionMismatch(
                f"Index for {subject_id!r} is at profile v{state.profile_version}, not v{profile_version}"
            )
        if state.model_version != self._embedder.model_version:
            raise IndexVersionMismatch(
                f"Index was built with {state.model_version!r} but queries use {self._embedder.model_version!r}"
            )
        return state

    async def search(
        self,
        subject_id: str,
        query: str,
        profile_version: int,
        k: int | None = None,
    ) -> List[RankedChunk]:
        started = time.perf_counter()
        state = self.resolve(subject_id, profile_version)
        k = self.default_k if k is None else k
        if k <= 0 or not query.strip():
            return []

        vector = await self._embedder.embed(query)
        hits = self._index.query(state.namespace, vector, k * CANDIDATE_MULTIPLIER)

        now = self._clock()
        ranked: List[RankedChunk] = []
        for hit in hits:
            if hit.similarity < self.min_similarity:
                continue
            ranked.append(self._rank(hit, profile_version, now))
        # Exact matches outrank re-ranking boosts.
        ranked.sort(key=lambda chunk: (chunk.similarity < EXACT_MATCH_SIMILARITY, -chunk.score, chunk.chunk_id))
        ranked = ranked[:k]

        emit_retrieval_event(
            subject_id=subject_id,
            profile_version=profile_version,
            query=query,
            k=k,
            results=[
                {"chunk_id": chunk.chunk_id, "similarity": round(chunk.similarity, 4), "score": round(chunk.score, 4)}
                for chunk in ranked
            ],
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return ranked

    def _rank(self, hit: QueryResult, profile_version: int, now: datetime) -> RankedChunk:
        metadata: Mapping[str, Any] = hit.metadata
        hit_version = int(metadata.get("profile_version", -1))
        if hit_version != profile_version:
            raise IndexVersionMismatch(
                f"Chunk {hit.chunk_id} belongs to profile v{hit_version}, expected v{profile_version}"
            )
        confidence = float(metadata.get("confidence", 0.0))
        observed_at = _parse_observed(metadata.get("observed_at"))
        recency = 0.0
        if observed_at is not None:
            age_days = max(0.0, (now - observed_at).total_seconds() / 86400.0)
            recency = max(0.0, 1.0 - age_days / RECENCY_HORIZON_DAYS)
        score = SIMILARITY_WEIGHT * hit.similarity + CONFIDENCE_WEIGHT * confidence + RECENCY_WEIGHT * recency
        return RankedChunk(
            chunk_id=hit.chunk_id,
            text=hit.text,
            category=Category(metadata.get("category", Category.SUMMARY.value)),
            profile_version=hit_version,
            similarity=hit.similarity,
            score=score,
            confidence=confidence,
            attributions=attributions_from_json(metadata.get("attributions")),
            observed_at=observed_at,
        )


__all__ = ["RetrievalEngine"]
