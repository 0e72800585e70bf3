"""Embedding collaborators pinned to an explicit model version."""
from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from functools import lru_cache
from typing import List, Protocol, Sequence

import numpy as np

from cvrag.config import Settings
from cvrag.errors import TransientEmbeddingError
from cvrag.telemetry import emit_embedding_event

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"
_TOKEN_RE = re.compile(r"[a-z0-9+#]+")


class EmbeddingProvider(Protocol):
    """Contract shared by the indexing pipeline and the retrieval engine."""

    @property
    def model_version(self) -> str:
        ...

    @property
    def dimension(self) -> int:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        ...

    async def embed(self, text: str) -> List[float]:
        ...


class HashingEmbeddingModel:
    """Deterministic bag-of-words feature hashing; needs no model download.

    Identical texts map to identical unit vectors, and texts sharing words
    have positive cosine similarity, which is enough for development and for
    exercising the index end to end.
    """

    def __init__(self, dimension: int = 384) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be a positive integer")
        self._dimension = dimension

    @property
    def model_version(self) -> str:
        return f"hashing-v1-{self._dimension}"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _vector(self, text: str) -> List[float]:
        vector = np.zeros(self._dimension, dtype=np.float64)
        tokens = _TOKEN_RE.findall(text.lower())
        features = tokens + [f"{left} {right}" for left, right in zip(tokens, tokens[1:])]
        for feature in features:
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "big")
            sign = 1.0 if value & 1 else -1.0
            weight = 1.0 if " " not in feature else 0.5
            vector[(value >> 1) % self._dimension] += sign * weight
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector.tolist()

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        started = time.perf_counter()
        vectors = [self._vector(str(text)) for text in texts]
        emit_embedding_event(
            model=self.model_version,
            count=len(vectors),
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return vectors

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]


class SentenceTransformerEmbeddingModel:
    """Wrapper around a SentenceTransformer model run off the event loop."""

    def __init__(self, model_name: str = DEFAULT_MODEL_NAME, *, device: str | None = None) -> None:
        from sentence_transformers import SentenceTransformer

        self._model_name = model_name
        self._model = SentenceTransformer(model_name, device=device)
        self._dimension = int(self._model.get_sentence_embedding_dimension())

    @property
    def model_version(self) -> str:
        return f"sentence-transformers:{self._model_name}"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _encode(self, texts: Sequence[str]) -> List[List[float]]:
        embeddings = self._model.encode(
            list(texts),
            convert_to_numpy=True,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        started = time.perf_counter()
        try:
            vectors = await asyncio.to_thread(self._encode, texts)
        except RuntimeError as error:
            emit_embedding_event(
                model=self.model_version,
                count=len(texts),
                duration_ms=(time.perf_counter() - started) * 1000.0,
                error=error,
            )
            raise TransientEmbeddingError("Embedding model failed", cause=error) from error
        emit_embedding_event(
            model=self.model_version,
            count=len(texts),
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return vectors

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]


@lru_cache()
def get_embedding_model(
    backend: str = "hashing",
    model_name: str = DEFAULT_MODEL_NAME,
    dimension: int = 384,
) -> EmbeddingProvider:
    """Return a cached embedding model for the configured backend."""

    if backend == "hashing":
        return HashingEmbeddingModel(dimension)
    if backend in {"sentence-transformers", "sentence_transformers"}:
        LOGGER.info("Loading sentence-transformers model %s", model_name)
        return SentenceTransformerEmbeddingModel(model_name)
    raise ValueError(f"Unsupported embedding backend: {backend!r}")


def embedding_model_from_settings(settings: Settings) -> EmbeddingProvider:
    return get_embedding_model(settings.embedding_backend, settings.embedding_model, settings.embedding_dimension)


def reset_embedding_model_cache() -> None:
    """Clear the cached embedding model instance (primarily for testing)."""

    get_embedding_model.cache_clear()


__all__ = [
    "EmbeddingProvider",
    "HashingEmbeddingModel",
    "SentenceTransformerEmbeddingModel",
    "embedding_model_from_settings",
    "get_embedding_model",
    "reset_embedding_model_cache",
]
