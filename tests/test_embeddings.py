from __future__ import annotations

import numpy as np
import pytest

from cvrag.config import Settings
from cvrag.embeddings import (
    HashingEmbeddingModel,
    SentenceTransformerEmbeddingModel,
    embedding_model_from_settings,
    get_embedding_model,
    reset_embedding_model_cache,
)
from cvrag.errors import TransientEmbeddingError


@pytest.fixture(autouse=True)
def _reset_cache():
    reset_embedding_model_cache()
    yield
    reset_embedding_model_cache()


def _cosine(left, right) -> float:
    return float(np.dot(left, right))


@pytest.mark.anyio
async def test_hashing_model_is_deterministic_and_normalised() -> None:
    model = HashingEmbeddingModel(64)

    first, second = await model.embed_batch(["Kafka streaming pipelines", "Kafka streaming pipelines"])

    assert first == second
    assert len(first) == model.dimension == 64
    assert np.linalg.norm(first) == pytest.approx(1.0)
    assert model.model_version == "hashing-v1-64"


@pytest.mark.anyio
async def test_shared_words_score_higher_than_unrelated_text() -> None:
    model = HashingEmbeddingModel(1024)

    query = await model.embed("streaming ETL toolkit in Python")
    related = await model.embed("pipeline-kit is a streaming ETL toolkit written in Python")
    unrelated = await model.embed("Bachelor of Arts in medieval history")

    assert _cosine(query, related) > _cosine(query, unrelated)


@pytest.mark.anyio
async def test_empty_text_embeds_to_zero_vector() -> None:
    vector = await HashingEmbeddingModel(16).embed("")
    assert vector == [0.0] * 16


def test_factory_caches_models_per_configuration() -> None:
    first = embedding_model_from_settings(Settings(embedding_dimension=32))

    assert embedding_model_from_settings(Settings(embedding_dimension=32)) is first
    assert first.dimension == 32
    assert get_embedding_model("hashing", dimension=16) is not first


def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(ValueError):
        get_embedding_model("word2vec")


@pytest.mark.anyio
async def test_sentence_transformer_runtime_errors_are_transient() -> None:
    class FailingModel:
        def encode(self, texts, **kwargs):
            raise RuntimeError("CUDA out of memory")

    model = SentenceTransformerEmbeddingModel.__new__(SentenceTransformerEmbeddingModel)
    model._model_name = "stub"
    model._model = FailingModel()
    model._dimension = 8

    with pytest.raises(TransientEmbeddingError):
        await model.embed_batch(["hello"])
    assert await model.embed_batch([]) == []
