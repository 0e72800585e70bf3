from __future__ import annotations

import pytest

from conftest import FIXED_NOW, SUBJECT, VOCABULARY, KeywordEmbedder

from cvrag.embeddings import HashingEmbeddingModel
from cvrag.errors import IndexVersionMismatch
from cvrag.models import Category, SourceName
from cvrag.retrieval import RetrievalEngine
from cvrag.vectorstore import IndexRegistry, IndexState, InMemoryVectorIndex, VectorIndexEntry, namespace_for


async def _indexed(make_service, embedder):
    service = make_service(embedder=embedder)
    result = await service.refresh(SUBJECT)
    return service, result


@pytest.mark.anyio
async def test_search_returns_attributed_chunks(make_service) -> None:
    service, refreshed = await _indexed(make_service, HashingEmbeddingModel(384))
    version = refreshed.enrichment.profile.version

    results = await service.retrieval.search(SUBJECT, "Tell me about the pipeline kit streaming ETL toolkit", version)

    assert results
    top = results[0]
    assert top.text.startswith("pipeline-kit")
    assert top.category is Category.PROJECTS
    assert top.profile_version == version
    assert {attribution.source for attribution in top.attributions} == {SourceName.BASE_DOCUMENT, SourceName.GITHUB}
    assert all(result.similarity >= service.retrieval.min_similarity for result in results)
    scores = [result.score for result in results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.anyio
async def test_nothing_above_threshold_returns_empty(make_service) -> None:
    service, refreshed = await _indexed(make_service, KeywordEmbedder(VOCABULARY))

    results = await service.retrieval.search(SUBJECT, "favourite zebra colour", refreshed.enrichment.profile.version)

    assert results == []


@pytest.mark.anyio
async def test_k_limits_results(make_service) -> None:
    service, refreshed = await _indexed(make_service, KeywordEmbedder(VOCABULARY))
    version = refreshed.enrichment.profile.version

    assert len(await service.retrieval.search(SUBJECT, "python kafka sql engineer", version, k=2)) == 2
    assert await service.retrieval.search(SUBJECT, "   ", version) == []


@pytest.mark.anyio
async def test_stale_profile_version_is_refused(make_service) -> None:
    service, refreshed = await _indexed(make_service, KeywordEmbedder(VOCABULARY))
    old_version = refreshed.enrichment.profile.version
    await service.refresh(SUBJECT)

    with pytest.raises(IndexVersionMismatch):
        await service.retrieval.search(SUBJECT, "python", old_version)


@pytest.mark.anyio
async def test_model_version_mismatch_is_refused(make_service) -> None:
    service, refreshed = await _indexed(make_service, KeywordEmbedder(VOCABULARY))
    engine = RetrievalEngine(
        KeywordEmbedder(VOCABULARY, version="keywords-v2"),
        service.vector_index,
        service.registry,
        clock=lambda: FIXED_NOW,
    )

    with pytest.raises(IndexVersionMismatch):
        await engine.search(SUBJECT, "python", refreshed.enrichment.profile.version)


@pytest.mark.anyio
async def test_unindexed_subject_is_refused(make_service) -> None:
    service = make_service()
    with pytest.raises(IndexVersionMismatch):
        await service.retrieval.search("grace", "python", 1)


@pytest.mark.anyio
async def test_every_chunk_is_found_by_its_own_text(make_service) -> None:
    service, refreshed = await _indexed(make_service, HashingEmbeddingModel(384))
    version = refreshed.enrichment.profile.version

    for entry in service.vector_index.get_entries(refreshed.index.namespace):
        results = await service.retrieval.search(SUBJECT, entry.text, version, k=1)
        assert [result.chunk_id for result in results] == [entry.chunk_id]


@pytest.mark.anyio
async def test_exact_text_beats_fresher_near_duplicate() -> None:
    embedder = HashingEmbeddingModel(384)
    index = InMemoryVectorIndex()
    registry = IndexRegistry()
    namespace = namespace_for(SUBJECT, 1, 1)
    plain = "Ada ran the Kafka clusters for the analytics platform."
    boosted = "Ada ran the Kafka clusters for the analytics platform worldwide."
    vectors = await embedder.embed_batch([plain, boosted])
    index.upsert(
        namespace,
        [
            VectorIndexEntry("plain", vectors[0], plain, {"profile_version": 1, "category": "experience", "confidence": 0.6}),
            VectorIndexEntry(
                "boosted",
                vectors[1],
                boosted,
                {
                    "profile_version": 1,
                    "category": "experience",
                    "confidence": 1.0,
                    "observed_at": FIXED_NOW.isoformat(),
                },
            ),
        ],
    )
    registry.publish(
        IndexState(SUBJECT, 1, 1, embedder.model_version, embedder.dimension, namespace, 2, 0.0)
    )
    engine = RetrievalEngine(embedder, index, registry, clock=lambda: FIXED_NOW)

    assert [chunk.chunk_id for chunk in await engine.search(SUBJECT, plain, 1, k=1)] == ["plain"]
    assert [chunk.chunk_id for chunk in await engine.search(SUBJECT, boosted, 1, k=1)] == ["boosted"]
