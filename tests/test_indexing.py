from __future__ import annotations

from typing import List, Sequence

import pytest

from conftest import FIXED_NOW, VOCABULARY, KeywordEmbedder

from cvrag.errors import IndexVersionMismatch
from cvrag.indexing import IndexingPipeline
from cvrag.models import BaseDocument, Category, EnrichedProfile, Section, SourceAttribution, SourceName
from cvrag.ratelimit import RetryPolicy
from cvrag.vectorstore import IndexRegistry, InMemoryVectorIndex


async def _no_sleep(seconds: float) -> None:
    return None


def _profile(version: int, *texts: str) -> EnrichedProfile:
    sections = tuple(
        Section(
            category=Category.SKILLS,
            key=f"skill-{index}",
            text=text,
            attributions=(SourceAttribution(SourceName.BASE_DOCUMENT, FIXED_NOW),),
            confidence=0.9,
        )
        for index, text in enumerate(texts)
    )
    return EnrichedProfile(
        subject_id="ada",
        version=version,
        base_document=BaseDocument(subject_id="ada", full_name="Ada Lovelace"),
        sections=sections,
        quality_score=10.0,
        last_merged=FIXED_NOW,
    )


class RejectingEmbedder(KeywordEmbedder):
    """Fail any batch that contains the poisoned word."""

    def __init__(self, poison: str) -> None:
        super().__init__(VOCABULARY)
        self.poison = poison
        self.batches: List[int] = []

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.batches.append(len(texts))
        if any(self.poison in text for text in texts):
            raise RuntimeError("model rejected input")
        return await super().embed_batch(texts)


def _pipeline(embedder, *, index=None, registry=None, grace_seconds: float = 3600.0, batch_size: int = 16):
    return IndexingPipeline(
        embedder,
        index or InMemoryVectorIndex(),
        registry or IndexRegistry(),
        retry_policy=RetryPolicy(2, base_delay=0.0, sleep=_no_sleep),
        batch_size=batch_size,
        grace_seconds=grace_seconds,
    )


@pytest.mark.anyio
async def test_build_index_publishes_every_chunk() -> None:
    index = InMemoryVectorIndex()
    pipeline = _pipeline(KeywordEmbedder(VOCABULARY), index=index)

    result = await pipeline.build_index(_profile(1, "Python.", "Kafka.", "SQL."))

    assert (result.indexed, result.reused, result.failed) == (3, 0, ())
    assert result.namespace == "ada:p1:i1"
    state = pipeline.registry.current("ada")
    assert state.profile_version == 1
    assert state.model_version == "keywords-v1"
    assert index.count(result.namespace) == 3
    metadata = index.get_entries(result.namespace)[0].metadata
    assert metadata["profile_version"] == 1
    assert metadata["category"] == "skills"


@pytest.mark.anyio
async def test_unchanged_chunks_reuse_embeddings() -> None:
    embedder = KeywordEmbedder(VOCABULARY)
    pipeline = _pipeline(embedder)
    await pipeline.build_index(_profile(1, "Python.", "Kafka."))
    calls_after_first = embedder.calls

    result = await pipeline.build_index(_profile(2, "Python.", "Kafka.", "SQL."))

    assert result.reused == 2
    assert result.indexed == 3
    assert embedder.calls == calls_after_first + 1


@pytest.mark.anyio
async def test_model_change_forces_full_reembedding() -> None:
    registry = IndexRegistry()
    index = InMemoryVectorIndex()
    await _pipeline(KeywordEmbedder(VOCABULARY), index=index, registry=registry).build_index(_profile(1, "Python."))

    upgraded = KeywordEmbedder(VOCABULARY, version="keywords-v2")
    result = await _pipeline(upgraded, index=index, registry=registry).build_index(_profile(1, "Python."))

    assert result.reused == 0
    assert result.index_version == 2
    assert registry.current("ada").model_version == "keywords-v2"


@pytest.mark.anyio
async def test_failed_chunk_is_excluded_not_fatal(caplog: pytest.LogCaptureFixture) -> None:
    embedder = RejectingEmbedder("Kafka")
    index = InMemoryVectorIndex()
    pipeline = _pipeline(embedder, index=index)

    result = await pipeline.build_index(_profile(1, "Python.", "Kafka.", "SQL."))

    assert result.indexed == 2
    assert len(result.failed) == 1
    assert result.failed[0] not in {entry.chunk_id for entry in index.get_entries(result.namespace)}
    assert embedder.batches[0] == 3
    assert any(
        isinstance(record.msg, dict) and record.msg.get("step") == "index.chunk_excluded" for record in caplog.records
    )


@pytest.mark.anyio
async def test_older_profile_version_is_refused() -> None:
    pipeline = _pipeline(KeywordEmbedder(VOCABULARY))
    await pipeline.build_index(_profile(2, "Python."))

    with pytest.raises(IndexVersionMismatch):
        await pipeline.build_index(_profile(1, "Python."))
    assert pipeline.registry.current("ada").profile_version == 2


@pytest.mark.anyio
async def test_superseded_build_is_collected_after_grace_period() -> None:
    now = [0.0]
    registry = IndexRegistry(clock=lambda: now[0])
    index = InMemoryVectorIndex()
    pipeline = _pipeline(KeywordEmbedder(VOCABULARY), index=index, registry=registry, grace_seconds=600)

    first = await pipeline.build_index(_profile(1, "Python."))
    second = await pipeline.build_index(_profile(2, "Python.", "SQL."))

    assert index.count(first.namespace) == 1
    assert pipeline.collect_garbage() == 0

    now[0] += 601
    assert pipeline.collect_garbage() == 1
    assert index.namespaces() == [second.namespace]


def test_batch_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        _pipeline(KeywordEmbedder(VOCABULARY), batch_size=0)
