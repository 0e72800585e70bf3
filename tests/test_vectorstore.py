from __future__ import annotations

import json
import uuid
from pathlib import Path

import pytest

from cvrag.config import Settings
from cvrag.vectorstore import (
    IndexRegistry,
    IndexState,
    InMemoryVectorIndex,
    VectorIndexEntry,
    build_vector_index,
    namespace_for,
)


def _entry(chunk_id: str, embedding, **metadata) -> VectorIndexEntry:
    return VectorIndexEntry(chunk_id=chunk_id, embedding=list(embedding), text=f"text {chunk_id}", metadata=metadata)


def _state(profile_version: int, index_version: int) -> IndexState:
    return IndexState(
        subject_id="ada",
        profile_version=profile_version,
        index_version=index_version,
        model_version="m",
        dimension=2,
        namespace=namespace_for("ada", profile_version, index_version),
        chunk_count=0,
        published_at=0.0,
    )


def test_query_orders_by_cosine_similarity() -> None:
    index = InMemoryVectorIndex()
    index.upsert(
        "ns",
        [
            _entry("far", [0.0, 1.0]),
            _entry("near", [1.0, 0.1]),
            _entry("exact", [2.0, 0.0], category="skills"),
        ],
    )

    hits = index.query("ns", [1.0, 0.0], k=2)

    assert [hit.chunk_id for hit in hits] == ["exact", "near"]
    assert hits[0].similarity == pytest.approx(1.0)
    assert hits[0].metadata == {"category": "skills"}


def test_namespaces_are_isolated() -> None:
    index = InMemoryVectorIndex()
    index.upsert("a", [_entry("x", [1.0, 0.0])])
    index.upsert("b", [_entry("x", [0.0, 1.0])])

    assert index.query("a", [0.0, 1.0], k=5)[0].similarity == pytest.approx(0.0)
    assert index.delete_namespace("a") == 1
    assert index.count("a") == 0
    assert index.count("b") == 1
    assert index.query("a", [1.0, 0.0], k=5) == []


def test_deleted_namespace_leaves_no_lock_behind() -> None:
    index = InMemoryVectorIndex()
    for version in range(1, 4):
        index.upsert(f"ada:p{version}:i{version}", [_entry("x", [1.0, 0.0])])
        index.delete_namespace(f"ada:p{version}:i{version}")

    assert index.namespaces() == []
    assert len(index._locks) == 0


def test_dimension_mismatch_is_rejected() -> None:
    index = InMemoryVectorIndex()
    index.upsert("ns", [_entry("x", [1.0, 0.0])])

    with pytest.raises(ValueError):
        index.upsert("ns", [_entry("y", [1.0, 0.0, 0.0])])
    with pytest.raises(ValueError):
        index.query("ns", [1.0], k=1)


def test_create_snapshot_writes_every_namespace(tmp_path: Path) -> None:
    index = InMemoryVectorIndex()
    index.upsert("ada:p1:i1", [_entry("x", [1.0, 0.0])])

    snapshot_path = index.create_snapshot(tmp_path / "snapshots")

    assert snapshot_path.parent == tmp_path / "snapshots"
    payload = json.loads(snapshot_path.read_text(encoding="utf-8"))
    assert payload["ada:p1:i1"][0]["id"] == "x"


def test_build_vector_index_selects_backend() -> None:
    assert isinstance(build_vector_index(Settings(vector_store="memory")), InMemoryVectorIndex)
    with pytest.raises(ValueError):
        build_vector_index(Settings(vector_store="faiss"))


def test_registry_publish_retires_previous_build() -> None:
    now = [100.0]
    registry = IndexRegistry(clock=lambda: now[0])
    first, second = _state(1, 1), _state(2, 2)

    assert registry.publish(first) is None
    assert registry.publish(second) == first
    assert registry.current("ada") == second
    assert registry.due_for_collection(grace_seconds=60) == []

    now[0] += 61
    assert registry.due_for_collection(grace_seconds=60) == [first]
    registry.forget(first.namespace)
    assert registry.retired() == []


def test_registry_ignores_stale_publish() -> None:
    registry = IndexRegistry()
    newer, older = _state(3, 5), _state(2, 4)
    registry.publish(newer)

    assert registry.publish(older) == older
    assert registry.current("ada") == newer
    assert registry.retired() == [older]


def test_index_versions_are_monotonic_per_subject() -> None:
    registry = IndexRegistry()
    assert [registry.reserve_index_version("ada") for _ in range(3)] == [1, 2, 3]
    assert registry.reserve_index_version("grace") == 1


def test_chroma_index_round_trip() -> None:
    chromadb = pytest.importorskip("chromadb")
    from cvrag.vectorstore.chroma import ChromaVectorIndex

    index = ChromaVectorIndex(client=chromadb.EphemeralClient(), collection_name=f"test-{uuid.uuid4().hex}")
    index.upsert("ada:p1:i1", [_entry("c1", [1.0, 0.0], category="skills"), _entry("c2", [0.0, 1.0])])
    index.upsert("ada:p2:i2", [_entry("c1", [0.0, 1.0])])

    hits = index.query("ada:p1:i1", [1.0, 0.0], k=5)

    assert [hit.chunk_id for hit in hits] == ["c1", "c2"]
    assert hits[0].similarity == pytest.approx(1.0, abs=1e-4)
    assert hits[0].metadata == {"category": "skills"}
    assert index.count("ada:p2:i2") == 1
    assert {entry.chunk_id for entry in index.get_entries("ada:p1:i1")} == {"c1", "c2"}
    assert index.delete_namespace("ada:p1:i1") == 2
    assert index.query("ada:p1:i1", [1.0, 0.0], k=5) == []
    assert index.count("ada:p2:i2") == 1
