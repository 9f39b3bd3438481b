"""HNSW graph backend: recall, structure and persistence."""

from __future__ import annotations

import io
from collections import deque

import numpy as np
import pytest
from conftest import brute_force, recall

from ragindex.app.adapters.diskann import DiskANNBackend
from ragindex.app.adapters.hnsw import HNSWBackend
from ragindex.app.ports.vector_store import VectorBackendPort
from ragindex.errors import BuildError, FormatError, QueryError
from ragindex.index.distance import Metric


def _build(vectors: np.ndarray, metric: Metric = Metric.L2, **kwargs) -> HNSWBackend:
    backend = HNSWBackend(vectors.shape[1], metric, m=kwargs.pop("m", 16), **kwargs)
    backend.insert_batch(vectors)
    backend.finalize_build()
    return backend


@pytest.mark.parametrize("metric", [Metric.L2, Metric.COSINE])
@pytest.mark.parametrize("k", [1, 10, 50])
def test_recall_against_brute_force(random_vectors, query_vectors, metric, k) -> None:
    backend = _build(random_vectors, metric, ef_construction=64)

    scores = []
    for query in query_vectors:
        found = [hit.internal_id for hit in backend.search(query, k, ef=128)]
        scores.append(recall(found, brute_force(random_vectors, query, k, metric.value)))

    assert np.mean(scores) >= 0.95


def test_inner_product_recall(random_vectors, query_vectors) -> None:
    backend = _build(random_vectors, Metric.MIPS, ef_construction=96)

    scores = []
    for query in query_vectors:
        found = [hit.internal_id for hit in backend.search(query, 10, ef=200)]
        scores.append(recall(found, brute_force(random_vectors, query, 10, "mips")))

    assert np.mean(scores) >= 0.9


def test_empty_graph_returns_nothing() -> None:
    backend = HNSWBackend(4, Metric.L2)
    backend.finalize_build()

    assert backend.search(np.ones(4), 5) == []
    assert len(backend) == 0


def test_k_larger_than_count_is_exact(random_vectors) -> None:
    vectors = random_vectors[:30]
    backend = _build(vectors)
    query = random_vectors[100]

    hits = backend.search(query, 100)

    assert [hit.internal_id for hit in hits] == brute_force(vectors, query, 30, "l2")
    distances = [hit.distance for hit in hits]
    assert distances == sorted(distances)


def test_duplicate_vectors_are_ordered_by_id(rng) -> None:
    base = rng.standard_normal(8).astype(np.float32)
    others = rng.standard_normal((60, 8)).astype(np.float32) * 5 + 10
    vectors = np.vstack([np.tile(base, (5, 1)), others])
    backend = _build(vectors, m=8)

    hits = backend.search(base, 3, ef=64)

    assert [hit.internal_id for hit in hits] == [0, 1, 2]
    assert all(hit.distance == pytest.approx(0.0, abs=1e-9) for hit in hits)


def test_degree_bounds_and_level_structure(random_vectors) -> None:
    backend = _build(random_vectors, m=8)

    for node in range(len(backend)):
        level = backend.level_of(node)
        assert level <= backend.max_level
        for layer in range(level + 1):
            links = backend.neighbors(node, layer)
            cap = 2 * backend.m if layer == 0 else backend.m
            assert len(links) <= cap
            assert node not in links
            # A neighbour on layer L must itself be present on layer L.
            assert all(backend.level_of(n) >= layer for n in links)

    assert backend.level_of(backend.entry_point) == backend.max_level


def test_every_node_reachable_from_entry_point(random_vectors) -> None:
    backend = _build(random_vectors, m=4)

    seen = {backend.entry_point}
    queue = deque([backend.entry_point])
    while queue:
        current = queue.popleft()
        for neighbor in backend.neighbors(current, 0):
            if neighbor not in seen:
                seen.add(neighbor)
                queue.append(neighbor)

    assert len(seen) == len(backend)


def test_scores_follow_metric() -> None:
    vectors = np.array([[1.0, 0.0], [0.0, 2.0]], dtype=np.float32)

    cosine = _build(vectors, Metric.COSINE, m=2)
    top = cosine.search(np.array([1.0, 0.0]), 1)[0]
    assert top.internal_id == 0
    assert top.score == pytest.approx(1.0)

    mips = _build(vectors, Metric.MIPS, m=2)
    top = mips.search(np.array([0.0, 1.0]), 1)[0]
    assert top.internal_id == 1
    assert top.score == pytest.approx(2.0)

    l2 = _build(vectors, Metric.L2, m=2)
    top = l2.search(np.array([3.0, 0.0]), 1)[0]
    assert top.internal_id == 0
    assert top.distance == pytest.approx(4.0)
    assert top.score == pytest.approx(-2.0)


def test_dimension_mismatch_is_rejected() -> None:
    backend = HNSWBackend(4, Metric.L2)

    with pytest.raises(BuildError):
        backend.insert(np.ones(3))
    with pytest.raises(BuildError):
        backend.insert_batch(np.ones((2, 5)))

    backend.insert(np.ones(4))
    with pytest.raises(QueryError):
        backend.search(np.ones(5), 1)


@pytest.mark.parametrize("kwargs", [{"m": 1}, {"ef_construction": 0}, {"ef_search": 0}])
def test_invalid_parameters(kwargs) -> None:
    with pytest.raises(BuildError):
        HNSWBackend(4, Metric.L2, **kwargs)


def test_insert_after_finalize_extends_graph(random_vectors) -> None:
    backend = _build(random_vectors[:100])
    backend.insert_batch(random_vectors[100:150])
    backend.finalize_build()

    assert len(backend) == 150
    hits = backend.search(random_vectors[120], 1, ef=64)
    assert hits[0].internal_id == 120


def test_serialize_round_trip(random_vectors, query_vectors) -> None:
    backend = _build(random_vectors[:200], Metric.COSINE)
    buffer = io.BytesIO()
    backend.serialize(buffer)
    payload = buffer.getvalue()

    restored = HNSWBackend.deserialize(
        payload, dimension=16, metric=Metric.COSINE, count=200, ef_search=64
    )

    assert restored.entry_point == backend.entry_point
    assert restored.max_level == backend.max_level
    np.testing.assert_array_equal(restored.vectors(), backend.vectors())
    for query in query_vectors[:5]:
        before = [(h.internal_id, h.distance) for h in backend.search(query, 10)]
        after = [(h.internal_id, h.distance) for h in restored.search(query, 10)]
        assert before == after

    again = io.BytesIO()
    restored.serialize(again)
    assert again.getvalue() == payload


def test_deserialize_rejects_truncated_payload(random_vectors) -> None:
    backend = _build(random_vectors[:50])
    buffer = io.BytesIO()
    backend.serialize(buffer)
    payload = buffer.getvalue()

    with pytest.raises(FormatError):
        HNSWBackend.deserialize(payload[:-4], dimension=16, metric=Metric.L2, count=50)
    with pytest.raises(FormatError):
        HNSWBackend.deserialize(payload + b"\0", dimension=16, metric=Metric.L2, count=50)


@pytest.mark.parametrize("backend_cls", [HNSWBackend, DiskANNBackend])
def test_backends_satisfy_port(backend_cls) -> None:
    backend = backend_cls(8, Metric.COSINE)

    assert isinstance(backend, VectorBackendPort)
    assert backend.kind in ("hnsw", "diskann")
