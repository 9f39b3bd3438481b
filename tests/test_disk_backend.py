"""Disk-resident Vamana backend: build, paging, quantization and failure modes."""

from __future__ import annotations

import os
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np
import pytest
from conftest import brute_force, recall

from ragindex.app.adapters.diskann import DiskANNBackend, SearchStats, page_layout, record_size
from ragindex.errors import BackendError, BuildError, FormatError
from ragindex.index.distance import Metric

PREFIX = 20


def _build(vectors: np.ndarray, metric: Metric = Metric.L2, **kwargs) -> DiskANNBackend:
    kwargs.setdefault("max_degree", 16)
    kwargs.setdefault("build_complexity", 48)
    backend = DiskANNBackend(vectors.shape[1], metric, **kwargs)
    backend.insert_batch(vectors)
    backend.finalize_build()
    return backend


def _persist(backend: DiskANNBackend, path: Path) -> Path:
    with path.open("wb") as handle:
        handle.write(b"\0" * PREFIX)
        backend.serialize(handle, payload_offset=PREFIX)
    return path


def _open(path: Path, count: int, metric: Metric = Metric.L2, **kwargs) -> DiskANNBackend:
    return DiskANNBackend.open(
        path, payload_offset=PREFIX, dimension=16, metric=metric, count=count, **kwargs
    )


def test_page_layout() -> None:
    assert record_size(16, 16) == 132
    assert page_layout(16, 16, 4096) == (4096, 31)
    # A record bigger than one page spans whole pages.
    assert page_layout(1024, 64, 4096) == (8192, 1)


def test_recall_against_brute_force(random_vectors, query_vectors) -> None:
    backend = _build(random_vectors)

    scores = []
    for query in query_vectors:
        found = [hit.internal_id for hit in backend.search(query, 10, ef=64)]
        scores.append(recall(found, brute_force(random_vectors, query, 10, "l2")))

    assert np.mean(scores) >= 0.95


def test_degree_bound_and_connectivity(random_vectors) -> None:
    backend = _build(random_vectors, max_degree=8)

    for node in range(len(backend)):
        links = backend.neighbors(node)
        assert len(links) <= 8
        assert node not in links

    seen = set(backend.start_points)
    queue = deque(seen)
    while queue:
        for neighbor in backend.neighbors(queue.popleft()):
            if neighbor not in seen:
                seen.add(neighbor)
                queue.append(neighbor)
    assert len(seen) == len(backend)


def test_k_at_least_count_is_exact(random_vectors) -> None:
    vectors = random_vectors[:40]
    backend = _build(vectors, Metric.COSINE)
    query = random_vectors[300]

    hits = backend.search(query, 40)

    assert [hit.internal_id for hit in hits] == brute_force(vectors, query, 40, "cosine")


def test_persisted_graph_matches_memory(temp_dir, random_vectors, query_vectors) -> None:
    backend = _build(random_vectors, Metric.MIPS)
    path = _persist(backend, temp_dir / "graph.index")

    opened = _open(path, len(random_vectors), Metric.MIPS, cache_pages=64)
    try:
        assert opened.start_points == backend.start_points
        assert opened.page_count == backend.page_count
        np.testing.assert_array_equal(opened.vectors(), backend.vectors())
        for query in query_vectors[:5]:
            before = [(h.internal_id, h.distance) for h in backend.search(query, 10)]
            after = [(h.internal_id, h.distance) for h in opened.search(query, 10)]
            assert before == after
    finally:
        opened.close()


def test_page_cache_counts_misses_then_hits(temp_dir, random_vectors, query_vectors) -> None:
    backend = _build(random_vectors)
    path = _persist(backend, temp_dir / "graph.index")
    opened = _open(path, len(random_vectors), cache_pages=64)
    try:
        cold = SearchStats()
        opened.search(query_vectors[0], 5, stats=cold)
        assert cold.page_reads > 0
        assert cold.cache_misses == cold.page_reads
        assert cold.cache_hits == 0

        warm = SearchStats()
        opened.search(query_vectors[0], 5, stats=warm)
        assert warm.page_reads == cold.page_reads
        assert warm.cache_hits == warm.page_reads
        assert warm.cache_misses == 0

        cache_stats = opened.page_cache.stats()
        assert cache_stats.misses == cold.cache_misses
        assert cache_stats.size <= opened.page_count
    finally:
        opened.close()


def test_small_cache_evicts(temp_dir, random_vectors, query_vectors) -> None:
    backend = _build(random_vectors)
    path = _persist(backend, temp_dir / "graph.index")
    opened = _open(path, len(random_vectors), cache_pages=2)
    try:
        for query in query_vectors[:5]:
            opened.search(query, 10)
        stats = opened.page_cache.stats()
        assert stats.size <= 2
        assert stats.evictions > 0
    finally:
        opened.close()


def test_quantized_search_reranks_with_exact_distances(
    temp_dir, random_vectors, query_vectors
) -> None:
    backend = _build(random_vectors, quantize=True, rerank_factor=4)
    assert backend.quantizer is not None
    path = _persist(backend, temp_dir / "graph.index")
    opened = _open(path, len(random_vectors), rerank_factor=4)
    try:
        assert opened.quantizer is not None
        np.testing.assert_array_equal(opened.quantizer.codes, backend.quantizer.codes)
        scores = []
        for query in query_vectors:
            hits = opened.search(query, 10, ef=64)
            ids = [hit.internal_id for hit in hits]
            exact = opened.distances(query, ids)
            # Returned distances are full precision, not code approximations.
            np.testing.assert_allclose([hit.distance for hit in hits], exact)
            assert [hit.distance for hit in hits] == sorted(hit.distance for hit in hits)
            scores.append(recall(ids, brute_force(random_vectors, query, 10, "l2")))
        assert np.mean(scores) >= 0.9
    finally:
        opened.close()


def test_concurrent_searches_agree(temp_dir, random_vectors, query_vectors) -> None:
    backend = _build(random_vectors)
    path = _persist(backend, temp_dir / "graph.index")
    opened = _open(path, len(random_vectors), cache_pages=4)
    try:
        expected = [
            [hit.internal_id for hit in opened.search(query, 10)] for query in query_vectors
        ]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(
                pool.map(
                    lambda q: [hit.internal_id for hit in opened.search(q, 10)],
                    list(query_vectors) * 4,
                )
            )
        assert results == expected * 4
    finally:
        opened.close()


def test_truncated_page_file_raises_backend_error(temp_dir, random_vectors) -> None:
    backend = _build(random_vectors)
    path = _persist(backend, temp_dir / "graph.index")
    opened = _open(path, len(random_vectors))
    try:
        data_offset = path.stat().st_size - opened.page_count * opened.page_size
        os.truncate(path, data_offset)
        with pytest.raises(BackendError):
            opened.search(random_vectors[0], 5)
    finally:
        opened.close()


def test_open_rejects_size_mismatch(temp_dir, random_vectors) -> None:
    backend = _build(random_vectors)
    path = _persist(backend, temp_dir / "graph.index")
    with path.open("ab") as handle:
        handle.write(b"\0" * 7)

    with pytest.raises(FormatError):
        _open(path, len(random_vectors))


def test_open_rejects_wrong_count(temp_dir, random_vectors) -> None:
    backend = _build(random_vectors)
    path = _persist(backend, temp_dir / "graph.index")

    with pytest.raises(FormatError):
        _open(path, len(random_vectors) + 100)


def test_insert_after_finalize_is_rejected(random_vectors) -> None:
    backend = _build(random_vectors[:20])

    with pytest.raises(BuildError):
        backend.insert(random_vectors[30])


def test_invalid_parameters() -> None:
    with pytest.raises(BuildError):
        DiskANNBackend(16, Metric.L2, alpha=0.5)
    with pytest.raises(BuildError):
        DiskANNBackend(16, Metric.L2, page_size=128)
    with pytest.raises(BuildError):
        DiskANNBackend(0, Metric.L2)


def test_single_vector_graph(temp_dir) -> None:
    vector = np.ones((1, 16), dtype=np.float32)
    backend = _build(vector)

    hits = backend.search(np.ones(16), 3)

    assert [hit.internal_id for hit in hits] == [0]
    assert backend.start_points == [0]
