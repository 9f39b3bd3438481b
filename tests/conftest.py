"""Pytest configuration and fixtures."""

import gc
import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import numpy as np
import pytest

from ragindex.config import Settings


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    try:
        yield Path(tmpdir)
    finally:
        # Force garbage collection to release any file handles
        gc.collect()
        shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def override_settings(temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide isolated ragindex settings scoped to tests."""

    import ragindex.config as config_module

    original_settings = getattr(config_module, "_settings", None)

    data_dir = temp_dir / "appdata"
    data_dir.mkdir(parents=True, exist_ok=True)

    settings = config_module.Settings(
        data_dir=data_dir,
        graph_degree=16,
        build_complexity=48,
        search_complexity=48,
        disk_page_size=4096,
        disk_cache_pages=64,
    )

    config_module._settings = settings

    try:
        yield settings
    finally:
        config_module._settings = original_settings


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def random_vectors(rng: np.random.Generator) -> np.ndarray:
    """400 Gaussian vectors in 16 dimensions."""
    return rng.standard_normal((400, 16)).astype(np.float32)


@pytest.fixture
def query_vectors(rng: np.random.Generator) -> np.ndarray:
    return rng.standard_normal((20, 16)).astype(np.float32)


def brute_force(vectors: np.ndarray, query: np.ndarray, k: int, metric: str) -> list[int]:
    """Exact top-k ids under ``metric``, ties broken by id."""
    data = np.asarray(vectors, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    if metric == "cosine":
        norms = np.linalg.norm(data, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        data = data / norms
        q = q / (np.linalg.norm(q) or 1.0)
        dists = 1.0 - data @ q
    elif metric == "mips":
        dists = -(data @ q)
    else:
        dists = ((data - q) ** 2).sum(axis=1)
    order = np.lexsort((np.arange(len(dists)), dists))
    return [int(i) for i in order[:k]]


def recall(found: list[int], expected: list[int]) -> float:
    if not expected:
        return 1.0
    return len(set(found) & set(expected)) / len(expected)


def make_passages(vectors: np.ndarray, *, topics: tuple[str, ...] = ("alpha", "beta")) -> list:
    """Passage tuples with text and metadata derived from the row index."""
    passages = []
    for i, vector in enumerate(vectors):
        topic = topics[i % len(topics)]
        passages.append(
            (
                f"doc-{i}",
                f"passage number {i} about {topic} retrieval",
                vector.tolist(),
                {"topic": topic, "year": 2000 + (i % 25), "rank": i},
            )
        )
    return passages
