"""Vector backend port interface for ANN search."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

import numpy as np

from ragindex.index.distance import Metric


@dataclass(slots=True)
class VectorHit:
    """Single vector search result keyed by dense internal id."""

    internal_id: int
    distance: float
    score: float


@runtime_checkable
class VectorBackendPort(Protocol):
    """Port interface shared by the graph and disk ANN backends.

    Implementations should provide:
    - Single-writer construction via ``insert``/``insert_batch`` + ``finalize_build``
    - Read-only, thread-safe ``search`` once built or loaded
    - Results ordered by ``(distance, internal_id)``

    Side effects: the disk backend reads pages from its index file during search.
    """

    kind: str
    metric: Metric
    dimension: int

    def __len__(self) -> int:
        ...

    def insert(self, vector: np.ndarray) -> int:
        """Add one vector and return its dense internal id."""
        ...

    def insert_batch(self, vectors: np.ndarray) -> list[int]:
        """Add vectors in order and return their dense internal ids."""
        ...

    def finalize_build(self) -> None:
        """Close the build phase and make every node reachable for search."""
        ...

    def search(self, query: np.ndarray, k: int, *, ef: int | None = None) -> list[VectorHit]:
        """Return up to ``k`` nearest neighbours of ``query``."""
        ...

    def distances(self, query: np.ndarray, ids: Sequence[int]) -> np.ndarray:
        """Exact distances between ``query`` and the given dense ids."""
        ...

    def vectors(self) -> np.ndarray:
        """Return every stored vector in dense id order (used by rebuilds)."""
        ...

    def close(self) -> None:
        """Release file handles held by the backend."""
        ...
