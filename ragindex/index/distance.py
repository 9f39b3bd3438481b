"""Distance metrics shared by the vector backends.

All backends rank by *distance* (lower is closer) and convert to a
similarity-style *score* (higher is better) only at the API boundary.
Distances are computed in float64 so that identical vectors always produce
identical distances regardless of batch shape.
"""

from __future__ import annotations

from enum import Enum

import numpy as np


class Metric(str, Enum):
    """Supported distance metrics (names as stored in bundle metadata)."""

    COSINE = "cosine"
    MIPS = "mips"
    L2 = "l2"

    @property
    def code(self) -> int:
        return _METRIC_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> Metric:
        for metric, value in _METRIC_CODES.items():
            if value == code:
                return metric
        raise ValueError(f"Unknown metric code: {code}")


_METRIC_CODES = {Metric.COSINE: 0, Metric.MIPS: 1, Metric.L2: 2}

_ALIASES = {
    "cosine": Metric.COSINE,
    "cos": Metric.COSINE,
    "mips": Metric.MIPS,
    "ip": Metric.MIPS,
    "inner_product": Metric.MIPS,
    "dot": Metric.MIPS,
    "l2": Metric.L2,
    "euclidean": Metric.L2,
}


def parse_metric(value: str | Metric) -> Metric:
    """Resolve a metric name or alias."""
    if isinstance(value, Metric):
        return value
    try:
        return _ALIASES[value.strip().lower()]
    except KeyError as exc:
        raise ValueError(
            f"Unknown distance metric {value!r}; expected one of cosine, mips, l2"
        ) from exc


def prepare_vectors(vectors: np.ndarray, metric: Metric) -> np.ndarray:
    """Return a float32 copy of ``vectors`` ready for storage under ``metric``.

    Cosine vectors are L2-normalised; zero vectors are left as zeros.
    """
    array = np.array(vectors, dtype=np.float32, copy=True)
    if array.ndim == 1:
        array = array.reshape(1, -1)
    if metric is Metric.COSINE:
        norms = np.linalg.norm(array, axis=1, keepdims=True)
        norms[norms == 0.0] = 1.0
        array /= norms
    return array


def prepare_query(query: np.ndarray, metric: Metric) -> np.ndarray:
    """Return a float64 query vector normalised for ``metric``."""
    q = np.asarray(query, dtype=np.float64).reshape(-1)
    if metric is Metric.COSINE:
        norm = float(np.linalg.norm(q))
        if norm > 0.0:
            q = q / norm
    return q


def distances(matrix: np.ndarray, query: np.ndarray, metric: Metric) -> np.ndarray:
    """Distances between each row of ``matrix`` and ``query`` (float64)."""
    rows = np.asarray(matrix, dtype=np.float64)
    if rows.ndim == 1:
        rows = rows.reshape(1, -1)
    if rows.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    if metric is Metric.COSINE:
        return 1.0 - rows @ q
    if metric is Metric.MIPS:
        return -(rows @ q)
    diff = rows - q
    return np.einsum("ij,ij->i", diff, diff)


def distance_to_score(distance: float, metric: Metric) -> float:
    """Convert a backend distance into a similarity-style score."""
    if metric is Metric.COSINE:
        return 1.0 - distance
    if metric is Metric.MIPS:
        return -distance
    return -float(np.sqrt(max(distance, 0.0)))
