"""Per-dimension scalar quantization used by the disk backend."""

from __future__ import annotations

from collections.abc import Sequence
from typing import BinaryIO

import numpy as np

from ragindex.index.codec import PayloadReader
from ragindex.index.distance import Metric, distances

_LEVELS = 255.0


class ScalarQuantizer:
    """Map each float32 component onto ``uint8`` using a fixed per-dimension range.

    Codes stay in memory so graph traversal can rank neighbours without
    touching their pages; final candidates are re-ranked with exact vectors.
    """

    def __init__(self, mins: np.ndarray, scales: np.ndarray, codes: np.ndarray) -> None:
        self.mins = np.asarray(mins, dtype=np.float32)
        self.scales = np.asarray(scales, dtype=np.float32)
        self.codes = np.asarray(codes, dtype=np.uint8)

    @classmethod
    def fit(cls, vectors: np.ndarray) -> ScalarQuantizer:
        data = np.asarray(vectors, dtype=np.float32)
        if data.ndim != 2 or data.shape[0] == 0:
            raise ValueError("Quantizer needs a non-empty 2D array")
        mins = data.min(axis=0)
        spans = data.max(axis=0) - mins
        scales = np.where(spans > 0.0, spans / _LEVELS, 1.0).astype(np.float32)
        quantizer = cls(mins, scales, np.zeros((0, data.shape[1]), dtype=np.uint8))
        quantizer.codes = quantizer.encode(data)
        return quantizer

    @property
    def dimension(self) -> int:
        return int(self.mins.shape[0])

    def __len__(self) -> int:
        return int(self.codes.shape[0])

    def encode(self, vectors: np.ndarray) -> np.ndarray:
        data = np.asarray(vectors, dtype=np.float32)
        scaled = np.rint((data - self.mins) / self.scales)
        return np.clip(scaled, 0.0, _LEVELS).astype(np.uint8)

    def decode(self, ids: Sequence[int]) -> np.ndarray:
        return self.mins + self.codes[list(ids)].astype(np.float32) * self.scales

    def approximate_distances(
        self, query: np.ndarray, ids: Sequence[int], metric: Metric
    ) -> np.ndarray:
        if not len(ids):
            return np.zeros(0, dtype=np.float64)
        return distances(self.decode(ids), query, metric)

    def serialize(self, handle: BinaryIO) -> None:
        handle.write(self.mins.astype("<f4").tobytes())
        handle.write(self.scales.astype("<f4").tobytes())
        handle.write(np.ascontiguousarray(self.codes, dtype=np.uint8).tobytes())

    @classmethod
    def deserialize(cls, reader: PayloadReader, *, dimension: int, count: int) -> ScalarQuantizer:
        mins = reader.array("<f4", dimension)
        scales = reader.array("<f4", dimension)
        codes = reader.array("u1", count * dimension).reshape(count, dimension)
        return cls(mins, scales, codes)

    @staticmethod
    def payload_size(dimension: int, count: int) -> int:
        return 8 * dimension + count * dimension
