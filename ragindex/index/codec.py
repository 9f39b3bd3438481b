"""Binary layout of the ``.index`` artifact header and payload helpers."""

from __future__ import annotations

import struct
from dataclasses import dataclass

import numpy as np

from ragindex.errors import FormatError
from ragindex.index.distance import Metric

INDEX_MAGIC = b"RGIX"
INDEX_FORMAT_VERSION = 1

HEADER = struct.Struct("<4sHIBQB")

BACKEND_CODES = {"hnsw": 0, "diskann": 1}
_BACKEND_NAMES = {code: name for name, code in BACKEND_CODES.items()}

_FAISS_MESSAGE = (
    "Index file was written by FAISS and cannot be read; "
    "rebuild the index with 'ragindex build --force'."
)
_USEARCH_MESSAGE = (
    "Index file is in usearch format and cannot be read; "
    "rebuild the index with 'ragindex build --force'."
)


@dataclass(slots=True, frozen=True)
class IndexHeader:
    """Fixed-size header shared by both backend payloads."""

    dimension: int
    metric: Metric
    count: int
    backend: str
    version: int = INDEX_FORMAT_VERSION

    def pack(self) -> bytes:
        return HEADER.pack(
            INDEX_MAGIC,
            self.version,
            self.dimension,
            self.metric.code,
            self.count,
            BACKEND_CODES[self.backend],
        )


def looks_like_faiss(prefix: bytes) -> bool:
    """Return True when ``prefix`` carries a FAISS index signature."""
    # FAISS fourccs all start with "Ix" (IxHF, IxF2, IxM2, ...); CSR and HNSW
    # mark compact graph files from FAISS-based builds.
    return prefix[:2] == b"Ix" or prefix[:4] in (b"CSR\0", b"HNSW")


def unpack_header(data: bytes | memoryview) -> IndexHeader:
    """Decode and validate the header at the start of ``data``."""
    if len(data) < HEADER.size:
        if looks_like_faiss(bytes(data[:4])):
            raise FormatError(_FAISS_MESSAGE)
        raise FormatError(
            "Index file is too short to hold a header",
            details={"size": len(data)},
        )
    magic, version, dimension, metric_code, count, backend_code = HEADER.unpack_from(data)
    if magic != INDEX_MAGIC:
        if looks_like_faiss(bytes(magic)):
            raise FormatError(_FAISS_MESSAGE, details={"magic": bytes(magic).hex()})
        if bytes(magic) == b"usea":
            raise FormatError(_USEARCH_MESSAGE, details={"magic": bytes(magic).hex()})
        raise FormatError(
            "Index file has an unrecognised magic number; "
            "it may come from another tool or an older release. "
            "Rebuild the index with 'ragindex build --force'.",
            details={"magic": bytes(magic).hex()},
        )
    if version != INDEX_FORMAT_VERSION:
        raise FormatError(
            f"Unsupported index format version {version}",
            details={"expected": INDEX_FORMAT_VERSION},
        )
    try:
        metric = Metric.from_code(metric_code)
    except ValueError as exc:
        raise FormatError(str(exc)) from exc
    backend = _BACKEND_NAMES.get(backend_code)
    if backend is None:
        raise FormatError(f"Unknown backend code {backend_code} in index header")
    return IndexHeader(
        dimension=dimension, metric=metric, count=count, backend=backend, version=version
    )


class PayloadReader:
    """Sequential little-endian reader that raises FormatError on truncation."""

    def __init__(self, payload: bytes | memoryview) -> None:
        self._view = memoryview(payload)
        self._offset = 0

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return len(self._view) - self._offset

    def take(self, size: int) -> memoryview:
        if size < 0 or self._offset + size > len(self._view):
            raise FormatError(
                "Index payload truncated",
                details={"needed": size, "available": self.remaining},
            )
        chunk = self._view[self._offset : self._offset + size]
        self._offset += size
        return chunk

    def unpack(self, layout: struct.Struct) -> tuple:
        return layout.unpack(self.take(layout.size))

    def array(self, dtype: str, length: int) -> np.ndarray:
        item = np.dtype(dtype)
        return np.frombuffer(self.take(item.itemsize * length), dtype=item).copy()
