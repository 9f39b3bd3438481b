"""Concrete vector backends implementing :class:`VectorBackendPort`."""

from __future__ import annotations

from .diskann import DiskANNBackend, PageReader, SearchStats
from .hnsw import HNSWBackend

__all__ = [
    "DiskANNBackend",
    "HNSWBackend",
    "PageReader",
    "SearchStats",
]
