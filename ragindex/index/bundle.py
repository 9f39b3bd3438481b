"""Index bundle persistence: five artifacts under one directory.

Layout (stem ``documents``)::

    documents.passages.jsonl     one JSON passage per line
    documents.passages.idx.json  passage id -> byte offset
    documents.index              binary header + backend payload
    documents.leann.meta.json    IndexMeta
    documents.ids.txt            external ids in dense-id order
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from ragindex.app.adapters.diskann import DiskANNBackend
from ragindex.app.adapters.hnsw import HNSWBackend
from ragindex.config import Settings, get_settings
from ragindex.errors import FormatError
from ragindex.index.bm25 import LazyBM25
from ragindex.index.codec import HEADER, IndexHeader, unpack_header
from ragindex.index.distance import Metric
from ragindex.index.metadata import IndexMeta, read_meta, write_meta
from ragindex.index.passages import (
    MemoryPassages,
    PassageStore,
    read_ids,
    write_ids,
    write_passages,
)
from ragindex.utils.jsonl import atomic_writer, fsync_directory
from ragindex.utils.paths import ensure_dir

logger = logging.getLogger(__name__)

ARTIFACT_STEM = "documents"

VectorBackend = Union[HNSWBackend, DiskANNBackend]
PassageSource = Union[PassageStore, MemoryPassages]


@dataclass(slots=True, frozen=True)
class BundlePaths:
    """Artifact locations for one index directory."""

    directory: Path

    @property
    def passages(self) -> Path:
        return self.directory / f"{ARTIFACT_STEM}.passages.jsonl"

    @property
    def offsets(self) -> Path:
        return self.directory / f"{ARTIFACT_STEM}.passages.idx.json"

    @property
    def index(self) -> Path:
        return self.directory / f"{ARTIFACT_STEM}.index"

    @property
    def meta(self) -> Path:
        return self.directory / f"{ARTIFACT_STEM}.leann.meta.json"

    @property
    def ids(self) -> Path:
        return self.directory / f"{ARTIFACT_STEM}.ids.txt"

    def artifacts(self) -> list[Path]:
        return [self.passages, self.offsets, self.index, self.meta, self.ids]

    def missing(self) -> list[Path]:
        return [path for path in self.artifacts() if not path.is_file()]


class IndexBundle:
    """Metadata, vector backend, passages, id mapping and lexical state of one index."""

    def __init__(
        self,
        meta: IndexMeta,
        backend: VectorBackend,
        passages: PassageSource,
        ids: list[str],
        lexical: LazyBM25,
        *,
        directory: Path | None = None,
    ) -> None:
        self.meta = meta
        self.backend = backend
        self.passages = passages
        self.ids = ids
        self.lexical = lexical
        self.directory = directory

    @property
    def dimension(self) -> int:
        return self.meta.dimensions

    @property
    def metric(self) -> Metric:
        return self.backend.metric

    @property
    def passage_count(self) -> int:
        return len(self.ids)

    def close(self) -> None:
        self.backend.close()
        self.passages.close()


def _write_index(path: Path, bundle: IndexBundle) -> None:
    backend = bundle.backend
    header = IndexHeader(
        dimension=backend.dimension,
        metric=backend.metric,
        count=len(backend),
        backend=backend.kind,
    )
    with atomic_writer(path, binary=True) as handle:
        handle.write(header.pack())
        if isinstance(backend, DiskANNBackend):
            backend.serialize(handle, payload_offset=HEADER.size)
        else:
            backend.serialize(handle)


def persist(bundle: IndexBundle, directory: Path) -> BundlePaths:
    """Write all five artifacts of ``bundle`` into ``directory``.

    Each artifact is replaced atomically; metadata goes last so a directory
    with valid metadata always holds a complete bundle.
    """
    paths = BundlePaths(ensure_dir(Path(directory)))
    passages = list(bundle.passages)
    if [passage.id for passage in passages] != bundle.ids:
        raise FormatError("Passage order does not match the id mapping")

    _write_index(paths.index, bundle)
    write_passages(paths.passages, paths.offsets, passages)
    write_ids(paths.ids, bundle.ids)
    write_meta(paths.meta, bundle.meta)
    fsync_directory(paths.directory)
    logger.info(
        "Persisted %s bundle with %d passages to %s",
        bundle.meta.backend_name,
        bundle.passage_count,
        paths.directory,
    )
    return paths


def read_index_header(path: Path) -> IndexHeader:
    try:
        with path.open("rb") as handle:
            prefix = handle.read(HEADER.size)
    except FileNotFoundError as exc:
        raise FormatError("Vector index missing", details={"path": str(path)}) from exc
    except OSError as exc:
        raise FormatError(f"Vector index unreadable: {exc}", details={"path": str(path)}) from exc
    try:
        return unpack_header(prefix)
    except FormatError as exc:
        exc.details.setdefault("path", str(path))
        raise


def _check_consistency(
    paths: BundlePaths, meta: IndexMeta, header: IndexHeader, ids: list[str]
) -> None:
    details = {"path": str(paths.directory)}
    if header.dimension != meta.dimensions:
        raise FormatError(
            "Metadata dimension does not match the vector index",
            details={**details, "meta": meta.dimensions, "index": header.dimension},
        )
    if header.backend != meta.backend_name:
        raise FormatError(
            "Metadata backend does not match the vector index",
            details={**details, "meta": meta.backend_name, "index": header.backend},
        )
    if "distance_metric" in meta.backend_kwargs and header.metric is not meta.distance_metric:
        raise FormatError(
            "Metadata metric does not match the vector index",
            details={**details, "meta": meta.distance_metric.value, "index": header.metric.value},
        )
    counts = {"meta": meta.passage_count, "ids": len(ids), "index": header.count}
    if len(set(counts.values())) != 1:
        raise FormatError(
            "Passage counts disagree across artifacts", details={**details, **counts}
        )
    if len(set(ids)) != len(ids):
        raise FormatError("Id mapping contains duplicate ids", details=details)


def _open_backend(
    paths: BundlePaths, meta: IndexMeta, header: IndexHeader, settings: Settings
) -> VectorBackend:
    search_complexity = int(
        meta.backend_kwargs.get("search_complexity") or settings.search_complexity
    )
    if header.backend == "diskann":
        return DiskANNBackend.open(
            paths.index,
            payload_offset=HEADER.size,
            dimension=header.dimension,
            metric=header.metric,
            count=header.count,
            cache_pages=settings.disk_cache_pages,
            search_complexity=search_complexity,
            rerank_factor=int(
                meta.backend_kwargs.get("rerank_factor", settings.disk_rerank_factor)
            ),
        )
    try:
        data = paths.index.read_bytes()
    except OSError as exc:
        raise FormatError(
            f"Vector index unreadable: {exc}", details={"path": str(paths.index)}
        ) from exc
    return HNSWBackend.deserialize(
        memoryview(data)[HEADER.size :],
        dimension=header.dimension,
        metric=header.metric,
        count=header.count,
        ef_search=search_complexity,
    )


def load(directory: Path, settings: Settings | None = None) -> IndexBundle:
    """Open a persisted bundle read-only.

    Raises :class:`FormatError` when an artifact is missing, corrupt or
    inconsistent with the others.
    """
    settings = settings or get_settings()
    paths = BundlePaths(Path(directory))
    missing = paths.missing()
    if missing:
        raise FormatError(
            "Index bundle is incomplete",
            details={"path": str(paths.directory), "missing": [path.name for path in missing]},
        )

    meta = read_meta(paths.meta)
    ids = read_ids(paths.ids)
    header = read_index_header(paths.index)
    _check_consistency(paths, meta, header, ids)

    backend = _open_backend(paths, meta, header, settings)
    try:
        passages = PassageStore.open(paths.passages, paths.offsets, ids)
    except Exception:
        backend.close()
        raise

    lexical = LazyBM25(passages.texts, k1=settings.bm25_k1, b=settings.bm25_b)
    logger.info(
        "Loaded %s bundle from %s (%d passages, dim=%d, metric=%s)",
        meta.backend_name,
        paths.directory,
        len(ids),
        meta.dimensions,
        header.metric.value,
    )
    return IndexBundle(meta, backend, passages, ids, lexical, directory=paths.directory)
