"""Named index lifecycle: build, update, load, search, list and remove.

Bundles are write-once. A build writes a complete staging directory next to
the live one and swaps directories; loaded handles switch to the new bundle
with one reference swap while in-flight queries finish on the old one.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Literal, Union

import numpy as np
from pydantic import BaseModel, Field, ValidationError

from ragindex.app.adapters.diskann import DiskANNBackend
from ragindex.app.adapters.hnsw import HNSWBackend
from ragindex.config import BackendName, MetricName, Settings, get_settings
from ragindex.errors import BuildError, FormatError, IndexNotFoundError
from ragindex.index.bm25 import BM25Index, LazyBM25
from ragindex.index.bundle import BundlePaths, IndexBundle, VectorBackend, load, persist
from ragindex.index.distance import parse_metric
from ragindex.index.metadata import IndexMeta, read_meta
from ragindex.index.passages import MemoryPassages, Passage
from ragindex.index.search import (
    HybridQuery,
    ScoredPassage,
    SearchOptions,
    expand_query,
    lexical_search,
    search_bundle,
)
from ragindex.utils.jsonl import fsync_directory
from ragindex.utils.paths import directory_size, ensure_dir, validate_index_name

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PassageInput:
    """Pre-chunked passage with its externally computed embedding."""

    id: str
    text: str
    embedding: Sequence[float] | np.ndarray
    metadata: dict[str, Any] = field(default_factory=dict)


PassageLike = Union[PassageInput, tuple, Mapping[str, Any]]


def coerce_passage(item: PassageLike) -> PassageInput:
    """Accept ``PassageInput``, ``(id, text, embedding[, metadata])`` or a mapping."""
    if isinstance(item, PassageInput):
        record = item
    elif isinstance(item, tuple):
        if len(item) == 3:
            record = PassageInput(str(item[0]), item[1], item[2])
        elif len(item) == 4:
            record = PassageInput(str(item[0]), item[1], item[2], item[3] or {})
        else:
            raise BuildError(
                "Passage tuples must be (id, text, embedding) or (id, text, embedding, metadata)"
            )
    elif isinstance(item, Mapping):
        embedding = item.get("embedding", item.get("vector"))
        if "id" not in item or "text" not in item or embedding is None:
            raise BuildError(
                "Passage records need 'id', 'text' and 'embedding'",
                details={"keys": sorted(item)},
            )
        record = PassageInput(str(item["id"]), item["text"], embedding, item.get("metadata") or {})
    else:
        raise BuildError(f"Unsupported passage record type: {type(item).__name__}")

    record.id = str(record.id)
    if not record.id or "\n" in record.id or "\r" in record.id:
        raise BuildError(
            "Passage ids must be non-empty single-line strings", details={"id": record.id}
        )
    if not isinstance(record.text, str):
        raise BuildError("Passage text must be a string", details={"id": record.id})
    if not isinstance(record.metadata, Mapping):
        raise BuildError("Passage metadata must be an object", details={"id": record.id})
    return record


class BuildParams(BaseModel):
    """Build-time options; unset values fall back to :class:`Settings`."""

    backend: BackendName | None = Field(None, description="hnsw or diskann")
    metric: MetricName | None = Field(None, description="cosine, mips or l2")
    graph_degree: int | None = Field(None, ge=2, description="HNSW M / DiskANN R")
    complexity: int | None = Field(None, ge=1, description="Construction beam width")
    search_complexity: int | None = Field(None, ge=1, description="Default query beam width")
    page_size: int | None = Field(None, ge=512, description="Disk page size in bytes")
    alpha: float | None = Field(None, ge=1.0, description="DiskANN RobustPrune slack")
    quantize: bool = Field(False, description="Keep uint8 codes for disk traversal")
    rerank_factor: int | None = Field(None, ge=1, description="Quantized re-rank multiplier")
    coarse_fraction: float = Field(0.1, gt=0.0, le=1.0, description="DiskANN coarse pass share")
    reprune_interval: int = Field(1024, ge=1, description="Inserts between re-prune passes")
    embedding_model: str = Field("external", description="Recorded embedding model name")
    embedding_mode: str = Field("external", description="Recorded embedding provider mode")
    embedding_options: dict[str, Any] = Field(default_factory=dict)
    seed: int = Field(42, description="Random seed for level sampling and build order")

    def resolved(self, settings: Settings) -> BuildParams:
        return self.model_copy(
            update={
                "backend": self.backend or settings.default_backend,
                "metric": self.metric or settings.default_metric,
                "graph_degree": self.graph_degree or settings.graph_degree,
                "complexity": self.complexity or settings.build_complexity,
                "search_complexity": self.search_complexity or settings.search_complexity,
                "page_size": self.page_size or settings.disk_page_size,
                "alpha": self.alpha or settings.disk_alpha,
                "rerank_factor": self.rerank_factor or settings.disk_rerank_factor,
            }
        )


class IndexSummary(BaseModel):
    """Listing entry for one named index."""

    name: str
    path: str
    status: Literal["OK", "INCOMPLETE"]
    backend: str | None = None
    metric: str | None = None
    dimensions: int | None = None
    passage_count: int | None = None
    size_bytes: int = 0


class BundleVersion:
    """One published bundle with a reader count.

    A retired version closes its file descriptors once the last reader
    releases it.
    """

    def __init__(self, bundle: IndexBundle, number: int) -> None:
        self.bundle = bundle
        self.number = number
        self._readers = 0
        self._retired = False
        self._closed = False
        self._lock = Lock()

    @property
    def readers(self) -> int:
        with self._lock:
            return self._readers

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def acquire(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Bundle version already closed")
            self._readers += 1

    def release(self) -> None:
        with self._lock:
            self._readers -= 1
            close_now = self._retired and self._readers == 0 and not self._closed
            if close_now:
                self._closed = True
        if close_now:
            self.bundle.close()

    def retire(self) -> None:
        with self._lock:
            self._retired = True
            close_now = self._readers == 0 and not self._closed
            if close_now:
                self._closed = True
        if close_now:
            self.bundle.close()


class IndexHandle:
    """Hot-swappable reference to the current bundle of a named index."""

    def __init__(self, name: str, path: Path, bundle: IndexBundle) -> None:
        self.name = name
        self.path = path
        self._lock = Lock()
        self._version: BundleVersion | None = BundleVersion(bundle, 1)

    @property
    def version(self) -> int:
        with self._lock:
            if self._version is None:
                raise IndexNotFoundError(self.name)
            return self._version.number

    @property
    def meta(self) -> IndexMeta:
        with self.snapshot() as bundle:
            return bundle.meta

    @contextmanager
    def snapshot(self) -> Iterator[IndexBundle]:
        """Pin the current bundle for the duration of one query."""
        with self._lock:
            version = self._version
            if version is None:
                raise IndexNotFoundError(self.name)
            version.acquire()
        try:
            yield version.bundle
        finally:
            version.release()

    def publish(self, bundle: IndexBundle) -> None:
        with self._lock:
            old = self._version
            number = old.number + 1 if old is not None else 1
            self._version = BundleVersion(bundle, number)
        if old is not None:
            old.retire()

    def retire(self) -> None:
        with self._lock:
            old, self._version = self._version, None
        if old is not None:
            old.retire()


class IndexManager:
    """Owns the named indexes below one root directory."""

    def __init__(self, root: Path | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.root = ensure_dir(Path(root) if root is not None else self.settings.get_index_dir())
        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()
        self._handles: dict[str, IndexHandle] = {}

    def index_path(self, name: str) -> Path:
        return self.root / validate_index_name(name)

    def _name_lock(self, name: str) -> Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, Lock())

    # ------------------------------------------------------------------
    # Build / update
    # ------------------------------------------------------------------

    def build(
        self,
        name: str,
        passages: Iterable[PassageLike],
        params: BuildParams | None = None,
    ) -> IndexSummary:
        """Build ``name`` from scratch and publish it, replacing any previous bundle."""
        path = self.index_path(name)
        resolved = (params or BuildParams()).resolved(self.settings)
        records = [coerce_passage(item) for item in passages]
        if not records:
            raise BuildError("Cannot build an index without passages", details={"name": name})
        _reject_duplicates(records)
        vectors = _stack_embeddings(records, None)

        with self._name_lock(name):
            logger.info(
                "Building index %s: %d passages, backend=%s, metric=%s",
                name,
                len(records),
                resolved.backend,
                resolved.metric,
            )
            backend = _create_backend(resolved, vectors.shape[1], self.settings)
            backend.insert_batch(vectors)
            backend.finalize_build()
            bundle = self._assemble(resolved, backend, _to_passages(records))
            return self._publish(name, path, bundle)

    def update(
        self,
        name: str,
        passages: Iterable[PassageLike],
        params: BuildParams | None = None,
    ) -> IndexSummary:
        """Append passages to ``name`` by building a new bundle and swapping it in."""
        path = self.index_path(name)
        records = [coerce_passage(item) for item in passages]
        if not records:
            raise BuildError("No passages to add", details={"name": name})
        _reject_duplicates(records)

        with self._name_lock(name):
            if not path.is_dir():
                raise IndexNotFoundError(name)
            previous = load(path, self.settings)
            try:
                clashes = [r.id for r in records if previous.passages.internal_id(r.id) is not None]
                if clashes:
                    raise BuildError(
                        "Passage ids already exist in the index",
                        details={"name": name, "ids": clashes[:5]},
                    )
                vectors = _stack_embeddings(records, previous.dimension)
                resolved = _params_from_meta(previous.meta, params).resolved(self.settings)
                existing = list(previous.passages)
                backend = self._extend_backend(previous.backend, vectors, resolved)
                if isinstance(backend, HNSWBackend):
                    # The reused graph keeps its construction parameters.
                    resolved = resolved.model_copy(
                        update={"graph_degree": backend.m, "complexity": backend.ef_construction}
                    )
                bundle = self._assemble(resolved, backend, existing + _to_passages(records))
            finally:
                previous.close()
            logger.info("Updating index %s with %d passages", name, len(records))
            return self._publish(name, path, bundle)

    def _extend_backend(
        self, backend: VectorBackend, vectors: np.ndarray, params: BuildParams
    ) -> VectorBackend:
        if isinstance(backend, HNSWBackend):
            # Loaded graphs are private copies, so new nodes go straight in.
            backend.insert_batch(vectors)
            backend.finalize_build()
            return backend
        fresh = _create_backend(params, backend.dimension, self.settings)
        fresh.insert_batch(np.vstack([backend.vectors(), vectors]))
        fresh.finalize_build()
        return fresh

    def _assemble(
        self, params: BuildParams, backend: VectorBackend, passages: list[Passage]
    ) -> IndexBundle:
        ids = [passage.id for passage in passages]
        lexical = BM25Index.build(
            (passage.text for passage in passages),
            k1=self.settings.bm25_k1,
            b=self.settings.bm25_b,
        )
        meta = IndexMeta(
            backend_name=backend.kind,
            embedding_model=params.embedding_model,
            embedding_mode=params.embedding_mode,
            dimensions=backend.dimension,
            passage_count=len(passages),
            backend_kwargs=_backend_kwargs(params, self.settings),
            embedding_options=params.embedding_options,
        )
        return IndexBundle(meta, backend, MemoryPassages(passages), ids, LazyBM25.ready(lexical))

    def _publish(self, name: str, path: Path, bundle: IndexBundle) -> IndexSummary:
        token = uuid.uuid4().hex[:12]
        staging = self.root / f".{name}.staging-{token}"
        retired = self.root / f".{name}.retired-{token}"
        try:
            persist(bundle, staging)
        except (OSError, FormatError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise BuildError(
                f"Failed to write index bundle: {exc}", details={"path": str(staging)}
            ) from exc
        finally:
            bundle.close()

        had_previous = path.exists()
        if had_previous:
            os.rename(path, retired)
        try:
            os.rename(staging, path)
        except OSError:
            if had_previous:
                os.rename(retired, path)
            shutil.rmtree(staging, ignore_errors=True)
            raise
        fsync_directory(self.root)
        if had_previous:
            shutil.rmtree(retired, ignore_errors=True)

        handle = self._handles.get(name)
        if handle is not None:
            handle.publish(load(path, self.settings))
        logger.info("Published index %s at %s", name, path)
        return self._summary(name, path)

    # ------------------------------------------------------------------
    # Load / search
    # ------------------------------------------------------------------

    def load(self, name: str) -> IndexHandle:
        """Open ``name`` read-only; repeated loads share one handle."""
        path = self.index_path(name)
        with self._name_lock(name):
            handle = self._handles.get(name)
            if handle is not None:
                return handle
            if not path.is_dir():
                raise IndexNotFoundError(name, details={"path": str(path)})
            handle = IndexHandle(name, path, load(path, self.settings))
            self._handles[name] = handle
            return handle

    def search(
        self,
        handle: IndexHandle,
        query_vector: Sequence[float] | np.ndarray,
        k: int,
        filter_expr: str | None = None,
        hybrid: HybridQuery | None = None,
        ef: int | None = None,
    ) -> list[ScoredPassage]:
        options = SearchOptions(
            top_k=k,
            ef=ef,
            filter=filter_expr,
            hybrid=hybrid,
            overfetch=self.settings.search_overfetch,
        )
        with handle.snapshot() as bundle:
            return search_bundle(bundle, query_vector, options)

    def lexical_search(
        self,
        handle: IndexHandle,
        text: str,
        k: int,
        filter_expr: str | None = None,
    ) -> list[ScoredPassage]:
        with handle.snapshot() as bundle:
            return lexical_search(bundle, text, k, filter_expr=filter_expr)

    def expand_query(self, handle: IndexHandle, text: str) -> str:
        """Return ``text`` widened with terms from its best lexical matches."""
        with handle.snapshot() as bundle:
            return expand_query(bundle, text)

    # ------------------------------------------------------------------
    # Listing / removal
    # ------------------------------------------------------------------

    def exists(self, name: str) -> bool:
        return self.index_path(name).is_dir()

    def list(self) -> list[IndexSummary]:
        summaries = []
        for entry in sorted(self.root.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            summaries.append(self._summary(entry.name, entry))
        return summaries

    def _summary(self, name: str, path: Path) -> IndexSummary:
        paths = BundlePaths(path)
        size = directory_size(path)
        if paths.missing():
            return IndexSummary(name=name, path=str(path), status="INCOMPLETE", size_bytes=size)
        try:
            meta = read_meta(paths.meta)
        except FormatError as exc:
            logger.warning("Index %s has unreadable metadata: %s", name, exc.message)
            return IndexSummary(name=name, path=str(path), status="INCOMPLETE", size_bytes=size)
        return IndexSummary(
            name=name,
            path=str(path),
            status="OK",
            backend=meta.backend_name,
            metric=meta.distance_metric.value,
            dimensions=meta.dimensions,
            passage_count=meta.passage_count,
            size_bytes=size,
        )

    def remove(self, name: str) -> None:
        """Delete ``name`` from disk and retire any loaded handle."""
        path = self.index_path(name)
        with self._name_lock(name):
            if not path.exists():
                raise IndexNotFoundError(name, details={"path": str(path)})
            handle = self._handles.pop(name, None)
            if handle is not None:
                handle.retire()
            shutil.rmtree(path)
        logger.info("Removed index %s", name)

    def close(self) -> None:
        for name in list(self._handles):
            self._handles.pop(name).retire()


def _reject_duplicates(records: Sequence[PassageInput]) -> None:
    seen: set[str] = set()
    duplicates: list[str] = []
    for record in records:
        if record.id in seen:
            duplicates.append(record.id)
        seen.add(record.id)
    if duplicates:
        raise BuildError("Duplicate passage ids", details={"ids": duplicates[:5]})


def _stack_embeddings(records: Sequence[PassageInput], dimension: int | None) -> np.ndarray:
    rows = []
    for record in records:
        try:
            row = np.asarray(record.embedding, dtype=np.float32).reshape(-1)
        except (TypeError, ValueError) as exc:
            raise BuildError(
                f"Embedding is not numeric: {exc}", details={"id": record.id}
            ) from exc
        if dimension is None:
            dimension = row.shape[0]
        if row.shape[0] != dimension or dimension == 0:
            raise BuildError(
                f"Embedding dimension {row.shape[0]} does not match {dimension}",
                details={"id": record.id, "expected": dimension},
            )
        if not np.all(np.isfinite(row)):
            raise BuildError("Embedding contains NaN or infinite values", details={"id": record.id})
        rows.append(row)
    return np.vstack(rows)


def _to_passages(records: Sequence[PassageInput]) -> list[Passage]:
    return [
        Passage(id=record.id, text=record.text, metadata=dict(record.metadata))
        for record in records
    ]


def _create_backend(params: BuildParams, dimension: int, settings: Settings) -> VectorBackend:
    metric = parse_metric(params.metric or settings.default_metric)
    if params.backend == "diskann":
        return DiskANNBackend(
            dimension,
            metric,
            max_degree=params.graph_degree or settings.graph_degree,
            build_complexity=params.complexity or settings.build_complexity,
            search_complexity=params.search_complexity or settings.search_complexity,
            alpha=params.alpha or settings.disk_alpha,
            page_size=params.page_size or settings.disk_page_size,
            cache_pages=settings.disk_cache_pages,
            coarse_fraction=params.coarse_fraction,
            reprune_interval=params.reprune_interval,
            quantize=params.quantize,
            rerank_factor=params.rerank_factor or settings.disk_rerank_factor,
            seed=params.seed,
        )
    return HNSWBackend(
        dimension,
        metric,
        m=params.graph_degree or settings.graph_degree,
        ef_construction=params.complexity or settings.build_complexity,
        ef_search=params.search_complexity or settings.search_complexity,
        seed=params.seed,
    )


def _backend_kwargs(params: BuildParams, settings: Settings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "distance_metric": params.metric,
        "graph_degree": params.graph_degree,
        "complexity": params.complexity,
        "ef_construction": params.complexity,
        "search_complexity": params.search_complexity,
        "chunk_size": settings.chunk_size,
        "seed": params.seed,
    }
    if params.backend == "diskann":
        kwargs.update(
            {
                "page_size": params.page_size,
                "alpha": params.alpha,
                "quantize": params.quantize,
                "rerank_factor": params.rerank_factor,
                "coarse_fraction": params.coarse_fraction,
                "reprune_interval": params.reprune_interval,
            }
        )
    return kwargs


def _params_from_meta(meta: IndexMeta, override: BuildParams | None) -> BuildParams:
    """Rebuild parameters recorded in ``meta``; explicit overrides win."""
    recorded = meta.backend_kwargs
    values: dict[str, Any] = {
        "backend": meta.backend_name,
        "metric": meta.distance_metric.value,
        "embedding_model": meta.embedding_model,
        "embedding_mode": meta.embedding_mode,
        "embedding_options": dict(meta.embedding_options),
    }
    for key in (
        "graph_degree",
        "complexity",
        "search_complexity",
        "page_size",
        "alpha",
        "quantize",
        "rerank_factor",
        "coarse_fraction",
        "reprune_interval",
        "seed",
    ):
        if recorded.get(key) is not None:
            values[key] = recorded[key]
    if override is not None:
        values.update(override.model_dump(exclude_unset=True, exclude={"backend", "metric"}))
    try:
        return BuildParams.model_validate(values)
    except ValidationError as exc:
        raise BuildError(f"Recorded build parameters are invalid: {exc}") from exc
