"""Disk-resident Vamana graph (DiskANN style) implementing VectorBackendPort.

Each node is stored as a fixed-size record ``[float32 vector | uint32 degree |
int32 neighbours x R]``; records are packed into fixed-size pages so node ``i``
lives on page ``i // nodes_per_page``. Search touches only the pages of the
nodes it expands, going through a shared LRU :class:`PageCache`.
"""

from __future__ import annotations

import heapq
import logging
import math
import os
import struct
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import numpy as np

from ragindex.app.ports.vector_store import VectorHit
from ragindex.errors import BackendError, BuildError, FormatError, QueryError
from ragindex.index.codec import PayloadReader
from ragindex.index.distance import (
    Metric,
    distance_to_score,
    distances,
    prepare_query,
    prepare_vectors,
)
from ragindex.index.page_cache import PageCache
from ragindex.index.quantization import ScalarQuantizer

logger = logging.getLogger(__name__)

_PAYLOAD_HEADER = struct.Struct("<IIfIIIB")
_DEGREE = struct.Struct("<I")


@dataclass(slots=True)
class SearchStats:
    """Per-query I/O counters (optional out-parameter of ``search``)."""

    page_reads: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    nodes_expanded: int = 0


@dataclass(slots=True, frozen=True)
class _Record:
    vector: np.ndarray
    neighbors: list[int]


def record_size(dimension: int, max_degree: int) -> int:
    return 4 * dimension + 4 + 4 * max_degree


def page_layout(dimension: int, max_degree: int, page_size: int) -> tuple[int, int]:
    """Return ``(effective_page_size, nodes_per_page)``.

    Records larger than one page span a whole multiple of ``page_size``.
    """
    size = record_size(dimension, max_degree)
    if size <= page_size:
        return page_size, page_size // size
    return math.ceil(size / page_size) * page_size, 1


class _MemoryPages:
    """Pages of a freshly built graph, held as immutable bytes."""

    def __init__(self, pages: list[bytes]) -> None:
        self._pages = pages

    def __len__(self) -> int:
        return len(self._pages)

    def page(self, page_no: int, stats: SearchStats | None) -> bytes:
        if stats is not None:
            stats.page_reads += 1
        return self._pages[page_no]

    def raw(self, page_no: int) -> bytes:
        return self._pages[page_no]

    def close(self) -> None:
        self._pages = []


class PageReader:
    """Positional reads of fixed-size pages from an open index file.

    ``os.pread`` keeps readers free of shared seek state, so one descriptor
    serves every search thread.
    """

    def __init__(
        self,
        path: Path,
        *,
        data_offset: int,
        page_size: int,
        page_count: int,
        cache: PageCache,
    ) -> None:
        self.path = Path(path)
        self._data_offset = data_offset
        self._page_size = page_size
        self._page_count = page_count
        self.cache = cache
        self._fd: int | None = os.open(self.path, os.O_RDONLY)

    def __len__(self) -> int:
        return self._page_count

    def read_page(self, page_no: int) -> bytes:
        fd = self._fd
        if fd is None:
            raise BackendError("Index file is closed", details={"path": str(self.path)})
        offset = self._data_offset + page_no * self._page_size
        try:
            data = os.pread(fd, self._page_size, offset)
        except OSError as exc:
            raise BackendError(
                f"Failed to read page {page_no}: {exc}",
                details={"path": str(self.path), "page": page_no},
            ) from exc
        if len(data) != self._page_size:
            raise BackendError(
                f"Short read on page {page_no}: got {len(data)} of {self._page_size} bytes",
                details={"path": str(self.path), "page": page_no},
            )
        return data

    def page(self, page_no: int, stats: SearchStats | None) -> bytes:
        data, hit = self.cache.get_or_load(page_no, self.read_page)
        if stats is not None:
            stats.page_reads += 1
            if hit:
                stats.cache_hits += 1
            else:
                stats.cache_misses += 1
        return data

    def raw(self, page_no: int) -> bytes:
        return self.read_page(page_no)

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        self.cache.clear()


class DiskANNBackend:
    """Vamana graph built in memory and searched page by page."""

    kind = "diskann"

    def __init__(
        self,
        dimension: int,
        metric: Metric = Metric.MIPS,
        *,
        max_degree: int = 32,
        build_complexity: int = 64,
        search_complexity: int = 64,
        alpha: float = 1.2,
        page_size: int = 4096,
        cache_pages: int = 1024,
        coarse_fraction: float = 0.1,
        reprune_interval: int = 1024,
        quantize: bool = False,
        rerank_factor: int = 4,
        seed: int = 42,
    ) -> None:
        if dimension <= 0:
            raise BuildError(f"Vector dimension must be positive; got {dimension}")
        if max_degree < 1:
            raise BuildError(f"Max degree must be positive; got {max_degree}")
        if build_complexity < 1 or search_complexity < 1:
            raise BuildError("Beam widths must be positive")
        if alpha < 1.0:
            raise BuildError(f"Prune alpha must be >= 1.0; got {alpha}")
        if page_size < 512:
            raise BuildError(f"Page size must be at least 512 bytes; got {page_size}")
        if not 0.0 < coarse_fraction <= 1.0:
            raise BuildError(f"Coarse fraction must be in (0, 1]; got {coarse_fraction}")

        self.dimension = int(dimension)
        self.metric = metric
        self.max_degree = int(max_degree)
        self.build_complexity = int(build_complexity)
        self.search_complexity = int(search_complexity)
        self.alpha = float(alpha)
        self.page_size, self.nodes_per_page = page_layout(
            self.dimension, self.max_degree, int(page_size)
        )
        self.cache_pages = int(cache_pages)
        self.coarse_fraction = float(coarse_fraction)
        self.reprune_interval = max(int(reprune_interval), 1)
        self.quantize = bool(quantize)
        self.rerank_factor = max(int(rerank_factor), 1)
        self.seed = seed

        self._pending: list[np.ndarray] = []
        self._count = 0
        self._built = False
        self._start_points: list[int] = []
        self._quantizer: ScalarQuantizer | None = None
        self._pages: _MemoryPages | PageReader = _MemoryPages([])
        self._record_size = record_size(self.dimension, self.max_degree)

    def __len__(self) -> int:
        return self._count

    @property
    def start_points(self) -> list[int]:
        return list(self._start_points)

    @property
    def quantizer(self) -> ScalarQuantizer | None:
        return self._quantizer

    @property
    def page_cache(self) -> PageCache | None:
        if isinstance(self._pages, PageReader):
            return self._pages.cache
        return None

    @property
    def page_count(self) -> int:
        return len(self._pages)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def insert(self, vector: np.ndarray) -> int:
        prepared = prepare_vectors(vector, self.metric)
        if prepared.shape != (1, self.dimension):
            raise BuildError(
                f"Vector must have dimension {self.dimension}; got shape {np.shape(vector)}",
                details={"expected": self.dimension},
            )
        return self._append(prepared)[0]

    def insert_batch(self, vectors: np.ndarray) -> list[int]:
        array = np.asarray(vectors, dtype=np.float32)
        if array.size == 0:
            return []
        if array.ndim != 2 or array.shape[1] != self.dimension:
            raise BuildError(
                f"Vectors must have shape (n, {self.dimension}); got {array.shape}",
                details={"expected": self.dimension},
            )
        return self._append(prepare_vectors(array, self.metric))

    def _append(self, prepared: np.ndarray) -> list[int]:
        if self._built:
            raise BuildError("Disk graph is finalized; rebuild it to add vectors")
        first = self._count
        self._pending.extend(prepared)
        self._count += prepared.shape[0]
        return list(range(first, self._count))

    def finalize_build(self) -> None:
        """Build the Vamana graph over every inserted vector and pack its pages."""
        if self._built:
            return
        data = (
            np.vstack(self._pending).astype(np.float32)
            if self._pending
            else np.zeros((0, self.dimension), dtype=np.float32)
        )
        self._pending = []
        builder = _VamanaBuilder(
            data,
            self.metric,
            max_degree=self.max_degree,
            complexity=self.build_complexity,
            alpha=self.alpha,
            coarse_fraction=self.coarse_fraction,
            reprune_interval=self.reprune_interval,
            seed=self.seed,
        )
        graph, start_points = builder.build()
        self._start_points = start_points
        self._quantizer = ScalarQuantizer.fit(data) if self.quantize and len(data) else None
        self._pages = _MemoryPages(self._pack_pages(data, graph))
        self._built = True
        logger.info(
            "Disk graph built: %d nodes, %d pages, %d start point(s), quantized=%s",
            self._count,
            len(self._pages),
            len(self._start_points),
            self._quantizer is not None,
        )

    def _pack_pages(self, data: np.ndarray, graph: list[list[int]]) -> list[bytes]:
        pages: list[bytes] = []
        count = data.shape[0]
        vector_bytes = 4 * self.dimension
        for first in range(0, count, self.nodes_per_page):
            page = bytearray(self.page_size)
            for node in range(first, min(first + self.nodes_per_page, count)):
                offset = (node - first) * self._record_size
                links = graph[node]
                page[offset : offset + vector_bytes] = data[node].astype("<f4").tobytes()
                _DEGREE.pack_into(page, offset + vector_bytes, len(links))
                start = offset + vector_bytes + 4
                page[start : start + 4 * len(links)] = np.asarray(links, dtype="<i4").tobytes()
            pages.append(bytes(page))
        return pages

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def _decode(self, page: bytes, node: int) -> _Record:
        offset = (node % self.nodes_per_page) * self._record_size
        vector = np.frombuffer(page, dtype="<f4", count=self.dimension, offset=offset)
        degree = _DEGREE.unpack_from(page, offset + 4 * self.dimension)[0]
        if degree > self.max_degree:
            raise BackendError(
                f"Node {node} has degree {degree} above bound {self.max_degree}",
                details={"node": node},
            )
        links = np.frombuffer(
            page, dtype="<i4", count=degree, offset=offset + 4 * self.dimension + 4
        )
        return _Record(vector=vector.astype(np.float64), neighbors=links.tolist())

    def _record(
        self,
        node: int,
        stats: SearchStats | None,
        records: dict[int, _Record],
        pages: dict[int, bytes],
    ) -> _Record:
        record = records.get(node)
        if record is not None:
            return record
        page_no = node // self.nodes_per_page
        page = pages.get(page_no)
        if page is None:
            page = self._pages.page(page_no, stats)
            pages[page_no] = page
        record = self._decode(page, node)
        records[node] = record
        return record

    def _exact(
        self,
        query: np.ndarray,
        ids: Sequence[int],
        stats: SearchStats | None,
        records: dict[int, _Record],
        pages: dict[int, bytes],
    ) -> np.ndarray:
        if not len(ids):
            return np.zeros(0, dtype=np.float64)
        matrix = np.vstack([self._record(node, stats, records, pages).vector for node in ids])
        return distances(matrix, query, self.metric)

    def vectors(self) -> np.ndarray:
        if not self._built:
            if not self._pending:
                return np.zeros((0, self.dimension), dtype=np.float32)
            return np.vstack(self._pending).astype(np.float32)
        rows = np.zeros((self._count, self.dimension), dtype=np.float32)
        for page_no in range(len(self._pages)):
            page = self._pages.raw(page_no)
            first = page_no * self.nodes_per_page
            for node in range(first, min(first + self.nodes_per_page, self._count)):
                offset = (node - first) * self._record_size
                rows[node] = np.frombuffer(page, dtype="<f4", count=self.dimension, offset=offset)
        return rows

    def neighbors(self, node: int) -> list[int]:
        return list(self._record(node, None, {}, {}).neighbors)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query: np.ndarray,
        k: int,
        *,
        ef: int | None = None,
        stats: SearchStats | None = None,
    ) -> list[VectorHit]:
        q = prepare_query(query, self.metric)
        if q.shape[0] != self.dimension:
            raise QueryError(
                f"Query vector must have dimension {self.dimension}; got {q.shape[0]}"
            )
        if not self._built:
            raise BackendError("Disk graph has not been finalized")
        if k <= 0 or self._count == 0:
            return []

        beam = max(ef or self.search_complexity, k)
        if k >= self._count:
            beam = self._count
        records: dict[int, _Record] = {}
        pages: dict[int, bytes] = {}

        quantizer = self._quantizer

        def scorer(ids: Sequence[int]) -> np.ndarray:
            # Quantized traversal ranks neighbours from in-memory codes, without page reads.
            if quantizer is not None:
                return quantizer.approximate_distances(q, ids, self.metric)
            return self._exact(q, ids, stats, records, pages)

        ranked = self._beam_search(beam, scorer, stats, records, pages)

        if self._quantizer is not None:
            shortlist = [node for _, node in ranked[: k * self.rerank_factor]]
            exact = self._exact(q, shortlist, stats, records, pages)
            ranked = sorted(zip(exact.tolist(), shortlist))

        return [
            VectorHit(internal_id=node, distance=dist, score=distance_to_score(dist, self.metric))
            for dist, node in ranked[:k]
        ]

    def _beam_search(
        self,
        beam: int,
        scorer: Callable[[Sequence[int]], np.ndarray],
        stats: SearchStats | None,
        records: dict[int, _Record],
        pages: dict[int, bytes],
    ) -> list[tuple[float, int]]:
        starts = self._start_points
        visited = set(starts)
        start_dists = scorer(starts)
        frontier = sorted(zip(start_dists.tolist(), starts))
        results = [(-dist, -node) for dist, node in frontier]
        heapq.heapify(results)
        while len(results) > beam:
            heapq.heappop(results)

        while frontier:
            dist, node = heapq.heappop(frontier)
            if len(results) >= beam and (dist, node) > (-results[0][0], -results[0][1]):
                break
            record = self._record(node, stats, records, pages)
            if stats is not None:
                stats.nodes_expanded += 1
            fresh = [n for n in record.neighbors if n not in visited]
            if not fresh:
                continue
            visited.update(fresh)
            for n_dist, neighbor in zip(scorer(fresh).tolist(), fresh):
                if len(results) < beam or (n_dist, neighbor) < (-results[0][0], -results[0][1]):
                    heapq.heappush(frontier, (n_dist, neighbor))
                    heapq.heappush(results, (-n_dist, -neighbor))
                    if len(results) > beam:
                        heapq.heappop(results)

        return sorted((-dist, -node) for dist, node in results)

    def distances(self, query: np.ndarray, ids: Sequence[int]) -> np.ndarray:
        q = prepare_query(query, self.metric)
        return self._exact(q, list(ids), None, {}, {})

    def close(self) -> None:
        self._pages.close()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self, handle: BinaryIO, *, payload_offset: int) -> None:
        """Write the payload; ``payload_offset`` is its absolute position in the file."""
        if not self._built:
            raise BuildError("Disk graph must be finalized before it is persisted")
        written = 0

        def emit(chunk: bytes) -> None:
            nonlocal written
            handle.write(chunk)
            written += len(chunk)

        emit(
            _PAYLOAD_HEADER.pack(
                self.max_degree,
                self.build_complexity,
                self.alpha,
                self.page_size,
                self.nodes_per_page,
                len(self._start_points),
                1 if self._quantizer is not None else 0,
            )
        )
        emit(np.asarray(self._start_points, dtype="<i8").tobytes())
        if self._quantizer is not None:
            before = handle.tell()
            self._quantizer.serialize(handle)
            written += handle.tell() - before
        emit(b"\0" * _padding(payload_offset + written, self.page_size))
        for page_no in range(len(self._pages)):
            emit(self._pages.raw(page_no))

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        payload_offset: int,
        dimension: int,
        metric: Metric,
        count: int,
        cache_pages: int = 1024,
        search_complexity: int = 64,
        rerank_factor: int = 4,
    ) -> DiskANNBackend:
        """Open a persisted disk graph; pages are read lazily through the cache."""
        path = Path(path)
        try:
            file_size = path.stat().st_size
            with path.open("rb") as handle:
                handle.seek(payload_offset)
                fixed = handle.read(_PAYLOAD_HEADER.size)
                reader = PayloadReader(fixed)
                (
                    max_degree,
                    build_complexity,
                    alpha,
                    page_size,
                    nodes_per_page,
                    start_count,
                    quantized,
                ) = reader.unpack(_PAYLOAD_HEADER)
                variable = start_count * 8
                if quantized:
                    variable += ScalarQuantizer.payload_size(dimension, count)
                if variable > file_size:
                    raise FormatError(
                        "Disk graph payload truncated", details={"path": str(path)}
                    )
                reader = PayloadReader(handle.read(variable))
        except OSError as exc:
            raise FormatError(
                f"Cannot read disk graph: {exc}", details={"path": str(path)}
            ) from exc

        if max_degree < 1 or page_size < 512 or nodes_per_page < 1:
            raise FormatError("Disk graph header holds invalid layout values")
        if nodes_per_page * record_size(dimension, max_degree) > page_size:
            raise FormatError("Disk graph records do not fit the declared page size")

        start_points = reader.array("<i8", start_count).astype(np.int64)
        if count and (start_count == 0 or start_points.min() < 0 or start_points.max() >= count):
            raise FormatError("Disk graph start points are missing or out of range")
        quantizer = (
            ScalarQuantizer.deserialize(reader, dimension=dimension, count=count)
            if quantized
            else None
        )

        header_end = payload_offset + _PAYLOAD_HEADER.size + variable
        data_offset = header_end + _padding(header_end, page_size)
        page_count = math.ceil(count / nodes_per_page)
        expected = data_offset + page_count * page_size
        if file_size != expected:
            raise FormatError(
                "Disk graph size does not match its header",
                details={"path": str(path), "expected": expected, "actual": file_size},
            )

        backend = cls(
            dimension,
            metric,
            max_degree=max_degree,
            build_complexity=max(build_complexity, 1),
            search_complexity=search_complexity,
            alpha=max(float(alpha), 1.0),
            page_size=page_size,
            cache_pages=cache_pages,
            quantize=quantizer is not None,
            rerank_factor=rerank_factor,
        )
        backend.page_size = page_size
        backend.nodes_per_page = nodes_per_page
        backend._count = count
        backend._built = True
        backend._start_points = start_points.tolist()
        backend._quantizer = quantizer
        backend._pages = PageReader(
            path,
            data_offset=data_offset,
            page_size=page_size,
            page_count=page_count,
            cache=PageCache(cache_pages),
        )
        return backend


def _padding(position: int, page_size: int) -> int:
    return (-position) % page_size


class _VamanaBuilder:
    """In-memory Vamana construction: coarse pass, full pass, final prune."""

    def __init__(
        self,
        data: np.ndarray,
        metric: Metric,
        *,
        max_degree: int,
        complexity: int,
        alpha: float,
        coarse_fraction: float,
        reprune_interval: int,
        seed: int,
    ) -> None:
        self.data = data
        self.metric = metric
        # Alpha pruning needs a non-negative dissimilarity; inner product is pruned geometrically.
        self.prune_metric = Metric.L2 if metric is Metric.MIPS else metric
        self.max_degree = max_degree
        self.overflow = max_degree + max_degree // 4
        self.complexity = complexity
        self.alpha = alpha
        self.coarse_fraction = coarse_fraction
        self.reprune_interval = reprune_interval
        self.rng = np.random.default_rng(seed)
        self.count = data.shape[0]
        self.graph: list[list[int]] = [[] for _ in range(self.count)]
        self.start_points: list[int] = []

    def build(self) -> tuple[list[list[int]], list[int]]:
        if self.count == 0:
            return [], []
        medoid = self._medoid()
        self.start_points = [medoid]
        if self.count == 1:
            return self.graph, self.start_points

        rest = [int(n) for n in self.rng.permutation(self.count) if n != medoid]
        coarse_size = min(
            len(rest), max(self.max_degree + 1, math.ceil(self.coarse_fraction * self.count))
        )
        for node in rest[:coarse_size]:
            self._insert(node)
        logger.debug("Coarse graph ready with %d nodes", coarse_size + 1)

        for position, node in enumerate(rest[coarse_size:], start=1):
            self._insert(node)
            if position % self.reprune_interval == 0:
                self._reprune()

        self._reprune()
        repaired = self._connect()
        if repaired:
            logger.info("Connected %d unreachable node(s) in the disk graph", repaired)
        return self.graph, self.start_points

    def _medoid(self) -> int:
        centroid = self.data.mean(axis=0, dtype=np.float64)
        dists = distances(self.data, centroid, Metric.L2)
        return int(np.argmin(dists))

    def _insert(self, node: int) -> None:
        visited = self._greedy_search(node)
        candidates = visited | set(self.graph[node])
        self.graph[node] = self._robust_prune(node, candidates)
        for neighbor in self.graph[node]:
            links = self.graph[neighbor]
            if node in links:
                continue
            links.append(node)
            if len(links) > self.overflow:
                self.graph[neighbor] = self._robust_prune(neighbor, set(links))

    def _greedy_search(self, node: int) -> set[int]:
        """Beam search toward ``node``; returns every expanded node."""
        query = self.data[node].astype(np.float64)
        starts = self.start_points
        start_dists = distances(self.data[starts], query, self.metric)
        frontier = sorted(zip(start_dists.tolist(), starts))
        results = [(-dist, -n) for dist, n in frontier]
        heapq.heapify(results)
        seen = set(starts)
        expanded: set[int] = set()
        while frontier:
            dist, current = heapq.heappop(frontier)
            worst = (-results[0][0], -results[0][1])
            if len(results) >= self.complexity and (dist, current) > worst:
                break
            expanded.add(current)
            fresh = [n for n in self.graph[current] if n not in seen and n != node]
            if not fresh:
                continue
            seen.update(fresh)
            fresh_dists = distances(self.data[fresh], query, self.metric)
            for n_dist, neighbor in zip(fresh_dists.tolist(), fresh):
                if len(results) < self.complexity or (n_dist, neighbor) < (
                    -results[0][0],
                    -results[0][1],
                ):
                    heapq.heappush(frontier, (n_dist, neighbor))
                    heapq.heappush(results, (-n_dist, -neighbor))
                    if len(results) > self.complexity:
                        heapq.heappop(results)
        expanded.discard(node)
        return expanded

    def _robust_prune(self, node: int, candidates: set[int]) -> list[int]:
        candidates.discard(node)
        if not candidates:
            return []
        ids = np.fromiter(sorted(candidates), dtype=np.int64)
        base = self.data[node].astype(np.float64)
        to_base = distances(self.data[ids], base, self.prune_metric)
        order = np.lexsort((ids, to_base))
        ids = ids[order]
        to_base = to_base[order]
        alive = np.ones(ids.size, dtype=bool)
        selected: list[int] = []
        while len(selected) < self.max_degree:
            remaining = np.flatnonzero(alive)
            if remaining.size == 0:
                break
            pick = int(remaining[0])
            chosen = int(ids[pick])
            selected.append(chosen)
            alive[pick] = False
            rest = np.flatnonzero(alive)
            if rest.size == 0:
                break
            to_chosen = distances(
                self.data[ids[rest]], self.data[chosen].astype(np.float64), self.prune_metric
            )
            alive[rest[self.alpha * to_chosen <= to_base[rest]]] = False
        return selected

    def _reprune(self) -> None:
        for node in range(self.count):
            if len(self.graph[node]) > self.max_degree:
                self.graph[node] = self._robust_prune(node, set(self.graph[node]))

    def _connect(self) -> int:
        reachable = np.zeros(self.count, dtype=bool)
        for start in self.start_points:
            self._mark(start, reachable)
        repaired = 0
        for node in range(self.count):
            if reachable[node]:
                continue
            sources = np.flatnonzero(reachable)
            dists = distances(self.data[sources], self.data[node].astype(np.float64), self.metric)
            order = np.lexsort((sources, dists))
            for position in order.tolist():
                source = int(sources[position])
                if len(self.graph[source]) < self.max_degree:
                    self.graph[source].append(node)
                    break
            else:
                self.start_points.append(node)
            repaired += 1
            self._mark(node, reachable)
        return repaired

    def _mark(self, start: int, reachable: np.ndarray) -> None:
        if reachable[start]:
            return
        reachable[start] = True
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for neighbor in self.graph[current]:
                if not reachable[neighbor]:
                    reachable[neighbor] = True
                    queue.append(neighbor)
