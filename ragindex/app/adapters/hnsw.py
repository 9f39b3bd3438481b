"""In-memory layered proximity graph (HNSW) implementing VectorBackendPort."""

from __future__ import annotations

import heapq
import logging
import math
import struct
from collections import deque
from collections.abc import Sequence
from typing import BinaryIO

import numpy as np

from ragindex.app.ports.vector_store import VectorHit
from ragindex.errors import BuildError, FormatError, QueryError
from ragindex.index.codec import PayloadReader
from ragindex.index.distance import (
    Metric,
    distance_to_score,
    distances,
    prepare_query,
    prepare_vectors,
)

logger = logging.getLogger(__name__)

_PAYLOAD_HEADER = struct.Struct("<IIIqi")


class HNSWBackend:
    """Hierarchical navigable small-world graph over a contiguous float32 arena.

    Nodes are dense integer ids assigned in insertion order. Every node keeps
    one neighbour list per layer it belongs to; upper layers hold at most
    ``m`` neighbours and layer 0 at most ``2 * m``.
    """

    kind = "hnsw"

    def __init__(
        self,
        dimension: int,
        metric: Metric = Metric.MIPS,
        *,
        m: int = 32,
        ef_construction: int = 64,
        ef_search: int = 64,
        seed: int = 42,
    ) -> None:
        if dimension <= 0:
            raise BuildError(f"Vector dimension must be positive; got {dimension}")
        if m < 2:
            raise BuildError(f"Graph degree must be at least 2; got {m}")
        if ef_construction < 1 or ef_search < 1:
            raise BuildError("Beam widths must be positive")

        self.dimension = int(dimension)
        self.metric = metric
        self.m = int(m)
        self.m0 = 2 * self.m
        self.ef_construction = int(ef_construction)
        self.ef_search = int(ef_search)
        self._level_mult = 1.0 / math.log(self.m)
        self._rng = np.random.default_rng(seed)

        self._data = np.zeros((0, self.dimension), dtype=np.float32)
        self._count = 0
        self._levels: list[int] = []
        self._neighbors: list[list[list[int]]] = []
        self._entry_point = -1
        self._max_level = -1

    def __len__(self) -> int:
        return self._count

    @property
    def entry_point(self) -> int:
        return self._entry_point

    @property
    def max_level(self) -> int:
        return self._max_level

    def level_of(self, node: int) -> int:
        return self._levels[node]

    def neighbors(self, node: int, layer: int = 0) -> list[int]:
        """Return a copy of ``node``'s neighbour list on ``layer``."""
        return list(self._neighbors[node][layer])

    def vectors(self) -> np.ndarray:
        return self._data[: self._count].copy()

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
        return self._insert_prepared(prepared[0])

    def insert_batch(self, vectors: np.ndarray) -> list[int]:
        array = np.asarray(vectors, dtype=np.float32)
        if array.size == 0:
            return []
        if array.ndim != 2 or array.shape[1] != self.dimension:
            raise BuildError(
                f"Vectors must have shape (n, {self.dimension}); got {array.shape}",
                details={"expected": self.dimension},
            )
        prepared = prepare_vectors(array, self.metric)
        return [self._insert_prepared(row) for row in prepared]

    def _ensure_capacity(self, needed: int) -> None:
        capacity = self._data.shape[0]
        if needed <= capacity:
            return
        new_capacity = max(needed, capacity * 2, 64)
        grown = np.zeros((new_capacity, self.dimension), dtype=np.float32)
        grown[: self._count] = self._data[: self._count]
        self._data = grown

    def _sample_level(self) -> int:
        # 1 - U keeps the argument of log inside (0, 1].
        uniform = 1.0 - float(self._rng.random())
        return int(math.floor(-math.log(uniform) * self._level_mult))

    def _insert_prepared(self, vector: np.ndarray) -> int:
        node = self._count
        self._ensure_capacity(node + 1)
        self._data[node] = vector
        self._count += 1

        level = self._sample_level()
        self._levels.append(level)
        self._neighbors.append([[] for _ in range(level + 1)])

        if self._entry_point < 0:
            self._entry_point = node
            self._max_level = level
            return node

        query = self._data[node].astype(np.float64)
        entry = self._entry_point
        nearest = [(self._distance_between(query, entry), entry)]
        for layer in range(self._max_level, level, -1):
            nearest = self._search_layer(query, nearest, 1, layer)

        for layer in range(min(level, self._max_level), -1, -1):
            candidates = self._search_layer(query, nearest, self.ef_construction, layer)
            selected = self._select_neighbors(candidates, self.m)
            self._neighbors[node][layer] = selected
            cap = self.m0 if layer == 0 else self.m
            for neighbor in selected:
                links = self._neighbors[neighbor][layer]
                links.append(node)
                if len(links) > cap:
                    self._neighbors[neighbor][layer] = self._shrink(neighbor, links, cap)
            nearest = candidates

        if level > self._max_level:
            self._entry_point = node
            self._max_level = level
        return node

    def _shrink(self, node: int, links: list[int], cap: int) -> list[int]:
        base = self._data[node].astype(np.float64)
        dists = self._distances_to(base, links)
        candidates = sorted(zip(dists.tolist(), links))
        return self._select_neighbors(candidates, cap)

    def _select_neighbors(self, candidates: list[tuple[float, int]], limit: int) -> list[int]:
        """Diversity heuristic: keep a candidate only if it is closer to the base
        than to every neighbour already selected."""
        selected: list[int] = []
        for dist, candidate in candidates:
            if len(selected) >= limit:
                break
            if selected:
                to_selected = self._distances_to(
                    self._data[candidate].astype(np.float64), selected
                )
                if bool(np.any(to_selected < dist)):
                    continue
            selected.append(candidate)
        return selected

    def finalize_build(self) -> None:
        """Make every node reachable on layer 0 from the entry point."""
        if self._count == 0:
            return
        repaired = 0
        for _ in range(self._count):
            reachable = self._reachable_layer0()
            missing = np.flatnonzero(~reachable)
            if missing.size == 0:
                break
            for node in missing.tolist():
                if reachable[node]:
                    continue
                self._link_from_reachable(int(node), reachable)
                repaired += 1
                self._mark_reachable(int(node), reachable)
        if repaired:
            logger.info("Repaired layer-0 reachability for %d node(s)", repaired)
        logger.debug(
            "HNSW graph finalized: %d nodes, max level %d, entry point %d",
            self._count,
            self._max_level,
            self._entry_point,
        )

    def _reachable_layer0(self) -> np.ndarray:
        reachable = np.zeros(self._count, dtype=bool)
        self._mark_reachable(self._entry_point, reachable)
        return reachable

    def _mark_reachable(self, start: int, reachable: np.ndarray) -> None:
        if reachable[start]:
            return
        reachable[start] = True
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for neighbor in self._neighbors[current][0]:
                if not reachable[neighbor]:
                    reachable[neighbor] = True
                    queue.append(neighbor)

    def _link_from_reachable(self, node: int, reachable: np.ndarray) -> None:
        sources = np.flatnonzero(reachable)
        base = self._data[node].astype(np.float64)
        dists = distances(self._data[sources], base, self.metric)
        order = np.lexsort((sources, dists))
        for position in order.tolist():
            source = int(sources[position])
            if len(self._neighbors[source][0]) < self.m0:
                self._neighbors[source][0].append(node)
                return
        # Every reachable node is full: replace the farthest link of the nearest one.
        source = int(sources[order[0]])
        links = self._neighbors[source][0]
        link_dists = self._distances_to(self._data[source].astype(np.float64), links)
        links[int(np.argmax(link_dists))] = node

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _distances_to(self, query: np.ndarray, ids: Sequence[int]) -> np.ndarray:
        return distances(self._data[list(ids)], query, self.metric)

    def _distance_between(self, query: np.ndarray, node: int) -> float:
        return float(distances(self._data[node], query, self.metric)[0])

    def _search_layer(
        self,
        query: np.ndarray,
        entry_points: list[tuple[float, int]],
        ef: int,
        layer: int,
    ) -> list[tuple[float, int]]:
        visited = {node for _, node in entry_points}
        candidates = list(entry_points)
        heapq.heapify(candidates)
        results = [(-dist, -node) for dist, node in entry_points]
        heapq.heapify(results)
        while len(results) > ef:
            heapq.heappop(results)

        while candidates:
            dist, node = heapq.heappop(candidates)
            if len(results) >= ef and dist > -results[0][0]:
                break
            fresh = [n for n in self._neighbors[node][layer] if n not in visited]
            if not fresh:
                continue
            visited.update(fresh)
            for n_dist, neighbor in zip(self._distances_to(query, fresh).tolist(), fresh):
                if len(results) < ef or (n_dist, neighbor) < (-results[0][0], -results[0][1]):
                    heapq.heappush(candidates, (n_dist, neighbor))
                    heapq.heappush(results, (-n_dist, -neighbor))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted((-dist, -node) for dist, node in results)

    def search(self, query: np.ndarray, k: int, *, ef: int | None = None) -> list[VectorHit]:
        q = prepare_query(query, self.metric)
        if q.shape[0] != self.dimension:
            raise QueryError(
                f"Query vector must have dimension {self.dimension}; got {q.shape[0]}"
            )
        if k <= 0 or self._count == 0:
            return []

        if k >= self._count:
            ranked = self._rank_all(q)
        else:
            entry = self._entry_point
            nearest = [(self._distance_between(q, entry), entry)]
            for layer in range(self._max_level, 0, -1):
                nearest = self._search_layer(q, nearest, 1, layer)
            beam = max(ef or self.ef_search, k)
            ranked = self._search_layer(q, nearest, beam, 0)

        return [
            VectorHit(
                internal_id=node,
                distance=dist,
                score=distance_to_score(dist, self.metric),
            )
            for dist, node in ranked[:k]
        ]

    def _rank_all(self, query: np.ndarray) -> list[tuple[float, int]]:
        ids = np.arange(self._count)
        dists = distances(self._data[: self._count], query, self.metric)
        order = np.lexsort((ids, dists))
        return [(float(dists[i]), int(i)) for i in order]

    def distances(self, query: np.ndarray, ids: Sequence[int]) -> np.ndarray:
        q = prepare_query(query, self.metric)
        if not len(ids):
            return np.zeros(0, dtype=np.float64)
        return self._distances_to(q, ids)

    def close(self) -> None:
        """Nothing to release; the graph lives in memory."""

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self, handle: BinaryIO) -> None:
        """Write the graph payload that follows the shared ``.index`` header."""
        handle.write(
            _PAYLOAD_HEADER.pack(
                self.m, self.m0, self.ef_construction, self._entry_point, self._max_level
            )
        )
        handle.write(np.asarray(self._levels, dtype="<i4").tobytes())
        handle.write(np.ascontiguousarray(self._data[: self._count], dtype="<f4").tobytes())
        for layer in range(self._max_level + 1):
            members = [n for n in range(self._count) if self._levels[n] >= layer]
            counts = [len(self._neighbors[n][layer]) for n in members]
            flat = [nbr for n in members for nbr in self._neighbors[n][layer]]
            handle.write(np.asarray(counts, dtype="<u4").tobytes())
            handle.write(np.asarray(flat, dtype="<i4").tobytes())

    @classmethod
    def deserialize(
        cls,
        payload: bytes | memoryview,
        *,
        dimension: int,
        metric: Metric,
        count: int,
        ef_search: int = 64,
        seed: int = 42,
    ) -> HNSWBackend:
        """Rebuild a graph from the payload written by :meth:`serialize`."""
        reader = PayloadReader(payload)
        m, m0, ef_construction, entry_point, max_level = reader.unpack(_PAYLOAD_HEADER)
        if m < 2 or m0 != 2 * m:
            raise FormatError(f"Invalid graph degree parameters m={m} m0={m0}")

        backend = cls(
            dimension,
            metric,
            m=m,
            ef_construction=max(ef_construction, 1),
            ef_search=ef_search,
            seed=seed + count,
        )
        levels = reader.array("<i4", count).astype(np.int64)
        vectors = reader.array("<f4", count * dimension).reshape(count, dimension)

        if count == 0:
            if entry_point != -1 or max_level != -1:
                raise FormatError("Empty graph payload declares an entry point")
        else:
            if not 0 <= entry_point < count:
                raise FormatError(f"Graph entry point {entry_point} out of range")
            if levels.min() < 0 or int(levels.max()) != max_level:
                raise FormatError("Graph level table disagrees with max level")
            if int(levels[entry_point]) != max_level:
                raise FormatError("Graph entry point is not on the top layer")

        neighbors: list[list[list[int]]] = [
            [[] for _ in range(int(level) + 1)] for level in levels
        ]
        for layer in range(max_level + 1):
            members = np.flatnonzero(levels >= layer)
            cap = m0 if layer == 0 else m
            counts = reader.array("<u4", members.size).astype(np.int64)
            if counts.size and int(counts.max()) > cap:
                raise FormatError(f"Layer {layer} exceeds its degree bound {cap}")
            flat = reader.array("<i4", int(counts.sum())).astype(np.int64)
            if flat.size and (int(flat.min()) < 0 or int(flat.max()) >= count):
                raise FormatError(f"Layer {layer} references an unknown node")
            if flat.size and int(levels[flat].min()) < layer:
                raise FormatError(f"Layer {layer} links to a node below that layer")
            offset = 0
            for node, degree in zip(members.tolist(), counts.tolist()):
                neighbors[node][layer] = flat[offset : offset + degree].tolist()
                offset += degree

        if reader.remaining:
            raise FormatError(f"Graph payload has {reader.remaining} trailing bytes")

        backend._data = np.array(vectors, dtype=np.float32)
        backend._count = count
        backend._levels = levels.tolist()
        backend._neighbors = neighbors
        backend._entry_point = int(entry_point)
        backend._max_level = int(max_level)
        return backend
