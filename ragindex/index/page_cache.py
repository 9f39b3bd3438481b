"""Thread-safe LRU cache for immutable disk pages."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock


@dataclass(slots=True, frozen=True)
class CacheStats:
    """Snapshot of cache counters."""

    hits: int
    misses: int
    evictions: int
    size: int
    capacity: int


class PageCache:
    """Bounded LRU mapping page number to page bytes.

    The lock only guards the ordered dict and counters. Page loads run outside
    it, so two threads missing on the same page may both read it; pages are
    immutable ``bytes`` so either copy is valid and neither is ever torn.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError(f"Cache capacity must be non-negative; got {capacity}")
        self._capacity = int(capacity)
        self._pages: OrderedDict[int, bytes] = OrderedDict()
        self._lock = Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._pages)

    def __contains__(self, page_no: object) -> bool:
        with self._lock:
            return page_no in self._pages

    def get(self, page_no: int) -> bytes | None:
        """Return the cached page and mark it most recently used."""
        with self._lock:
            page = self._pages.get(page_no)
            if page is None:
                self._misses += 1
                return None
            self._pages.move_to_end(page_no)
            self._hits += 1
            return page

    def put(self, page_no: int, page: bytes) -> None:
        if self._capacity == 0:
            return
        with self._lock:
            self._pages[page_no] = page
            self._pages.move_to_end(page_no)
            while len(self._pages) > self._capacity:
                self._pages.popitem(last=False)
                self._evictions += 1

    def get_or_load(self, page_no: int, loader: Callable[[int], bytes]) -> tuple[bytes, bool]:
        """Return ``(page, hit)``, calling ``loader`` outside the lock on a miss."""
        page = self.get(page_no)
        if page is not None:
            return page, True
        page = loader(page_no)
        self.put(page_no, page)
        return page, False

    def clear(self) -> None:
        with self._lock:
            self._pages.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                size=len(self._pages),
                capacity=self._capacity,
            )
