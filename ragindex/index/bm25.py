"""BM25 lexical index over passage texts."""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from collections.abc import Callable, Iterable
from threading import Lock

logger = logging.getLogger(__name__)

# Alphanumeric runs, Unicode letters included; underscores split tokens.
_TOKEN_RE = re.compile(r"[^\W_]+")

DEFAULT_K1 = 1.5
DEFAULT_B = 0.75


def tokenize(text: str) -> list[str]:
    """Lowercase ``text`` and split it into alphanumeric tokens of length >= 2."""
    return [token for token in _TOKEN_RE.findall(text.lower()) if len(token) > 1]


class BM25Index:
    """Okapi BM25 with postings keyed by dense passage id.

    ``score`` only returns passages that share at least one term with the
    query, so zero-score passages never enter a ranking.
    """

    def __init__(self, *, k1: float = DEFAULT_K1, b: float = DEFAULT_B) -> None:
        if k1 < 0:
            raise ValueError(f"k1 must be non-negative; got {k1}")
        if not 0.0 <= b <= 1.0:
            raise ValueError(f"b must be within [0, 1]; got {b}")
        self.k1 = float(k1)
        self.b = float(b)
        self.postings: dict[str, dict[int, int]] = {}
        self.doc_lengths: list[int] = []
        self.avg_doc_length = 0.0
        self._total_length = 0

    @classmethod
    def build(
        cls, texts: Iterable[str], *, k1: float = DEFAULT_K1, b: float = DEFAULT_B
    ) -> BM25Index:
        index = cls(k1=k1, b=b)
        for text in texts:
            index.add(text)
        return index

    def add(self, text: str) -> int:
        """Index one more passage and return its dense id."""
        doc_id = len(self.doc_lengths)
        tokens = tokenize(text)
        for term, tf in Counter(tokens).items():
            self.postings.setdefault(term, {})[doc_id] = tf
        self.doc_lengths.append(len(tokens))
        self._total_length += len(tokens)
        self.avg_doc_length = self._total_length / len(self.doc_lengths)
        return doc_id

    @property
    def doc_count(self) -> int:
        return len(self.doc_lengths)

    def idf(self, term: str) -> float:
        df = len(self.postings.get(term, ()))
        n = self.doc_count
        return math.log((n - df + 0.5) / (df + 0.5) + 1.0)

    def score(self, query: str) -> dict[int, float]:
        """Return BM25 scores for every passage matching at least one query term."""
        scores: dict[int, float] = {}
        if not self.doc_lengths:
            return scores
        avg = self.avg_doc_length or 1.0
        for term in tokenize(query):
            postings = self.postings.get(term)
            if not postings:
                continue
            idf = self.idf(term)
            for doc_id, tf in postings.items():
                norm = 1.0 - self.b + self.b * self.doc_lengths[doc_id] / avg
                contribution = idf * tf * (self.k1 + 1.0) / (tf + self.k1 * norm)
                scores[doc_id] = scores.get(doc_id, 0.0) + contribution
        return {doc_id: value for doc_id, value in scores.items() if value > 0.0}

    def search(self, query: str, k: int) -> list[tuple[int, float]]:
        """Return the ``k`` best ``(doc_id, score)`` pairs, ties broken by id."""
        if k <= 0:
            return []
        ranked = sorted(self.score(query).items(), key=lambda item: (-item[1], item[0]))
        return ranked[:k]


class LazyBM25:
    """Build a :class:`BM25Index` on first use from a text source.

    Loaded bundles carry no lexical artifact; postings are derived from the
    passage store the first time a hybrid or lexical query needs them. The
    build runs once even when several threads ask concurrently.
    """

    def __init__(
        self,
        texts: Callable[[], Iterable[str]],
        *,
        k1: float = DEFAULT_K1,
        b: float = DEFAULT_B,
    ) -> None:
        self._texts = texts
        self._k1 = k1
        self._b = b
        self._index: BM25Index | None = None
        self._lock = Lock()

    @classmethod
    def ready(cls, index: BM25Index) -> LazyBM25:
        lazy = cls(lambda: (), k1=index.k1, b=index.b)
        lazy._index = index
        return lazy

    @property
    def is_built(self) -> bool:
        return self._index is not None

    def get(self) -> BM25Index:
        index = self._index
        if index is not None:
            return index
        with self._lock:
            if self._index is None:
                self._index = BM25Index.build(self._texts(), k1=self._k1, b=self._b)
                logger.info(
                    "Built BM25 postings for %d passages (%d terms)",
                    self._index.doc_count,
                    len(self._index.postings),
                )
            return self._index
