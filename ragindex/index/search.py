"""Query coordinator: vector search, BM25 scoring, score fusion and filtering."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

import numpy as np
from pydantic import BaseModel, Field

from ragindex.app.ports.vector_store import VectorBackendPort
from ragindex.errors import QueryError
from ragindex.index.bm25 import tokenize
from ragindex.index.bundle import IndexBundle
from ragindex.index.distance import distance_to_score
from ragindex.index.expansion import (
    EXPANSION_SAMPLE,
    MAX_EXPANSION_TERMS,
    expand_from_passages,
    should_expand,
)
from ragindex.index.filter import FilterNode, parse_filter
from ragindex.index.passages import Passage

logger = logging.getLogger(__name__)

Strategy = Literal["dense", "lexical", "hybrid"]


class ScoredPassage(BaseModel):
    """Single ranked passage."""

    id: str = Field(..., description="External passage id")
    text: str = Field(..., description="Passage text")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Passage metadata")
    score: float = Field(..., description="Ranking score (fused when hybrid)")
    vector_score: float | None = Field(
        None, description="Raw vector similarity when the vector path contributed."
    )
    lexical_score: float | None = Field(
        None, description="Raw BM25 score when the lexical path contributed."
    )
    strategy: Strategy = Field("dense", description="Search strategy that produced the score.")


@dataclass(slots=True, frozen=True)
class HybridQuery:
    """Query text for BM25 and the weight given to the vector score."""

    query_text: str
    alpha: float = 0.7


@dataclass(slots=True)
class SearchOptions:
    top_k: int = 10
    ef: int | None = None
    filter: str | None = None
    hybrid: HybridQuery | None = None
    overfetch: int = 5
    expand_on_filter: bool = True


@dataclass(slots=True)
class _Candidate:
    internal_id: int
    score: float
    vector_score: float | None = None
    lexical_score: float | None = None


@dataclass(slots=True)
class _PassageCache:
    bundle: IndexBundle
    loaded: dict[int, Passage] = field(default_factory=dict)

    def get(self, internal_id: int) -> Passage:
        passage = self.loaded.get(internal_id)
        if passage is None:
            passage = self.bundle.passages.get(internal_id)
            self.loaded[internal_id] = passage
        return passage


def min_max_normalize(values: Sequence[float]) -> list[float]:
    """Scale ``values`` into [0, 1]; a constant list maps non-zero values to 1.0."""
    if not values:
        return []
    low, high = min(values), max(values)
    span = high - low
    if span <= 0.0:
        return [1.0 if value != 0.0 else 0.0 for value in values]
    return [(value - low) / span for value in values]


def _validate(
    bundle: IndexBundle, query_vector: Any, options: SearchOptions
) -> tuple[np.ndarray, FilterNode | None]:
    if options.top_k < 1:
        raise QueryError(f"top_k must be at least 1; got {options.top_k}", details={"field": "k"})
    if options.ef is not None and options.ef < 1:
        raise QueryError(f"ef must be at least 1; got {options.ef}", details={"field": "ef"})
    if options.overfetch < 1:
        raise QueryError(
            f"overfetch must be at least 1; got {options.overfetch}", details={"field": "overfetch"}
        )
    if options.hybrid is not None and not 0.0 <= options.hybrid.alpha <= 1.0:
        raise QueryError(
            f"alpha must be within [0, 1]; got {options.hybrid.alpha}", details={"field": "alpha"}
        )
    try:
        query = np.asarray(query_vector, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise QueryError(f"Query vector is not numeric: {exc}") from exc
    if query.shape[0] != bundle.dimension:
        raise QueryError(
            f"Query vector must have dimension {bundle.dimension}; got {query.shape[0]}",
            details={"field": "query_vector"},
        )
    if not np.all(np.isfinite(query)):
        raise QueryError("Query vector contains NaN or infinite values")
    predicate = parse_filter(options.filter) if options.filter is not None else None
    return query, predicate


def search_bundle(
    bundle: IndexBundle, query_vector: Any, options: SearchOptions | None = None
) -> list[ScoredPassage]:
    """Rank passages of ``bundle`` for ``query_vector``.

    Validation (k, alpha, dimension, filter syntax) happens before any backend
    work. The filter runs after fusion and before truncation; when it leaves
    fewer than ``top_k`` hits the candidate pool doubles until the whole index
    has been considered. Results are never padded.
    """
    options = options or SearchOptions()
    query, predicate = _validate(bundle, query_vector, options)
    total = bundle.passage_count
    if total == 0:
        return []

    hybrid = options.hybrid
    if hybrid is not None and hybrid.alpha == 0.0:
        return _lexical_results(bundle, hybrid.query_text, options.top_k, predicate)
    if hybrid is not None and (hybrid.alpha == 1.0 or not tokenize(hybrid.query_text)):
        hybrid = None

    passages = _PassageCache(bundle)
    widen = predicate is not None or hybrid is not None
    pool = options.top_k * options.overfetch if widen else options.top_k

    while True:
        size = min(pool, total)
        if hybrid is None:
            ranked = _dense_candidates(bundle, query, size, options.ef)
        else:
            ranked = _hybrid_candidates(bundle, query, size, options.ef, hybrid)
        kept = [
            candidate
            for candidate in ranked
            if predicate is None or predicate.matches(passages.get(candidate.internal_id).metadata)
        ]
        if (
            len(kept) >= options.top_k
            or size >= total
            or predicate is None
            or not options.expand_on_filter
        ):
            break
        logger.debug("Filter kept %d of %d candidates; widening pool", len(kept), size)
        pool = size * 2

    strategy: Strategy = "dense" if hybrid is None else "hybrid"
    return [_to_result(passages.get(c.internal_id), c, strategy) for c in kept[: options.top_k]]


def _dense_candidates(
    bundle: IndexBundle, query: np.ndarray, size: int, ef: int | None
) -> list[_Candidate]:
    hits = bundle.backend.search(query, size, ef=ef)
    return [
        _Candidate(hit.internal_id, hit.score, vector_score=hit.score)
        for hit in hits
    ]


def _hybrid_candidates(
    bundle: IndexBundle,
    query: np.ndarray,
    size: int,
    ef: int | None,
    hybrid: HybridQuery,
) -> list[_Candidate]:
    backend: VectorBackendPort = bundle.backend
    hits = backend.search(query, size, ef=ef)
    lexical = bundle.lexical.get().score(hybrid.query_text)
    lexical_top = sorted(lexical.items(), key=lambda item: (-item[1], item[0]))[:size]

    vector_scores = {hit.internal_id: hit.score for hit in hits}
    missing = sorted({doc_id for doc_id, _ in lexical_top} - vector_scores.keys())
    if missing:
        for doc_id, dist in zip(missing, backend.distances(query, missing).tolist()):
            vector_scores[doc_id] = distance_to_score(dist, backend.metric)

    pool = sorted(vector_scores)
    raw_vector = [vector_scores[doc_id] for doc_id in pool]
    raw_lexical = [lexical.get(doc_id, 0.0) for doc_id in pool]
    norm_vector = min_max_normalize(raw_vector)
    norm_lexical = min_max_normalize(raw_lexical)

    alpha = hybrid.alpha
    fused = [
        _Candidate(
            doc_id,
            alpha * v + (1.0 - alpha) * lex,
            vector_score=raw_v,
            lexical_score=raw_l,
        )
        for doc_id, v, lex, raw_v, raw_l in zip(
            pool, norm_vector, norm_lexical, raw_vector, raw_lexical
        )
    ]
    fused.sort(key=lambda candidate: (-candidate.score, candidate.internal_id))
    return fused


def _lexical_results(
    bundle: IndexBundle, text: str, top_k: int, predicate: FilterNode | None
) -> list[ScoredPassage]:
    passages = _PassageCache(bundle)
    results: list[ScoredPassage] = []
    scores = bundle.lexical.get().score(text)
    for doc_id, score in sorted(scores.items(), key=lambda item: (-item[1], item[0])):
        passage = passages.get(doc_id)
        if predicate is not None and not predicate.matches(passage.metadata):
            continue
        candidate = _Candidate(doc_id, score, lexical_score=score)
        results.append(_to_result(passage, candidate, "lexical"))
        if len(results) >= top_k:
            break
    return results


def _to_result(passage: Passage, candidate: _Candidate, strategy: Strategy) -> ScoredPassage:
    return ScoredPassage(
        id=passage.id,
        text=passage.text,
        metadata=dict(passage.metadata),
        score=float(candidate.score),
        vector_score=candidate.vector_score,
        lexical_score=candidate.lexical_score,
        strategy=strategy,
    )


def lexical_search(
    bundle: IndexBundle,
    text: str,
    k: int,
    *,
    filter_expr: str | None = None,
) -> list[ScoredPassage]:
    """BM25-only retrieval over every passage that shares a term with ``text``."""
    if k < 1:
        raise QueryError(f"k must be at least 1; got {k}", details={"field": "k"})
    predicate = parse_filter(filter_expr) if filter_expr is not None else None
    if bundle.passage_count == 0:
        return []
    return _lexical_results(bundle, text, k, predicate)


def expand_query(
    bundle: IndexBundle,
    text: str,
    *,
    max_terms: int = MAX_EXPANSION_TERMS,
    sample: int = EXPANSION_SAMPLE,
) -> str:
    """Widen a short query with terms from its best BM25 matches."""
    if not should_expand(text) or bundle.passage_count == 0:
        return text
    scores = bundle.lexical.get().score(text)
    top = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:sample]
    expanded = expand_from_passages(
        text, (bundle.passages.get(doc_id).text for doc_id, _ in top), max_terms
    )
    if expanded != text:
        logger.info("Expanded query %r to %r", text, expanded)
    return expanded
