"""BM25 scoring, tokenization and lazy construction."""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor

import pytest

from ragindex.index.bm25 import BM25Index, LazyBM25, tokenize

CORPUS = ["apple banana", "apple apple cherry", "dog"]


def test_tokenizer_lowercases_and_drops_short_tokens() -> None:
    assert tokenize("Hello, World! a_b x 42") == ["hello", "world", "42"]
    assert tokenize("Über-Straße") == ["über", "straße"]
    assert tokenize("") == []


def test_scores_follow_okapi_formula() -> None:
    index = BM25Index.build(CORPUS, k1=1.5, b=0.75)
    idf = math.log((3 - 2 + 0.5) / (2 + 0.5) + 1.0)
    avg = 2.0

    def expected(tf: int, length: int) -> float:
        norm = 1 - 0.75 + 0.75 * length / avg
        return idf * tf * 2.5 / (tf + 1.5 * norm)

    scores = index.score("apple")

    assert index.avg_doc_length == pytest.approx(avg)
    assert scores[0] == pytest.approx(expected(1, 2))
    assert scores[1] == pytest.approx(expected(2, 3))


def test_passages_without_matches_are_excluded() -> None:
    index = BM25Index.build(CORPUS)

    scores = index.score("apple")

    assert 2 not in scores
    assert index.score("zebra") == {}
    assert index.search("zebra", 5) == []


def test_search_orders_by_score_then_id() -> None:
    index = BM25Index.build(["red fish", "red fish", "blue fish red red"])

    ranked = index.search("red", 3)

    assert [doc_id for doc_id, _ in ranked] == [2, 0, 1]
    assert ranked[1][1] == ranked[2][1]


def test_multi_term_scores_add_up() -> None:
    index = BM25Index.build(CORPUS)

    combined = index.score("apple banana")
    apple = index.score("apple")
    banana = index.score("banana")

    assert combined[0] == pytest.approx(apple[0] + banana[0])


def test_empty_index_scores_nothing() -> None:
    assert BM25Index().score("anything") == {}


@pytest.mark.parametrize("kwargs", [{"k1": -1.0}, {"b": 1.5}])
def test_invalid_parameters(kwargs) -> None:
    with pytest.raises(ValueError):
        BM25Index(**kwargs)


def test_lazy_index_builds_once_under_contention() -> None:
    calls: list[int] = []

    def texts():
        calls.append(1)
        return iter(CORPUS)

    lazy = LazyBM25(texts)
    assert not lazy.is_built

    with ThreadPoolExecutor(max_workers=8) as pool:
        built = list(pool.map(lambda _: lazy.get(), range(16)))

    assert len(calls) == 1
    assert all(index is built[0] for index in built)
    assert lazy.is_built


def test_ready_wraps_prebuilt_index() -> None:
    index = BM25Index.build(CORPUS)

    lazy = LazyBM25.ready(index)

    assert lazy.is_built
    assert lazy.get() is index
