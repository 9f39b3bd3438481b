"""Query coordinator: fusion, filters and validation."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from conftest import brute_force, make_passages

from ragindex.errors import QueryError
from ragindex.index.filter import parse_filter
from ragindex.index.manager import BuildParams, IndexHandle, IndexManager
from ragindex.index.search import HybridQuery, min_max_normalize

FRUIT = [
    ("a", "graph search notes", [1.0, 0.0], {"kind": "note", "year": 2020}),
    ("b", "banana smoothie recipe banana", [0.8, 0.6], {"kind": "recipe", "year": 2021}),
    ("c", "banana bread", [0.0, 1.0], {"kind": "recipe", "year": 2019}),
]


@pytest.fixture
def manager(temp_dir: Path, override_settings) -> IndexManager:
    manager = IndexManager(root=temp_dir / "indexes", settings=override_settings)
    yield manager
    manager.close()


@pytest.fixture
def fruit(manager: IndexManager) -> IndexHandle:
    manager.build("fruit", FRUIT, BuildParams(metric="cosine", graph_degree=4))
    return manager.load("fruit")


@pytest.fixture
def corpus(manager: IndexManager, random_vectors) -> IndexHandle:
    manager.build("corpus", make_passages(random_vectors), BuildParams(metric="l2"))
    return manager.load("corpus")


def test_min_max_normalize() -> None:
    assert min_max_normalize([]) == []
    assert min_max_normalize([2.0, 4.0, 3.0]) == [0.0, 1.0, 0.5]
    assert min_max_normalize([5.0, 5.0]) == [1.0, 1.0]
    assert min_max_normalize([0.0, 0.0]) == [0.0, 0.0]


def test_dense_search(manager, fruit) -> None:
    results = manager.search(fruit, [1.0, 0.0], 2)

    assert [r.id for r in results] == ["a", "b"]
    assert results[0].score == pytest.approx(1.0)
    assert results[0].strategy == "dense"
    assert results[0].metadata == {"kind": "note", "year": 2020}


def test_hybrid_fuses_normalized_scores(manager, fruit) -> None:
    balanced = manager.search(fruit, [1.0, 0.0], 3, hybrid=HybridQuery("banana", 0.5))
    vector_heavy = manager.search(fruit, [1.0, 0.0], 3, hybrid=HybridQuery("banana", 0.9))

    assert [r.id for r in balanced] == ["b", "a", "c"]
    assert [r.id for r in vector_heavy] == ["a", "b", "c"]
    top = balanced[0]
    assert top.strategy == "hybrid"
    assert top.vector_score == pytest.approx(0.8)
    assert top.lexical_score > 0
    assert balanced[1].lexical_score == 0.0


def test_alpha_one_is_pure_vector(manager, fruit) -> None:
    dense = manager.search(fruit, [0.6, 0.8], 3)
    hybrid = manager.search(fruit, [0.6, 0.8], 3, hybrid=HybridQuery("banana", 1.0))

    assert [(r.id, r.score) for r in hybrid] == [(r.id, r.score) for r in dense]
    assert all(r.strategy == "dense" for r in hybrid)


def test_alpha_zero_is_pure_lexical(manager, fruit) -> None:
    lexical = manager.lexical_search(fruit, "banana", 3)
    hybrid = manager.search(fruit, [1.0, 0.0], 3, hybrid=HybridQuery("banana", 0.0))

    assert [r.id for r in hybrid] == [r.id for r in lexical] == ["b", "c"]
    assert all(r.strategy == "lexical" for r in hybrid)


def test_query_text_without_tokens_uses_vectors(manager, fruit) -> None:
    results = manager.search(fruit, [1.0, 0.0], 2, hybrid=HybridQuery("a !", 0.5))

    assert [r.id for r in results] == ["a", "b"]
    assert results[0].strategy == "dense"


def test_alpha_zero_without_tokens_returns_nothing(manager, fruit) -> None:
    hybrid = manager.search(fruit, [1.0, 0.0], 3, hybrid=HybridQuery("a !", 0.0))

    assert hybrid == []
    assert manager.lexical_search(fruit, "a !", 3) == []


def test_filter_applies_after_fusion_without_padding(manager, fruit) -> None:
    results = manager.search(
        fruit, [1.0, 0.0], 3, filter_expr="kind=recipe", hybrid=HybridQuery("banana", 0.5)
    )
    assert [r.id for r in results] == ["b", "c"]

    only_one = manager.search(fruit, [1.0, 0.0], 3, filter_expr="year>2020")
    assert [r.id for r in only_one] == ["b"]

    none = manager.search(fruit, [1.0, 0.0], 3, filter_expr="kind=video")
    assert none == []


def test_lexical_search_with_filter(manager, fruit) -> None:
    results = manager.lexical_search(fruit, "banana", 5, filter_expr="year<2020")

    assert [r.id for r in results] == ["c"]
    assert manager.lexical_search(fruit, "zebra", 5) == []


def test_selective_filter_widens_candidate_pool(manager, corpus, random_vectors) -> None:
    query = random_vectors[7] + 0.01
    predicate = parse_filter("year=2003")

    results = manager.search(corpus, query, 10, filter_expr="year=2003")

    assert len(results) == 10
    assert all(predicate.matches(r.metadata) for r in results)
    scores = [r.score for r in results]
    assert scores == sorted(scores, reverse=True)

    matching = [i for i in range(len(random_vectors)) if i % 25 == 3]
    exact = brute_force(random_vectors[matching], query, 10, "l2")
    expected = [f"doc-{matching[i]}" for i in exact]
    found = [r.id for r in results]
    assert len(set(found) & set(expected)) >= 9


@pytest.mark.parametrize(
    ("kwargs", "field"),
    [
        ({"k": 0}, "k"),
        ({"hybrid": HybridQuery("banana", 1.5)}, "alpha"),
        ({"hybrid": HybridQuery("banana", -0.1)}, "alpha"),
        ({"query_vector": [1.0, 0.0, 0.0]}, "query_vector"),
        ({"ef": 0}, "ef"),
    ],
)
def test_invalid_queries_raise(manager, fruit, kwargs, field) -> None:
    call = {"query_vector": [1.0, 0.0], "k": 2, **kwargs}

    with pytest.raises(QueryError) as excinfo:
        manager.search(
            fruit,
            call["query_vector"],
            call["k"],
            hybrid=call.get("hybrid"),
            ef=call.get("ef"),
        )

    assert excinfo.value.details["field"] == field


def test_malformed_filter_raises(manager, fruit) -> None:
    with pytest.raises(QueryError):
        manager.search(fruit, [1.0, 0.0], 2, filter_expr="kind==recipe")


def test_non_finite_query_raises(manager, fruit) -> None:
    with pytest.raises(QueryError):
        manager.search(fruit, [float("nan"), 0.0], 2)


def test_disk_backend_hybrid(manager, random_vectors) -> None:
    manager.build(
        "disk",
        make_passages(random_vectors[:120]),
        BuildParams(backend="diskann", metric="mips", quantize=True),
    )
    handle = manager.load("disk")

    results = manager.search(
        handle, random_vectors[3], 5, filter_expr="topic=beta", hybrid=HybridQuery("beta", 0.6)
    )

    assert len(results) == 5
    assert all(r.metadata["topic"] == "beta" for r in results)
    assert all(np.isfinite(r.score) for r in results)


def test_filter_values_with_apostrophes(manager) -> None:
    manager.build(
        "authors",
        [
            ("a", "first", [1.0, 0.0], {"author": "O'Brien"}),
            ("b", "second", [0.9, 0.1], {"author": "Smith"}),
            ("c", "third", [0.0, 1.0], {"author": "Jones"}),
        ],
        BuildParams(metric="cosine"),
    )
    handle = manager.load("authors")

    results = manager.search(handle, [1.0, 0.0], 3, filter_expr="author=O'Brien OR author=Smith")

    assert [r.id for r in results] == ["a", "b"]
