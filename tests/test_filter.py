"""Metadata filter parsing and evaluation."""

from __future__ import annotations

import random

import pytest

from ragindex.errors import QueryError
from ragindex.index.filter import (
    FilterCondition,
    FilterOp,
    MetadataFilter,
    parse_filter,
    parse_literal,
)

DOC = {
    "title": "Graph Search Notes",
    "year": 2021,
    "score": 0.75,
    "lang": "en",
    "draft": False,
    "count_str": "42",
    "author": {"name": "Ada", "org": {"city": "London"}},
    "tags.flat": "literal-dotted",
}


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("lang=en", True),
        ("lang=de", False),
        ("lang!=de", True),
        ("year>2020", True),
        ("year>=2021", True),
        ("year<2021", False),
        ("year<=2021", True),
        ("score>0.5", True),
        ("title:Graph*", True),
        ("title:graph*", False),
        ("title~Search", True),
        ("title^Graph", True),
        ("title$Notes", True),
        ("title$notes", False),
        ("lang in [en, fr]", True),
        ("lang in [de,fr]", False),
        ("lang not_in [de, fr]", True),
        ("year in [2020, 2021]", True),
        ("author.name=Ada", True),
        ("author.org.city=London", True),
        ("tags.flat=literal-dotted", True),
        ("draft=false", True),
        ("draft=0", False),
        ("count_str>40", True),
        ("count_str=42", True),
        ("title?", True),
        ("missing?", False),
    ],
)
def test_operators(expression: str, expected: bool) -> None:
    assert parse_filter(expression).matches(DOC) is expected


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("missing=1", False),
        ("missing>1", False),
        ("missing~x", False),
        ("missing in [1]", False),
        ("missing!=1", True),
        ("missing not_in [1]", True),
    ],
)
def test_missing_fields(expression: str, expected: bool) -> None:
    assert parse_filter(expression).matches(DOC) is expected


def test_string_operators_ignore_non_string_fields() -> None:
    assert parse_filter("year~20").matches(DOC) is False
    assert parse_filter("year:20*").matches(DOC) is False


def test_numeric_comparison_needs_numbers() -> None:
    assert parse_filter("lang>5").matches(DOC) is False
    assert parse_filter("year>abc").matches(DOC) is False


def test_and_binds_tighter_than_or() -> None:
    node = parse_filter("lang=de,year>2000 OR title^Graph")

    assert isinstance(node, MetadataFilter)
    assert node.mode == "or"
    assert node.matches(DOC) is True
    assert parse_filter("lang=de AND title^Graph").matches(DOC) is False
    assert parse_filter("lang=en AND year=2021 AND draft=false").matches(DOC) is True


def test_separators_inside_brackets_and_quotes() -> None:
    node = parse_filter('lang in [en, "x,y"],title="Graph Search Notes"')

    assert isinstance(node, MetadataFilter)
    assert len(node.children) == 2
    assert node.matches(DOC) is True
    assert parse_filter("title~' OR '").matches({"title": "this OR that"}) is True


def test_apostrophes_inside_bare_values_are_literal() -> None:
    doc = {"author": "O'Brien", "year": 2020}

    node = parse_filter("author=O'Brien,year>2000")

    assert isinstance(node, MetadataFilter)
    assert node.children == (
        FilterCondition("author", FilterOp.EQ, "O'Brien"),
        FilterCondition("year", FilterOp.GT, 2000),
    )
    assert node.matches(doc) is True
    assert parse_filter("author=O'Brien AND year<2000").matches(doc) is False
    assert parse_filter("author=Smith OR author=O'Brien").matches(doc) is True
    assert parse_filter("author in [O'Brien, Smith]").matches(doc) is True
    assert parse_filter("author~'Br',year=2020").matches(doc) is True


@pytest.mark.parametrize("expression", ["title='open", 'lang in ["en, fr]', "a=1,b=\"x"])
def test_unbalanced_quotes_raise(expression: str) -> None:
    with pytest.raises(QueryError, match="Unbalanced quote"):
        parse_filter(expression)


def test_quoted_values_stay_strings() -> None:
    assert parse_literal('"2021"') == "2021"
    assert parse_literal("2021") == 2021
    assert parse_literal("2.5") == 2.5
    assert parse_literal("true") is True
    assert parse_literal("hello") == "hello"
    assert parse_filter('year="2021"').matches(DOC) is True


def test_condition_structure() -> None:
    node = parse_filter("year >= 2020")

    assert node == FilterCondition("year", FilterOp.GTE, 2020)
    assert str(node) == "year>=2020"


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "   ",
        "lang=en,",
        "=en",
        "lang",
        "lang==en",
        "year=>2020",
        "year<>2020",
        "lang=",
        "lang in []",
        "lang in [en,,fr]",
    ],
)
def test_malformed_expressions_raise(expression: str) -> None:
    with pytest.raises(QueryError):
        parse_filter(expression)


def test_error_carries_clause() -> None:
    with pytest.raises(QueryError) as excinfo:
        parse_filter("lang=en,year==2020")

    assert excinfo.value.details["clause"] == "year==2020"
    assert excinfo.value.details["operator"] == "=="


def test_filter_soundness_over_random_corpus() -> None:
    rng = random.Random(7)
    corpus = [
        {
            "year": rng.randint(1990, 2030),
            "lang": rng.choice(["en", "fr", "de"]),
            "title": rng.choice(["alpha doc", "beta note", "gamma memo"]),
        }
        for _ in range(300)
    ]
    predicate = parse_filter("year>=2000,lang in [en,fr] OR title^gamma")

    for doc in corpus:
        expected = (doc["year"] >= 2000 and doc["lang"] in ("en", "fr")) or doc[
            "title"
        ].startswith("gamma")
        assert predicate.matches(doc) is expected
