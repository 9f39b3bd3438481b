"""Metadata filter expressions.

Grammar (one expression, clauses combined left to right)::

    expr    := conj (" OR " conj)*
    conj    := clause (("," | " AND ") clause)*
    clause  := key OP value | key ("in" | "not_in") "[" value ("," value)* "]" | key "?"
    OP      := "=" | "!=" | ">" | ">=" | "<" | "<=" | ":" | "~" | "^" | "$"

``:`` is a case-sensitive glob, ``~`` substring, ``^`` prefix and ``$`` suffix
match on string fields. Keys may be dotted paths into nested objects.
Separators inside brackets or quoted values do not split clauses; a quote
only opens at the start of a value, so ``author=O'Brien`` needs no quoting.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Union

from ragindex.errors import QueryError


class FilterOp(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    GLOB = ":"
    CONTAINS = "~"
    PREFIX = "^"
    SUFFIX = "$"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "?"


_SYMBOLIC_OPS = {op.value: op for op in FilterOp if op.value[0] in "=!<>:~^$"}
_STRING_OPS = {FilterOp.GLOB, FilterOp.CONTAINS, FilterOp.PREFIX, FilterOp.SUFFIX}
_ORDER_OPS = {FilterOp.GT, FilterOp.GTE, FilterOp.LT, FilterOp.LTE}

_KEY = r"[A-Za-z0-9_][\w.\-]*"
_CLAUSE_RE = re.compile(rf"^(?P<key>{_KEY})\s*(?P<op>[=!<>:~^$]+)\s*(?P<value>.*)$", re.S)
_LIST_RE = re.compile(rf"^(?P<key>{_KEY})\s+(?P<op>in|not_in)\s*\[(?P<body>.*)\]$", re.S)
_EXISTS_RE = re.compile(rf"^(?P<key>{_KEY})\s*\?$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_INT_RE = re.compile(r"^[+-]?\d+$")

_MISSING = object()


def parse_literal(text: str) -> Any:
    """Parse a literal: quoted strings stay strings, then int, float, bool, string."""
    value = text.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    if _INT_RE.match(value):
        return int(value)
    if _NUMBER_RE.match(value):
        return float(value)
    if value == "true":
        return True
    if value == "false":
        return False
    return value


def _unquote(text: str) -> str:
    value = text.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        return float(value)
    return None


def _values_equal(field: Any, literal: Any) -> bool:
    if isinstance(field, bool) or isinstance(literal, bool):
        return isinstance(field, bool) and isinstance(literal, bool) and field == literal
    if isinstance(literal, (int, float)) or isinstance(field, (int, float)):
        left, right = _as_number(field), _as_number(literal)
        if left is not None and right is not None:
            return left == right
        return False
    if isinstance(field, str) and isinstance(literal, str):
        return field == literal
    return field == literal


def lookup(metadata: Mapping[str, Any], key: str) -> Any:
    """Resolve ``key`` (possibly dotted) in ``metadata``; returns a sentinel when absent."""
    if key in metadata:
        return metadata[key]
    current: Any = metadata
    for part in key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


@dataclass(slots=True, frozen=True)
class FilterCondition:
    """Single ``key OP value`` predicate."""

    field: str
    op: FilterOp
    value: Any = None

    def matches(self, metadata: Mapping[str, Any]) -> bool:
        actual = lookup(metadata, self.field)
        if actual is _MISSING:
            return self.op in (FilterOp.NE, FilterOp.NOT_IN)

        op = self.op
        if op is FilterOp.EXISTS:
            return True
        if op is FilterOp.EQ:
            return _values_equal(actual, self.value)
        if op is FilterOp.NE:
            return not _values_equal(actual, self.value)
        if op is FilterOp.IN:
            return any(_values_equal(actual, item) for item in self.value)
        if op is FilterOp.NOT_IN:
            return not any(_values_equal(actual, item) for item in self.value)
        if op in _ORDER_OPS:
            left, right = _as_number(actual), _as_number(self.value)
            if left is None or right is None:
                return False
            if op is FilterOp.GT:
                return left > right
            if op is FilterOp.GTE:
                return left >= right
            if op is FilterOp.LT:
                return left < right
            return left <= right
        if not isinstance(actual, str):
            return False
        pattern = str(self.value)
        if op is FilterOp.GLOB:
            return fnmatchcase(actual, pattern)
        if op is FilterOp.CONTAINS:
            return pattern in actual
        if op is FilterOp.PREFIX:
            return actual.startswith(pattern)
        return actual.endswith(pattern)

    def __str__(self) -> str:
        if self.op is FilterOp.EXISTS:
            return f"{self.field}?"
        if self.op in (FilterOp.IN, FilterOp.NOT_IN):
            items = ",".join(str(item) for item in self.value)
            return f"{self.field} {self.op.value} [{items}]"
        return f"{self.field}{self.op.value}{self.value}"


@dataclass(slots=True, frozen=True)
class MetadataFilter:
    """Conjunction (``"and"``) or disjunction (``"or"``) of sub-filters."""

    mode: str
    children: tuple[FilterNode, ...]

    def matches(self, metadata: Mapping[str, Any]) -> bool:
        if self.mode == "or":
            return any(child.matches(metadata) for child in self.children)
        return all(child.matches(metadata) for child in self.children)

    def __str__(self) -> str:
        joiner = " OR " if self.mode == "or" else ","
        return joiner.join(str(child) for child in self.children)


FilterNode = Union[FilterCondition, MetadataFilter]


_VALUE_START = frozenset("=!<>:~^$[,")


def _split_top_level(text: str, separators: tuple[str, ...]) -> list[str]:
    """Split on any of ``separators`` outside brackets and quoted values.

    A quote only opens when it starts a value or list item, so apostrophes
    inside bare words (``O'Brien``) are literal.
    """
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    previous = ""
    start = 0
    i = 0
    while i < len(text):
        char = text[i]
        if quote:
            if char == quote:
                quote = None
        elif char in "\"'" and (not previous or previous in _VALUE_START):
            quote = char
        elif char == "[":
            depth += 1
        elif char == "]":
            depth = max(depth - 1, 0)
        elif depth == 0:
            matched = next((sep for sep in separators if text.startswith(sep, i)), None)
            if matched is not None:
                parts.append(text[start:i])
                i += len(matched)
                start = i
                previous = matched.strip()[-1:]
                continue
        if not char.isspace():
            previous = char
        i += 1
    if quote:
        raise QueryError("Unbalanced quote in filter expression", details={"clause": text})
    parts.append(text[start:])
    return parts


def _parse_clause(raw: str) -> FilterCondition:
    clause = raw.strip()
    if not clause:
        raise QueryError("Empty filter clause", details={"clause": raw})

    exists = _EXISTS_RE.match(clause)
    if exists:
        return FilterCondition(exists.group("key"), FilterOp.EXISTS)

    listed = _LIST_RE.match(clause)
    if listed:
        body = listed.group("body")
        items = [parse_literal(item) for item in _split_top_level(body, (",",))]
        if not body.strip() or any(item == "" for item in items):
            raise QueryError("Empty value in filter list", details={"clause": clause})
        return FilterCondition(listed.group("key"), FilterOp(listed.group("op")), tuple(items))

    match = _CLAUSE_RE.match(clause)
    if match is None:
        if clause[0] in "=!<>:~^$?":
            raise QueryError("Filter clause is missing a key", details={"clause": clause})
        raise QueryError(
            "Malformed filter clause; expected 'key OP value'", details={"clause": clause}
        )

    symbol = match.group("op")
    op = _SYMBOLIC_OPS.get(symbol)
    if op is None:
        raise QueryError(
            f"Unknown filter operator {symbol!r}",
            details={"clause": clause, "operator": symbol},
        )
    raw_value = match.group("value").strip()
    if not raw_value:
        raise QueryError("Filter clause is missing a value", details={"clause": clause})
    value = _unquote(raw_value) if op in _STRING_OPS else parse_literal(raw_value)
    return FilterCondition(match.group("key"), op, value)


def _parse_conjunction(text: str) -> FilterNode:
    clauses = [_parse_clause(part) for part in _split_top_level(text, (",", " AND "))]
    if len(clauses) == 1:
        return clauses[0]
    return MetadataFilter("and", tuple(clauses))


def parse_filter(expression: str) -> FilterNode:
    """Parse a filter expression, raising :class:`QueryError` on any malformed clause."""
    if not expression or not expression.strip():
        raise QueryError("Empty filter expression", details={"clause": expression})
    branches = [_parse_conjunction(part) for part in _split_top_level(expression, (" OR ",))]
    if len(branches) == 1:
        return branches[0]
    return MetadataFilter("or", tuple(branches))
