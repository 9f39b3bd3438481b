"""Query expansion from lexical matches.

Short queries are widened with the most frequent content words and code
symbols of the passages BM25 ranks highest for them. The expanded text only
feeds the lexical half of a hybrid query; embeddings are computed by the
caller.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable

MAX_EXPANSION_TERMS = 5
EXPANSION_SAMPLE = 5

STOPWORDS = frozenset(
    """
    a an the is are was were be been being have has had do does did will would
    could should may might must shall can need dare ought used to of in for on
    with at by from as into through during before after above below between
    under again further then once here there when where why how all each few
    more most other some such no nor not only own same so than too very just
    and but if or because until while this that these those it its i me my
    myself we our ours ourselves you your yours yourself yourselves he him his
    himself she her hers herself they them their theirs themselves what which
    who whom any both also about like using based within without
    """.split()
)

CODE_KEYWORDS = frozenset(
    """
    let const var fn func def pub mut impl struct enum type trait class
    interface async await return match case break continue loop while for if
    else elif try catch throw import export from require module use mod self
    super true false null none nil void int str bool float vec map set list
    dict assert assert_eq println print printf console log
    """.split()
)

_SYMBOL_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        r"(?:pub\s+)?(?:async\s+)?fn\s+(\w+)",
        r"(?:pub\s+)?struct\s+(\w+)",
        r"(?:pub\s+)?enum\s+(\w+)",
        r"(?:pub\s+)?trait\s+(\w+)",
        r"(?:async\s+)?def\s+(\w+)",
        r"class\s+(\w+)",
        r"(?:async\s+)?function\s+(\w+)",
        r"(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s+)?\(",
        r"func\s+(?:\([^)]+\)\s+)?(\w+)",
        r"type\s+(\w+)\s+(?:struct|interface)",
        r"(?:public|private|protected)?\s*(?:static\s+)?(?:class|interface)\s+(\w+)",
    )
]
_WORD_RE = re.compile(r"\w+")


def is_code_like(term: str) -> bool:
    """Snake case, mixed letters and digits, or a common language keyword."""
    if "_" in term:
        return True
    if any(char.isdigit() for char in term) and any(char.isalpha() for char in term):
        return True
    return term in CODE_KEYWORDS


def extract_key_terms(text: str, max_terms: int) -> list[str]:
    """Most frequent lowercase content words of ``text``, at least four characters long."""
    counts: Counter[str] = Counter()
    for word in _WORD_RE.findall(text):
        term = word.lower()
        if (
            len(term) >= 4
            and term not in STOPWORDS
            and not term.isdigit()
            and not is_code_like(term)
        ):
            counts[term] += 1
    return [term for term, _ in counts.most_common(max_terms)]


def extract_code_symbols(text: str, max_symbols: int) -> list[str]:
    """Most frequent function, class and type names declared in ``text``."""
    counts: Counter[str] = Counter()
    for pattern in _SYMBOL_PATTERNS:
        for name in pattern.findall(text):
            if len(name) >= 3 and not name.startswith(("test_", "_")):
                counts[name] += 1
    return [name for name, _ in counts.most_common(max_symbols)]


def should_expand(query: str) -> bool:
    """Only queries of one to three words benefit from expansion."""
    return 0 < len(query.split()) <= 3


def expand_from_passages(
    query: str, passage_texts: Iterable[str], max_terms: int = MAX_EXPANSION_TERMS
) -> str:
    """Append up to ``max_terms`` new terms drawn from ``passage_texts`` to ``query``."""
    combined = " ".join(passage_texts)
    if not combined.strip():
        return query

    candidates = extract_key_terms(combined, max_terms)
    for symbol in extract_code_symbols(combined, max_terms):
        if symbol.lower() not in candidates:
            candidates.append(symbol)

    query_words = set(query.lower().split())
    new_terms = [term for term in candidates if term.lower() not in query_words][:max_terms]
    if not new_terms:
        return query
    return f"{query} {' '.join(new_terms)}"
