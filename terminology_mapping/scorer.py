from __future__ import annotations

import re
from typing import Iterable, List, Set

from .schemas import CodeEntry


STOP_WORDS = frozenset({"of", "and", "the", "a", "an", "to", "in", "on", "for"})

CODE_EXACT_WEIGHT = 0.65
CODE_PREFIX_WEIGHT = 0.25
TERM_JACCARD_WEIGHT = 0.6
LONG_TOKEN_BONUS = 0.05
LONG_TOKEN_MIN_LENGTH = 6

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    text = _NON_ALNUM.sub(" ", str(text or "").lower())
    return _WHITESPACE.sub(" ", text).strip()


def tokens(text: str) -> List[str]:
    return [t for t in normalize(text).split(" ") if t and t not in STOP_WORDS]


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a: Set[str] = set(a)
    set_b: Set[str] = set(b)
    union = len(set_a | set_b)
    if not union:
        return 0.0
    return len(set_a & set_b) / union


def score_pair(source: CodeEntry, dest: CodeEntry) -> float:
    """Similarity of two catalog entries in [0, 1].

    Code agreement and term token overlap are summed with fixed weights. The
    long-token bonus is computed from the source side, but since it needs the
    token present in both terms the result does not change when the
    arguments are swapped.
    """
    score = 0.0
    code_a = str(source.code or "").lower()
    code_b = str(dest.code or "").lower()
    if code_a and code_a == code_b:
        score += CODE_EXACT_WEIGHT
    elif code_a and code_b and (code_a.startswith(code_b) or code_b.startswith(code_a)):
        score += CODE_PREFIX_WEIGHT

    source_tokens = tokens(source.term)
    dest_tokens = set(tokens(dest.term))
    score += TERM_JACCARD_WEIGHT * jaccard(source_tokens, dest_tokens)

    long_tokens = {t for t in source_tokens if len(t) >= LONG_TOKEN_MIN_LENGTH}
    if long_tokens & dest_tokens:
        score += LONG_TOKEN_BONUS

    return min(1.0, score)
