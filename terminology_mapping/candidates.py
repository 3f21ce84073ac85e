from __future__ import annotations

from typing import List, Sequence

from .schemas import Candidate, CandidateGroup, CodeEntry
from .scorer import score_pair


MAX_SOURCE_GROUPS = 20
MAX_CANDIDATES_PER_SOURCE = 6


def _matches(entry: CodeEntry, q: str) -> bool:
    return q in str(entry.code or "").lower() or q in str(entry.term or "").lower()


def select_sources(query: str, source_pool: Sequence[CodeEntry], limit: int = MAX_SOURCE_GROUPS) -> List[CodeEntry]:
    q = (query or "").strip().lower()
    if not q:
        return []
    out: List[CodeEntry] = []
    for entry in source_pool:
        if _matches(entry, q):
            out.append(entry)
            if len(out) >= limit:
                break
    return out


def rank_destinations(
    source: CodeEntry,
    dest_pool: Sequence[CodeEntry],
    top_k: int = MAX_CANDIDATES_PER_SOURCE,
) -> List[Candidate]:
    scored = [Candidate(source=source, dest=d, score=score_pair(source, d)) for d in dest_pool]
    # list.sort is stable; equal scores keep dest_pool order
    scored.sort(key=lambda c: c.score, reverse=True)
    return scored[:top_k]


def generate(
    query: str,
    source_pool: Sequence[CodeEntry],
    dest_pool: Sequence[CodeEntry],
) -> List[CandidateGroup]:
    """Rank destination entries for every source entry matching ``query``.

    An empty or blank query yields no groups.
    """
    return [
        CandidateGroup(source=s, candidates=rank_destinations(s, dest_pool))
        for s in select_sources(query, source_pool)
    ]
