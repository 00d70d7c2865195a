from __future__ import annotations

"""
Local ranking: BM25 over the gated pool plus fixed boosts.

score = BM25(hard + soft tokens)
        + BOOST_HARD_PHRASE     per exact hard-term phrase
        + BOOST_FACET_MATCH     per matched facet (enforced or demoted)
        + BOOST_COLLECTION_TERM per multi-piece / collection term
        - PENALTY_AVOID_TERM    per avoid term found

Ties: in stock first, then handle ascending.
"""

from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

from loguru import logger

from . import config
from .bm25 import score_documents
from .catalog import Candidate
from .facets import count_facet_matches
from .gating import ConstraintMatcher
from .normalize import matches_term_with_boundary, tokenize


@dataclass
class ScoredCandidate:
    candidate: Candidate
    score: float
    bm25: float = 0.0
    boost: float = 0.0

    @property
    def handle(self) -> str:
        return self.candidate.handle


def _boost_hits(candidate: Candidate, boost_terms: Sequence[str]) -> int:
    hits = 0
    for term in boost_terms:
        variants = {term, term.replace(" ", "-")}
        if any(matches_term_with_boundary(candidate.haystack, v, normalized=True) for v in variants):
            hits += 1
    return hits


def rank_candidates(
    candidates: Sequence[Candidate],
    matcher: ConstraintMatcher,
    soft_terms: Sequence[str] = (),
    facets: Optional[Mapping[str, Sequence[str]]] = None,
    boost_terms: Sequence[str] = (),
) -> List[ScoredCandidate]:
    candidates = list(candidates)
    if not candidates:
        return []

    query_tokens = list(matcher.query_tokens)
    for term in soft_terms:
        query_tokens.extend(tokenize(term))

    bm25 = score_documents([c.tokens for c in candidates], query_tokens)
    facets = facets or {}

    scored: List[ScoredCandidate] = []
    for cand, base in zip(candidates, bm25):
        boost = (
            config.BOOST_HARD_PHRASE * matcher.phrase_hits(cand)
            + config.BOOST_FACET_MATCH * count_facet_matches(cand, facets)
            + config.BOOST_COLLECTION_TERM * _boost_hits(cand, boost_terms)
            - config.PENALTY_AVOID_TERM * matcher.avoid_hits(cand)
        )
        scored.append(ScoredCandidate(cand, float(base) + boost, float(base), boost))

    scored.sort(key=lambda s: (-s.score, not s.candidate.available, s.candidate.handle))
    logger.debug(
        "Ranked {} candidates; top={} ({:.2f})",
        len(scored), scored[0].handle, scored[0].score,
    )
    return scored


def build_window(ranked: Sequence[ScoredCandidate], size: int) -> List[Candidate]:
    return [s.candidate for s in ranked[:max(0, size)]]
