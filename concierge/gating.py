from __future__ import annotations

"""
Gating ladder: candidate pool + constraints -> :class:`GatedPool`.

Stages, each a superset of the previous one:

1. strict             enforced facets AND every hard term (phrase match)
2. facet-relaxed      every hard term, any facet values
3. term-relaxed       any token of any hard term
4. token-containment  (3) plus candidates sharing a morphology /
                      decompounding variant of a hard-term token
5. trust-fallback     nothing above survived but the terms do relate to
                      the pool; the facet-filtered pool is used as-is

The ladder stops at the first stage reaching
``max(MIN_CANDIDATES_FOR_RANKING, requested + GATING_BUFFER)`` and
otherwise settles at the widest non-empty stage.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Set

from loguru import logger

from . import config
from .bm25 import bm25_rank
from .catalog import Candidate
from .facets import candidate_matches_facets, facet_coverage
from .normalize import (
    expand_query_tokens,
    expand_token_morphology,
    matches_term_with_boundary,
    normalize_text,
    tokenize,
)


class GatingStage(str, Enum):
    STRICT = "strict"
    FACET_RELAXED = "facet-relaxed"
    TERM_RELAXED = "term-relaxed"
    TOKEN_CONTAINMENT = "token-containment"
    TRUST_FALLBACK = "trust-fallback"
    NO_MATCH = "no-match"


def term_variants(term: str) -> Set[str]:
    """Single words get plural/singular variants; phrases match as written."""
    norm = normalize_text(term)
    if not norm:
        return set()
    if " " in norm:
        return {norm}
    return expand_token_morphology(norm)


class ConstraintMatcher:
    """
    The one matcher used by gating, ranking and validation, so a candidate
    is judged the same way at every stage.
    """

    def __init__(
        self,
        hard_terms: Sequence[str],
        facets: Optional[Mapping[str, Sequence[str]]] = None,
        avoid_terms: Sequence[str] = (),
        vocabulary: Optional[Set[str]] = None,
    ):
        self.hard_terms: List[str] = [normalize_text(t) for t in hard_terms if normalize_text(t)]
        self.facets: Dict[str, List[str]] = {k: list(v) for k, v in (facets or {}).items() if v}
        self.avoid_terms: List[str] = [normalize_text(t) for t in avoid_terms if normalize_text(t)]
        self._variants = [term_variants(t) for t in self.hard_terms]
        self._avoid_variants = [term_variants(t) for t in self.avoid_terms]

        tokens: List[str] = []
        for t in self.hard_terms:
            tokens.extend(tokenize(t))
        self.term_tokens: Set[str] = set()
        for tok in tokens:
            self.term_tokens |= expand_token_morphology(tok)
        self.expanded_tokens: Set[str] = expand_query_tokens(sorted(set(tokens)), vocabulary)

    @property
    def query_tokens(self) -> List[str]:
        out: List[str] = []
        for t in self.hard_terms:
            out.extend(tokenize(t))
        return out

    def _matches_any_variant(self, candidate: Candidate, variants: Set[str]) -> bool:
        return any(matches_term_with_boundary(candidate.haystack, v, normalized=True) for v in variants)

    def matches_all_terms(self, candidate: Candidate) -> bool:
        return all(self._matches_any_variant(candidate, vs) for vs in self._variants)

    def phrase_hits(self, candidate: Candidate) -> int:
        """Hard terms matched as exact phrases (no variants)."""
        return sum(
            1 for t in self.hard_terms if matches_term_with_boundary(candidate.haystack, t, normalized=True)
        )

    def matches_any_token(self, candidate: Candidate) -> bool:
        return any(matches_term_with_boundary(candidate.haystack, tok, normalized=True) for tok in self.term_tokens)

    def token_hit(self, candidate: Candidate, tokens: Optional[Set[str]] = None) -> bool:
        """Shared token after expansion; denylisted words still need a clean match."""
        tokens = self.expanded_tokens if tokens is None else tokens
        shared = tokens.intersection(candidate.tokens)
        for tok in shared:
            if tok not in config.HARD_TERM_DENYLIST:
                return True
            if matches_term_with_boundary(candidate.haystack, tok, normalized=True):
                return True
        return False

    def avoided(self, candidate: Candidate) -> bool:
        return any(self._matches_any_variant(candidate, vs) for vs in self._avoid_variants)

    def avoid_hits(self, candidate: Candidate) -> int:
        return sum(1 for vs in self._avoid_variants if self._matches_any_variant(candidate, vs))

    def matches_facets(self, candidate: Candidate) -> bool:
        return candidate_matches_facets(candidate, self.facets)


@dataclass
class GatedPool:
    candidates: List[Candidate]
    stage: GatingStage
    matcher: ConstraintMatcher
    trust_fallback: bool = False
    enforced_facets: Dict[str, List[str]] = field(default_factory=dict)
    demoted_facets: Dict[str, float] = field(default_factory=dict)
    stage_counts: Dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.candidates)

    @property
    def no_match(self) -> bool:
        return self.stage == GatingStage.NO_MATCH

    @property
    def handles(self) -> List[str]:
        return [c.handle for c in self.candidates]

    def admits(self, candidate: Candidate) -> bool:
        """Would this candidate pass the stage the pool settled at?"""
        m = self.matcher
        if self.stage == GatingStage.TRUST_FALLBACK:
            return True
        if self.stage == GatingStage.NO_MATCH or m.avoided(candidate):
            return False
        if self.stage == GatingStage.STRICT:
            return m.matches_facets(candidate) and m.matches_all_terms(candidate)
        if self.stage == GatingStage.FACET_RELAXED:
            return m.matches_all_terms(candidate)
        relaxed = m.matches_all_terms(candidate) or m.matches_any_token(candidate)
        if self.stage == GatingStage.TERM_RELAXED:
            return relaxed
        return relaxed or m.token_hit(candidate)


def gating_threshold(requested_count: int) -> int:
    return max(config.MIN_CANDIDATES_FOR_RANKING, requested_count + config.GATING_BUFFER)


def split_facets_by_coverage(
    pool: Sequence[Candidate],
    facets: Mapping[str, Sequence[str]],
    threshold: float = config.FACET_COVERAGE_THRESHOLD,
) -> tuple:
    """(enforced, demoted) where demoted maps attribute -> coverage."""
    enforced: Dict[str, List[str]] = {}
    demoted: Dict[str, float] = {}
    for attribute, allowed in facets.items():
        if not allowed:
            continue
        coverage = facet_coverage(pool, attribute)
        if coverage < threshold:
            demoted[attribute] = coverage
            logger.warning(
                "Facet '{}' demoted to soft: coverage {:.0%} below {:.0%}",
                attribute, coverage, threshold,
            )
        else:
            enforced[attribute] = list(allowed)
    return enforced, demoted


def gate(
    pool: Sequence[Candidate],
    hard_terms: Sequence[str],
    facets: Optional[Mapping[str, Sequence[str]]] = None,
    avoid_terms: Sequence[str] = (),
    requested_count: int = config.RESULT_DEFAULT_TARGET,
) -> GatedPool:
    pool = list(pool)
    vocabulary: Set[str] = set()
    for c in pool:
        vocabulary.update(c.tokens)

    enforced, demoted = split_facets_by_coverage(pool, facets or {})
    matcher = ConstraintMatcher(hard_terms, enforced, avoid_terms, vocabulary)

    if not pool:
        logger.info("Gating: empty pool -> no match")
        return GatedPool([], GatingStage.NO_MATCH, matcher, enforced_facets=enforced, demoted_facets=demoted)

    threshold = gating_threshold(requested_count)
    facet_pool = [c for c in pool if matcher.matches_facets(c)]
    allowed = [c for c in pool if not matcher.avoided(c)]
    allowed_ids = {id(c) for c in allowed}

    strict = [c for c in facet_pool if id(c) in allowed_ids and matcher.matches_all_terms(c)]
    facet_relaxed = [c for c in allowed if matcher.matches_all_terms(c)]
    term_relaxed = [c for c in allowed if matcher.matches_all_terms(c) or matcher.matches_any_token(c)]

    in_relaxed = {id(c) for c in term_relaxed}
    containment = [c for c in allowed if id(c) in in_relaxed or matcher.token_hit(c)]
    order = bm25_rank([c.tokens for c in containment], sorted(matcher.expanded_tokens))
    containment = [containment[i] for i in order]

    stages = [
        (GatingStage.STRICT, strict),
        (GatingStage.FACET_RELAXED, facet_relaxed),
        (GatingStage.TERM_RELAXED, term_relaxed),
        (GatingStage.TOKEN_CONTAINMENT, containment),
    ]
    counts = {stage.value: len(members) for stage, members in stages}
    logger.info(
        "Gating ladder (threshold {}): {}",
        threshold, ", ".join(f"{k}={v}" for k, v in counts.items()),
    )

    def _settle(stage: GatingStage, members: List[Candidate], trust: bool = False) -> GatedPool:
        logger.info("Gating settled at {} with {} candidates", stage.value, len(members))
        return GatedPool(
            list(members), stage, matcher,
            trust_fallback=trust, enforced_facets=enforced, demoted_facets=demoted, stage_counts=counts,
        )

    for stage, members in stages:
        if len(members) >= threshold:
            return _settle(stage, members)
    for stage, members in reversed(stages):
        if members:
            return _settle(stage, members)

    # every stage empty
    if matcher.hard_terms and not any(matcher.token_hit(c) for c in pool):
        logger.info("Gating: no candidate shares a hard-term token ({}) -> no match", ", ".join(matcher.hard_terms))
        return _settle(GatingStage.NO_MATCH, [])

    fallback = facet_pool or pool
    logger.warning("Gating: all stages empty, trusting the facet-filtered pool ({} candidates)", len(fallback))
    return _settle(GatingStage.TRUST_FALLBACK, fallback, trust=True)
