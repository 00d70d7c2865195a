from __future__ import annotations

"""
Catalog-derived type lexicon.

The lexicon is the set of normalized product types, tags and collection
titles seen in the pool. User text is split into *type terms* (spans found
in the lexicon, longest match first) and *attribute terms* (everything
else). The primary type anchor is the most specific type term and is used
by the validator as a last grounded check.
"""

import re
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from .catalog import Candidate
from .normalize import expand_token_morphology, matches_term_with_boundary

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")

MAX_PHRASE_WORDS = 4


def normalize_type_term(term: str) -> str:
    text = _NON_WORD_RE.sub("", (term or "").lower())
    return _WS_RE.sub(" ", text).strip()


def _labels(candidate: Candidate) -> Iterable[str]:
    yield candidate.product_type
    yield from candidate.tags
    yield from candidate.collections


def build_type_lexicon(candidates: Iterable[Candidate]) -> Set[str]:
    lexicon: Set[str] = set()
    for cand in candidates:
        for label in _labels(cand):
            norm = normalize_type_term(label)
            if norm:
                lexicon.add(norm)
    return lexicon


def parse_type_terms_vs_attributes(text: str, lexicon: Set[str]) -> Tuple[List[str], List[str]]:
    """
    Split text into (type_terms, attribute_terms), both de-duplicated in
    order of appearance. Multi-word spans (up to 4 words) are claimed
    before single words.
    """
    words = [w for w in normalize_type_term(text).split(" ") if w]
    claimed: Set[int] = set()
    found: List[Tuple[int, str]] = []

    for length in range(MAX_PHRASE_WORDS, 0, -1):
        for i in range(0, len(words) - length + 1):
            span = range(i, i + length)
            if any(j in claimed for j in span):
                continue
            phrase = " ".join(words[i:i + length])
            if phrase in lexicon or (length == 1 and not expand_token_morphology(phrase).isdisjoint(lexicon)):
                found.append((i, phrase))
                claimed.update(span)

    type_terms: List[str] = []
    for _, phrase in sorted(found):
        if phrase not in type_terms:
            type_terms.append(phrase)

    attribute_terms: List[str] = []
    for i, w in enumerate(words):
        if i not in claimed and w not in attribute_terms:
            attribute_terms.append(w)
    return type_terms, attribute_terms


def select_primary_type_anchor(type_terms: Sequence[str]) -> Optional[str]:
    """Longest (most specific) type term; ties broken alphabetically."""
    if not type_terms:
        return None
    return sorted(type_terms, key=lambda t: (-len(t), t))[0]


def generate_type_anchor_variants(anchor: str, lexicon: Set[str]) -> List[str]:
    """
    The anchor plus its plural/singular forms and lexicon entries sharing
    at least half of their significant words with it.
    """
    anchor = normalize_type_term(anchor)
    variants: List[str] = [anchor]
    words = anchor.split(" ")
    if len(words) == 1:
        for v in sorted(expand_token_morphology(anchor)):
            if v not in variants:
                variants.append(v)

    for entry in sorted(lexicon):
        if entry in variants:
            continue
        entry_words = entry.split(" ")
        shared = [
            w for w in words
            if len(w) > 3 and any(e == w or e in w or w in e for e in entry_words)
        ]
        if shared and len(shared) / max(len(words), len(entry_words)) >= 0.5:
            variants.append(entry)
    return variants


def product_matches_type_anchor(candidate: Candidate, variants: Sequence[str]) -> bool:
    """Exact label match first, then word-boundary match in the haystack."""
    wanted = {normalize_type_term(v) for v in variants}
    if any(normalize_type_term(label) in wanted for label in _labels(candidate)):
        return True
    return any(matches_term_with_boundary(candidate.haystack, v, normalized=True) for v in wanted if v)
