from __future__ import annotations

"""
Facet vocabulary and facet matching.

A facet is a structured attribute constraint (size, color, material or any
other option name) with one or more allowed values. Values are compared
case-insensitively with a small size-equivalence table, then by containment
either way ('navy' matches 'Navy Blue').
"""

import re
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Sequence, Set

if TYPE_CHECKING:  # pragma: no cover
    from .catalog import Candidate

CORE_ATTRIBUTES = ("size", "color", "material")

_OPTION_ALIASES: Dict[str, str] = {
    "colour": "color",
    "colours": "color",
    "colors": "color",
    "sizes": "size",
    "sizing": "size",
    "materials": "material",
    "fabric": "material",
}

# each group is one size; the first entry is the canonical label
SIZE_EQUIVALENTS: List[Sequence[str]] = [
    ("xxs", "extra extra small", "2xs"),
    ("xs", "extra small", "x-small", "extra-small"),
    ("s", "small", "sm"),
    ("m", "medium", "med"),
    ("l", "large", "lg"),
    ("xl", "extra large", "x-large", "extra-large"),
    ("xxl", "2xl", "extra extra large", "xx-large"),
    ("xxxl", "3xl", "xxx-large"),
]

_SIZE_CANON: Dict[str, str] = {alias: group[0] for group in SIZE_EQUIVALENTS for alias in group}

_CF_TAG_RE = re.compile(r"^cf[-_:]([a-z]+)[-_:](.+)$")
_KV_TAG_RE = re.compile(r"^(size|sizes|color|colour|material|fabric)\s*[-_:]\s*(.+)$")


def normalize_option_name(name: str) -> str:
    key = re.sub(r"\s+", " ", (name or "").strip().lower())
    return _OPTION_ALIASES.get(key, key)


def _norm_value(value: str) -> str:
    return re.sub(r"\s+", " ", str(value).strip().lower())


def canonical_size(value: str) -> str:
    v = _norm_value(value)
    return _SIZE_CANON.get(v, v)


def value_matches_constraint(value: str, wanted: str, attribute: Optional[str] = None) -> bool:
    """True if a catalog facet value satisfies one wanted value."""
    v = _norm_value(value)
    w = _norm_value(wanted)
    if not v or not w:
        return False
    if v == w:
        return True
    if attribute in (None, "size"):
        cv, cw = _SIZE_CANON.get(v), _SIZE_CANON.get(w)
        if cv is not None and cw is not None:
            return cv == cw
        if attribute == "size":
            # 'm' must not match 'medium grey' by containment
            return False
    if len(w) < 3 or len(v) < 3:
        return False
    return w in v or v in w


def extract_constraints_from_tags(tags: Iterable[str]) -> Dict[str, List[str]]:
    """
    Structured tags -> {attribute: [values]}.

    Understands 'cf-size-m', 'size-m', 'size:m' and 'colour: navy'.
    """
    out: Dict[str, List[str]] = {}
    for tag in tags:
        t = str(tag).strip().lower()
        if not t:
            continue
        m = _CF_TAG_RE.match(t) or _KV_TAG_RE.match(t)
        if not m:
            continue
        key = normalize_option_name(m.group(1))
        value = m.group(2).replace("-", " ").replace("_", " ").strip()
        if not value:
            continue
        bucket = out.setdefault(key, [])
        if value not in bucket:
            bucket.append(value)
    return out


def discover_facet_vocabulary(candidates: Iterable["Candidate"]) -> Dict[str, Set[str]]:
    """Attribute -> lower-cased values observed in the pool."""
    vocab: Dict[str, Set[str]] = {a: set() for a in CORE_ATTRIBUTES}
    for cand in candidates:
        for attr in CORE_ATTRIBUTES:
            vocab[attr].update(_norm_value(v) for v in cand.facet_values(attr))
        for key, values in cand.option_values.items():
            vocab.setdefault(key, set()).update(_norm_value(v) for v in values)
    return {k: {v for v in vals if v} for k, vals in vocab.items()}


def merge_constraints(
    global_facets: Mapping[str, Sequence[str]],
    item_facets: Optional[Mapping[str, Sequence[str]]] = None,
) -> Dict[str, List[str]]:
    """Item facets override global facets attribute by attribute."""
    merged = {k: list(v) for k, v in global_facets.items() if v}
    for k, v in (item_facets or {}).items():
        if v:
            merged[k] = list(v)
    return merged


def facet_coverage(candidates: Sequence["Candidate"], attribute: str) -> float:
    """Share of the pool carrying any value for `attribute`."""
    if not candidates:
        return 0.0
    carrying = sum(1 for c in candidates if c.facet_values(attribute))
    return carrying / len(candidates)


def candidate_matches_facet(candidate: "Candidate", attribute: str, allowed: Sequence[str]) -> bool:
    values = candidate.facet_values(attribute)
    if not values or not allowed:
        # absent data is not a violation
        return True
    return any(value_matches_constraint(v, w, attribute) for v in values for w in allowed)


def candidate_matches_facets(candidate: "Candidate", facets: Mapping[str, Sequence[str]]) -> bool:
    return all(candidate_matches_facet(candidate, attr, allowed) for attr, allowed in facets.items())


def count_facet_matches(candidate: "Candidate", facets: Mapping[str, Sequence[str]]) -> int:
    """Facets the candidate positively carries a matching value for."""
    hits = 0
    for attr, allowed in facets.items():
        values = candidate.facet_values(attr)
        if values and any(value_matches_constraint(v, w, attr) for v in values for w in allowed):
            hits += 1
    return hits
