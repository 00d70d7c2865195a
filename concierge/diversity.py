from __future__ import annotations

"""
Family round-robin for open-ended requests and the delivery guarantee.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np
from loguru import logger

from .catalog import Candidate
from .normalize import normalize_text

OPEN_ENDED_PATTERNS = [
    re.compile(p)
    for p in (
        r"\bassortment\b",
        r"\bideas?\b",
        r"\bvariety\b",
        r"\bsurprise me\b",
        r"\banything (?:goes|works|will do)\b",
        r"\bopen to anything\b",
        r"^anything$",
        r"\bmix of\b",
        r"\bselection of\b",
        r"\bbrowse\b",
        r"\bwhatever\b",
    )
]

PRICE_BUCKET_EDGES = [50.0, 200.0]

_FAMILY_PUNCT_RE = re.compile(r"[^a-z0-9 ]+")


def is_open_ended(text: str) -> bool:
    norm = normalize_text(text)
    return any(p.search(norm) for p in OPEN_ENDED_PATTERNS)


# ---------------------------
# Families
# ---------------------------

def family_label(candidate: Candidate) -> str:
    """type -> first collection-like label -> vendor -> last title word."""
    if candidate.product_type:
        return candidate.product_type
    if candidate.collections:
        return candidate.collections[0]
    if candidate.tags:
        return candidate.tags[0]
    if candidate.vendor:
        return candidate.vendor
    words = candidate.title.split()
    return words[-1] if words else "other"


def canonical_family(label: str) -> str:
    text = _FAMILY_PUNCT_RE.sub(" ", (label or "").lower())
    words = [w for w in text.split() if w]
    if words:
        last = words[-1]
        if last.endswith("ies") and len(last) > 4:
            last = last[:-3] + "y"
        elif re.search(r"(sses|xes|zes|ches|shes)$", last):
            last = last[:-2]
        elif last.endswith("s") and not last.endswith("ss") and len(last) > 3:
            last = last[:-1]
        words[-1] = last
    return " ".join(words) or "other"


def merge_family_labels(labels: Iterable[str]) -> Dict[str, str]:
    """Map each canonical label to the shortest label it contains or is contained by."""
    unique = sorted(set(labels), key=lambda s: (len(s), s))
    merged: Dict[str, str] = {}
    for label in unique:
        target = next((u for u in unique if u != label and len(u) <= len(label) and f" {u} " in f" {label} "), None)
        merged[label] = merged.get(target, target) if target else label
    return merged


def group_by_family(candidates: Sequence[Candidate]) -> Dict[str, List[Candidate]]:
    canon = [canonical_family(family_label(c)) for c in candidates]
    merged = merge_family_labels(canon)
    groups: Dict[str, List[Candidate]] = {}
    for cand, label in zip(candidates, canon):
        groups.setdefault(merged[label], []).append(cand)
    return groups


def diversify(candidates: Sequence[Candidate], k: int) -> Tuple[List[Candidate], int]:
    """
    Round-robin across families in rank order.

    Parameters
    ----------
    candidates :
        Rank-ordered candidates.
    k :
        Maximum number of candidates to return.

    Returns
    -------
    (selected, families)
        Selected candidates and the number of families they span.
    """
    groups = group_by_family(candidates)
    if len(groups) <= 1:
        picked = list(candidates[:k])
        return picked, len(groups)

    queues = [list(members) for members in groups.values()]
    picked: List[Candidate] = []
    while len(picked) < k and any(queues):
        for queue in queues:
            if queue and len(picked) < k:
                picked.append(queue.pop(0))
    family_of = {c.handle: name for name, members in groups.items() for c in members}
    families = len({family_of[c.handle] for c in picked})
    logger.info("Diversified {} candidates across {} families", len(picked), len(groups))
    return picked, families


# ---------------------------
# Guarantee
# ---------------------------

@dataclass
class TopUp:
    added: List[Candidate] = field(default_factory=list)
    by_source: Dict[str, int] = field(default_factory=dict)


def guarantee_count(
    selected: Sequence[Candidate],
    requested_count: int,
    sources: Sequence[Tuple[str, Sequence[Candidate]]],
    stock_only: bool = False,
    price_ceiling: Optional[float] = None,
) -> TopUp:
    """
    Top up ``selected`` to ``requested_count`` from ``sources`` in order,
    skipping duplicates, out-of-stock items in stock-only mode, and items
    above the price ceiling.
    """
    out = TopUp()
    seen: Set[str] = {c.handle for c in selected}
    need = requested_count - len(selected)
    for name, pool in sources:
        if need <= 0:
            break
        for cand in pool:
            if need <= 0:
                break
            if cand.handle in seen:
                continue
            if stock_only and not cand.available:
                continue
            if price_ceiling is not None and cand.effective_price > price_ceiling:
                continue
            out.added.append(cand)
            out.by_source[name] = out.by_source.get(name, 0) + 1
            seen.add(cand.handle)
            need -= 1
    if out.added:
        logger.info("Guarantee top-up added {} ({})", len(out.added), out.by_source)
    return out


def emergency_pick(pool: Sequence[Candidate]) -> Optional[Candidate]:
    """Single best-effort item: first in-stock, else first."""
    if not pool:
        return None
    return next((c for c in pool if c.available), pool[0])


# ---------------------------
# Metrics
# ---------------------------

def measure_result_diversity(candidates: Sequence[Candidate]) -> Dict[str, float]:
    if not candidates:
        return {"count": 0, "vendors": 0, "types": 0, "price_buckets": 0, "vendor_ratio": 0.0}
    prices = np.array([c.price for c in candidates if c.price is not None], dtype="float64")
    buckets = set(np.digitize(prices, PRICE_BUCKET_EDGES).tolist()) if prices.size else set()
    vendors = {c.vendor.lower() for c in candidates if c.vendor}
    types = {canonical_family(c.product_type) for c in candidates if c.product_type}
    return {
        "count": len(candidates),
        "vendors": len(vendors),
        "types": len(types),
        "price_buckets": len(buckets),
        "vendor_ratio": round(len(vendors) / len(candidates), 3),
    }
