from __future__ import annotations

"""
Post-hoc validation of a selection against the gated pool it came from.

A reranker answer is never trusted blindly: every handle must exist, be in
stock when stock-only mode is on, and pass the same predicate the gating
ladder settled at (enforced facets and hard terms, demoted facets ignored).
Bundles are validated per item index against that item's own pool.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set

from loguru import logger

from .catalog import Candidate
from .gating import GatedPool
from .type_lexicon import (
    generate_type_anchor_variants,
    parse_type_terms_vs_attributes,
    product_matches_type_anchor,
    select_primary_type_anchor,
)


@dataclass
class ValidationReport:
    kept: List[str]
    dropped: List[str] = field(default_factory=list)
    anchor_retry: bool = False
    emptied: bool = False


def anchor_for_terms(hard_terms: Sequence[str], lexicon: Optional[Set[str]] = None) -> Optional[str]:
    """Primary type anchor of the hard terms, or the longest hard term."""
    lexicon = lexicon or set()
    type_terms: List[str] = []
    for term in hard_terms:
        found, _ = parse_type_terms_vs_attributes(term, lexicon)
        type_terms.extend(found)
    anchor = select_primary_type_anchor(type_terms)
    if anchor is None:
        anchor = select_primary_type_anchor(list(hard_terms))
    return anchor


def _basic_ok(cand: Optional[Candidate], stock_only: bool, price_ceiling: Optional[float]) -> bool:
    if cand is None:
        return False
    if stock_only and not cand.available:
        return False
    if price_ceiling is not None and cand.price is not None and cand.price > price_ceiling:
        return False
    return True


def validate_selection(
    handles: Sequence[str],
    gated: GatedPool,
    by_handle: Mapping[str, Candidate],
    stock_only: bool = False,
    price_ceiling: Optional[float] = None,
    lexicon: Optional[Set[str]] = None,
    external: bool = True,
    trust_fallback: bool = False,
) -> ValidationReport:
    if trust_fallback or gated.trust_fallback:
        kept = [h for h in handles if h in by_handle]
        return ValidationReport(kept=kept, dropped=[h for h in handles if h not in by_handle])

    kept: List[str] = []
    dropped: List[str] = []
    for h in handles:
        cand = by_handle.get(h)
        if _basic_ok(cand, stock_only, price_ceiling) and gated.admits(cand):
            kept.append(h)
        else:
            dropped.append(h)

    if dropped:
        logger.info("Validator dropped {} of {} handles at stage {}", len(dropped), len(handles), gated.stage.value)
    if kept or not handles or not external:
        return ValidationReport(kept=kept, dropped=dropped)

    anchor = anchor_for_terms(gated.matcher.hard_terms, lexicon)
    if anchor is None:
        logger.warning("Validation emptied the selection and no type anchor is available")
        return ValidationReport(kept=[], dropped=dropped, emptied=True)

    variants = generate_type_anchor_variants(anchor, lexicon or set())
    retry = [
        h for h in handles
        if _basic_ok(by_handle.get(h), stock_only, price_ceiling)
        and not gated.matcher.avoided(by_handle[h])
        and product_matches_type_anchor(by_handle[h], variants)
    ]
    logger.warning(
        "Validation emptied the selection; anchor '{}' retry kept {} of {}",
        anchor, len(retry), len(handles),
    )
    return ValidationReport(
        kept=retry,
        dropped=[h for h in handles if h not in retry],
        anchor_retry=True,
        emptied=not retry,
    )


def assign_item_indices(
    handles: Sequence[str],
    item_index_map: Mapping[str, int],
    item_pools: Sequence[GatedPool],
) -> Dict[int, List[str]]:
    """Group handles by item index; unmapped handles go to the first pool holding them."""
    members = [set(p.handles) for p in item_pools]
    grouped: Dict[int, List[str]] = {i: [] for i in range(len(item_pools))}
    for h in handles:
        idx = item_index_map.get(h)
        if idx is None or not 0 <= idx < len(item_pools):
            idx = next((i for i, m in enumerate(members) if h in m), None)
        if idx is None:
            logger.debug("Handle '{}' belongs to no bundle item", h)
            continue
        grouped[idx].append(h)
    return grouped


def validate_bundle_selection(
    handles: Sequence[str],
    item_index_map: Mapping[str, int],
    item_pools: Sequence[GatedPool],
    by_handle: Mapping[str, Candidate],
    stock_only: bool = False,
    item_ceilings: Optional[Sequence[Optional[float]]] = None,
    lexicon: Optional[Set[str]] = None,
    external: bool = True,
) -> Dict[int, ValidationReport]:
    grouped = assign_item_indices(handles, item_index_map, item_pools)
    reports: Dict[int, ValidationReport] = {}
    for idx, pool in enumerate(item_pools):
        ceiling = item_ceilings[idx] if item_ceilings and idx < len(item_ceilings) else None
        reports[idx] = validate_selection(
            grouped.get(idx, []), pool, by_handle,
            stock_only=stock_only, price_ceiling=ceiling, lexicon=lexicon, external=external,
        )
    return reports
