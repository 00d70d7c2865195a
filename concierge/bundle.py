from __future__ import annotations

"""
Multi-item bundle allocation.

Given one ranked list and one gated pool per requested item type, assemble
``requested_count`` handles:

    slot planning -> budget allocation -> primary selection
      -> proportional fill -> round-robin fill -> three-pass top-up

Every item with a non-empty pool gets a primary even when it breaks its
share of the budget. Fills and top-ups never spend beyond the total
budget headroom. Handles are only ever taken from their own item's pool.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from loguru import logger

from . import config
from .catalog import Candidate
from .gating import GatedPool
from .intent import BundleItem
from .reasoning import ReasoningEvent, ReasoningLog


@dataclass
class BundleSelection:
    handles: List[str]
    per_item: Dict[int, List[str]]
    total_price: float
    budget_exceeded: Optional[bool]
    trust_fallback: bool = False
    missing: List[str] = field(default_factory=list)
    items: List[BundleItem] = field(default_factory=list)


# ---------------------------
# Planning
# ---------------------------

def plan_slots(items: Sequence[BundleItem], requested_count: int) -> List[int]:
    """One slot per type, the remainder weighted by quantity (floor), leftovers to the first items."""
    n = len(items)
    if n == 0 or requested_count <= 0:
        return [0] * n
    if requested_count < n:
        return [1 if i < requested_count else 0 for i in range(n)]

    slots = [1] * n
    remainder = requested_count - n
    weights = [max(1, it.quantity) for it in items]
    total_weight = sum(weights)
    for i, w in enumerate(weights):
        slots[i] += (remainder * w) // total_weight
    leftover = requested_count - sum(slots)
    i = 0
    while leftover > 0:
        slots[i % n] += 1
        leftover -= 1
        i += 1
    return slots


def budget_shares(n: int) -> List[float]:
    if n <= 0:
        return []
    if n == 1:
        return [1.0]
    if n == 2:
        first = config.BUDGET_SHARE_TWO_FIRST
        return [first, 1.0 - first]
    first = config.BUDGET_SHARE_MANY_FIRST
    rest = (1.0 - first) / (n - 1)
    return [first] + [rest] * (n - 1)


def allocate_budget(items: Sequence[BundleItem], total_budget: Optional[float]) -> List[BundleItem]:
    """Front-load the total budget across items; the item's own ceiling wins when lower."""
    if total_budget is None:
        return list(items)
    out: List[BundleItem] = []
    for item, share in zip(items, budget_shares(len(items))):
        out.append(item.model_copy(update={"budget_share": share}))
    return out


def item_caps(items: Sequence[BundleItem], total_budget: Optional[float]) -> List[Optional[float]]:
    caps: List[Optional[float]] = []
    for item in items:
        cap = item.price_ceiling
        if total_budget is not None and item.budget_share is not None:
            share_cap = total_budget * item.budget_share
            cap = share_cap if cap is None else min(cap, share_cap)
        caps.append(cap)
    return caps


# ---------------------------
# Allocation
# ---------------------------

def _fits(cand: Candidate, cap: Optional[float]) -> bool:
    return cap is None or cand.effective_price <= cap + 1e-9


def _known_price(cand: Candidate) -> float:
    return cand.price if cand.price is not None else 0.0


class _Allocator:
    def __init__(
        self,
        items: Sequence[BundleItem],
        ranked: Sequence[Sequence[Candidate]],
        pools: Sequence[GatedPool],
        total_budget: Optional[float],
        stock_only: bool,
        log: ReasoningLog,
    ):
        self.items = list(items)
        self.ranked = [[c for c in r if c.available or not stock_only] for r in ranked]
        self.pools = pools
        self.total_budget = total_budget
        self.stock_only = stock_only
        self.log = log
        self.caps = item_caps(self.items, total_budget)
        self.per_item: Dict[int, List[Candidate]] = {i: [] for i in range(len(self.items))}
        self.taken: Set[str] = set()
        self.order: List[str] = []
        self.spent = 0.0
        self.trust_fallback = False

    @property
    def headroom(self) -> float:
        if self.total_budget is None:
            return math.inf
        return self.total_budget - self.spent

    @property
    def count(self) -> int:
        return len(self.order)

    def _take(self, idx: int, cand: Candidate) -> None:
        self.per_item[idx].append(cand)
        self.taken.add(cand.handle)
        self.order.append(cand.handle)
        if self.total_budget is not None:
            self.spent += _known_price(cand)

    def _free(self, idx: int) -> List[Candidate]:
        return [c for c in self.ranked[idx] if c.handle not in self.taken]

    # -- primaries --------------------------------------------------------

    def select_primaries(self) -> None:
        primaries: Dict[int, Candidate] = {}
        used: Set[str] = set()
        for idx, ranked in enumerate(self.ranked):
            free = [c for c in ranked if c.handle not in used]
            if not free:
                continue
            cap = self.caps[idx]
            pick = next((c for c in free if _fits(c, cap)), None)
            if pick is None:
                pick = min(free, key=lambda c: c.effective_price)
                self.trust_fallback = True
                logger.warning(
                    "Bundle item '{}': nothing within {}; taking cheapest {} at {}",
                    self.items[idx].label, cap, pick.handle, pick.price,
                )
                self.log.add(ReasoningEvent.PRIMARY_OVER_ALLOCATION, item=self.items[idx].label)
            primaries[idx] = pick
            used.add(pick.handle)

        if self.total_budget is not None:
            spend = sum(_known_price(c) for c in primaries.values())
            if spend > self.total_budget:
                primaries = self._repair_primaries(primaries)

        for idx in sorted(primaries):
            self._take(idx, primaries[idx])

    def _disjoint_floor(self, indices: Sequence[int]) -> Optional[Dict[int, Candidate]]:
        """Cheapest one-per-type pick with no handle shared between items, narrowest pools first."""
        floor: Dict[int, Candidate] = {}
        used: Set[str] = set()
        for idx in sorted(indices, key=lambda i: (len(self.ranked[i]), i)):
            free = [c for c in self.ranked[idx] if c.handle not in used]
            if not free:
                return None
            floor[idx] = min(free, key=lambda c: c.effective_price)
            used.add(floor[idx].handle)
        return floor

    def _repair_primaries(self, primaries: Dict[int, Candidate]) -> Dict[int, Candidate]:
        """Greedy re-pick when the cheapest disjoint one-per-type still fits the total."""
        floor = self._disjoint_floor(list(primaries))
        if floor is None or sum(_known_price(c) for c in floor.values()) > self.total_budget:
            return primaries

        chosen: Dict[int, Candidate] = {}
        used: Set[str] = set()
        spent = 0.0
        order = sorted(primaries)
        for pos, idx in enumerate(order):
            later = order[pos + 1:]
            reserved = {floor[j].handle for j in later}
            cap = self.total_budget - spent - sum(_known_price(floor[j]) for j in later)
            free = [c for c in self.ranked[idx] if c.handle not in used and c.handle not in reserved]
            # floor[idx] is always free here and within cap
            pick = next((c for c in free if _fits(c, cap)), floor[idx])
            chosen[idx] = pick
            used.add(pick.handle)
            spent += _known_price(pick)
        logger.info("Bundle primaries re-selected to fit total {}: spend {:.2f}", self.total_budget, spent)
        return chosen

    # -- fills ------------------------------------------------------------

    def proportional_fill(self, slots: Sequence[int]) -> None:
        for idx in range(len(self.items)):
            need = slots[idx] - len(self.per_item[idx])
            for cand in self._free(idx):
                if need <= 0:
                    break
                if _fits(cand, self.caps[idx]) and _fits(cand, self.headroom):
                    self._take(idx, cand)
                    need -= 1

    def round_robin_fill(self, slots: Sequence[int]) -> None:
        progressed = True
        while progressed:
            progressed = False
            for idx in range(len(self.items)):
                if len(self.per_item[idx]) >= slots[idx]:
                    continue
                free = sorted(self._free(idx), key=lambda c: c.effective_price)
                cand = next((c for c in free if _fits(c, self.headroom)), None)
                if cand is not None:
                    self._take(idx, cand)
                    progressed = True

    def _top_up_pass(self, target: int, sources: Sequence[Sequence[Candidate]], per_item_cap: bool) -> int:
        added = 0
        queues = [
            sorted(
                (c for c in src if c.handle not in self.taken),
                key=lambda c: (not c.available, c.effective_price, c.handle),
            )
            for src in sources
        ]
        progressed = True
        while progressed and self.count < target:
            progressed = False
            for idx, queue in enumerate(queues):
                if self.count >= target:
                    break
                cap = self.caps[idx] if per_item_cap else None
                while queue:
                    cand = queue.pop(0)
                    if cand.handle in self.taken:
                        continue
                    if _fits(cand, cap) and _fits(cand, self.headroom):
                        self._take(idx, cand)
                        added += 1
                        progressed = True
                        break
        return added

    def top_up(self, target: int) -> None:
        if self.count >= target:
            return
        strict = self._top_up_pass(target, self.ranked, per_item_cap=True)
        relaxed = self._top_up_pass(target, self.ranked, per_item_cap=False) if self.count < target else 0
        substitutes = 0
        if self.count < target:
            ranked_ids = [{c.handle for c in r} for r in self.ranked]
            extra = [
                [c for c in pool.candidates
                 if c.handle not in ranked_ids[idx] and (c.available or not self.stock_only)]
                for idx, pool in enumerate(self.pools)
            ]
            substitutes = self._top_up_pass(target, extra, per_item_cap=False)
        added = strict + relaxed + substitutes
        logger.info(
            "Bundle top-up: strict={} relaxed={} substitutes={} -> {}/{}",
            strict, relaxed, substitutes, self.count, target,
        )
        if added:
            self.log.add(ReasoningEvent.TOPPED_UP, count=added)

    # -- terminal ---------------------------------------------------------

    def drop_contamination(self) -> None:
        for idx, pool in enumerate(self.pools):
            members = set(pool.handles)
            kept = [c for c in self.per_item[idx] if c.handle in members]
            dropped = [c.handle for c in self.per_item[idx] if c.handle not in members]
            if dropped:
                logger.error("Bundle item '{}': dropping out-of-pool handles {}", self.items[idx].label, dropped)
                self.log.add(ReasoningEvent.CONTAMINATION_DROPPED, item=self.items[idx].label, handles=dropped)
                self.order = [h for h in self.order if h not in dropped]
                self.taken.difference_update(dropped)
                self.per_item[idx] = kept


def allocate_bundle(
    items: Sequence[BundleItem],
    ranked: Sequence[Sequence[Candidate]],
    pools: Sequence[GatedPool],
    requested_count: int,
    total_budget: Optional[float] = None,
    stock_only: bool = False,
    log: Optional[ReasoningLog] = None,
) -> BundleSelection:
    """
    ``ranked[i]`` is item i's preferred order (validated reranker picks first,
    then local rank); ``pools[i]`` is item i's full gated pool.
    """
    log = log if log is not None else ReasoningLog()
    items = allocate_budget(items, total_budget)
    slots = plan_slots(items, requested_count)
    logger.info("Bundle slot plan: {}", {it.label: s for it, s in zip(items, slots)})

    alloc = _Allocator(items, ranked, pools, total_budget, stock_only, log)
    alloc.select_primaries()
    alloc.proportional_fill(slots)
    alloc.round_robin_fill(slots)
    alloc.top_up(requested_count)
    alloc.drop_contamination()

    by_handle = {c.handle: c for i in alloc.per_item for c in alloc.per_item[i]}
    handles = alloc.order[:requested_count]
    kept = set(handles)

    missing = [
        items[i].label for i in range(len(items))
        if not any(c.handle in kept for c in alloc.per_item[i])
    ]
    if missing:
        logger.warning("Bundle items with no match: {}", missing)
        log.add(ReasoningEvent.BUNDLE_ITEM_MISSING, items=", ".join(missing))

    total = sum(_known_price(by_handle[h]) for h in handles)

    budget_exceeded: Optional[bool] = None
    if total_budget is not None:
        budget_exceeded = total > total_budget + 1e-9
        if budget_exceeded:
            logger.warning("Bundle total {:.2f} exceeds budget {:.2f}", total, total_budget)
            log.add(ReasoningEvent.BUDGET_EXCEEDED, total=total, budget=total_budget)
        else:
            log.add(ReasoningEvent.WITHIN_BUDGET, total=total, budget=total_budget)

    return BundleSelection(
        handles=handles,
        per_item={i: [c.handle for c in cands if c.handle in kept] for i, cands in alloc.per_item.items()},
        total_price=round(total, 2),
        budget_exceeded=budget_exceeded,
        trust_fallback=alloc.trust_fallback,
        missing=missing,
        items=items,
    )
