from __future__ import annotations

"""
End-to-end selection pipeline for one session.

    idempotency guard -> catalog fetch (filter, then per-term query)
      -> intent -> pre-gating relaxation
      -> single item: gate -> rank -> window -> rerank -> validate -> guarantee
      -> bundle:      gate/rank per item -> one rerank -> per-item validate -> allocate
      -> reasoning -> billing -> persistence

Recoverable problems are recorded as reasoning events and error kinds on the
result. Only catalog or persistence failures raise (``PipelineError``);
:func:`run_session` turns those into a FAILED session.
"""

import threading
import time
from collections import Counter, OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from . import config
from .bundle import allocate_budget, allocate_bundle, item_caps, plan_slots
from .catalog import Candidate, CatalogSource
from .config import SessionStartRequest
from .diversity import (
    diversify,
    emergency_pick,
    guarantee_count,
    is_open_ended,
    measure_result_diversity,
)
from .errors import ErrorKind, PersistenceError, PipelineError
from .facets import merge_constraints
from .gating import GatedPool, GatingStage, gate
from .intent import Intent, SemanticIntentClient, parse_intent
from .ranking import build_window, rank_candidates
from .reasoning import ReasoningEvent, ReasoningLog, build_suggestions
from .rerank import RerankerClient, RerankOutcome, deterministic_fallback
from .type_lexicon import build_type_lexicon
from .validate import validate_bundle_selection, validate_selection


class Source(str, Enum):
    RERANKED = "reranked"
    DETERMINISTIC_FALLBACK = "deterministic-fallback"
    EMERGENCY_UNMATCHED = "emergency-unmatched"


class Outcome(str, Enum):
    COMPLETE = "complete"
    NO_MATCH = "no-match"
    PARTIAL_BUNDLE = "partial-bundle"
    BUDGET_UNATTAINABLE = "budget-unattainable"
    EMERGENCY_UNMATCHED = "emergency-unmatched"
    FAILED = "failed"


class SessionStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class SelectionResult(BaseModel):
    session_id: str
    handles: List[str] = Field(default_factory=list)
    source: Optional[Source] = None
    outcome: Outcome = Outcome.COMPLETE
    budget_exceeded: Optional[bool] = None
    total_price: float = 0.0
    reasoning: str = ""
    trust_fallback: bool = False
    stage: Optional[str] = None
    missing_items: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    errors: List[ErrorKind] = Field(default_factory=list)
    credits_charged: float = 0.0
    overage_delta: float = 0.0
    rerank_seconds: float = 0.0
    diversity: Dict[str, float] = Field(default_factory=dict)


# ---------------------------
# Read-through TTL cache
# ---------------------------

class TTLCache:
    """Thread-safe, size-bounded, time-boxed cache for catalog lookups."""

    def __init__(
        self,
        ttl_seconds: float = config.CACHE_TTL_SECONDS,
        max_entries: int = config.CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[Tuple[Any, ...], Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Tuple[Any, ...]) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: Tuple[Any, ...], value: Any) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def get_or_set(self, key: Tuple[Any, ...], factory: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = factory()
            self.set(key, value)
        return value

    def __len__(self) -> int:
        return len(self._data)


# ---------------------------
# Persistence
# ---------------------------

@dataclass
class StoredSession:
    status: SessionStatus
    handles: List[str] = field(default_factory=list)
    reasoning: str = ""
    result: Optional[SelectionResult] = None

    @property
    def terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETE, SessionStatus.FAILED)


class ResultStore(Protocol):
    def get(self, session_key: str) -> Optional[StoredSession]:
        ...

    def mark_processing(self, session_key: str) -> None:
        ...

    def save_result(
        self, session_key: str, handles: Sequence[str], reasoning: str,
        result: Optional[SelectionResult] = None,
    ) -> None:
        ...

    def mark_terminal(self, session_key: str, status: SessionStatus) -> None:
        ...


class InMemoryResultStore:
    def __init__(self) -> None:
        self._sessions: Dict[str, StoredSession] = {}
        self._lock = threading.Lock()

    def get(self, session_key: str) -> Optional[StoredSession]:
        with self._lock:
            return self._sessions.get(session_key)

    def mark_processing(self, session_key: str) -> None:
        with self._lock:
            current = self._sessions.get(session_key)
            if current is None or not current.terminal:
                self._sessions[session_key] = StoredSession(SessionStatus.PROCESSING)

    def save_result(
        self, session_key: str, handles: Sequence[str], reasoning: str,
        result: Optional[SelectionResult] = None,
    ) -> None:
        with self._lock:
            current = self._sessions.get(session_key) or StoredSession(SessionStatus.PROCESSING)
            current.handles = list(handles)
            current.reasoning = reasoning
            current.result = result
            self._sessions[session_key] = current

    def mark_terminal(self, session_key: str, status: SessionStatus) -> None:
        with self._lock:
            current = self._sessions.get(session_key)
            if current is None:
                raise PersistenceError(f"Unknown session '{session_key}'")
            current.status = status


# ---------------------------
# Billing
# ---------------------------

@dataclass
class ChargeReceipt:
    credits_charged: float
    overage_delta: float


def credits_for_delivered_count(count: int) -> float:
    if count <= 0:
        return 0.0
    if count <= 8:
        return 1.0
    if count <= 12:
        return 1.5
    return 2.0


class BillingSink(Protocol):
    def charge_for_delivered(self, session_key: str, delivered_count: int) -> ChargeReceipt:
        ...


class LedgerBillingSink:
    """Tiered credits against an included allowance; each session charged once."""

    def __init__(self, included_credits: float = config.INCLUDED_CREDITS):
        self.included_credits = included_credits
        self.used_credits = 0.0
        self.charges: Dict[str, ChargeReceipt] = {}
        self._lock = threading.Lock()

    def charge_for_delivered(self, session_key: str, delivered_count: int) -> ChargeReceipt:
        with self._lock:
            if session_key in self.charges:
                logger.info("Session '{}' already charged", session_key)
                return self.charges[session_key]
            credits = credits_for_delivered_count(delivered_count)
            before = max(0.0, self.used_credits - self.included_credits)
            self.used_credits += credits
            after = max(0.0, self.used_credits - self.included_credits)
            receipt = ChargeReceipt(credits_charged=credits, overage_delta=after - before)
            self.charges[session_key] = receipt
        logger.info("Charged {} credits for {} delivered ({})", credits, delivered_count, session_key)
        return receipt


# ---------------------------
# Pipeline state
# ---------------------------

@dataclass
class PipelineState:
    request: SessionStartRequest
    log: ReasoningLog = field(default_factory=ReasoningLog)
    intent: Optional[Intent] = None
    lexicon: Set[str] = field(default_factory=set)
    base_pool: List[Candidate] = field(default_factory=list)
    pool: List[Candidate] = field(default_factory=list)
    stock_only: bool = False
    price_ceiling: Optional[float] = None
    trust_fallback: bool = False
    stage: Optional[str] = None
    errors: List[ErrorKind] = field(default_factory=list)
    rerank_seconds: float = 0.0

    @property
    def session_id(self) -> str:
        return self.request.session_id

    @property
    def requested(self) -> int:
        return self.request.result_count

    def error(self, kind: ErrorKind) -> None:
        if kind not in self.errors:
            self.errors.append(kind)


@dataclass
class Collaborators:
    catalog: CatalogSource
    reranker: RerankerClient
    store: ResultStore
    billing: BillingSink
    intent_client: Optional[SemanticIntentClient] = None
    cache: TTLCache = field(default_factory=TTLCache)


# ---------------------------
# Fetch + pre-filters
# ---------------------------

def _dedupe_candidates(candidates: Sequence[Candidate]) -> List[Candidate]:
    seen: Set[str] = set()
    out: List[Candidate] = []
    for c in candidates:
        if c.handle not in seen:
            seen.add(c.handle)
            out.append(c)
    return out


def fetch_candidate_pool(state: PipelineState, deps: Collaborators, terms: Sequence[str]) -> List[Candidate]:
    """fetch_by_filter first, then fetch_by_query per term up to the pool cap."""
    shop = state.request.shop
    pool = list(state.base_pool)
    for term in terms:
        if len(pool) >= config.PRODUCT_POOL_LIMIT_MAX:
            break
        target = config.PRODUCT_POOL_LIMIT_MAX - len(pool)
        hits = deps.cache.get_or_set(
            ("search", shop, term),
            lambda term=term: deps.catalog.fetch_by_query(shop, term, config.PRODUCT_POOL_LIMIT_MAX),
        )
        pool = _dedupe_candidates(pool + list(hits)[:target])
    logger.info("Candidate pool: {} (base {})", len(pool), len(state.base_pool))
    return pool[: config.PRODUCT_POOL_LIMIT_MAX]


def apply_pre_filters(state: PipelineState, pool: Sequence[Candidate], price_ceiling: Optional[float]) -> None:
    """
    Price ceiling and stock filter, relaxed (price, then stock, then both)
    while the filtered pool is below MIN_CANDIDATES_FOR_DELIVERY.
    """
    want_stock = state.request.in_stock_only

    def _filter(use_price: bool, use_stock: bool) -> List[Candidate]:
        return [
            c for c in pool
            if (not use_price or c.effective_price <= price_ceiling)
            and (not use_stock or c.available)
        ]

    options = [(price_ceiling is not None, want_stock)]
    if price_ceiling is not None:
        options.append((False, want_stock))
    if want_stock:
        options.append((price_ceiling is not None, False))
    if price_ceiling is not None and want_stock:
        options.append((False, False))

    chosen = options[0]
    filtered = _filter(*chosen)
    best = (chosen, filtered)
    for option in options:
        filtered = _filter(*option)
        if len(filtered) >= config.MIN_CANDIDATES_FOR_DELIVERY:
            best = (option, filtered)
            break
        if len(filtered) > len(best[1]):
            best = (option, filtered)

    (use_price, use_stock), filtered = best
    if price_ceiling is not None and not use_price:
        state.log.add(ReasoningEvent.RELAXED_PRICE, ceiling=price_ceiling)
    if want_stock and not use_stock:
        state.log.add(ReasoningEvent.RELAXED_STOCK)
    state.pool = filtered
    state.stock_only = use_stock
    state.price_ceiling = price_ceiling if use_price else None
    logger.info(
        "Pre-filters: {} -> {} (price={}, stock={})",
        len(pool), len(filtered), use_price, use_stock,
    )


def _record_gating(state: PipelineState, gated: GatedPool) -> None:
    for attribute, coverage in gated.demoted_facets.items():
        state.log.add(ReasoningEvent.FACET_DEMOTED, attribute=attribute, coverage=coverage)
    for attribute, values in gated.enforced_facets.items():
        state.log.add(ReasoningEvent.MATCHED_FACET, attribute=attribute, values=" or ".join(values))
    if gated.stage in (GatingStage.TERM_RELAXED, GatingStage.TOKEN_CONTAINMENT, GatingStage.FACET_RELAXED):
        state.log.add(ReasoningEvent.RELAXED_STAGE, stage=gated.stage.value)
    if gated.trust_fallback:
        state.trust_fallback = True
        state.log.add(ReasoningEvent.TRUST_FALLBACK)


def _enrich(deps: Collaborators, window: Sequence[Candidate]) -> List[Candidate]:
    descriptions = deps.catalog.fetch_descriptions([c.handle for c in window])
    return [c.with_description(descriptions[c.handle]) if descriptions.get(c.handle) else c for c in window]


def _record_rerank(state: PipelineState, outcome: RerankOutcome) -> None:
    state.rerank_seconds = outcome.elapsed_s
    if not outcome.succeeded:
        state.error(ErrorKind.RERANK_FAILURE)
        state.log.add(ReasoningEvent.RERANK_FAILED, failure=outcome.failure)


def _alternatives(pool: Sequence[Candidate], limit: int = 5) -> List[str]:
    counts = Counter(c.product_type.lower() for c in pool if c.product_type)
    return [t for t, _ in counts.most_common(limit)]


def _no_match(state: PipelineState, terms: Sequence[str]) -> SelectionResult:
    intent = state.intent
    state.error(ErrorKind.NO_MATCH)
    state.log.add(ReasoningEvent.NO_MATCH, terms=", ".join(terms))
    logger.info("No match for {}", list(terms))
    return SelectionResult(
        session_id=state.session_id,
        outcome=Outcome.NO_MATCH,
        reasoning=state.log.render(),
        stage=GatingStage.NO_MATCH.value,
        suggestions=build_suggestions(
            intent.price_ceiling if intent else None,
            dict(intent.facets) if intent else None,
            _alternatives(state.base_pool),
        ),
        errors=list(state.errors),
    )


# ---------------------------
# Single item
# ---------------------------

def select_single(state: PipelineState, deps: Collaborators) -> SelectionResult:
    intent = state.intent
    gated = gate(state.pool, intent.hard_terms, intent.facets, intent.avoid_terms, state.requested)
    state.stage = gated.stage.value
    if gated.no_match:
        return _no_match(state, intent.hard_terms or [intent.raw_text])
    _record_gating(state, gated)

    ranked = rank_candidates(
        gated.candidates, gated.matcher, intent.soft_terms, intent.facets, intent.boost_terms,
    )
    if is_open_ended(intent.raw_text):
        window, families = diversify([s.candidate for s in ranked], config.RERANK_WINDOW_SINGLE)
        if families > 1:
            state.log.add(ReasoningEvent.SWAPPED_FOR_DIVERSITY, families=families)
    else:
        window = build_window(ranked, config.RERANK_WINDOW_SINGLE)
    window = _enrich(deps, window)
    by_handle = {c.handle: c for c in gated.candidates}
    by_handle.update({c.handle: c for c in window})

    outcome = deps.reranker.rerank(
        state.session_id, intent.summary(), window, state.requested,
        conversation=state.request.conversation,
    )
    _record_rerank(state, outcome)

    # the reranker cannot widen what the gated pool admits
    trust = state.trust_fallback
    if outcome.trust_fallback and not trust:
        logger.info("Reranker asked for trust fallback; ignored at stage {}", gated.stage.value)
    report = validate_selection(
        outcome.handles, gated, by_handle,
        stock_only=state.stock_only, lexicon=state.lexicon,
        external=outcome.succeeded, trust_fallback=trust,
    )
    rejected = set(report.dropped)
    if report.dropped:
        state.log.add(ReasoningEvent.VALIDATION_DROPPED, handles=report.dropped)
    if report.anchor_retry:
        state.log.add(ReasoningEvent.ANCHOR_RETRY)
    if report.emptied:
        state.error(ErrorKind.VALIDATION_EMPTIED)
        state.log.add(ReasoningEvent.VALIDATION_EMPTIED)
        outcome = deterministic_fallback(window, state.requested, failure="validation emptied",
                                         elapsed_s=outcome.elapsed_s)
        report = validate_selection(outcome.handles, gated, by_handle,
                                    stock_only=state.stock_only, external=False, trust_fallback=trust)
        rejected.update(report.dropped)

    selected = [by_handle[h] for h in report.kept][: state.requested]
    source = Source.RERANKED if outcome.succeeded else Source.DETERMINISTIC_FALLBACK

    if len(selected) < state.requested:
        # validation may have seen descriptions the gated pool never had
        ordered_gated = [s.candidate for s in ranked if s.handle not in rejected]
        sources: List[Tuple[str, Sequence[Candidate]]] = [
            ("gated", ordered_gated),
            ("pool", [c for c in state.pool if c.handle not in rejected and (trust or gated.admits(c))]),
        ]
        if trust:
            sources.append(("base", state.base_pool))
        topup = guarantee_count(selected, state.requested, sources,
                                stock_only=state.stock_only, price_ceiling=state.price_ceiling)
        if topup.added:
            selected.extend(topup.added)
            state.log.add(ReasoningEvent.TOPPED_UP, count=len(topup.added))

    result_outcome = Outcome.COMPLETE
    if not selected:
        pick = emergency_pick([c for c in state.pool or state.base_pool if c.handle not in rejected])
        if pick is None:
            return _no_match(state, intent.hard_terms or [intent.raw_text])
        selected = [pick]
        source = Source.EMERGENCY_UNMATCHED
        result_outcome = Outcome.EMERGENCY_UNMATCHED
        state.error(ErrorKind.EMERGENCY_UNMATCHED)
        state.log.add(ReasoningEvent.EMERGENCY_UNMATCHED)
        logger.warning("Emergency pick {} for session {}", pick.handle, state.session_id)

    total = sum(c.price for c in selected if c.price is not None)
    budget_exceeded: Optional[bool] = None
    if intent.price_ceiling is not None:
        budget_exceeded = any(c.effective_price > intent.price_ceiling for c in selected)

    return SelectionResult(
        session_id=state.session_id,
        handles=[c.handle for c in selected],
        source=source,
        outcome=result_outcome,
        budget_exceeded=budget_exceeded,
        total_price=round(total, 2),
        reasoning=state.log.render(outcome.reasoning if result_outcome == Outcome.COMPLETE else None),
        trust_fallback=trust,
        stage=state.stage,
        errors=list(state.errors),
        rerank_seconds=state.rerank_seconds,
        diversity=measure_result_diversity(selected),
    )


# ---------------------------
# Bundle
# ---------------------------

def select_bundle(state: PipelineState, deps: Collaborators) -> SelectionResult:
    intent = state.intent
    bundle = intent.bundle
    items = allocate_budget(bundle.items, bundle.total_budget)
    slots = plan_slots(items, state.requested)

    pools: List[GatedPool] = []
    ranked_lists: List[List[Candidate]] = []
    for idx, item in enumerate(items):
        facets = merge_constraints(intent.facets, item.facets)
        avoid = list(intent.avoid_terms) + list(item.exclude_terms)
        gated = gate(state.pool, item.hard_terms, facets, avoid, max(1, slots[idx]))
        pools.append(gated)
        if gated.no_match:
            ranked_lists.append([])
            continue
        _record_gating(state, gated)
        ranked = rank_candidates(
            gated.candidates, gated.matcher,
            list(item.include_terms) + list(intent.soft_terms), facets, intent.boost_terms,
        )
        ranked_lists.append([s.candidate for s in ranked[: config.PRE_RANK_PER_ITEM]])

    state.stage = ",".join(p.stage.value for p in pools)
    if all(p.no_match for p in pools):
        return _no_match(state, [it.label for it in items])

    window: List[Candidate] = []
    index_map: Dict[str, int] = {}
    for idx, ranked in enumerate(ranked_lists):
        for cand in ranked[: config.RERANK_WINDOW_PER_ITEM]:
            if cand.handle not in index_map:
                index_map[cand.handle] = idx
                window.append(cand)
    window = _enrich(deps, window)
    enriched = {c.handle: c for c in window}
    by_handle: Dict[str, Candidate] = {}
    for pool in pools:
        by_handle.update({c.handle: c for c in pool.candidates})
    by_handle.update(enriched)

    caps = item_caps(items, bundle.total_budget)
    outcome = deps.reranker.rerank(
        state.session_id, intent.summary(), window, state.requested,
        per_item_budget=caps, conversation=state.request.conversation, item_index_map=index_map,
    )
    _record_rerank(state, outcome)

    if outcome.trust_fallback:
        logger.info("Reranker asked for trust fallback; item pools keep their own")
    item_ceilings = [it.price_ceiling for it in items]
    reports = validate_bundle_selection(
        outcome.handles, outcome.item_index_map or index_map, pools, by_handle,
        stock_only=state.stock_only, item_ceilings=item_ceilings, lexicon=state.lexicon,
        external=outcome.succeeded,
    )
    rejected: Dict[int, Set[str]] = {idx: set(r.dropped) for idx, r in reports.items()}
    if outcome.succeeded and outcome.handles and not any(r.kept for r in reports.values()):
        state.error(ErrorKind.VALIDATION_EMPTIED)
        state.log.add(ReasoningEvent.VALIDATION_EMPTIED)
        outcome = deterministic_fallback(window, state.requested, index_map,
                                         failure="validation emptied", elapsed_s=outcome.elapsed_s)
        reports = validate_bundle_selection(
            outcome.handles, index_map, pools, by_handle,
            stock_only=state.stock_only, item_ceilings=item_ceilings, external=False,
        )
        for idx, r in reports.items():
            rejected[idx].update(r.dropped)

    preferred: List[List[Candidate]] = []
    for idx, ranked in enumerate(ranked_lists):
        first = [enriched.get(h) or by_handle[h] for h in reports[idx].kept]
        seen = {c.handle for c in first} | rejected[idx]
        preferred.append(first + [enriched.get(c.handle, c) for c in ranked if c.handle not in seen])

    # an item never gets back a handle its own validation rejected
    allowed_pools = [
        replace(p, candidates=[c for c in p.candidates if c.handle not in rejected[idx]])
        for idx, p in enumerate(pools)
    ]
    selection = allocate_bundle(
        bundle.items, preferred, allowed_pools, state.requested,
        total_budget=bundle.total_budget, stock_only=state.stock_only, log=state.log,
    )
    trust = state.trust_fallback or selection.trust_fallback

    result_outcome = Outcome.COMPLETE
    if selection.missing:
        state.error(ErrorKind.PARTIAL_BUNDLE)
        result_outcome = Outcome.PARTIAL_BUNDLE
    if selection.budget_exceeded:
        state.error(ErrorKind.BUDGET_UNATTAINABLE)
        if result_outcome == Outcome.COMPLETE:
            result_outcome = Outcome.BUDGET_UNATTAINABLE

    delivered = [by_handle[h] for h in selection.handles]
    return SelectionResult(
        session_id=state.session_id,
        handles=selection.handles,
        source=Source.RERANKED if outcome.succeeded else Source.DETERMINISTIC_FALLBACK,
        outcome=result_outcome,
        budget_exceeded=selection.budget_exceeded,
        total_price=selection.total_price,
        reasoning=state.log.render(outcome.reasoning),
        trust_fallback=trust,
        stage=state.stage,
        missing_items=selection.missing,
        errors=list(state.errors),
        rerank_seconds=state.rerank_seconds,
        diversity=measure_result_diversity(delivered),
    )


# ---------------------------
# Entry points
# ---------------------------

def _stored_result(stored: StoredSession, session_id: str) -> SelectionResult:
    if stored.result is not None:
        return stored.result
    return SelectionResult(
        session_id=session_id,
        handles=list(stored.handles),
        reasoning=stored.reasoning,
        outcome=Outcome.FAILED if stored.status == SessionStatus.FAILED else Outcome.COMPLETE,
    )


def run_pipeline(request: SessionStartRequest, deps: Collaborators) -> SelectionResult:
    stored = deps.store.get(request.session_id)
    if stored is not None and stored.terminal:
        logger.info("Session '{}' already {}; returning stored result", request.session_id, stored.status.value)
        return _stored_result(stored, request.session_id)

    started = time.monotonic()
    state = PipelineState(request=request)
    state.base_pool = deps.catalog.fetch_by_filter(request.shop, config.PRODUCT_POOL_LIMIT_FIRST)
    state.lexicon = build_type_lexicon(state.base_pool)

    state.intent = parse_intent(
        request.query, answers=request.answers, lexicon=state.lexicon,
        client=deps.intent_client, conversation=request.conversation,
    )
    intent = state.intent
    logger.info("Intent: {}", intent.summary())

    terms = list(intent.hard_terms)
    if intent.bundle is not None:
        terms.extend(t for it in intent.bundle.items for t in it.hard_terms if t not in terms)
    pool = fetch_candidate_pool(state, deps, terms)
    apply_pre_filters(state, pool, intent.price_ceiling)

    if intent.is_bundle:
        result = select_bundle(state, deps)
    else:
        result = select_single(state, deps)

    if result.outcome != Outcome.NO_MATCH:
        delivered = 0 if result.source == Source.EMERGENCY_UNMATCHED else len(result.handles)
        receipt = deps.billing.charge_for_delivered(request.session_id, delivered)
        result = result.model_copy(update={
            "credits_charged": receipt.credits_charged,
            "overage_delta": receipt.overage_delta,
        })

    deps.store.save_result(request.session_id, result.handles, result.reasoning, result)
    deps.store.mark_terminal(request.session_id, SessionStatus.COMPLETE)
    logger.info(
        "Session '{}' {} with {} handles ({}) in {:.2f}s; diversity={}",
        request.session_id, result.outcome.value, len(result.handles),
        result.source.value if result.source else "none", time.monotonic() - started, result.diversity,
    )
    return result


def run_session(request: SessionStartRequest, deps: Collaborators) -> SelectionResult:
    """Background-task entry: any fatal error marks the session FAILED."""
    try:
        return run_pipeline(request, deps)
    except PipelineError as e:
        logger.error("Session '{}' failed: {}", request.session_id, e)
        return _mark_failed(request, deps, str(e))
    except Exception as e:
        logger.exception("Session '{}' crashed", request.session_id)
        return _mark_failed(request, deps, str(e))


def _mark_failed(request: SessionStartRequest, deps: Collaborators, message: str) -> SelectionResult:
    result = SelectionResult(session_id=request.session_id, outcome=Outcome.FAILED, reasoning=message)
    deps.store.save_result(request.session_id, [], message, result)
    deps.store.mark_terminal(request.session_id, SessionStatus.FAILED)
    return result
