import pytest

from concierge import rerank
from concierge.catalog import SnapshotCatalogSource
from concierge.config import SessionStartRequest
from concierge.errors import CatalogUnavailableError, ErrorKind, PersistenceError
from concierge.pipeline import (
    Collaborators,
    InMemoryResultStore,
    LedgerBillingSink,
    Outcome,
    PipelineState,
    SessionStatus,
    Source,
    TTLCache,
    apply_pre_filters,
    credits_for_delivered_count,
    run_pipeline,
    run_session,
)
from concierge.reasoning import ReasoningEvent
from concierge.rerank import RerankerClient


def _suit_records():
    records = []
    for i in range(1, 41):
        color = "Navy" if i in {5, 17, 33} else ("Black" if i % 2 else "Charcoal")
        records.append({
            "handle": f"suit-{i:02d}",
            "title": f"{color} Wool Suit {i}",
            "product_type": "Suit",
            "price": 100.0 + i,
            "colors": [color],
            "tags": ["menswear"],
        })
    return records


def _bundle_records(suit_prices, shirt_prices):
    records = [
        {"handle": f"suit-{int(p)}", "title": "Wool Suit", "product_type": "Suit", "price": p}
        for p in suit_prices
    ]
    records += [
        {"handle": f"shirt-{int(p)}", "title": "Cotton Shirt", "product_type": "Shirt", "price": p}
        for p in shirt_prices
    ]
    return records


class CountingCatalog(SnapshotCatalogSource):
    def __init__(self, df):
        super().__init__(df)
        self.filter_calls = 0

    def fetch_by_filter(self, shop, limit, collection=None):
        self.filter_calls += 1
        return super().fetch_by_filter(shop, limit, collection)


class BrokenCatalog:
    def fetch_by_filter(self, shop, limit, collection=None):
        raise CatalogUnavailableError("catalog offline")


def _deps(records=None, catalog=None, reranker=None):
    return Collaborators(
        catalog=catalog if catalog is not None else CountingCatalog.from_records(records),
        reranker=reranker if reranker is not None else RerankerClient(url=None),
        store=InMemoryResultStore(),
        billing=LedgerBillingSink(included_credits=100.0),
    )


def _request(query, session_id="s1", **kwargs):
    return SessionStartRequest(session_id=session_id, query=query, **kwargs)


def test_navy_suit_single_item():
    deps = _deps(_suit_records())
    result = run_pipeline(_request("navy suit"), deps)

    assert result.outcome == Outcome.COMPLETE
    assert result.source == Source.DETERMINISTIC_FALLBACK
    assert len(result.handles) == 8
    assert result.handles[:3] == ["suit-05", "suit-17", "suit-33"]
    assert result.stage == "facet-relaxed"
    assert result.budget_exceeded is None
    assert ErrorKind.RERANK_FAILURE in result.errors
    assert result.reasoning.startswith("AI ranking unavailable")
    assert result.credits_charged == 1.0

    stored = deps.store.get("s1")
    assert stored.status == SessionStatus.COMPLETE
    assert stored.handles == result.handles


def test_price_ceiling_flags_budget_exceeded():
    deps = _deps(_suit_records())
    result = run_pipeline(_request("navy suit under 110"), deps)
    # too few suits under 110, so the price filter is relaxed
    assert len(result.handles) == 8
    assert result.budget_exceeded is True


def test_unknown_product_is_no_match():
    deps = _deps(_suit_records())
    result = run_pipeline(_request("lightsaber"), deps)

    assert result.outcome == Outcome.NO_MATCH
    assert result.handles == []
    assert ErrorKind.NO_MATCH in result.errors
    assert "No products matched 'lightsaber'." in result.reasoning
    assert "Related products in this store: suit." in result.suggestions
    assert deps.billing.charges == {}
    assert deps.store.get("s1").status == SessionStatus.COMPLETE


def test_bundle_within_budget():
    deps = _deps(_bundle_records([150.0, 200.0, 250.0], [55.0, 40.0]))
    result = run_pipeline(_request("suit and shirt, total budget is 200", result_count=2), deps)

    assert result.outcome == Outcome.COMPLETE
    assert result.handles == ["suit-150", "shirt-40"]
    assert result.total_price == 190.0
    assert result.budget_exceeded is False
    assert result.missing_items == []


def test_bundle_budget_unattainable():
    deps = _deps(_bundle_records([180.0], [40.0]))
    result = run_pipeline(_request("suit and shirt, total budget is 200", result_count=2), deps)

    assert result.outcome == Outcome.BUDGET_UNATTAINABLE
    assert result.budget_exceeded is True
    assert result.total_price == 220.0
    assert ErrorKind.BUDGET_UNATTAINABLE in result.errors
    assert "above the 200.00 budget" in result.reasoning


def test_completed_session_is_not_rerun():
    deps = _deps(_suit_records())
    first = run_pipeline(_request("navy suit"), deps)
    second = run_pipeline(_request("navy suit"), deps)

    assert second.handles == first.handles
    assert deps.catalog.filter_calls == 1
    assert len(deps.billing.charges) == 1


def test_catalog_failure_marks_session_failed():
    deps = _deps(catalog=BrokenCatalog())
    deps.store.mark_processing("s1")
    result = run_session(_request("navy suit"), deps)

    assert result.outcome == Outcome.FAILED
    stored = deps.store.get("s1")
    assert stored.status == SessionStatus.FAILED
    assert stored.reasoning == "catalog offline"


def test_pre_filters_relax_price_first(suit_pool):
    state = PipelineState(request=_request("navy suit", in_stock_only=True))
    apply_pre_filters(state, suit_pool, 110.0)
    assert len(state.pool) == 40
    assert state.price_ceiling is None
    assert state.stock_only
    assert state.log.has(ReasoningEvent.RELAXED_PRICE)
    assert not state.log.has(ReasoningEvent.RELAXED_STOCK)


def test_pre_filters_keep_price_when_enough(suit_pool):
    state = PipelineState(request=_request("navy suit"))
    apply_pre_filters(state, suit_pool, 130.0)
    assert len(state.pool) == 30
    assert state.price_ceiling == 130.0
    assert len(state.log) == 0


def test_ttl_cache_expires_and_evicts():
    now = [0.0]
    cache = TTLCache(ttl_seconds=10, max_entries=2, clock=lambda: now[0])
    cache.set(("a",), 1)
    cache.set(("b",), 2)
    cache.set(("c",), 3)
    assert cache.get(("a",)) is None
    assert cache.get(("b",)) == 2

    now[0] = 11.0
    assert cache.get(("c",)) is None
    assert cache.get_or_set(("c",), lambda: 4) == 4


def test_credit_tiers():
    assert [credits_for_delivered_count(n) for n in (0, 1, 8, 9, 12, 13)] == [0.0, 1.0, 1.0, 1.5, 1.5, 2.0]


def test_billing_charges_once_and_tracks_overage():
    billing = LedgerBillingSink(included_credits=1.0)
    first = billing.charge_for_delivered("s1", 8)
    second = billing.charge_for_delivered("s2", 10)
    again = billing.charge_for_delivered("s1", 8)

    assert (first.credits_charged, first.overage_delta) == (1.0, 0.0)
    assert (second.credits_charged, second.overage_delta) == (1.5, 1.5)
    assert again is first
    assert billing.used_credits == 2.5


def test_store_rejects_unknown_session():
    store = InMemoryResultStore()
    with pytest.raises(PersistenceError):
        store.mark_terminal("missing", SessionStatus.COMPLETE)


class DummyResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload


def _remote_reranker(monkeypatch, payload):
    calls = []

    def fake_post(self, url, json=None, headers=None):
        calls.append(json)
        return DummyResponse(payload)

    monkeypatch.setattr(rerank.httpx.Client, "post", fake_post)
    return RerankerClient(url="http://rerank.test"), calls


def _suits_and_shirts(n_suits, n_shirts):
    records = [
        {"handle": f"suit-{i}", "title": "Wool Suit", "product_type": "Suit", "price": 120.0}
        for i in range(n_suits)
    ]
    records += [
        {"handle": f"shirt-{i}", "title": "Cotton Shirt", "product_type": "Shirt", "price": 40.0}
        for i in range(n_shirts)
    ]
    return records


def test_reranked_selection_is_validated_and_topped_up(monkeypatch):
    reranker, calls = _remote_reranker(monkeypatch, {
        "selectedHandles": ["SUIT-17", "suit-02", "ghost"],
        "reasoning": "Navy first, then a charcoal alternative.",
    })
    deps = _deps(_suit_records(), reranker=reranker)
    result = run_pipeline(_request("navy suit"), deps)

    assert len(calls) == 1
    assert len(calls[0]["candidates"]) == 20
    assert result.source == Source.RERANKED
    assert result.handles[:2] == ["suit-17", "suit-02"]
    assert len(result.handles) == 8
    assert ErrorKind.RERANK_FAILURE not in result.errors
    assert result.reasoning.startswith("Navy first, then a charcoal alternative.")


def test_reranker_cannot_switch_on_trust_fallback(monkeypatch):
    reranker, _ = _remote_reranker(monkeypatch, {"selectedHandles": ["suit-0"], "trustFallback": True})
    deps = _deps(_suits_and_shirts(3, 20), reranker=reranker)
    result = run_pipeline(_request("suit"), deps)

    assert result.source == Source.RERANKED
    assert result.handles == ["suit-0", "suit-1", "suit-2"]
    assert not result.trust_fallback
    assert ErrorKind.VALIDATION_EMPTIED not in result.errors


def _sequin_records(n_suits, sequined):
    return [
        {
            "handle": f"suit-{i:02d}",
            "title": "Wool Suit",
            "product_type": "Suit",
            "price": 100.0 + i,
            "description": "Lapels trimmed with sequins" if i in sequined else "Classic two button cut",
        }
        for i in range(1, n_suits + 1)
    ]


def test_emptied_selection_falls_back_to_local_order(monkeypatch):
    # descriptions only reach the window, so the avoid term surfaces at validation
    reranker, _ = _remote_reranker(monkeypatch, {"selectedHandles": ["suit-01", "suit-02", "suit-03"]})
    deps = _deps(_sequin_records(20, {1, 2, 3}), reranker=reranker)
    result = run_pipeline(_request("suit without sequins"), deps)

    assert ErrorKind.VALIDATION_EMPTIED in result.errors
    assert result.source == Source.DETERMINISTIC_FALLBACK
    assert result.handles == [f"suit-{i:02d}" for i in range(4, 12)]


def test_emergency_pick_is_not_billed():
    records = _sequin_records(4, {1, 2, 3, 4})
    records += [{"handle": "shirt-01", "title": "Cotton Shirt", "product_type": "Shirt", "price": 40.0}]
    deps = _deps(records)
    result = run_pipeline(_request("suit without sequins"), deps)

    assert result.outcome == Outcome.EMERGENCY_UNMATCHED
    assert result.source == Source.EMERGENCY_UNMATCHED
    assert result.handles == ["shirt-01"]
    assert ErrorKind.EMERGENCY_UNMATCHED in result.errors
    assert result.credits_charged == 0.0
    assert deps.billing.used_credits == 0.0


def test_bundle_uses_reranked_picks_per_item(monkeypatch):
    reranker, calls = _remote_reranker(monkeypatch, {
        "selectedHandles": ["shirt-55", "suit-250"],
        "itemIndexMap": {"shirt-55": 1, "suit-250": 0},
    })
    deps = _deps(_bundle_records([150.0, 200.0, 250.0], [55.0, 40.0]), reranker=reranker)
    result = run_pipeline(_request("suit and shirt", result_count=2), deps)

    assert calls[0]["itemIndexMap"]["suit-150"] == 0
    assert calls[0]["itemIndexMap"]["shirt-40"] == 1
    assert result.source == Source.RERANKED
    assert result.handles == ["suit-250", "shirt-55"]
    assert result.missing_items == []


def test_bundle_rerank_pick_for_the_wrong_item_is_dropped(monkeypatch):
    reranker, _ = _remote_reranker(monkeypatch, {
        "selectedHandles": ["shirt-55"],
        "itemIndexMap": {"shirt-55": 0},
    })
    deps = _deps(_bundle_records([150.0, 200.0], [55.0, 40.0]), reranker=reranker)
    result = run_pipeline(_request("suit and shirt", result_count=2), deps)

    assert ErrorKind.VALIDATION_EMPTIED in result.errors
    assert result.source == Source.DETERMINISTIC_FALLBACK
    assert result.handles == ["suit-150", "shirt-40"]
