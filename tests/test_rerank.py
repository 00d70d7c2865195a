import httpx

from concierge import rerank
from concierge.rerank import (
    SOURCE_FALLBACK,
    SOURCE_RERANKED,
    RerankerClient,
    deterministic_fallback,
    resolve_handles,
    window_payload,
)


class DummyResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload


def _patch_post(monkeypatch, response):
    calls = []

    def fake_post(self, url, json=None, headers=None):
        calls.append(json)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(rerank.httpx.Client, "post", fake_post)
    return calls


def test_window_payload_fields(suit_pool):
    payload = window_payload(suit_pool[:2])
    assert payload[0]["handle"] == "suit-01"
    assert set(payload[0]) == {"handle", "title", "type", "vendor", "tags", "price", "available", "description"}


def test_resolve_handles_is_case_insensitive_and_drops_unknowns(suit_pool):
    window = suit_pool[:5]
    assert resolve_handles(["SUIT-02", "ghost", "suit-01", "suit-02"], window) == ["suit-02", "suit-01"]


def test_fallback_takes_local_order(suit_pool):
    outcome = deterministic_fallback(suit_pool[:10], 3, failure="transport")
    assert outcome.handles == ["suit-01", "suit-02", "suit-03"]
    assert outcome.source == SOURCE_FALLBACK
    assert not outcome.succeeded

    bundle = deterministic_fallback(suit_pool[:4], 2, item_index_map={"suit-01": 0})
    assert len(bundle.handles) == 4


def test_unconfigured_client_never_calls_out(suit_pool):
    client = RerankerClient(url=None)
    outcome = client.rerank("s1", {}, suit_pool[:10], 4)
    assert outcome.source == SOURCE_FALLBACK
    assert outcome.handles == [c.handle for c in suit_pool[:4]]
    assert client.calls == 0


def test_successful_rerank(monkeypatch, suit_pool):
    calls = _patch_post(monkeypatch, DummyResponse({
        "selectedHandles": ["SUIT-05", "ghost", "suit-03"],
        "reasoning": " Navy first. ",
    }))
    client = RerankerClient(url="http://rerank.test")
    outcome = client.rerank("s1", {"hardTerms": ["suit"]}, suit_pool[:10], 2)

    assert outcome.succeeded
    assert outcome.source == SOURCE_RERANKED
    assert outcome.handles == ["suit-05", "suit-03"]
    assert outcome.reasoning == "Navy first."
    assert calls[0]["requestedCount"] == 2
    assert calls[0]["dedupKey"] == "s1"
    assert len(calls[0]["candidates"]) == 10


def test_at_most_once_per_key(monkeypatch, suit_pool):
    calls = _patch_post(monkeypatch, DummyResponse({"selected_handles": ["suit-01"]}))
    client = RerankerClient(url="http://rerank.test")
    first = client.rerank("s1", {}, suit_pool[:10], 1)
    second = client.rerank("s1", {}, suit_pool[:10], 1)
    assert first is second
    assert len(calls) == 1
    assert client.calls == 1


def test_stored_outcomes_are_capped(monkeypatch, suit_pool):
    calls = _patch_post(monkeypatch, DummyResponse({"selected_handles": ["suit-01"]}))
    client = RerankerClient(url="http://rerank.test", max_outcomes=2)
    for key in ("s1", "s2", "s3"):
        client.rerank(key, {}, suit_pool[:10], 1)
    assert len(calls) == 3

    # s1 was evicted, s3 is still replayed
    client.rerank("s3", {}, suit_pool[:10], 1)
    assert len(calls) == 3
    client.rerank("s1", {}, suit_pool[:10], 1)
    assert len(calls) == 4


def test_http_error_falls_back(monkeypatch, suit_pool):
    _patch_post(monkeypatch, DummyResponse({"error": "boom"}, status_code=500))
    outcome = RerankerClient(url="http://rerank.test").rerank("s1", {}, suit_pool[:10], 3)
    assert outcome.source == SOURCE_FALLBACK
    assert outcome.failure == "transport"
    assert outcome.handles == ["suit-01", "suit-02", "suit-03"]


def test_timeout_falls_back(monkeypatch, suit_pool):
    _patch_post(monkeypatch, httpx.ReadTimeout("slow"))
    outcome = RerankerClient(url="http://rerank.test").rerank("s1", {}, suit_pool[:10], 3)
    assert outcome.source == SOURCE_FALLBACK


def test_reported_failure_and_empty_selection_fall_back(monkeypatch, suit_pool):
    _patch_post(monkeypatch, DummyResponse({"handles": ["suit-01"], "source": "error"}))
    outcome = RerankerClient(url="http://rerank.test").rerank("a", {}, suit_pool[:10], 3)
    assert outcome.failure == "source=error"

    _patch_post(monkeypatch, DummyResponse({"handles": ["ghost"]}))
    outcome = RerankerClient(url="http://rerank.test").rerank("b", {}, suit_pool[:10], 3)
    assert outcome.failure == "empty selection"


def test_bundle_index_map_is_resolved(monkeypatch, make_candidate):
    window = [
        make_candidate("navy-suit", product_type="Suit"),
        make_candidate("white-shirt", product_type="Shirt"),
    ]
    _patch_post(monkeypatch, DummyResponse({
        "selectedHandles": ["navy-suit", "White-Shirt"],
        "itemIndexMap": {"navy-suit": 0, "WHITE-SHIRT": 1},
        "trustFallback": True,
    }))
    outcome = RerankerClient(url="http://rerank.test").rerank(
        "s1", {}, window, 2, item_index_map={"navy-suit": 0, "white-shirt": 1}
    )
    assert outcome.item_index_map == {"navy-suit": 0, "white-shirt": 1}
    assert outcome.trust_fallback
