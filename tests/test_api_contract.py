from fastapi.testclient import TestClient

from concierge import _singletons
from concierge.api import app
from concierge.errors import CatalogUnavailableError
from concierge.pipeline import Collaborators, InMemoryResultStore, Outcome, SelectionResult, SessionStatus


client = TestClient(app)


def _use_store(monkeypatch):
    store = InMemoryResultStore()
    monkeypatch.setattr(_singletons, "get_result_store", lambda: store)
    monkeypatch.setattr(
        _singletons, "get_collaborators",
        lambda: Collaborators(catalog=None, reranker=None, store=store, billing=None),
    )
    return store


def dummy_session(req, deps):
    # Minimal deterministic fake run: two handles, complete
    result = SelectionResult(
        session_id=req.session_id,
        handles=["suit-05", "suit-17"],
        reasoning="Navy suits first.",
        outcome=Outcome.COMPLETE,
        total_price=222.0,
    )
    deps.store.save_result(req.session_id, result.handles, result.reasoning, result)
    deps.store.mark_terminal(req.session_id, SessionStatus.COMPLETE)
    return result


def test_health_endpoint():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


def test_start_requires_non_empty_query(monkeypatch):
    _use_store(monkeypatch)
    monkeypatch.setattr("concierge.api.run_session", dummy_session)

    resp = client.post("/session/start", json={"session_id": "s1", "query": " "})
    assert resp.status_code == 422


def test_result_count_is_bounded(monkeypatch):
    _use_store(monkeypatch)
    resp = client.post("/session/start", json={"session_id": "s1", "query": "suit", "result_count": 40})
    assert resp.status_code == 422


def test_start_then_poll(monkeypatch):
    _use_store(monkeypatch)
    monkeypatch.setattr("concierge.api.run_session", dummy_session)

    resp = client.post("/session/start", json={"session_id": "s1", "query": "navy suit"})
    assert resp.status_code == 200
    assert resp.json() == {"session_id": "s1", "status": "processing"}

    resp = client.get("/session/s1")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "complete"
    assert data["handles"] == ["suit-05", "suit-17"]
    assert data["outcome"] == "complete"
    assert data["total_price"] == 222.0


def test_finished_session_is_not_restarted(monkeypatch):
    _use_store(monkeypatch)
    calls = []

    def counting_session(req, deps):
        calls.append(req.session_id)
        return dummy_session(req, deps)

    monkeypatch.setattr("concierge.api.run_session", counting_session)
    client.post("/session/start", json={"session_id": "s1", "query": "navy suit"})
    resp = client.post("/session/start", json={"session_id": "s1", "query": "navy suit"})

    assert resp.json()["status"] == "complete"
    assert calls == ["s1"]


def test_unknown_session_is_404(monkeypatch):
    _use_store(monkeypatch)
    assert client.get("/session/nope").status_code == 404


def test_missing_catalog_fails_the_session(monkeypatch):
    store = InMemoryResultStore()
    monkeypatch.setattr(_singletons, "get_result_store", lambda: store)

    def broken():
        raise CatalogUnavailableError("Catalog snapshot not found")

    monkeypatch.setattr(_singletons, "get_collaborators", broken)
    client.post("/session/start", json={"session_id": "s2", "query": "navy suit"})

    data = client.get("/session/s2").json()
    assert data["status"] == "failed"
    assert data["reasoning"] == "Catalog snapshot not found"
