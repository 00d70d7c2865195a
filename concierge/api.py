from __future__ import annotations

"""
FastAPI application for the product concierge.

- POST /session/start acknowledges immediately and runs the pipeline as a
  background task; a session that already finished is not run again
- GET /session/{session_id} returns the stored status and result
- GET /health
"""

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from . import _singletons
from .config import HealthResponse, SessionAck, SessionResultResponse, SessionStartRequest
from .errors import CatalogUnavailableError, PipelineError
from .pipeline import SessionStatus, run_session

# -----------------------
# FastAPI app + startup
# -----------------------

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event() -> None:
    logger.info("Starting app warmup...")
    try:
        _singletons.get_catalog_source()
    except CatalogUnavailableError as e:
        logger.warning("Catalog not loaded at startup: {}", e)
    _singletons.get_reranker()
    _singletons.get_intent_client()
    logger.info("Warmup complete.")


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


def _run_in_background(req: SessionStartRequest) -> None:
    try:
        deps = _singletons.get_collaborators()
    except PipelineError as e:
        logger.error("Session '{}' cannot start: {}", req.session_id, e)
        store = _singletons.get_result_store()
        store.save_result(req.session_id, [], str(e))
        store.mark_terminal(req.session_id, SessionStatus.FAILED)
        return
    run_session(req, deps)


@app.post("/session/start", response_model=SessionAck)
def start_session(req: SessionStartRequest, background_tasks: BackgroundTasks) -> SessionAck:
    if not req.query.strip():
        raise HTTPException(status_code=422, detail="Query must be non-empty")

    store = _singletons.get_result_store()
    stored = store.get(req.session_id)
    if stored is not None:
        logger.info("Session '{}' already {}", req.session_id, stored.status.value)
        return SessionAck(session_id=req.session_id, status=stored.status.value)

    store.mark_processing(req.session_id)
    background_tasks.add_task(_run_in_background, req)
    return SessionAck(session_id=req.session_id, status=SessionStatus.PROCESSING.value)


@app.get("/session/{session_id}", response_model=SessionResultResponse)
def get_session(session_id: str) -> SessionResultResponse:
    stored = _singletons.get_result_store().get(session_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="Unknown session")

    result = stored.result
    if result is None:
        return SessionResultResponse(
            session_id=session_id,
            status=stored.status.value,
            handles=list(stored.handles),
            reasoning=stored.reasoning,
        )
    return SessionResultResponse(
        session_id=session_id,
        status=stored.status.value,
        handles=list(result.handles),
        reasoning=result.reasoning,
        source=result.source.value if result.source else None,
        outcome=result.outcome.value,
        budget_exceeded=result.budget_exceeded,
        total_price=result.total_price,
        suggestions=list(result.suggestions),
    )
