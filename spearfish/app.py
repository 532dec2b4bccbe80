from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from spearfish import services
from spearfish.config import Settings, get_settings
from spearfish.db import current_db_path, init_db, session_factory
from spearfish.errors import AuthenticationError, ExternalProviderError, SpearfishError
from spearfish.executor import build_executor
from spearfish.research import ResearchOrchestrator
from spearfish.schemas import CalculateScoreRequest, RecalculateRequest, StartResearchRequest
from spearfish.scorer import ScoringEngine
from spearfish.store import ScoreStore, SessionStore

log = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> ResearchOrchestrator | None:
    try:
        executor = build_executor(settings)
    except SpearfishError as exc:
        log.warning("Research disabled: %s", exc.message)
        return None
    return ResearchOrchestrator(
        executor,
        session_store=SessionStore(session_factory()),
        company_lookup=ScoreStore(session_factory()).get_company,
        max_retries=settings.max_query_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        query_timeout_seconds=settings.query_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db(settings.database_path)
    app.state.engine = ScoringEngine(settings.load_scoring_config())
    app.state.orchestrator = build_orchestrator(settings)
    log.info("Spearfish ready (scoring v%s, db %s)", app.state.engine.algorithm_version, current_db_path())
    yield
    if app.state.orchestrator is not None:
        await app.state.orchestrator.shutdown()


app = FastAPI(
    title="Spearfish",
    version="0.1.0",
    description=(
        "Company intelligence API. Scores early-stage companies against a deterministic "
        "weighted rubric and runs multi-query research sessions with budget and timeout "
        "controls. Every endpoint needs a caller identity (X-User-Id or Bearer token) and "
        "answers with a {success, data|error, metadata} envelope."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Scoring", "description": "Deterministic company scores and score history."},
        {"name": "Research", "description": "Asynchronous multi-query research sessions."},
        {"name": "Admin", "description": "Health and maintenance."},
    ],
)


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------


@app.exception_handler(SpearfishError)
async def spearfish_error_handler(request: Request, exc: SpearfishError):
    if exc.status_code >= 500:
        log.warning("%s %s failed (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(services.error_envelope(exc.message, exc.kind), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    return JSONResponse(services.error_envelope("; ".join(problems), "validation"), status_code=400)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(services.error_envelope("Internal server error", "internal"), status_code=500)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def current_user(
    x_user_id: str | None = Header(None),
    authorization: str | None = Header(None),
) -> str:
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    raise AuthenticationError("Authentication required")


def get_score_store() -> ScoreStore:
    return ScoreStore(session_factory(), attempts=get_settings().persist_attempts)


def get_engine(request: Request) -> ScoringEngine:
    return request.app.state.engine


def get_orchestrator(request: Request) -> ResearchOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise ExternalProviderError("Research provider is not configured")
    return orchestrator


# ---------------------------------------------------------------------------
# Routes: Scoring (static paths before parameterized ones)
# ---------------------------------------------------------------------------


@app.post("/scores/calculate", tags=["Scoring"], summary="Score one company or a batch")
async def calculate_scores(
    body: CalculateScoreRequest,
    user: str = Depends(current_user),
    engine: ScoringEngine = Depends(get_engine),
    store: ScoreStore = Depends(get_score_store),
):
    single = body.company is not None
    companies = [body.company] if single else list(body.companies)
    results, batch = services.score_companies(
        engine, store, companies, save=body.save_to_database, single=single,
    )
    meta = {"algorithm_version": engine.algorithm_version}
    if batch:
        meta["batch"] = batch
    return services.envelope(services.score_payload(results, single), **meta)


@app.post("/scores/recalculate", tags=["Scoring"], summary="Rescore companies with stale or missing scores")
async def recalculate_scores(
    body: RecalculateRequest | None = None,
    user: str = Depends(current_user),
    engine: ScoringEngine = Depends(get_engine),
    store: ScoreStore = Depends(get_score_store),
):
    return services.envelope(services.recalculate(engine, store, body or RecalculateRequest()))


@app.get("/scores/stats", tags=["Scoring"], summary="Score distribution and algorithm versions")
async def score_stats(user: str = Depends(current_user), store: ScoreStore = Depends(get_score_store)):
    return services.envelope(store.statistics().model_dump(mode="json"))


@app.get("/scores/{company_id}/history", tags=["Scoring"], summary="Score history, most recent first")
async def score_history(
    company_id: str,
    limit: int = Query(50, ge=1, le=500),
    from_date: datetime | None = Query(None, alias="fromDate"),
    to_date: datetime | None = Query(None, alias="toDate"),
    user: str = Depends(current_user),
    store: ScoreStore = Depends(get_score_store),
):
    history = store.history(company_id, limit=limit, from_date=from_date, to_date=to_date)
    return services.envelope([r.model_dump(mode="json") for r in history], count=len(history))


# ---------------------------------------------------------------------------
# Routes: Research
# ---------------------------------------------------------------------------


@app.get("/research/templates", tags=["Research"], summary="List research query templates")
async def research_templates(category: str | None = None, user: str = Depends(current_user)):
    return services.envelope(services.templates_payload(category))


@app.post("/research/sessions", status_code=202, tags=["Research"], summary="Start a research session")
async def start_research(
    body: StartResearchRequest,
    user: str = Depends(current_user),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    session = await services.start_research(orchestrator, get_settings(), body, owner_id=user)
    return services.envelope({
        "session_id": session.id,
        "status": session.status.value,
        "total_query_count": session.total_query_count,
    })


@app.get("/research/sessions/{session_id}", tags=["Research"], summary="Session progress snapshot")
async def research_progress(
    session_id: str,
    user: str = Depends(current_user),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    return services.envelope(services.session_payload(orchestrator.get_progress(session_id)))


@app.get("/research/sessions/{session_id}/results", tags=["Research"],
         summary="Findings grouped by category (202 while the session runs)")
async def research_results(
    session_id: str,
    user: str = Depends(current_user),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    return services.envelope(services.results_payload(orchestrator.get_results(session_id)))


@app.post("/research/sessions/{session_id}/cancel", tags=["Research"], summary="Cancel a running session")
async def cancel_research(
    session_id: str,
    user: str = Depends(current_user),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    session = await orchestrator.cancel_session(session_id)
    return services.envelope(services.session_payload(session))


@app.get("/research/sessions/{session_id}/events", tags=["Research"],
         summary="Session progress as a server-sent event stream")
async def research_events(
    session_id: str,
    interval: float = Query(0.5, gt=0, le=10),
    user: str = Depends(current_user),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    orchestrator.get_progress(session_id)

    async def stream():
        last = None
        while True:
            try:
                session = orchestrator.get_progress(session_id)
            except SpearfishError as exc:
                yield f"data: {json.dumps({'type': 'error', 'error': exc.message, 'kind': exc.kind})}\n\n"
                return
            payload = services.session_payload(session)
            if payload != last:
                yield f"data: {json.dumps({'type': 'progress', 'session': payload})}\n\n"
                last = payload
            if session.status.is_terminal:
                yield f"data: {json.dumps({'type': 'complete', 'status': session.status.value})}\n\n"
                return
            await asyncio.sleep(interval)

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.get("/companies/{company_id}/research/sessions", tags=["Research"],
         summary="Research sessions for a company, newest first")
async def company_research_sessions(
    company_id: str,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    status: str | None = None,
    user: str = Depends(current_user),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    sessions = orchestrator.list_sessions(company_id, limit=limit, offset=offset, status=status)
    return services.envelope([services.session_payload(s) for s in sessions], count=len(sessions))


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Admin"], summary="Liveness and configuration check")
async def health(request: Request):
    engine = getattr(request.app.state, "engine", None)
    return services.envelope({
        "status": "ok",
        "database": str(current_db_path()) if current_db_path() else None,
        "algorithm_version": engine.algorithm_version if engine else None,
        "research_enabled": getattr(request.app.state, "orchestrator", None) is not None,
    })


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("spearfish.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
