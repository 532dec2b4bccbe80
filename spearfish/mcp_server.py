from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError as PydanticValidationError

from spearfish import services
from spearfish.app import build_orchestrator
from spearfish.config import get_settings
from spearfish.db import init_db, session_factory
from spearfish.errors import ExternalProviderError, SpearfishError
from spearfish.research import ResearchOrchestrator
from spearfish.schemas import CompanyData, RecalculateRequest, ResearchConfigOverrides, StartResearchRequest
from spearfish.scorer import CRITERIA, ScoringEngine
from spearfish.store import ScoreStore
from spearfish.templates import RESEARCH_TYPES

log = logging.getLogger(__name__)

MCP_OWNER = "mcp"

_state: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def spearfish_lifespan(server: FastMCP) -> AsyncIterator[None]:
    settings = get_settings()
    init_db(settings.database_path)
    _state["engine"] = ScoringEngine(settings.load_scoring_config())
    _state["orchestrator"] = build_orchestrator(settings)
    try:
        yield
    finally:
        orchestrator = _state.pop("orchestrator", None)
        if orchestrator is not None:
            await orchestrator.shutdown()


mcp = FastMCP(
    "Spearfish",
    instructions=(
        "Spearfish scores early-stage companies and runs budgeted research sessions on them. "
        "Use calculate_score(company) for a deterministic 0-10 score, get_score_history(id) "
        "for past scores, and start_research(company_id) followed by get_research_progress "
        "and get_research_results for multi-query research."
    ),
    lifespan=spearfish_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _engine() -> ScoringEngine:
    engine = _state.get("engine")
    if engine is None:
        engine = _state["engine"] = ScoringEngine(get_settings().load_scoring_config())
    return engine


def _store() -> ScoreStore:
    return ScoreStore(session_factory(), attempts=get_settings().persist_attempts)


def _orchestrator() -> ResearchOrchestrator:
    orchestrator = _state.get("orchestrator")
    if orchestrator is None:
        raise ExternalProviderError("Research provider is not configured")
    return orchestrator


def _validation_error(exc: PydanticValidationError) -> dict:
    first = exc.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    return {"error": f"{where}: {first['msg']}" if where else first["msg"], "kind": "validation"}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("spearfish://overview")
def spearfish_overview() -> str:
    """Overview of Spearfish: scoring criteria, research types and workflow."""
    engine = _engine()
    return json.dumps({
        "system": "Spearfish: company scoring and research",
        "scoring": {
            "algorithm_version": engine.algorithm_version,
            "criteria": {c: engine.config.weights[c] for c in CRITERIA},
            "target_batches": list(engine.config.target_batches),
            "scale": "total_score 0-10, normalized_score 0-100, confidence 0-1",
        },
        "research_types": {k: list(v) for k, v in RESEARCH_TYPES.items()},
        "session_states": ["pending", "processing", "completed", "failed", "cancelled"],
        "workflow": [
            "1. calculate_score(company) to score and store a company snapshot.",
            "2. list_research_templates() to see available research queries.",
            "3. start_research(company_id, research_type) to launch a session.",
            "4. get_research_progress(session_id) until status is terminal.",
            "5. get_research_results(session_id) for findings grouped by category.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Scoring
# ---------------------------------------------------------------------------


@mcp.tool()
def calculate_score(company: dict, save_to_database: bool = True) -> dict:
    """Score one company snapshot (id required; camelCase or snake_case keys).

    Missing data never fails the call; it lowers ``confidence`` and is listed
    in ``metadata.missing_data_points``.
    """
    try:
        results, _ = services.score_companies(
            _engine(), _store(), [CompanyData.model_validate(company)],
            save=save_to_database, single=True,
        )
    except PydanticValidationError as exc:
        return _validation_error(exc)
    except SpearfishError as exc:
        return services.error_dict(exc)
    return services.score_payload(results, single=True)


@mcp.tool()
def calculate_scores(companies: list[dict], save_to_database: bool = True) -> dict:
    """Score a batch of company snapshots; one bad record never stops the batch."""
    if not companies:
        return {"error": "companies must not be empty", "kind": "validation"}
    try:
        parsed = [CompanyData.model_validate(c) for c in companies]
        results, batch = services.score_companies(_engine(), _store(), parsed, save=save_to_database)
    except PydanticValidationError as exc:
        return _validation_error(exc)
    except SpearfishError as exc:
        return services.error_dict(exc)
    return {"results": services.score_payload(results, single=False), "batch": batch}


@mcp.tool()
def get_score_history(
    company_id: str, limit: int = 20, from_date: str | None = None, to_date: str | None = None,
) -> list[dict] | dict:
    """Stored scores for a company, most recent first. Dates are ISO 8601."""
    try:
        start = datetime.fromisoformat(from_date) if from_date else None
        end = datetime.fromisoformat(to_date) if to_date else None
    except ValueError as exc:
        return {"error": f"Invalid date: {exc}", "kind": "validation"}
    try:
        history = _store().history(company_id, limit=max(1, min(limit, 500)), from_date=start, to_date=end)
    except SpearfishError as exc:
        return services.error_dict(exc)
    return [r.model_dump(mode="json") for r in history]


@mcp.tool()
def get_score_stats() -> dict:
    """Score distribution, average and algorithm versions across stored companies."""
    return _store().statistics().model_dump(mode="json")


@mcp.tool()
def recalculate_scores(
    algorithm_version: str | None = None,
    older_than_days: float | None = None,
    batches: list[str] | None = None,
    force_all: bool = False,
    limit: int = 100,
) -> dict:
    """Rescore stored companies whose score is missing, stale, or from another algorithm version."""
    try:
        body = RecalculateRequest(
            algorithm_version=algorithm_version, older_than_days=older_than_days,
            batches=batches, force_all=force_all, limit=limit,
        )
        return services.recalculate(_engine(), _store(), body)
    except PydanticValidationError as exc:
        return _validation_error(exc)
    except SpearfishError as exc:
        return services.error_dict(exc)


# ---------------------------------------------------------------------------
# Tools: Research
# ---------------------------------------------------------------------------


@mcp.tool()
def list_research_templates(category: str | None = None) -> list[dict]:
    """Research query templates, optionally filtered by category."""
    return services.templates_payload(category)


@mcp.tool()
async def start_research(
    company_id: str,
    research_type: str = "comprehensive",
    template_ids: list[str] | None = None,
    company_name: str | None = None,
    max_cost_usd: float | None = None,
    max_concurrent_queries: int | None = None,
    timeout_ms: int | None = None,
    enable_synthesis: bool | None = None,
) -> dict:
    """Start a research session. Returns immediately with the session id.

    Args:
        company_id: Company to research. Stored snapshots fill in query variables.
        research_type: comprehensive, technical-challenges, business-intelligence,
            team-dynamics or recent-activities.
        template_ids: Explicit template ids (overrides research_type).
        company_name: Name to research when the company has no stored snapshot.
        max_cost_usd: Budget ceiling for the whole session.
        max_concurrent_queries: Worker pool size.
        timeout_ms: Session wall-clock timeout.
        enable_synthesis: Turn findings synthesis on or off.
    """
    try:
        body = StartResearchRequest(
            company_id=company_id,
            research_type=research_type,
            template_ids=template_ids,
            company_name=company_name,
            config=ResearchConfigOverrides(
                max_cost_usd=max_cost_usd,
                max_concurrent_queries=max_concurrent_queries,
                timeout_ms=timeout_ms,
                enable_synthesis=enable_synthesis,
            ),
        )
        session = await services.start_research(_orchestrator(), get_settings(), body, owner_id=MCP_OWNER)
    except PydanticValidationError as exc:
        return _validation_error(exc)
    except SpearfishError as exc:
        return services.error_dict(exc)
    return {"session_id": session.id, "status": session.status.value, "total_query_count": session.total_query_count}


@mcp.tool()
def get_research_progress(session_id: str) -> dict:
    """Progress snapshot for a research session."""
    try:
        return services.session_payload(_orchestrator().get_progress(session_id))
    except SpearfishError as exc:
        return services.error_dict(exc)


@mcp.tool()
def get_research_results(session_id: str) -> dict:
    """Findings grouped by category, summary and sources. Errors with kind ``not_ready`` while running."""
    try:
        return services.results_payload(_orchestrator().get_results(session_id))
    except SpearfishError as exc:
        return services.error_dict(exc)


@mcp.tool()
async def cancel_research(session_id: str) -> dict:
    """Cancel a running research session; findings are discarded."""
    try:
        return services.session_payload(await _orchestrator().cancel_session(session_id))
    except SpearfishError as exc:
        return services.error_dict(exc)


@mcp.tool()
def list_research_sessions(company_id: str, limit: int = 20, status: str | None = None) -> list[dict] | dict:
    """Research sessions for a company, newest first."""
    try:
        sessions = _orchestrator().list_sessions(company_id, limit=max(1, min(limit, 200)), status=status)
    except SpearfishError as exc:
        return services.error_dict(exc)
    return [services.session_payload(s) for s in sessions]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Spearfish MCP server over stdio."""
    logging.basicConfig(level=get_settings().log_level.upper())
    mcp.run()


if __name__ == "__main__":
    main()
