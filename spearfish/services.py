"""Shared business logic for the Spearfish API and MCP server."""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from spearfish.config import Settings
from spearfish.errors import SpearfishError, ValidationError
from spearfish.research import ResearchOrchestrator
from spearfish.schemas import (
    CompanyData,
    RecalculateRequest,
    ResearchConfig,
    ResearchConfigOverrides,
    ResearchResults,
    ResearchSession,
    ScoreResult,
    StartResearchRequest,
)
from spearfish.scorer import ScoringEngine
from spearfish.store import ScoreStore
from spearfish.synthesizer import group_by_category
from spearfish.templates import QueryTemplate, QueryVariables, list_templates, resolve_template_ids
from spearfish.utils import isoformat, utcnow

log = logging.getLogger(__name__)

TEMPLATE_SUMMARY_FIELDS = (
    "id", "name", "description", "category", "priority", "recency_filter", "cost_estimate_usd",
)

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


def envelope(data: Any, **metadata: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "metadata": {"timestamp": isoformat(utcnow()), **metadata}}


def error_envelope(message: str, kind: str, **metadata: Any) -> dict[str, Any]:
    return {
        "success": False,
        "error": message,
        "kind": kind,
        "metadata": {"timestamp": isoformat(utcnow()), **metadata},
    }


def error_dict(exc: SpearfishError) -> dict[str, str]:
    """MCP-style error payload."""
    return {"error": exc.message, "kind": exc.kind}


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_companies(
    engine: ScoringEngine,
    store: ScoreStore,
    companies: list[CompanyData],
    save: bool = True,
    single: bool = False,
) -> tuple[list[ScoreResult], dict[str, Any]]:
    """Score one company (*single*) or a batch; batch bookkeeping follows the
    request shape, so a one-element list still gets a batch summary.
    """
    if single:
        result = engine.score(companies[0])
        if save:
            result = store.save_score(companies[0], result)
        return [result], {}
    results, summary = store.batch_update(companies, engine, save=save)
    return results, summary.model_dump()


def recalculate(engine: ScoringEngine, store: ScoreStore, body: RecalculateRequest) -> dict[str, Any]:
    """Rescore companies whose stored score is missing, stale or from another version."""
    older_than = None
    if body.older_than_days is not None:
        older_than = utcnow() - timedelta(days=body.older_than_days)
    companies = store.needs_recalculation(
        algorithm_version=body.algorithm_version or engine.algorithm_version,
        older_than=older_than,
        batches=body.batches,
        limit=body.limit,
        force_all=body.force_all,
    )
    if not companies:
        return {"recalculated": 0, "batch": None}
    results, summary = store.batch_update(companies, engine, save=True)
    log.info("Recalculated %d companies (%d failed)", summary.successful, summary.failed)
    return {"recalculated": summary.successful, "batch": summary.model_dump(), "results": _dump(results)}


def _dump(items) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def score_payload(results: list[ScoreResult], single: bool) -> Any:
    return results[0].model_dump(mode="json") if single else _dump(results)


# ---------------------------------------------------------------------------
# Research
# ---------------------------------------------------------------------------


def build_research_config(
    settings: Settings,
    template_ids: list[str],
    overrides: ResearchConfigOverrides | None = None,
) -> ResearchConfig:
    values = settings.research_defaults()
    if overrides is not None:
        values.update(overrides.model_dump(exclude_none=True))
    return ResearchConfig(template_ids=template_ids, **values)


def research_variables(body: StartResearchRequest) -> QueryVariables | None:
    """Explicit variables from the request; ``None`` lets the orchestrator look the company up."""
    if body.variables:
        data = dict(body.variables)
        if body.company_name:
            data.setdefault("company_name", body.company_name)
        return QueryVariables.from_mapping(data)
    if body.company_name:
        return QueryVariables(company_name=body.company_name)
    return None


async def start_research(
    orchestrator: ResearchOrchestrator,
    settings: Settings,
    body: StartResearchRequest,
    owner_id: str,
) -> ResearchSession:
    template_ids = body.template_ids or resolve_template_ids(body.research_type)
    if not template_ids:
        raise ValidationError("No research templates selected")
    config = build_research_config(settings, template_ids, body.config)
    session_id = await orchestrator.start_session(
        company_id=body.company_id,
        owner_id=body.owner_id or owner_id,
        config=config,
        variables=research_variables(body),
        research_type=body.research_type,
    )
    # let the driver task claim the session before reporting its state
    await asyncio.sleep(0)
    return orchestrator.get_progress(session_id)


def session_payload(session: ResearchSession) -> dict[str, Any]:
    data = session.model_dump(mode="json")
    data["progress"] = (
        round(
            (session.completed_query_count + session.failed_query_count + session.skipped_query_count)
            / session.total_query_count,
            3,
        )
        if session.total_query_count
        else 0.0
    )
    return data


def results_payload(results: ResearchResults) -> dict[str, Any]:
    """Findings grouped by category (first-seen order), plus summary and sources."""
    grouped = group_by_category(results.findings)
    return {
        "session": session_payload(results.session),
        "findings": {category: _dump(items) for category, items in grouped.items()},
        "finding_count": len(results.findings),
        "summary": results.summary.model_dump(mode="json") if results.summary else None,
        "sources": _dump(results.sources),
    }


def template_summary(template: QueryTemplate) -> dict[str, Any]:
    return {f: getattr(template, f) for f in TEMPLATE_SUMMARY_FIELDS} | {
        "focus_areas": list(template.focus_areas),
        "expected_outputs": list(template.expected_outputs),
    }


def templates_payload(category: str | None = None) -> list[dict[str, Any]]:
    return [template_summary(t) for t in list_templates(category)]
