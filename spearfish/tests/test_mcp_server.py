from __future__ import annotations

import asyncio
import json

import pytest

from spearfish.executor import ProviderResponse


class EchoExecutor:
    async def execute(self, query):
        await asyncio.sleep(0)
        return ProviderResponse(
            content=f"Notes on {query.template_id}. {query.query}",
            citations=("https://github.com/lumen/core",),
            prompt_tokens=10,
            completion_tokens=10,
            cost_usd=0.001,
        )


@pytest.fixture()
def mcp_state(tmp_path, monkeypatch):
    """Fresh database and tool state; yields the module-level state dict."""
    monkeypatch.setenv("SPEARFISH_DB_PATH", str(tmp_path / "mcp.db"))
    from spearfish import mcp_server
    from spearfish.config import get_settings
    from spearfish.db import init_db

    get_settings.cache_clear()
    init_db(tmp_path / "mcp.db")
    monkeypatch.setattr(mcp_server, "_state", {})
    yield mcp_server._state
    get_settings.cache_clear()


def with_orchestrator(state):
    from spearfish.db import session_factory
    from spearfish.research import ResearchOrchestrator
    from spearfish.store import SessionStore

    orchestrator = ResearchOrchestrator(EchoExecutor(), session_store=SessionStore(session_factory()))
    state["orchestrator"] = orchestrator
    return orchestrator


class TestImports:
    def test_import_mcp_server(self):
        from spearfish.mcp_server import mcp, start_research
        assert mcp is not None
        assert callable(start_research)


class TestScoringTools:
    def test_calculate_and_history(self, mcp_state):
        from spearfish.mcp_server import calculate_score, get_score_history, get_score_stats

        result = calculate_score({"id": "lumen", "name": "Lumen", "batch": "Summer 2022", "isHiring": True})
        assert result["company_id"] == "lumen"
        assert result["metadata"]["persisted"] is True

        history = get_score_history("lumen")
        assert len(history) == 1
        assert get_score_stats()["scored_companies"] == 1

    def test_errors_are_dicts(self, mcp_state):
        from spearfish.mcp_server import calculate_score, calculate_scores, get_score_history

        assert calculate_score({"name": "no id"})["kind"] == "validation"
        assert calculate_scores([])["kind"] == "validation"
        assert get_score_history("nobody")["kind"] == "not_found"
        assert get_score_history("lumen", from_date="yesterday")["kind"] == "validation"

    def test_batch_and_recalculate(self, mcp_state):
        from spearfish.mcp_server import calculate_scores, recalculate_scores

        out = calculate_scores([{"id": "a"}, {"id": "b", "batch": "W23"}])
        assert out["batch"]["successful"] == 2
        assert recalculate_scores()["recalculated"] == 0
        assert recalculate_scores(force_all=True)["recalculated"] == 2
        assert recalculate_scores(limit=0)["kind"] == "validation"

        single = calculate_scores([{"id": "c"}])
        assert single["batch"]["successful"] == 1
        assert [r["company_id"] for r in single["results"]] == ["c"]

    def test_overview_resource(self, mcp_state):
        from spearfish.mcp_server import spearfish_overview

        overview = json.loads(spearfish_overview())
        assert overview["scoring"]["algorithm_version"]
        assert "team-dynamics" in overview["research_types"]


class TestResearchTools:
    def test_research_needs_provider(self, mcp_state):
        from spearfish.mcp_server import get_research_progress, list_research_templates

        assert get_research_progress("abc")["kind"] == "provider"
        assert len(list_research_templates()) == 9

    @pytest.mark.asyncio
    async def test_session_flow(self, mcp_state):
        from spearfish.mcp_server import (
            cancel_research,
            get_research_progress,
            get_research_results,
            list_research_sessions,
            start_research,
        )

        orchestrator = with_orchestrator(mcp_state)
        started = await start_research("lumen", research_type="recent-activities", company_name="Lumen")
        sid = started["session_id"]
        assert started["total_query_count"] == 1

        await orchestrator.wait(sid, timeout=5)
        assert get_research_progress(sid)["status"] == "completed"
        results = get_research_results(sid)
        assert results["finding_count"] >= 1
        assert results["session"]["owner_id"] == "mcp"
        assert [s["id"] for s in list_research_sessions("lumen")] == [sid]

        # already terminal: cancel is a no-op
        assert (await cancel_research(sid))["status"] == "completed"
        assert get_research_results("missing")["kind"] == "not_found"

    @pytest.mark.asyncio
    async def test_bad_research_arguments(self, mcp_state):
        from spearfish.mcp_server import start_research

        with_orchestrator(mcp_state)
        assert (await start_research("lumen", template_ids=["nope"]))["kind"] == "validation"
        assert (await start_research("lumen", max_cost_usd=-1))["kind"] == "validation"
