"""Integration tests for the HTTP API.

Runs the real app (lifespan included) against a temporary SQLite file. The
research provider is replaced by an in-process fake through dependency
overrides.
"""
from __future__ import annotations

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from spearfish.executor import ProviderResponse

HEADERS = {"X-User-Id": "analyst-1"}

COMPANY = {
    "id": "lumen",
    "name": "Lumen Labs",
    "batch": "W23",
    "isHiring": True,
    "oneLiner": "Enterprise API platform for data teams",
    "githubRepos": [{"name": "lumen-core", "stars": 4000}],
}


class FakeExecutor:
    def __init__(self, hang: bool = False):
        self.hang = hang

    async def execute(self, query):
        if self.hang:
            await asyncio.sleep(3600)
        return ProviderResponse(
            content=f"Findings for {query.template_id}. {query.query}",
            citations=(f"https://lumen.dev/blog/{query.template_id}",),
            prompt_tokens=80,
            completion_tokens=40,
            cost_usd=0.005,
            model="fake",
        )


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SPEARFISH_DB_PATH", str(tmp_path / "spearfish.db"))
    monkeypatch.delenv("PERPLEXITY_API_KEY", raising=False)
    monkeypatch.setenv("RESEARCH_PROVIDER", "perplexity")

    from spearfish.app import app
    from spearfish.config import get_settings

    get_settings.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    get_settings.cache_clear()


def use_executor(executor):
    """Route research endpoints to an orchestrator backed by *executor*."""
    from spearfish.app import app, get_orchestrator
    from spearfish.db import session_factory
    from spearfish.research import ResearchOrchestrator
    from spearfish.store import ScoreStore, SessionStore

    orchestrator = ResearchOrchestrator(
        executor,
        session_store=SessionStore(session_factory()),
        company_lookup=ScoreStore(session_factory()).get_company,
        retry_backoff_seconds=0.0,
        query_timeout_seconds=5.0,
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    return orchestrator


def wait_for_results(client, session_id, attempts=200):
    for _ in range(attempts):
        resp = client.get(f"/research/sessions/{session_id}/results", headers=HEADERS)
        if resp.status_code != 202:
            return resp
        time.sleep(0.02)
    raise AssertionError("research session never finished")


class TestEnvelopeAndAuth:
    def test_health_needs_no_identity(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"
        assert body["data"]["research_enabled"] is False
        assert "timestamp" in body["metadata"]

    def test_missing_identity(self, client):
        resp = client.get("/scores/stats")
        assert resp.status_code == 401
        assert resp.json() == {
            "success": False,
            "error": "Authentication required",
            "kind": "unauthorized",
            "metadata": resp.json()["metadata"],
        }

    def test_bearer_token_accepted(self, client):
        resp = client.get("/scores/stats", headers={"Authorization": "Bearer abc"})
        assert resp.status_code == 200

    def test_validation_error_envelope(self, client):
        resp = client.post("/scores/calculate", json={}, headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["kind"] == "validation"
        assert resp.json()["success"] is False

    def test_research_disabled_without_provider(self, client):
        resp = client.get("/research/sessions/abc", headers=HEADERS)
        assert resp.status_code == 502
        assert resp.json()["kind"] == "provider"


class TestScoringRoutes:
    def test_calculate_single(self, client):
        resp = client.post("/scores/calculate", json={"company": COMPANY}, headers=HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        data = body["data"]
        assert data["company_id"] == "lumen"
        assert 0 <= data["total_score"] <= 10
        assert data["metadata"]["persisted"] is True
        assert body["metadata"]["algorithm_version"] == data["algorithm_version"]
        assert "batch" not in body["metadata"]

    def test_calculate_batch(self, client):
        companies = [COMPANY, {**COMPANY, "id": "globex", "name": "Globex"}]
        resp = client.post("/scores/calculate", json={"companies": companies}, headers=HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert [r["company_id"] for r in body["data"]] == ["lumen", "globex"]
        assert body["metadata"]["batch"]["successful"] == 2

    def test_one_element_batch_keeps_batch_shape(self, client):
        resp = client.post("/scores/calculate", json={"companies": [COMPANY]}, headers=HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert [r["company_id"] for r in body["data"]] == ["lumen"]
        assert body["metadata"]["batch"]["successful"] == 1
        assert body["metadata"]["batch"]["total"] == 1

    def test_calculate_without_saving(self, client):
        resp = client.post("/scores/calculate", json={"company": COMPANY, "saveToDatabase": False}, headers=HEADERS)
        assert resp.status_code == 200
        assert client.get("/scores/lumen/history", headers=HEADERS).status_code == 404

    def test_history_and_stats(self, client):
        client.post("/scores/calculate", json={"company": COMPANY}, headers=HEADERS)
        resp = client.get("/scores/lumen/history", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["metadata"]["count"] == 1

        stats = client.get("/scores/stats", headers=HEADERS).json()["data"]
        assert stats["total_companies"] == 1
        assert stats["scored_companies"] == 1

    def test_history_unknown_company(self, client):
        resp = client.get("/scores/nobody/history", headers=HEADERS)
        assert resp.status_code == 404
        assert resp.json()["kind"] == "not_found"

    def test_recalculate(self, client):
        client.post("/scores/calculate", json={"company": COMPANY}, headers=HEADERS)
        resp = client.post("/scores/recalculate", json={}, headers=HEADERS)
        assert resp.json()["data"]["recalculated"] == 0

        resp = client.post("/scores/recalculate", json={"forceAll": True}, headers=HEADERS)
        data = resp.json()["data"]
        assert data["recalculated"] == 1
        assert data["batch"]["failed"] == 0


class TestResearchRoutes:
    def test_templates(self, client):
        resp = client.get("/research/templates", headers=HEADERS)
        assert len(resp.json()["data"]) == 9
        team = client.get("/research/templates", params={"category": "team"}, headers=HEADERS).json()["data"]
        assert {t["id"] for t in team} == {"key-decision-makers", "hiring-patterns"}

    def test_session_round_trip(self, client):
        use_executor(FakeExecutor())
        resp = client.post(
            "/research/sessions",
            json={"companyId": "lumen", "researchType": "team-dynamics", "companyName": "Lumen Labs"},
            headers=HEADERS,
        )
        assert resp.status_code == 202
        started = resp.json()["data"]
        assert started["total_query_count"] == 2
        sid = started["session_id"]

        resp = wait_for_results(client, sid)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["session"]["status"] == "completed"
        assert data["session"]["owner_id"] == "analyst-1"
        assert data["session"]["progress"] == 1.0
        assert data["finding_count"] > 0
        assert set(data["findings"]) == {"team"}
        assert data["summary"] is not None
        assert len(data["sources"]) == 2

        progress = client.get(f"/research/sessions/{sid}", headers=HEADERS).json()["data"]
        assert progress["completed_query_count"] == 2

        listed = client.get("/companies/lumen/research/sessions", headers=HEADERS).json()
        assert [s["id"] for s in listed["data"]] == [sid]

        events = client.get(f"/research/sessions/{sid}/events", headers=HEADERS)
        assert events.headers["content-type"].startswith("text/event-stream")
        assert '"type": "complete"' in events.text

    def test_results_not_ready_then_cancel(self, client):
        use_executor(FakeExecutor(hang=True))
        resp = client.post(
            "/research/sessions",
            json={"companyId": "lumen", "templateIds": ["recent-activities"], "config": {"timeoutMs": 60000}},
            headers=HEADERS,
        )
        sid = resp.json()["data"]["session_id"]

        resp = client.get(f"/research/sessions/{sid}/results", headers=HEADERS)
        assert resp.status_code == 202
        assert resp.json()["kind"] == "not_ready"

        resp = client.post(f"/research/sessions/{sid}/cancel", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "cancelled"

        resp = client.get(f"/research/sessions/{sid}/results", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["data"]["finding_count"] == 0

    def test_unknown_template_rejected(self, client):
        use_executor(FakeExecutor())
        resp = client.post(
            "/research/sessions", json={"companyId": "lumen", "templateIds": ["nope"]}, headers=HEADERS,
        )
        assert resp.status_code == 400
        assert resp.json()["kind"] == "validation"

    def test_unknown_session(self, client):
        use_executor(FakeExecutor())
        resp = client.get("/research/sessions/missing", headers=HEADERS)
        assert resp.status_code == 404
        assert resp.json()["kind"] == "not_found"
