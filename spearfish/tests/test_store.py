from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from spearfish.errors import NotFoundError
from spearfish.schemas import (
    CompanyData,
    QueryStatus,
    ResearchConfig,
    ResearchFinding,
    ResearchSession,
    ResearchSummary,
    SessionState,
)
from spearfish.scorer import ScoringEngine
from spearfish.store import ScoreStore, SessionStore

NOW = datetime(2025, 3, 1, tzinfo=UTC)


@pytest.fixture()
def score_store(test_db):
    _, TestSession = test_db
    return ScoreStore(TestSession)


@pytest.fixture()
def engine():
    return ScoringEngine()


def company(cid="lumen", **extra) -> CompanyData:
    return CompanyData(id=cid, name=cid.title(), batch="Winter 2023", is_hiring=True, **extra)


class TestScoreStore:
    def test_save_and_current(self, score_store, engine):
        result = score_store.save_score(company(), engine.score(company(), now=NOW))
        assert result.metadata.persisted is True
        current = score_store.current_score("lumen")
        assert current.total_score == result.total_score
        assert current.calculated_at == NOW
        assert current.metadata.persisted is True
        assert score_store.get_company("lumen").name == "Lumen"

    def test_history_most_recent_first(self, score_store, engine):
        for days in (0, 1, 2):
            now = NOW + timedelta(days=days)
            score_store.save_score(company(), engine.score(company(), now=now))
        history = score_store.history("lumen")
        assert [h.calculated_at for h in history] == [NOW + timedelta(days=d) for d in (2, 1, 0)]
        assert len(score_store.history("lumen", limit=1)) == 1
        assert len(score_store.history("lumen", from_date=NOW + timedelta(days=1))) == 2
        assert len(score_store.history("lumen", to_date=NOW)) == 1

    def test_history_for_unknown_company(self, score_store):
        with pytest.raises(NotFoundError):
            score_store.history("nobody")

    def test_older_result_does_not_move_pointer(self, score_store, engine):
        newer = score_store.save_score(company(), engine.score(company(), now=NOW))
        score_store.save_score(company(), engine.score(company(), now=NOW - timedelta(days=5)))
        assert score_store.current_score("lumen").calculated_at == newer.calculated_at
        assert len(score_store.history("lumen")) == 2

    def test_save_failure_still_returns_score(self, engine):
        factory = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("database is locked")))
        store = ScoreStore(factory, attempts=2)
        result = store.save_score(company(), engine.score(company(), now=NOW))
        assert result.metadata.persisted is False
        assert "could not be saved" in result.metadata.warnings[-1]
        assert factory.call_count == 2

    def test_batch_update(self, score_store, engine):
        results, summary = score_store.batch_update(
            [company("a"), company("b"), {"name": "no id"}], engine, now=NOW,
        )
        assert summary.total == 3
        assert summary.successful == 2
        assert summary.failed == 1
        assert [r.company_id for r in results] == ["a", "b"]
        assert score_store.current_score("b") is not None

    def test_batch_without_saving(self, score_store, engine):
        results, summary = score_store.batch_update([company("a")], engine, now=NOW, save=False)
        assert summary.successful == 1
        assert results[0].metadata.persisted is None
        assert score_store.current_score("a") is None

    def test_needs_recalculation(self, score_store, engine):
        score_store.save_score(company("fresh"), engine.score(company("fresh"), now=NOW))
        stale = engine.score(company("stale"), now=NOW).model_copy(update={"algorithm_version": "2.0"})
        score_store.save_score(company("stale"), stale)

        ids = [c.id for c in score_store.needs_recalculation(algorithm_version=engine.algorithm_version)]
        assert ids == ["stale"]
        assert len(score_store.needs_recalculation(force_all=True)) == 2
        assert score_store.needs_recalculation(force_all=True, batches=["Summer 2019"]) == []
        assert len(score_store.needs_recalculation(force_all=True, batches=["W23"])) == 2

    def test_statistics(self, score_store, engine):
        stats = score_store.statistics()
        assert stats.total_companies == 0
        assert stats.average_score is None

        score_store.save_score(company("a"), engine.score(company("a"), now=NOW))
        score_store.save_score(company("b"), engine.score(company("b"), now=NOW))
        stats = score_store.statistics()
        assert stats.total_companies == 2
        assert stats.scored_companies == 2
        assert sum(stats.distribution.values()) == 2
        assert stats.algorithm_versions == {engine.algorithm_version: 2}
        assert stats.last_calculated_at == NOW


# ---------------------------------------------------------------------------
# Research sessions
# ---------------------------------------------------------------------------


def research_session(sid="s1", status=SessionState.COMPLETED, started=NOW) -> ResearchSession:
    return ResearchSession(
        id=sid,
        company_id="lumen",
        owner_id="owner-1",
        research_type="team-dynamics",
        template_ids=["key-decision-makers", "hiring-patterns"],
        status=status,
        started_at=started,
        completed_at=started + timedelta(seconds=30) if status.is_terminal else None,
        total_cost=0.022,
        tokens_used=900,
        completed_query_count=2,
        total_query_count=2,
        query_statuses={"key-decision-makers": QueryStatus.COMPLETED, "hiring-patterns": QueryStatus.COMPLETED},
        config=ResearchConfig(
            template_ids=["key-decision-makers", "hiring-patterns"], max_concurrent_queries=2,
            max_cost_usd=1.0, timeout_ms=60000, enable_synthesis=True, save_to_database=True,
        ),
        metadata={"partial": False},
    )


class TestSessionStore:
    def test_session_round_trip(self, test_db):
        _, TestSession = test_db
        store = SessionStore(TestSession)
        summary = ResearchSummary(
            executive_summary="Lumen is hiring.", risk_factors=["Hiring"], finding_count=1, confidence_level=0.7,
        )
        store.save_session(research_session(), summary)

        loaded = store.load_session("s1")
        assert loaded.status is SessionState.COMPLETED
        assert loaded.started_at == NOW
        assert loaded.total_cost == pytest.approx(0.022)
        assert loaded.query_statuses["hiring-patterns"] is QueryStatus.COMPLETED
        assert loaded.config.timeout_ms == 60000
        assert loaded.metadata == {"partial": False}
        assert store.load_summary("s1").executive_summary == "Lumen is hiring."
        assert store.load_session("missing") is None

    def test_update_in_place(self, test_db):
        _, TestSession = test_db
        store = SessionStore(TestSession)
        store.save_session(research_session(status=SessionState.PROCESSING))
        store.save_session(research_session(status=SessionState.FAILED))
        assert store.load_session("s1").status is SessionState.FAILED
        assert len(store.list_sessions("lumen")) == 1

    def test_findings_replace_previous_set(self, test_db):
        _, TestSession = test_db
        store = SessionStore(TestSession)
        store.save_session(research_session())

        def finding(fid, title):
            return ResearchFinding(
                id=fid, session_id="s1", finding_type="team_insight", category="team", title=title,
                content=f"{title} details", confidence_score=0.6, citations=["https://lumen.dev/team"],
                source_template_id="hiring-patterns", created_at=NOW,
            )

        store.save_findings("s1", [finding("f1", "First"), finding("f2", "Second")])
        store.save_findings("s1", [finding("f3", "Third")])
        findings = store.load_findings("s1")
        assert [f.id for f in findings] == ["f3"]
        assert findings[0].citations == ["https://lumen.dev/team"]
        assert findings[0].created_at == NOW

    def test_list_sessions(self, test_db):
        _, TestSession = test_db
        store = SessionStore(TestSession)
        store.save_session(research_session("old", started=NOW - timedelta(hours=1)))
        store.save_session(research_session("new", status=SessionState.FAILED))
        assert [s.id for s in store.list_sessions("lumen")] == ["new", "old"]
        assert [s.id for s in store.list_sessions("lumen", status="failed")] == ["new"]
        assert [s.id for s in store.list_sessions("lumen", limit=1, offset=1)] == ["old"]
        assert store.list_sessions("other") == []
