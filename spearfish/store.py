"""Persistence adapters for score history and research sessions.

Both stores take a session factory and run each operation in its own
transaction, so they can be shared by request handlers, background research
tasks and the MCP server.
"""
from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from spearfish.errors import NotFoundError, PersistenceError, SpearfishError
from spearfish.models import Company, ResearchFindingRecord, ResearchSessionRecord, ScoreBatchLog, ScoreHistory
from spearfish.schemas import (
    BatchScoreUpdate,
    CompanyData,
    ResearchConfig,
    ResearchFinding,
    ResearchSession,
    ResearchSummary,
    ScoreMetadata,
    ScoreResult,
    ScoreStats,
)
from spearfish.scorer import ScoringEngine, canonicalize_batch
from spearfish.utils import as_utc, json_parse, utcnow

log = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

DISTRIBUTION_BUCKETS = ((0.0, 2.0, "0-2"), (2.0, 4.0, "2-4"), (4.0, 6.0, "4-6"), (6.0, 8.0, "6-8"), (8.0, 10.01, "8-10"))


def _naive(value: datetime | None) -> datetime | None:
    """SQLite stores naive timestamps; everything is written as naive UTC."""
    value = as_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def _with_persisted(result: ScoreResult, persisted: bool, warning: str | None = None) -> ScoreResult:
    warnings = list(result.metadata.warnings)
    if warning:
        warnings.append(warning)
    metadata = result.metadata.model_copy(update={"persisted": persisted, "warnings": warnings})
    return result.model_copy(update={"metadata": metadata})


def score_from_row(row: ScoreHistory) -> ScoreResult:
    return ScoreResult(
        company_id=row.company_id,
        total_score=row.total_score,
        normalized_score=row.normalized_score,
        breakdown=json_parse(row.breakdown_json, {}),
        weights=json_parse(row.weights_json, {}),
        confidence=row.confidence,
        algorithm_version=row.algorithm_version,
        calculated_at=as_utc(row.calculated_at),
        metadata=ScoreMetadata.model_validate({**json_parse(row.metadata_json, {}), "persisted": True}),
    )


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


class ScoreStore:
    def __init__(self, session_factory: SessionFactory, attempts: int = 3):
        self._session_factory = session_factory
        self._attempts = max(1, attempts)

    def save_score(self, company: CompanyData, result: ScoreResult, batch_id: str | None = None) -> ScoreResult:
        """Append a history row and move the company's current-score pointer.

        Retried on database errors. If every attempt fails the computed score is
        still returned, flagged ``persisted=False`` with a warning.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._attempts + 1):
            try:
                self._write_score(company, result, batch_id)
                return _with_persisted(result, True)
            except SQLAlchemyError as exc:
                last_error = exc
                log.warning(
                    "Persisting score for %s failed (attempt %d/%d): %s",
                    company.id, attempt, self._attempts, exc,
                )
        return _with_persisted(result, False, f"Score was computed but could not be saved: {last_error}")

    def _write_score(self, company: CompanyData, result: ScoreResult, batch_id: str | None) -> None:
        with self._session_factory() as session:
            try:
                row = session.get(Company, company.id)
                if row is None:
                    row = Company(id=company.id)
                    session.add(row)
                row.name = company.name or ""
                row.batch = company.batch or ""
                row.snapshot_json = company.model_dump_json()

                history = ScoreHistory(
                    company_id=company.id,
                    total_score=result.total_score,
                    normalized_score=result.normalized_score,
                    breakdown_json=json.dumps(result.breakdown),
                    weights_json=json.dumps(result.weights),
                    confidence=result.confidence,
                    algorithm_version=result.algorithm_version,
                    metadata_json=result.metadata.model_dump_json(exclude={"persisted"}),
                    batch_id=batch_id,
                    calculated_at=_naive(result.calculated_at),
                )
                session.add(history)
                session.flush()

                calculated_at = _naive(result.calculated_at)
                if row.score_updated_at is None or row.score_updated_at <= calculated_at:
                    row.spearfish_score = result.total_score
                    row.normalized_score = result.normalized_score
                    row.current_score_id = history.id
                    row.score_algorithm_version = result.algorithm_version
                    row.score_updated_at = calculated_at
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

    def batch_update(
        self,
        companies: Iterable[CompanyData],
        engine: ScoringEngine,
        now: datetime | None = None,
        save: bool = True,
    ) -> tuple[list[ScoreResult], BatchScoreUpdate]:
        """Score (and optionally save) many companies; one failure never stops the batch."""
        batch_id = str(uuid.uuid4())
        started_at = utcnow()
        results: list[ScoreResult] = []
        errors: list[dict[str, str]] = []
        total = 0
        for company in companies:
            total += 1
            try:
                result = engine.score(company, now=now)
            except SpearfishError as exc:
                errors.append({"company_id": getattr(company, "id", "") or "", "error": exc.message})
                continue
            if save:
                result = self.save_score(company, result, batch_id=batch_id)
                if result.metadata.persisted is False:
                    errors.append({"company_id": company.id, "error": result.metadata.warnings[-1]})
                    results.append(result)
                    continue
            results.append(result)

        summary = BatchScoreUpdate(
            batch_id=batch_id, total=total,
            successful=total - len(errors), failed=len(errors), errors=errors,
        )
        if save:
            self._log_batch(summary, engine.algorithm_version, started_at)
        log.info("Score batch %s: %d ok, %d failed", batch_id, summary.successful, summary.failed)
        return results, summary

    def _log_batch(self, summary: BatchScoreUpdate, algorithm_version: str, started_at: datetime) -> None:
        try:
            with self._session_factory() as session:
                session.add(ScoreBatchLog(
                    id=summary.batch_id,
                    algorithm_version=algorithm_version,
                    total=summary.total,
                    successful=summary.successful,
                    failed=summary.failed,
                    errors_json=json.dumps(summary.errors),
                    started_at=_naive(started_at),
                    completed_at=_naive(utcnow()),
                ))
                session.commit()
        except SQLAlchemyError as exc:
            log.warning("Could not write batch log %s: %s", summary.batch_id, exc)

    def history(
        self,
        company_id: str,
        limit: int = 50,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> list[ScoreResult]:
        """Score history for a company, most recent first."""
        try:
            with self._session_factory() as session:
                if session.get(Company, company_id) is None:
                    raise NotFoundError(f"Company {company_id} not found")
                query = select(ScoreHistory).where(ScoreHistory.company_id == company_id)
                if from_date is not None:
                    query = query.where(ScoreHistory.calculated_at >= _naive(from_date))
                if to_date is not None:
                    query = query.where(ScoreHistory.calculated_at <= _naive(to_date))
                query = query.order_by(ScoreHistory.calculated_at.desc(), ScoreHistory.id.desc()).limit(limit)
                return [score_from_row(r) for r in session.execute(query).scalars()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load score history: {exc}") from exc

    def current_score(self, company_id: str) -> ScoreResult | None:
        with self._session_factory() as session:
            company = session.get(Company, company_id)
            if company is None or company.current_score_id is None:
                return None
            row = session.get(ScoreHistory, company.current_score_id)
            return score_from_row(row) if row is not None else None

    def get_company(self, company_id: str) -> CompanyData | None:
        with self._session_factory() as session:
            row = session.get(Company, company_id)
            if row is None:
                return None
            return _snapshot(row)

    def needs_recalculation(
        self,
        algorithm_version: str | None = None,
        older_than: datetime | None = None,
        batches: Sequence[str] | None = None,
        limit: int = 100,
        force_all: bool = False,
    ) -> list[CompanyData]:
        """Companies whose current score is missing, stale or from another algorithm version."""
        query = select(Company)
        if not force_all:
            stale = [Company.spearfish_score.is_(None)]
            if algorithm_version:
                stale.append(Company.score_algorithm_version != algorithm_version)
            if older_than is not None:
                stale.append(Company.score_updated_at < _naive(older_than))
            query = query.where(or_(*stale))
        if batches:
            codes = {canonicalize_batch(b) for b in batches} | set(batches)
            query = query.where(Company.batch.in_({c for c in codes if c}))
        query = query.order_by(Company.score_updated_at.asc(), Company.id).limit(limit)
        with self._session_factory() as session:
            companies = []
            for row in session.execute(query).scalars():
                snapshot = _snapshot(row)
                if snapshot is not None:
                    companies.append(snapshot)
            return companies

    def statistics(self) -> ScoreStats:
        with self._session_factory() as session:
            total = session.execute(select(func.count(Company.id))).scalar_one()
            rows = session.execute(
                select(Company.spearfish_score, Company.score_algorithm_version, Company.score_updated_at)
                .where(Company.spearfish_score.is_not(None))
            ).all()
        distribution = {label: 0 for _, _, label in DISTRIBUTION_BUCKETS}
        versions: Counter[str] = Counter()
        for score, version, _ in rows:
            for low, high, label in DISTRIBUTION_BUCKETS:
                if low <= score < high:
                    distribution[label] += 1
                    break
            versions[version or "unknown"] += 1
        scores = [r[0] for r in rows]
        last = max((r[2] for r in rows if r[2] is not None), default=None)
        return ScoreStats(
            total_companies=total,
            scored_companies=len(rows),
            average_score=round(sum(scores) / len(scores), 3) if scores else None,
            distribution=distribution,
            algorithm_versions=dict(versions),
            last_calculated_at=as_utc(last),
        )


def _snapshot(row: Company) -> CompanyData | None:
    data = json_parse(row.snapshot_json, {})
    if not isinstance(data, dict):
        data = {}
    data.setdefault("id", row.id)
    data.setdefault("name", row.name or None)
    data.setdefault("batch", row.batch or None)
    try:
        return CompanyData.model_validate(data)
    except ValueError as exc:
        log.warning("Stored snapshot for company %s is unreadable: %s", row.id, exc)
        return None


# ---------------------------------------------------------------------------
# Research sessions
# ---------------------------------------------------------------------------


class SessionStore:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def save_session(self, snapshot: ResearchSession, summary: ResearchSummary | None = None) -> None:
        """Insert or update the session row from an in-memory snapshot."""
        try:
            with self._session_factory() as session:
                row = session.get(ResearchSessionRecord, snapshot.id)
                if row is None:
                    row = ResearchSessionRecord(id=snapshot.id)
                    session.add(row)
                row.company_id = snapshot.company_id
                row.owner_id = snapshot.owner_id
                row.research_type = snapshot.research_type
                row.template_ids_json = json.dumps(snapshot.template_ids)
                row.status = snapshot.status.value
                row.started_at = _naive(snapshot.started_at)
                row.completed_at = _naive(snapshot.completed_at)
                row.total_cost = snapshot.total_cost
                row.tokens_used = snapshot.tokens_used
                row.completed_query_count = snapshot.completed_query_count
                row.total_query_count = snapshot.total_query_count
                row.failed_query_count = snapshot.failed_query_count
                row.skipped_query_count = snapshot.skipped_query_count
                row.error_message = snapshot.error_message
                row.error_kind = snapshot.error_kind
                row.config_json = snapshot.config.model_dump_json() if snapshot.config else "{}"
                row.query_statuses_json = json.dumps({k: v.value for k, v in snapshot.query_statuses.items()})
                row.metadata_json = json.dumps(snapshot.metadata, default=str)
                if summary is not None:
                    row.summary_json = summary.model_dump_json()
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not save research session {snapshot.id}: {exc}") from exc

    def save_findings(self, session_id: str, findings: Sequence[ResearchFinding]) -> None:
        try:
            with self._session_factory() as session:
                session.execute(delete(ResearchFindingRecord).where(ResearchFindingRecord.session_id == session_id))
                for rank, f in enumerate(findings):
                    session.add(ResearchFindingRecord(
                        id=f.id,
                        session_id=session_id,
                        finding_type=f.finding_type,
                        category=f.category,
                        title=f.title[:300],
                        content=f.content,
                        confidence_score=f.confidence_score,
                        citations_json=json.dumps(f.citations),
                        priority_level=f.priority_level,
                        tags_json=json.dumps(f.tags),
                        source_template_id=f.source_template_id,
                        rank=rank,
                        created_at=_naive(f.created_at),
                    ))
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not save findings for session {session_id}: {exc}") from exc

    def load_session(self, session_id: str) -> ResearchSession | None:
        try:
            with self._session_factory() as session:
                row = session.get(ResearchSessionRecord, session_id)
                return _session_from_row(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load research session {session_id}: {exc}") from exc

    def load_summary(self, session_id: str) -> ResearchSummary | None:
        with self._session_factory() as session:
            row = session.get(ResearchSessionRecord, session_id)
            if row is None or not row.summary_json:
                return None
            return ResearchSummary.model_validate_json(row.summary_json)

    def load_findings(self, session_id: str) -> list[ResearchFinding]:
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    select(ResearchFindingRecord)
                    .where(ResearchFindingRecord.session_id == session_id)
                    .order_by(ResearchFindingRecord.rank)
                ).scalars()
                return [
                    ResearchFinding(
                        id=r.id,
                        session_id=r.session_id,
                        finding_type=r.finding_type,
                        category=r.category,
                        title=r.title,
                        content=r.content,
                        confidence_score=r.confidence_score,
                        citations=json_parse(r.citations_json, []),
                        priority_level=r.priority_level,
                        tags=json_parse(r.tags_json, []),
                        source_template_id=r.source_template_id,
                        created_at=as_utc(r.created_at),
                    )
                    for r in rows
                ]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load findings for session {session_id}: {exc}") from exc

    def list_sessions(
        self,
        company_id: str,
        limit: int = 20,
        offset: int = 0,
        status: str | None = None,
    ) -> list[ResearchSession]:
        query = select(ResearchSessionRecord).where(ResearchSessionRecord.company_id == company_id)
        if status:
            query = query.where(ResearchSessionRecord.status == status)
        query = query.order_by(ResearchSessionRecord.started_at.desc()).offset(offset).limit(limit)
        try:
            with self._session_factory() as session:
                return [_session_from_row(r) for r in session.execute(query).scalars()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not list research sessions: {exc}") from exc


def _session_from_row(row: ResearchSessionRecord) -> ResearchSession:
    config = json_parse(row.config_json, {})
    return ResearchSession(
        id=row.id,
        company_id=row.company_id,
        owner_id=row.owner_id,
        research_type=row.research_type,
        template_ids=json_parse(row.template_ids_json, []),
        status=row.status,
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        total_cost=row.total_cost,
        tokens_used=row.tokens_used,
        completed_query_count=row.completed_query_count,
        total_query_count=row.total_query_count,
        failed_query_count=row.failed_query_count,
        skipped_query_count=row.skipped_query_count,
        query_statuses=json_parse(row.query_statuses_json, {}),
        error_message=row.error_message,
        error_kind=row.error_kind,
        config=ResearchConfig.model_validate(config) if config else None,
        metadata=json_parse(row.metadata_json, {}),
    )
