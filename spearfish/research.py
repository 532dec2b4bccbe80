"""Research session orchestration.

A session fans a list of query templates out to a bounded pool of asyncio
workers. Workers only pull templates, reserve budget and report events; a
single collector coroutine per session owns the running totals, so cost and
token counters are never written concurrently.

Lifecycle::

    pending -> processing -> completed | failed
       \\            \\-> cancelled
        \\-> cancelled | failed

The terminal transition happens only after every worker has returned (join
barrier) and after findings have been stored, so a terminal snapshot always
has its results available.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from spearfish.errors import (
    BudgetExceededError,
    ExternalProviderError,
    NotFoundError,
    NotReadyError,
    PersistenceError,
    ResearchTimeoutError,
    SessionStateError,
    ValidationError,
)
from spearfish.executor import ProviderResponse, QueryExecutor
from spearfish.schemas import (
    CompanyData,
    QueryStatus,
    ResearchConfig,
    ResearchFinding,
    ResearchResults,
    ResearchSession,
    ResearchSummary,
    SessionState,
    SourceInfo,
)
from spearfish.store import SessionStore
from spearfish.synthesizer import QueryOutput, analyze_sources, raw_findings, summarize, synthesize
from spearfish.templates import QueryTemplate, QueryVariables, RenderedQuery, get_template, render, validate_variables
from spearfish.utils import utcnow

log = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.PENDING: frozenset({SessionState.PROCESSING, SessionState.FAILED, SessionState.CANCELLED}),
    SessionState.PROCESSING: frozenset({SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}),
}


# ---------------------------------------------------------------------------
# Progress registry
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    session: ResearchSession
    lock: threading.Lock = field(default_factory=threading.Lock)
    findings: list[ResearchFinding] | None = None
    summary: ResearchSummary | None = None
    sources: list[SourceInfo] = field(default_factory=list)


class ProgressRegistry:
    """In-process session snapshots with per-session locking.

    The registry-wide lock only guards the id → entry map. Reading one
    session never waits on a writer of another session. Readers always get a
    deep copy, so callers can never mutate live state.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _entry(self, session_id: str) -> _Entry | None:
        with self._lock:
            return self._entries.get(session_id)

    def _require(self, session_id: str) -> _Entry:
        entry = self._entry(session_id)
        if entry is None:
            raise NotFoundError(f"Research session {session_id} not found")
        return entry

    def create(self, session: ResearchSession) -> None:
        with self._lock:
            if session.id in self._entries:
                raise SessionStateError(f"Research session {session.id} already exists")
            self._entries[session.id] = _Entry(session=session.model_copy(deep=True))

    def get(self, session_id: str) -> ResearchSession | None:
        entry = self._entry(session_id)
        if entry is None:
            return None
        with entry.lock:
            return entry.session.model_copy(deep=True)

    def mutate(self, session_id: str, fn: Callable[[ResearchSession], None]) -> ResearchSession:
        """Apply *fn* to a draft copy and swap it in atomically."""
        entry = self._require(session_id)
        with entry.lock:
            draft = entry.session.model_copy(deep=True)
            fn(draft)
            entry.session = draft
            return draft.model_copy(deep=True)

    def transition(self, session_id: str, state: SessionState, **changes: Any) -> ResearchSession:
        """Move a session forward; backward or out-of-terminal moves raise ``SessionStateError``."""
        entry = self._require(session_id)
        with entry.lock:
            current = entry.session.status
            if state not in ALLOWED_TRANSITIONS.get(current, frozenset()):
                raise SessionStateError(
                    f"Research session {session_id} cannot move from {current.value} to {state.value}"
                )
            entry.session = entry.session.model_copy(update={"status": state, **changes}, deep=True)
            return entry.session.model_copy(deep=True)

    def set_results(
        self,
        session_id: str,
        findings: list[ResearchFinding],
        summary: ResearchSummary | None,
        sources: list[SourceInfo],
    ) -> None:
        entry = self._require(session_id)
        with entry.lock:
            entry.findings = list(findings)
            entry.summary = summary
            entry.sources = list(sources)

    def results(self, session_id: str) -> tuple[list[ResearchFinding], ResearchSummary | None, list[SourceInfo]] | None:
        entry = self._entry(session_id)
        if entry is None:
            return None
        with entry.lock:
            if entry.findings is None:
                return None
            return list(entry.findings), entry.summary, list(entry.sources)

    def sessions_for(self, company_id: str) -> list[ResearchSession]:
        with self._lock:
            entries = list(self._entries.values())
        out = []
        for entry in entries:
            with entry.lock:
                if entry.session.company_id == company_id:
                    out.append(entry.session.model_copy(deep=True))
        return out

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._entries.pop(session_id, None) is not None


# ---------------------------------------------------------------------------
# Per-session run state
# ---------------------------------------------------------------------------


class _BudgetGate:
    """Cost accounting for one session.

    Workers reserve budget before dispatch and settle the reservation with the
    actual cost once the query resolves. A reservation is the larger of the
    executor's estimate and the largest actual cost settled so far. Until the
    first query settles, dispatch is serialized, so an estimate that proves
    too low can push spend past the ceiling by at most one query. Only touched
    from the event loop thread.
    """

    def __init__(self, ceiling: float):
        self.ceiling = ceiling
        self.committed = 0.0
        self.reserved = 0.0
        self.largest_actual = 0.0
        self.calibrated = False
        self.in_flight = 0
        self._changed = asyncio.Event()

    async def reserve(self, estimate: float) -> float | None:
        """Reserve budget for one query; ``None`` when it would cross the ceiling."""
        while not self.calibrated and self.in_flight:
            self._changed.clear()
            await self._changed.wait()
        amount = max(estimate, self.largest_actual)
        if self.committed >= self.ceiling:
            return None
        if self.committed + self.reserved + amount > self.ceiling + 1e-12:
            return None
        self.reserved += amount
        self.in_flight += 1
        return amount

    def settle(self, amount: float, actual: float) -> None:
        self.reserved = max(0.0, self.reserved - amount)
        self.committed += actual
        self.largest_actual = max(self.largest_actual, actual)
        self.calibrated = True
        self._done()

    def release(self, amount: float) -> None:
        self.reserved = max(0.0, self.reserved - amount)
        self._done()

    def _done(self) -> None:
        self.in_flight = max(0, self.in_flight - 1)
        self._changed.set()


@dataclass
class _Event:
    kind: str  # started | completed | failed | budget_skipped | cancelled
    template: QueryTemplate
    output: QueryOutput | None = None
    error: str | None = None


@dataclass
class _Run:
    session_id: str
    company_name: str
    config: ResearchConfig
    pending: deque[QueryTemplate]
    rendered: dict[str, RenderedQuery]
    budget: _BudgetGate
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    outputs: list[QueryOutput] = field(default_factory=list)
    workers: list[asyncio.Task] = field(default_factory=list)
    task: asyncio.Task | None = None
    cancel_requested: bool = False
    timed_out: bool = False


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


CompanyLookup = Callable[[str], CompanyData | None]


class ResearchOrchestrator:
    def __init__(
        self,
        executor: QueryExecutor,
        registry: ProgressRegistry | None = None,
        session_store: SessionStore | None = None,
        company_lookup: CompanyLookup | None = None,
        max_retries: int = 2,
        retry_backoff_seconds: float = 1.0,
        query_timeout_seconds: float = 60.0,
    ):
        self.executor = executor
        self.registry = registry or ProgressRegistry()
        self.session_store = session_store
        self.company_lookup = company_lookup
        self.max_retries = max(0, max_retries)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self.query_timeout_seconds = query_timeout_seconds
        self._runs: dict[str, _Run] = {}

    # -- public API ---------------------------------------------------------

    async def start_session(
        self,
        company_id: str,
        owner_id: str,
        config: ResearchConfig | Mapping[str, Any],
        variables: QueryVariables | Mapping[str, Any] | None = None,
        research_type: str | None = None,
    ) -> str:
        """Validate, register a ``pending`` session and schedule it. Returns immediately."""
        if not isinstance(company_id, str) or not company_id.strip():
            raise ValidationError("company_id is required")
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise ValidationError("owner_id is required")
        config = _coerce_config(config)
        template_ids = list(dict.fromkeys(config.template_ids))
        templates = [get_template(t) for t in template_ids]
        query_vars = self._resolve_variables(company_id, variables)
        problems = validate_variables(query_vars)
        if problems:
            raise ValidationError("Invalid query variables: " + "; ".join(problems))
        rendered = {t.id: render(t, query_vars) for t in templates}
        config = config.model_copy(update={"template_ids": template_ids})

        session_id = str(uuid.uuid4())
        snapshot = ResearchSession(
            id=session_id,
            company_id=company_id,
            owner_id=owner_id,
            research_type=research_type,
            template_ids=template_ids,
            status=SessionState.PENDING,
            started_at=utcnow(),
            total_query_count=len(templates),
            query_statuses={tid: QueryStatus.PENDING for tid in template_ids},
            config=config,
        )
        self.registry.create(snapshot)
        run = _Run(
            session_id=session_id,
            company_name=query_vars.company_name,
            config=config,
            pending=deque(templates),
            rendered=rendered,
            budget=_BudgetGate(config.max_cost_usd),
        )
        self._runs[session_id] = run
        self._persist(run)
        run.task = asyncio.create_task(self._drive(run), name=f"research-{session_id}")
        log.info(
            "Research session %s started for %s (%d templates, concurrency %d)",
            session_id, company_id, len(templates), config.max_concurrent_queries,
        )
        return session_id

    def get_progress(self, session_id: str) -> ResearchSession:
        snapshot = self.registry.get(session_id)
        if snapshot is not None:
            return snapshot
        if self.session_store is not None:
            stored = self.session_store.load_session(session_id)
            if stored is not None:
                return stored
        raise NotFoundError(f"Research session {session_id} not found")

    def get_results(self, session_id: str) -> ResearchResults:
        snapshot = self.get_progress(session_id)
        if not snapshot.status.is_terminal:
            raise NotReadyError(f"Research session {session_id} is still {snapshot.status.value}")
        cached = self.registry.results(session_id)
        if cached is not None:
            findings, summary, sources = cached
        elif self.session_store is not None:
            findings = self.session_store.load_findings(session_id)
            summary = self.session_store.load_summary(session_id)
            sources = analyze_sources(c for f in findings for c in f.citations)
        else:
            findings, summary, sources = [], None, []
        return ResearchResults(session=snapshot, findings=findings, summary=summary, sources=sources)

    async def cancel_session(self, session_id: str) -> ResearchSession:
        """Request cancellation and wait for the session's workers to wind down."""
        run = self._runs.get(session_id)
        if run is None:
            snapshot = self.get_progress(session_id)
            if snapshot.status.is_terminal:
                return snapshot
            raise SessionStateError(f"Research session {session_id} is not running in this process")
        snapshot = self.registry.get(session_id)
        if snapshot is not None and snapshot.status.is_terminal:
            return snapshot
        run.cancel_requested = True
        run.cancel.set()
        for worker in run.workers:
            worker.cancel()
        if run.task is not None:
            await asyncio.wait([run.task])
        log.info("Research session %s cancelled by operator", session_id)
        return self.get_progress(session_id)

    async def wait(self, session_id: str, timeout: float | None = None) -> ResearchSession:
        """Block until the session is terminal (or *timeout* elapses) and return its snapshot."""
        run = self._runs.get(session_id)
        if run is not None and run.task is not None:
            await asyncio.wait([run.task], timeout=timeout)
        return self.get_progress(session_id)

    def list_sessions(
        self,
        company_id: str,
        limit: int = 20,
        offset: int = 0,
        status: str | None = None,
    ) -> list[ResearchSession]:
        sessions = {s.id: s for s in self.registry.sessions_for(company_id)}
        if self.session_store is not None:
            for stored in self.session_store.list_sessions(company_id, limit=limit + offset, status=status):
                sessions.setdefault(stored.id, stored)
        ordered = sorted(sessions.values(), key=lambda s: s.started_at, reverse=True)
        if status:
            ordered = [s for s in ordered if s.status.value == status]
        return ordered[offset:offset + limit]

    def cleanup(self, session_id: str) -> bool:
        """Drop a terminal session from memory (persisted rows are kept)."""
        snapshot = self.registry.get(session_id)
        if snapshot is None:
            return False
        if not snapshot.status.is_terminal:
            raise SessionStateError(f"Research session {session_id} is still {snapshot.status.value}")
        self._runs.pop(session_id, None)
        return self.registry.remove(session_id)

    async def shutdown(self) -> None:
        for session_id, run in list(self._runs.items()):
            if run.task is not None and not run.task.done():
                await self.cancel_session(session_id)

    # -- setup helpers ------------------------------------------------------

    def _resolve_variables(
        self, company_id: str, variables: QueryVariables | Mapping[str, Any] | None,
    ) -> QueryVariables:
        if isinstance(variables, QueryVariables):
            return variables
        if variables is not None:
            return QueryVariables.from_mapping(dict(variables))
        if self.company_lookup is None:
            return QueryVariables(company_name=company_id)
        company = self.company_lookup(company_id)
        if company is None:
            log.warning("No stored snapshot for company %s; researching by id", company_id)
            return QueryVariables(company_name=company_id)
        return QueryVariables(
            company_name=company.name or company.id,
            company_domain=company.website,
            industry=company.industry,
            batch=company.batch,
            founded_year=company.launched_at.year if company.launched_at else None,
            description=company.one_liner or company.long_description,
            technologies=sorted({r.language for r in company.github_repos if r.language}),
        )

    def _estimate(self, query: RenderedQuery) -> float:
        estimate = getattr(self.executor, "estimate_cost", None)
        return float(estimate(query)) if callable(estimate) else query.cost_estimate_usd

    # -- execution ----------------------------------------------------------

    async def _drive(self, run: _Run) -> None:
        sid = run.session_id
        try:
            if run.cancel_requested:
                await self._finish(run)
                return
            self.registry.transition(sid, SessionState.PROCESSING)
            self._persist(run)

            collector = asyncio.create_task(self._collect(run))
            size = min(run.config.max_concurrent_queries, len(run.pending))
            run.workers = [asyncio.create_task(self._worker(run)) for _ in range(size)]
            if run.workers:
                _, unfinished = await asyncio.wait(run.workers, timeout=run.config.timeout_ms / 1000)
                if unfinished and not run.cancel_requested:
                    run.timed_out = True
                    log.warning("Research session %s timed out after %d ms", sid, run.config.timeout_ms)
                run.cancel.set()
                for worker in unfinished:
                    worker.cancel()
                for outcome in await asyncio.gather(*run.workers, return_exceptions=True):
                    if isinstance(outcome, Exception):
                        log.error("Research worker for %s crashed: %r", sid, outcome)
            run.events.put_nowait(None)
            await collector
            await self._finish(run)
        except Exception as exc:
            log.exception("Research session %s crashed", sid)
            self._fail(run, f"Research session failed unexpectedly: {exc}", "internal")
        finally:
            self._runs.pop(sid, None)

    async def _worker(self, run: _Run) -> None:
        while run.pending and not run.cancel.is_set():
            template = run.pending.popleft()
            await self._run_query(run, template)

    async def _run_query(self, run: _Run, template: QueryTemplate) -> None:
        query = run.rendered[template.id]
        try:
            reserved = await run.budget.reserve(self._estimate(query))
        except asyncio.CancelledError:
            run.events.put_nowait(_Event("cancelled", template))
            raise
        if reserved is None:
            run.events.put_nowait(_Event("budget_skipped", template))
            return
        run.events.put_nowait(_Event("started", template))
        attempts = self.max_retries + 1
        error: ExternalProviderError | None = None
        try:
            for attempt in range(1, attempts + 1):
                try:
                    response = await asyncio.wait_for(self.executor.execute(query), self.query_timeout_seconds)
                except asyncio.TimeoutError:
                    error = ExternalProviderError(
                        f"Query timed out after {self.query_timeout_seconds}s", retryable=True,
                    )
                except ExternalProviderError as exc:
                    error = exc
                except Exception as exc:
                    error = ExternalProviderError(f"Unexpected provider failure: {exc}", retryable=True)
                else:
                    output = _output(template, response)
                    run.budget.settle(reserved, output.cost_usd)
                    run.events.put_nowait(_Event("completed", template, output=output))
                    return

                if not error.retryable or attempt == attempts:
                    break
                delay = max(self.retry_backoff_seconds * 2 ** (attempt - 1), error.retry_after or 0.0)
                log.warning(
                    "Query %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    template.id, attempt, attempts, delay, error.message,
                )
                if await _cancelled_within(run.cancel, delay):
                    run.budget.release(reserved)
                    run.events.put_nowait(_Event("cancelled", template))
                    return
            log.warning("Query %s gave up: %s", template.id, error.message if error else "unknown error")
            run.budget.release(reserved)
            run.events.put_nowait(_Event("failed", template, error=error.message if error else None))
        except asyncio.CancelledError:
            run.budget.release(reserved)
            run.events.put_nowait(_Event("cancelled", template))
            raise

    async def _collect(self, run: _Run) -> None:
        while True:
            event = await run.events.get()
            if event is None:
                return
            self._apply(run, event)

    def _apply(self, run: _Run, event: _Event) -> None:
        tid = event.template.id
        if event.kind == "completed":
            run.outputs.append(event.output)
        elif event.kind == "budget_skipped":
            log.warning("Query %s skipped: session budget of $%.2f reached", tid, run.config.max_cost_usd)

        def update(s: ResearchSession) -> None:
            if event.kind == "started":
                s.active_queries.append(tid)
                s.query_statuses[tid] = QueryStatus.RUNNING
                return
            if tid in s.active_queries:
                s.active_queries.remove(tid)
            if event.kind == "completed":
                s.completed_query_count += 1
                s.total_cost = round(s.total_cost + event.output.cost_usd, 6)
                s.tokens_used += event.output.tokens_used
                s.query_statuses[tid] = QueryStatus.COMPLETED
            elif event.kind == "failed":
                s.failed_query_count += 1
                s.query_statuses[tid] = QueryStatus.FAILED
                s.metadata.setdefault("query_errors", {})[tid] = event.error
            elif event.kind == "budget_skipped":
                s.skipped_query_count += 1
                s.query_statuses[tid] = QueryStatus.BUDGET_SKIPPED
            elif event.kind == "cancelled":
                s.query_statuses[tid] = QueryStatus.CANCELLED

        self.registry.mutate(run.session_id, update)

    # -- termination --------------------------------------------------------

    async def _finish(self, run: _Run) -> None:
        sid = run.session_id
        undispatched = [t.id for t in run.pending]
        run.pending.clear()

        def mark_undispatched(s: ResearchSession) -> None:
            for tid in undispatched:
                s.query_statuses[tid] = QueryStatus.CANCELLED
            s.active_queries.clear()

        snapshot = self.registry.mutate(sid, mark_undispatched)
        metadata = dict(snapshot.metadata)
        error_message = error_kind = None
        findings: list[ResearchFinding] = []
        summary: ResearchSummary | None = None

        if run.cancel_requested:
            state = SessionState.CANCELLED
        elif run.timed_out and snapshot.completed_query_count == 0:
            state = SessionState.FAILED
            error_message = f"Research session timed out after {run.config.timeout_ms} ms with no completed queries"
            error_kind = ResearchTimeoutError.kind
        elif snapshot.completed_query_count == 0 and snapshot.failed_query_count > 0:
            state = SessionState.FAILED
            error_message = "All research queries failed"
            error_kind = ExternalProviderError.kind
        else:
            state = SessionState.COMPLETED

        metadata["timed_out"] = run.timed_out
        metadata["partial"] = snapshot.completed_query_count < snapshot.total_query_count
        if snapshot.skipped_query_count:
            metadata["budget_exhausted"] = True
            metadata["stop_reason"] = BudgetExceededError.kind

        if state is SessionState.COMPLETED:
            outputs = list(run.outputs)
            if run.config.enable_synthesis:
                findings = synthesize(outputs, sid)
                summary = summarize(run.company_name, findings)
            else:
                findings = raw_findings(outputs, sid)
        sources = analyze_sources(c for o in run.outputs for c in o.citations)

        self.registry.set_results(sid, findings, summary, sources)
        if run.config.save_to_database and self.session_store is not None and findings:
            try:
                self.session_store.save_findings(sid, findings)
            except PersistenceError as exc:
                log.warning("Findings for session %s kept in memory only: %s", sid, exc)
                metadata.setdefault("persistence_warnings", []).append(exc.message)

        final = self.registry.transition(
            sid, state,
            completed_at=utcnow(),
            error_message=error_message,
            error_kind=error_kind,
            metadata=metadata,
        )
        persisted = self._persist(run, summary)
        log.info(
            "Research session %s %s: %d/%d queries, $%.4f, %d findings",
            sid, final.status.value, final.completed_query_count, final.total_query_count,
            final.total_cost, len(findings),
        )
        if persisted and not final.metadata.get("persistence_warnings"):
            self._evict(sid)

    def _fail(self, run: _Run, message: str, kind: str) -> None:
        snapshot = self.registry.get(run.session_id)
        if snapshot is None or snapshot.status.is_terminal:
            return
        self.registry.set_results(run.session_id, [], None, [])
        self.registry.transition(
            run.session_id, SessionState.FAILED,
            completed_at=utcnow(), error_message=message, error_kind=kind,
        )
        if self._persist(run):
            self._evict(run.session_id)

    # -- persistence --------------------------------------------------------

    def _persist(self, run: _Run, summary: ResearchSummary | None = None) -> bool:
        """Write the current snapshot; failures only add a warning to the live session."""
        if not run.config.save_to_database or self.session_store is None:
            return False
        snapshot = self.registry.get(run.session_id)
        try:
            self.session_store.save_session(snapshot, summary)
        except PersistenceError as exc:
            log.warning("Research session %s not persisted: %s", run.session_id, exc)
            self.registry.mutate(
                run.session_id,
                lambda s: s.metadata.setdefault("persistence_warnings", []).append(exc.message),
            )
            return False
        return True

    def _evict(self, session_id: str) -> None:
        # terminal and stored: reads fall through to the session store
        self.registry.remove(session_id)
        log.debug("Research session %s evicted from memory", session_id)


def _coerce_config(config: ResearchConfig | Mapping[str, Any]) -> ResearchConfig:
    if isinstance(config, ResearchConfig):
        return config
    try:
        return ResearchConfig.model_validate(dict(config))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"Invalid research config ({where}): {first['msg']}") from exc
    except TypeError as exc:
        raise ValidationError("Research config must be an object") from exc


def _output(template: QueryTemplate, response: ProviderResponse) -> QueryOutput:
    return QueryOutput(
        template_id=template.id,
        template_name=template.name,
        category=template.category,
        priority=template.priority,
        content=response.content,
        citations=tuple(response.citations),
        related_questions=tuple(response.related_questions),
        cost_usd=response.cost_usd,
        tokens_used=response.tokens_used,
        model=response.model,
    )


async def _cancelled_within(signal: asyncio.Event, delay: float) -> bool:
    """Sleep up to *delay* seconds; ``True`` as soon as *signal* is set."""
    if delay <= 0:
        return signal.is_set()
    try:
        await asyncio.wait_for(signal.wait(), delay)
    except asyncio.TimeoutError:
        return False
    return True
