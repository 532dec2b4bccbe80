"""Pydantic data structures and request/response schemas for the Spearfish API."""
from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from spearfish.utils import as_utc


def _coerce_count(value: Any) -> int | None:
    """Best-effort integer coercion for scraped counts; garbage becomes ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(int(value), 0) if value == value else None
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "").replace("_", "")
        try:
            return max(int(float(cleaned)), 0)
        except ValueError:
            return None
    return None


def _clean_text(value: Any) -> str | None:
    """Strip strings; any non-string value becomes ``None``."""
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in scraped payloads.
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        try:
            return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            pass
        try:
            return _parse_timestamp(float(text))
        except ValueError:
            return None
    return None


class _Snapshot(BaseModel):
    model_config = ConfigDict(
        frozen=True, extra="ignore", populate_by_name=True, alias_generator=to_camel,
    )


# ---------------------------------------------------------------------------
# Company data
# ---------------------------------------------------------------------------


class FundingStage(str, enum.Enum):
    PRE_SEED = "pre_seed"
    SEED = "seed"
    SERIES_A = "series_a"
    SERIES_B = "series_b"
    SERIES_C_PLUS = "series_c_plus"
    PUBLIC = "public"
    ACQUIRED = "acquired"


_FUNDING_ALIASES = {
    "preseed": FundingStage.PRE_SEED,
    "angel": FundingStage.PRE_SEED,
    "series_c": FundingStage.SERIES_C_PLUS,
    "series_d": FundingStage.SERIES_C_PLUS,
    "series_e": FundingStage.SERIES_C_PLUS,
    "growth": FundingStage.SERIES_C_PLUS,
    "ipo": FundingStage.PUBLIC,
}


class RepoSummary(_Snapshot):
    name: str | None = None
    stars: int | None = Field(None, validation_alias=AliasChoices("stars", "stars_count", "stargazers_count", "starsCount"))
    forks: int | None = Field(None, validation_alias=AliasChoices("forks", "forks_count", "forksCount"))
    language: str | None = None

    @field_validator("stars", "forks", mode="before")
    @classmethod
    def _counts(cls, v: Any) -> int | None:
        return _coerce_count(v)

    @field_validator("name", "language", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str | None:
        return _clean_text(v)


class ModelSummary(_Snapshot):
    name: str | None = None
    downloads: int | None = None
    likes: int | None = None
    task: str | None = Field(None, validation_alias=AliasChoices("task", "pipeline_tag", "pipelineTag"))

    @field_validator("downloads", "likes", mode="before")
    @classmethod
    def _counts(cls, v: Any) -> int | None:
        return _coerce_count(v)

    @field_validator("name", "task", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str | None:
        return _clean_text(v)


class CompanyData(_Snapshot):
    """Immutable company snapshot handed to the scoring engine.

    Only ``id`` is structurally required. Every other field tolerates absent or
    malformed values by normalising them to ``None`` / empty so the scorer can
    record them as missing instead of failing.
    """
    id: str
    name: str | None = None
    batch: str | None = None
    launched_at: datetime | None = None
    is_hiring: bool | None = None
    one_liner: str | None = None
    long_description: str | None = None
    industry: str | None = None
    website: str | None = None
    tags: list[str] = []
    github_repos: list[RepoSummary] = Field(
        default_factory=list, validation_alias=AliasChoices("github_repos", "githubRepos", "repos"),
    )
    huggingface_models: list[ModelSummary] = Field(
        default_factory=list, validation_alias=AliasChoices("huggingface_models", "huggingfaceModels", "models"),
    )
    funding_stage: FundingStage | None = None
    team_size: int | None = None
    dropped_entries: dict[str, int] = {}

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v.strip() if isinstance(v, str) else v

    @field_validator("launched_at", mode="before")
    @classmethod
    def _launched_at(cls, v: Any) -> datetime | None:
        return _parse_timestamp(v)

    @field_validator("is_hiring", mode="before")
    @classmethod
    def _is_hiring(cls, v: Any) -> bool | None:
        if isinstance(v, bool) or v is None:
            return v
        if isinstance(v, (int, float)):
            return bool(v)
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in ("true", "yes", "1", "y"):
                return True
            if lowered in ("false", "no", "0", "n"):
                return False
        return None

    @field_validator("name", "batch", "one_liner", "long_description", "industry", "website", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str | None:
        return _clean_text(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        if isinstance(v, (list, tuple)):
            return [str(t).strip() for t in v if t is not None and str(t).strip()]
        return []

    @model_validator(mode="before")
    @classmethod
    def _summaries(cls, data: Any) -> Any:
        # Repo/model entries that cannot be read are dropped and counted
        # so the scorer can report them instead of failing the company.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        prior = data.pop("droppedEntries", None) or data.pop("dropped_entries", None)
        dropped = {k: v for k, v in prior.items() if isinstance(v, int)} if isinstance(prior, dict) else {}
        for field_name, model, keys in (
            ("github_repos", RepoSummary, ("github_repos", "githubRepos", "repos")),
            ("huggingface_models", ModelSummary, ("huggingface_models", "huggingfaceModels", "models")),
        ):
            key = next((k for k in keys if k in data), None)
            if key is None:
                continue
            raw = data[key]
            if raw is None:
                data[key] = []
                continue
            if not isinstance(raw, (list, tuple)):
                dropped[field_name] = dropped.get(field_name, 0) + 1
                data[key] = []
                continue
            kept = []
            for item in raw:
                if isinstance(item, model):
                    kept.append(item)
                    continue
                try:
                    kept.append(model.model_validate(item))
                except PydanticValidationError:
                    dropped[field_name] = dropped.get(field_name, 0) + 1
            data[key] = kept
        data["dropped_entries"] = dropped
        return data

    @field_validator("funding_stage", mode="before")
    @classmethod
    def _funding_stage(cls, v: Any) -> FundingStage | None:
        if isinstance(v, FundingStage) or v is None:
            return v
        if not isinstance(v, str):
            return None
        key = v.strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return FundingStage(key)
        except ValueError:
            return _FUNDING_ALIASES.get(key)

    @field_validator("team_size", mode="before")
    @classmethod
    def _team_size(cls, v: Any) -> int | None:
        return _coerce_count(v)

    @property
    def description_text(self) -> str:
        return " ".join(p for p in (self.one_liner, self.long_description, self.industry) if p)


# ---------------------------------------------------------------------------
# Score results
# ---------------------------------------------------------------------------


class ScoreMetadata(BaseModel):
    missing_data_points: list[str] = []
    approximations: list[str] = []
    warnings: list[str] = []
    persisted: bool | None = None


class ScoreResult(BaseModel):
    company_id: str
    total_score: float
    normalized_score: int
    breakdown: dict[str, float]
    weights: dict[str, float]
    confidence: float
    algorithm_version: str
    calculated_at: datetime
    metadata: ScoreMetadata = Field(default_factory=ScoreMetadata)


class BatchScoreUpdate(BaseModel):
    batch_id: str
    total: int
    successful: int
    failed: int
    errors: list[dict[str, str]] = []


class ScoreStats(BaseModel):
    total_companies: int
    scored_companies: int
    average_score: float | None
    distribution: dict[str, int]
    algorithm_versions: dict[str, int]
    last_calculated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Research sessions
# ---------------------------------------------------------------------------


class SessionState(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED)


class QueryStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BUDGET_SKIPPED = "budget_skipped"
    CANCELLED = "cancelled"


class ResearchConfig(BaseModel):
    """Per-session execution limits. Every field is required."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    template_ids: list[str] = Field(min_length=1)
    max_concurrent_queries: int = Field(gt=0)
    max_cost_usd: float = Field(gt=0)
    timeout_ms: int = Field(gt=0)
    enable_synthesis: bool
    save_to_database: bool

    @field_validator("template_ids")
    @classmethod
    def _template_ids(cls, v: list[str]) -> list[str]:
        ids = [t.strip() for t in v if isinstance(t, str) and t.strip()]
        if not ids:
            raise ValueError("template_ids must contain at least one template id")
        return ids


class ResearchSession(BaseModel):
    id: str
    company_id: str
    owner_id: str
    research_type: str | None = None
    template_ids: list[str]
    status: SessionState = SessionState.PENDING
    started_at: datetime
    completed_at: datetime | None = None
    total_cost: float = 0.0
    tokens_used: int = 0
    completed_query_count: int = 0
    total_query_count: int = 0
    failed_query_count: int = 0
    skipped_query_count: int = 0
    active_queries: list[str] = []
    query_statuses: dict[str, QueryStatus] = {}
    error_message: str | None = None
    error_kind: str | None = None
    config: ResearchConfig | None = None
    metadata: dict[str, Any] = {}


class ResearchFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    finding_type: str
    category: str
    title: str
    content: str
    confidence_score: float = Field(ge=0.0, le=1.0)
    citations: list[str] = []
    priority_level: str = "medium"
    tags: list[str] = []
    source_template_id: str | None = None
    created_at: datetime


class SourceInfo(BaseModel):
    url: str
    domain: str
    source_type: str
    recency: str


class ActionableOpportunity(BaseModel):
    title: str
    description: str
    estimated_impact: str
    required_skills: list[str] = []
    potential_artifacts: list[str] = []


class ResearchSummary(BaseModel):
    executive_summary: str
    actionable_opportunities: list[ActionableOpportunity] = []
    risk_factors: list[str] = []
    recommended_next_steps: list[str] = []
    confidence_level: float = 0.0
    finding_count: int = 0


class ResearchResults(BaseModel):
    session: ResearchSession
    findings: list[ResearchFinding]
    summary: ResearchSummary | None = None
    sources: list[SourceInfo] = []


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class ResearchConfigOverrides(_Request):
    max_concurrent_queries: int | None = Field(None, gt=0)
    max_cost_usd: float | None = Field(None, gt=0)
    timeout_ms: int | None = Field(None, gt=0)
    enable_synthesis: bool | None = None
    save_to_database: bool | None = None


class StartResearchRequest(_Request):
    company_id: str = Field(min_length=1)
    owner_id: str | None = None
    research_type: str = "comprehensive"
    template_ids: list[str] | None = None
    company_name: str | None = None
    variables: dict[str, Any] | None = None
    config: ResearchConfigOverrides | None = None


class CalculateScoreRequest(_Request):
    company: CompanyData | None = None
    companies: list[CompanyData] | None = None
    save_to_database: bool = True

    @model_validator(mode="after")
    def _one_of(self) -> CalculateScoreRequest:
        if (self.company is None) == (self.companies is None):
            raise ValueError("Provide exactly one of 'company' or 'companies'")
        if self.companies is not None and not self.companies:
            raise ValueError("'companies' must not be empty")
        return self


class RecalculateRequest(_Request):
    algorithm_version: str | None = None
    older_than_days: float | None = Field(None, ge=0)
    batches: list[str] | None = None
    force_all: bool = False
    limit: int = Field(100, ge=1, le=1000)
