"""Scoring engine: independent criterion evaluators with deterministic aggregation.

Architecture
------------
Each company is scored on nine criteria. Every criterion has its own
evaluator that maps raw ``CompanyData`` fields to a 0..10 value and reports
which inputs were missing or approximated:

- **target_batch**: cohort label against the configured allow-list.
- **company_age**: months since launch against an ideal window.
- **funding_stage**: stage lookup table, age proxy when the stage is unknown.
- **github_activity** / **huggingface_activity**: tiered ladders on summed
  stars / downloads.
- **b2b_focus** / **conference_presence**: keyword scans over descriptions.
- **name_quality** / **hiring_status**: simple heuristics.

The weighted sum of the breakdown is the ``total_score``. The weight table is
part of the versioned ``ScoringConfig``: changing it means a new
``algorithm_version``.

Confidence starts at 1.0 and loses a fixed deduction for every missing raw
field and every standalone approximation.
"""
from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from spearfish.errors import ValidationError
from spearfish.schemas import CompanyData, ScoreMetadata, ScoreResult
from spearfish.utils import as_utc, utcnow

log = logging.getLogger(__name__)

DAYS_PER_MONTH = 30.44

CRITERIA = (
    "target_batch",
    "company_age",
    "funding_stage",
    "github_activity",
    "b2b_focus",
    "huggingface_activity",
    "conference_presence",
    "name_quality",
    "hiring_status",
)

DEFAULT_WEIGHTS = {
    "target_batch": 0.40,
    "company_age": 0.15,
    "funding_stage": 0.15,
    "github_activity": 0.07,
    "b2b_focus": 0.07,
    "huggingface_activity": 0.06,
    "conference_presence": 0.03,
    "name_quality": 0.04,
    "hiring_status": 0.03,
}

# ---------------------------------------------------------------------------
# Batch canonicalization
# ---------------------------------------------------------------------------

SEASON_CODES = {"winter": "W", "summer": "S", "spring": "X", "fall": "F"}
_CODE_SEASONS = {code: season for season, code in SEASON_CODES.items()}

_SHORT_BATCH_RE = re.compile(r"^([WSXF])\s*'?(\d{2})$", re.IGNORECASE)
_LONG_BATCH_RE = re.compile(r"\b(winter|summer|spring|fall)\s*(\d{4})\b", re.IGNORECASE)


def expand_batch_code(code: str) -> str | None:
    """``"W22"`` → ``"winter 2022"``; ``None`` for anything that is not a short code."""
    m = _SHORT_BATCH_RE.match(code.strip())
    if not m:
        return None
    return f"{_CODE_SEASONS[m.group(1).upper()]} 20{m.group(2)}"


def canonicalize_batch(raw: str | None, known: Mapping[str, str] | None = None) -> str | None:
    """Normalise a cohort label to its short form (``"Winter 2022"`` → ``"W22"``).

    Short codes are upper-cased. Otherwise the *known* full names (lower-case
    name → code) are matched as substrings first, then the generic
    ``{Season} {YYYY}`` pattern. Unrecognised input is returned stripped but
    otherwise unchanged.
    """
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    m = _SHORT_BATCH_RE.match(text)
    if m:
        return f"{m.group(1).upper()}{m.group(2)}"
    lowered = " ".join(text.lower().split())
    for name, code in (known or {}).items():
        if name in lowered:
            return code
    m = _LONG_BATCH_RE.search(text)
    if m:
        return f"{SEASON_CODES[m.group(1).lower()]}{m.group(2)[-2:]}"
    return text


def is_canonical_batch(code: str | None) -> bool:
    return bool(code) and _SHORT_BATCH_RE.match(code) is not None and code == code.upper()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_BORING_NAME_PATTERNS = (
    r"^(the\s+)?\w+\s+(inc|corp|corporation|company|co|llc|ltd)\.?$",
    r"^\w+\s+(solutions|systems|technologies|services|group)$",
    r"^(global|international|national|universal)\s+\w+$",
)


@dataclass(frozen=True)
class ScoringConfig:
    """Immutable, versioned scoring formula.

    Weights must cover exactly :data:`CRITERIA` and sum to 1.0.
    """
    weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    target_batches: tuple[str, ...] = ("W22", "S22", "W23")
    algorithm_version: str = "3.0"

    ideal_age_months: tuple[float, float] = (18.0, 24.0)
    young_decay_per_month: float = 0.5
    old_decay_per_month: float = 0.3
    unknown_age_score: float = 5.0

    star_ladder: tuple[tuple[int, float], ...] = (
        (10_000, 10.0), (5_000, 8.0), (1_000, 6.0), (100, 4.0), (1, 2.0),
    )
    download_ladder: tuple[tuple[int, float], ...] = (
        (1_000_000, 10.0), (100_000, 8.0), (10_000, 6.0), (1_000, 4.0), (1, 2.0),
    )
    ladder_floor: float = 1.0
    task_diversity_bonus: tuple[tuple[int, float], ...] = ((3, 0.5), (2, 0.25))

    funding_stage_scores: Mapping[str, float] = field(default_factory=lambda: {
        "series_a": 10.0, "seed": 7.0, "series_b": 7.0, "pre_seed": 4.0,
        "series_c_plus": 3.0, "public": 2.0, "acquired": 1.0,
    })
    funding_age_proxy: tuple[tuple[float, float, float], ...] = (
        (18.0, 30.0, 10.0), (12.0, 36.0, 7.0), (6.0, 42.0, 5.0),
    )
    funding_fallback_score: float = 3.0

    b2b_keywords: tuple[str, ...] = ("b2b", "business", "enterprise", "saas", "api", "platform", "developer")
    b2b_points_per_keyword: float = 2.0
    conference_keywords: tuple[str, ...] = ("conference", "summit", "event", "speaking", "presenting", "keynote")
    conference_hit_score: float = 8.0
    conference_miss_score: float = 2.0
    boring_name_patterns: tuple[str, ...] = _BORING_NAME_PATTERNS
    hiring_scores: tuple[float, float] = (8.0, 4.0)

    missing_penalty: float = 0.10
    approximation_penalty: float = 0.05

    def __post_init__(self) -> None:
        weights = {str(k): float(v) for k, v in dict(self.weights).items()}
        unknown = sorted(set(weights) - set(CRITERIA))
        absent = sorted(set(CRITERIA) - set(weights))
        if unknown or absent:
            raise ValidationError(f"Weight table mismatch (unknown={unknown}, missing={absent})")
        if any(w < 0 for w in weights.values()):
            raise ValidationError("Criterion weights must be non-negative")
        if abs(sum(weights.values()) - 1.0) > 1e-9:
            raise ValidationError(f"Criterion weights must sum to 1.0, got {sum(weights.values())!r}")
        object.__setattr__(self, "weights", MappingProxyType(weights))
        object.__setattr__(self, "funding_stage_scores", MappingProxyType(dict(self.funding_stage_scores)))
        object.__setattr__(
            self, "target_batches",
            tuple(canonicalize_batch(b) or b for b in self.target_batches),
        )
        if not self.algorithm_version:
            raise ValidationError("algorithm_version is required")

    @property
    def known_batch_names(self) -> dict[str, str]:
        names = {}
        for code in self.target_batches:
            full = expand_batch_code(code)
            if full:
                names[full] = code
        return names


DEFAULT_SCORING_CONFIG = ScoringConfig()


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


@dataclass
class Evaluation:
    score: float
    missing: list[str] = field(default_factory=list)
    approximations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


Evaluator = Callable[[CompanyData, datetime], Evaluation]


def months_since(start: datetime, now: datetime) -> float:
    return (as_utc(now) - as_utc(start)).total_seconds() / 86400 / DAYS_PER_MONTH


def ladder_score(value: int, ladder: Iterable[tuple[int, float]], floor: float) -> float:
    for threshold, score in ladder:
        if value >= threshold:
            return score
    return floor


def normalize_score(total: float) -> int:
    """Map a 0..10 total onto 0..100, rounding halves up."""
    # summed weights carry float noise (62.4999999 for 6.25)
    return int(math.floor(round(total * 10, 9) + 0.5))


def _dropped(company: CompanyData, field_name: str, label: str) -> list[str]:
    count = company.dropped_entries.get(field_name, 0)
    if not count:
        return []
    return [f"{field_name}: {count} malformed {label} entries ignored"]


def _keyword_hits(text: str, keywords: Iterable[str]) -> list[str]:
    return [
        kw for kw in keywords
        if re.search(rf"\b{re.escape(kw)}\b", text, re.IGNORECASE)
    ]


class ScoringEngine:
    """Pure, stateless scorer. Safe to share across threads and requests."""

    def __init__(self, config: ScoringConfig | None = None):
        self.config = config or DEFAULT_SCORING_CONFIG
        self._known_batches = self.config.known_batch_names
        self._boring_names = [re.compile(p, re.IGNORECASE) for p in self.config.boring_name_patterns]
        self._evaluators: dict[str, Evaluator] = {
            "target_batch": self._target_batch,
            "company_age": self._company_age,
            "funding_stage": self._funding_stage,
            "github_activity": self._github_activity,
            "b2b_focus": self._b2b_focus,
            "huggingface_activity": self._huggingface_activity,
            "conference_presence": self._conference_presence,
            "name_quality": self._name_quality,
            "hiring_status": self._hiring_status,
        }
        if set(self._evaluators) != set(self.config.weights):
            raise ValidationError("Every weighted criterion needs exactly one evaluator")

    @property
    def algorithm_version(self) -> str:
        return self.config.algorithm_version

    # -- public API ---------------------------------------------------------

    def score(self, company: CompanyData | Mapping[str, Any], now: datetime | None = None) -> ScoreResult:
        """Score one company. Raises ``ValidationError`` only when it has no id."""
        company = coerce_company(company)
        now = as_utc(now) or utcnow()

        breakdown: dict[str, float] = {}
        missing: list[str] = []
        approximations: list[str] = []
        warnings: list[str] = []
        standalone_approximations = 0

        for criterion in CRITERIA:
            result = self._evaluators[criterion](company, now)
            breakdown[criterion] = min(10.0, max(0.0, float(result.score)))
            missing.extend(result.missing)
            approximations.extend(result.approximations)
            warnings.extend(result.warnings)
            if not result.missing:
                standalone_approximations += len(result.approximations)

        missing = list(dict.fromkeys(missing))
        weights = dict(self.config.weights)
        total = sum(breakdown[c] * weights[c] for c in CRITERIA)
        total = min(10.0, max(0.0, total))
        confidence = 1.0 - (
            self.config.missing_penalty * len(missing)
            + self.config.approximation_penalty * standalone_approximations
        )

        return ScoreResult(
            company_id=company.id,
            total_score=total,
            normalized_score=normalize_score(total),
            breakdown=breakdown,
            weights=weights,
            confidence=round(max(0.0, confidence), 3),
            algorithm_version=self.config.algorithm_version,
            calculated_at=now,
            metadata=ScoreMetadata(
                missing_data_points=missing,
                approximations=approximations,
                warnings=warnings,
            ),
        )

    def score_many(self, companies: Iterable[CompanyData | Mapping[str, Any]], now: datetime | None = None) -> list[ScoreResult]:
        return [self.score(c, now=now) for c in companies]

    # -- criteria -----------------------------------------------------------

    def _target_batch(self, company: CompanyData, now: datetime) -> Evaluation:
        if not company.batch:
            return Evaluation(0.0, missing=["batch"])
        code = canonicalize_batch(company.batch, self._known_batches)
        if not is_canonical_batch(code):
            return Evaluation(0.0, warnings=[f"Unrecognized batch label {company.batch!r}"])
        return Evaluation(10.0 if code in self.config.target_batches else 0.0)

    def _company_age(self, company: CompanyData, now: datetime) -> Evaluation:
        cfg = self.config
        if company.launched_at is None:
            return Evaluation(
                cfg.unknown_age_score, missing=["launched_at"],
                approximations=["company_age: launch date unknown, neutral score used"],
            )
        months = months_since(company.launched_at, now)
        warnings = []
        if months < 0:
            warnings.append("Launch date is in the future")
            months = 0.0
        low, high = cfg.ideal_age_months
        if low <= months <= high:
            score = 10.0
        elif months < low:
            score = 10.0 - (low - months) * cfg.young_decay_per_month
        else:
            score = 10.0 - (months - high) * cfg.old_decay_per_month
        return Evaluation(max(0.0, score), warnings=warnings)

    def _funding_stage(self, company: CompanyData, now: datetime) -> Evaluation:
        cfg = self.config
        if company.funding_stage is not None:
            return Evaluation(cfg.funding_stage_scores.get(company.funding_stage.value, cfg.funding_fallback_score))
        if company.launched_at is None:
            return Evaluation(
                cfg.funding_fallback_score, missing=["funding_stage"],
                approximations=["funding_stage: no stage or launch date, default score used"],
                warnings=["Funding stage could not be determined"],
            )
        months = months_since(company.launched_at, now)
        score = cfg.funding_fallback_score
        for low, high, value in cfg.funding_age_proxy:
            if low <= months <= high:
                score = value
                break
        return Evaluation(
            score, missing=["funding_stage"],
            approximations=["funding_stage: estimated from company age"],
        )

    def _github_activity(self, company: CompanyData, now: datetime) -> Evaluation:
        cfg = self.config
        if not company.github_repos:
            return Evaluation(
                cfg.ladder_floor, missing=["github_repos"],
                approximations=_dropped(company, "github_repos", "repo"),
            )
        stars = sum(r.stars or 0 for r in company.github_repos)
        result = Evaluation(ladder_score(stars, cfg.star_ladder, cfg.ladder_floor))
        result.approximations.extend(_dropped(company, "github_repos", "repo"))
        if any(r.stars is None for r in company.github_repos):
            result.approximations.append("github_activity: some repos lack star counts, treated as 0")
        return result

    def _huggingface_activity(self, company: CompanyData, now: datetime) -> Evaluation:
        cfg = self.config
        models = company.huggingface_models
        if not models:
            return Evaluation(
                cfg.ladder_floor, missing=["huggingface_models"],
                approximations=_dropped(company, "huggingface_models", "model"),
            )
        downloads = sum(m.downloads or 0 for m in models)
        score = ladder_score(downloads, cfg.download_ladder, cfg.ladder_floor)
        tasks = {m.task.strip().lower() for m in models if m.task and m.task.strip()}
        for min_tasks, bonus in cfg.task_diversity_bonus:
            if len(tasks) >= min_tasks:
                score += bonus
                break
        result = Evaluation(min(10.0, score))
        result.approximations.extend(_dropped(company, "huggingface_models", "model"))
        if any(m.downloads is None for m in models):
            result.approximations.append("huggingface_activity: some models lack download counts, treated as 0")
        return result

    def _b2b_focus(self, company: CompanyData, now: datetime) -> Evaluation:
        cfg = self.config
        text = company.description_text
        if not text:
            return Evaluation(0.0, missing=["description"])
        hits = _keyword_hits(text, cfg.b2b_keywords)
        return Evaluation(min(10.0, len(hits) * cfg.b2b_points_per_keyword))

    def _conference_presence(self, company: CompanyData, now: datetime) -> Evaluation:
        cfg = self.config
        text = " ".join([company.description_text, *company.tags])
        if _keyword_hits(text, cfg.conference_keywords):
            return Evaluation(cfg.conference_hit_score)
        return Evaluation(cfg.conference_miss_score)

    def _name_quality(self, company: CompanyData, now: datetime) -> Evaluation:
        if not company.name:
            return Evaluation(
                5.0, missing=["name"],
                approximations=["name_quality: no name, neutral score used"],
            )
        if any(p.search(company.name) for p in self._boring_names):
            return Evaluation(3.0)
        return Evaluation(8.0)

    def _hiring_status(self, company: CompanyData, now: datetime) -> Evaluation:
        hiring, not_hiring = self.config.hiring_scores
        if company.is_hiring is None:
            return Evaluation(
                not_hiring, missing=["is_hiring"],
                approximations=["hiring_status: hiring flag unknown, treated as not hiring"],
            )
        return Evaluation(hiring if company.is_hiring else not_hiring)


def coerce_company(company: CompanyData | Mapping[str, Any] | None) -> CompanyData:
    """Validate a raw mapping into ``CompanyData``; an absent id is the only hard failure."""
    if isinstance(company, CompanyData):
        data = company
    elif isinstance(company, Mapping):
        try:
            data = CompanyData.model_validate(company)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid company data: {exc.errors()[0]['msg']}") from exc
    else:
        raise ValidationError("Company data must be an object with an id")
    if not data.id:
        raise ValidationError("Company id is required")
    return data
