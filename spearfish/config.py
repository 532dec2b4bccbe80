"""Runtime settings and scoring configuration loading."""
from __future__ import annotations

import os
from dataclasses import replace
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from spearfish.errors import ValidationError
from spearfish.scorer import DEFAULT_SCORING_CONFIG, ScoringConfig

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name, "").strip()
    return value or default


def _env_path(name: str, default: Path | None) -> Path | None:
    value = _env(name)
    return Path(value).expanduser() if value else default


class Settings(BaseModel):
    database_path: Path = Field(default_factory=lambda: _env_path("SPEARFISH_DB_PATH", DATA_DIR / "spearfish.db"))
    log_level: str = Field(default_factory=lambda: _env("SPEARFISH_LOG_LEVEL", "INFO"))
    host: str = Field(default_factory=lambda: _env("SPEARFISH_HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: int(_env("SPEARFISH_PORT", "8001")))

    research_provider: str = Field(default_factory=lambda: _env("RESEARCH_PROVIDER", "perplexity"))
    perplexity_api_key: str | None = Field(default_factory=lambda: _env("PERPLEXITY_API_KEY"))
    perplexity_model: str = Field(default_factory=lambda: _env("PERPLEXITY_MODEL", "sonar-pro"))
    llm_provider: str | None = Field(default_factory=lambda: _env("LLM_PROVIDER"))
    llm_model: str | None = Field(default_factory=lambda: _env("LLM_MODEL"))

    scoring_config_file: Path | None = Field(default_factory=lambda: _env_path("SPEARFISH_SCORING_CONFIG", None))

    # Applied only when an API or MCP caller omits the research config.
    default_max_concurrent_queries: int = 2
    default_max_cost_usd: float = 5.0
    default_timeout_ms: int = 120_000
    default_enable_synthesis: bool = True
    default_save_to_database: bool = True

    query_timeout_seconds: float = 60.0
    max_query_retries: int = 2
    retry_backoff_seconds: float = 1.0
    persist_attempts: int = 3

    def ensure_directories(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_scoring_config(self) -> ScoringConfig:
        if self.scoring_config_file is None:
            return DEFAULT_SCORING_CONFIG
        return scoring_config_from_mapping(self.load_yaml(self.scoring_config_file))

    def research_defaults(self) -> dict[str, Any]:
        return {
            "max_concurrent_queries": self.default_max_concurrent_queries,
            "max_cost_usd": self.default_max_cost_usd,
            "timeout_ms": self.default_timeout_ms,
            "enable_synthesis": self.default_enable_synthesis,
            "save_to_database": self.default_save_to_database,
        }


def scoring_config_from_mapping(raw: dict[str, Any], base: ScoringConfig = DEFAULT_SCORING_CONFIG) -> ScoringConfig:
    """Build a scoring config from a YAML-style mapping layered over *base*.

    Recognised keys: ``target_batches``, ``weights``, ``algorithm_version``.
    Changing cohorts or weights without a new ``algorithm_version`` is refused,
    since stored history rows are compared by version.
    """
    changes: dict[str, Any] = {}
    if raw.get("target_batches") is not None:
        batches = raw["target_batches"]
        if not isinstance(batches, list) or not all(isinstance(b, str) for b in batches):
            raise ValidationError("target_batches must be a list of strings")
        changes["target_batches"] = tuple(batches)
    if raw.get("weights") is not None:
        weights = raw["weights"]
        if not isinstance(weights, dict):
            raise ValidationError("weights must be a mapping of criterion to weight")
        changes["weights"] = {str(k): float(v) for k, v in weights.items()}
    if raw.get("algorithm_version") is not None:
        changes["algorithm_version"] = str(raw["algorithm_version"])

    if not changes:
        return base
    config = replace(base, **changes)
    formula_changed = (
        set(config.target_batches) != set(base.target_batches)
        or dict(config.weights) != dict(base.weights)
    )
    if formula_changed and config.algorithm_version == base.algorithm_version:
        raise ValidationError(
            "Scoring weights or target batches changed without a new algorithm_version"
        )
    return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
