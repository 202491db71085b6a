from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("PARTNERSCOUT_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _default_db_url() -> str:
    url = os.getenv("PARTNERSCOUT_DB_URL", "").strip()
    if url:
        return url
    return f"sqlite:///{_resolve_home() / 'data' / 'partnerscout.db'}"


def _config_file_from_env() -> Path | None:
    path = os.getenv("PARTNERSCOUT_CONFIG", "").strip()
    return Path(path).expanduser() if path else None


class ScoreWeights(BaseModel):
    alignment: float = 0.5
    feasibility: float = 0.3
    mutual_benefit: float = 0.2


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    database_url: str = Field(default_factory=_default_db_url)
    config_file: Path | None = Field(default_factory=_config_file_from_env)

    discovery_api_url: str = Field(default_factory=lambda: os.getenv("DISCOVERY_API_URL", "").strip())
    discovery_api_key: str = Field(default_factory=lambda: os.getenv("DISCOVERY_API_KEY", "").strip())
    discovery_timeout_seconds: float = 20.0
    discovery_min_interval: float = 0.3
    discovery_max_attempts: int = 2

    # Proposal generation
    max_generation_attempts: int = 3
    transport_backoff_base: float = 3.0
    transport_backoff_cap: float = 15.0
    quality_backoff_step: float = 2.0
    inter_call_delay: float = 0.3
    run_timeout_seconds: float | None = None

    # Sourcing
    relevance_cutoff: int = 35
    filter_cache_ttl_days: int = 7
    local_store_batch_size: int = 25

    # Scoring
    weights: ScoreWeights = Field(default_factory=ScoreWeights)
    alignment_fallback: float = 0.7
    feasibility_long: float = 0.85
    feasibility_short: float = 0.65
    feasibility_threshold_weeks: int = 12
    mutual_benefit: float = 0.80

    # Pricing
    team_size: int = 3
    price_rounding_unit: int = 100

    algorithm_version: str = "v2.0"

    @property
    def data_dir(self) -> Path:
        return self.home / "data"

    def ensure_directories(self) -> None:
        if self.database_url.startswith("sqlite:///"):
            self.data_dir.mkdir(parents=True, exist_ok=True)


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    if settings.config_file is not None:
        overrides = load_yaml(settings.config_file)
        if overrides:
            settings = settings.model_copy(update=_coerce_overrides(overrides))
    settings.ensure_directories()
    return settings


def _coerce_overrides(overrides: dict[str, Any]) -> dict[str, Any]:
    """Keep known keys only; nested ``weights`` is validated into ScoreWeights."""
    known = set(Settings.model_fields)
    update = {k: v for k, v in overrides.items() if k in known}
    if isinstance(update.get("weights"), dict):
        update["weights"] = ScoreWeights(**update["weights"])
    return update
