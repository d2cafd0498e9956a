from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


class Settings(BaseModel):
    database_url: str = Field(
        default_factory=lambda: _env("MATCHMAKER_DATABASE_URL") or f"sqlite:///{DATA_DIR / 'matchmaker.db'}"
    )

    match_cache_ttl_seconds: float = Field(
        default_factory=lambda: _env_float("MATCHMAKER_MATCH_CACHE_TTL_SECONDS", 24 * 60 * 60)
    )
    recommendation_limit: int = 4

    slot_minutes: int = Field(default=30, gt=0)
    scheduler_pair_delay_seconds: float = Field(
        default_factory=lambda: _env_float("MATCHMAKER_SCHEDULER_PAIR_DELAY_SECONDS", 0.1)
    )
    scheduler_run_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("MATCHMAKER_SCHEDULER_RUN_TIMEOUT_SECONDS", 15 * 60)
    )
    calendar_request_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("MATCHMAKER_CALENDAR_TIMEOUT_SECONDS", 10.0)
    )
    min_match_score: float = Field(
        default_factory=lambda: _env_float("MATCHMAKER_MIN_MATCH_SCORE", 0.0)
    )

    google_client_id: str = Field(default_factory=lambda: _env("GOOGLE_OAUTH_CLIENT_ID"))
    google_client_secret: str = Field(default_factory=lambda: _env("GOOGLE_OAUTH_CLIENT_SECRET"))
    google_redirect_uri: str = Field(default_factory=lambda: _env("GOOGLE_OAUTH_REDIRECT_URI"))
    oauth_state_secret: str = Field(
        default_factory=lambda: _env("MATCHMAKER_OAUTH_STATE_SECRET", "dev_secret_change_me")
    )
    oauth_state_max_age_seconds: int = 10 * 60
    app_url: str = Field(default_factory=lambda: _env("APP_URL"))

    @property
    def oauth_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret and self.google_redirect_uri)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
