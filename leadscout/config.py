from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

from leadscout.errors import ApolloValidationError

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


class Settings(BaseModel):
    apollo_api_key: str = Field(default_factory=lambda: _env("APOLLO_API_KEY"))
    apollo_base_url: str = Field(
        default_factory=lambda: _env("APOLLO_BASE_URL", "https://api.apollo.io/api/v1").rstrip("/")
    )

    # Rate limiting and transport
    delay_ms: int = Field(default_factory=lambda: _env_int("APOLLO_DELAY_MS", 1000))
    requests_per_minute: int = Field(default_factory=lambda: _env_int("APOLLO_REQUESTS_PER_MINUTE", 60))
    timeout_seconds: float = Field(default_factory=lambda: _env_float("APOLLO_TIMEOUT_SECONDS", 30.0))

    # Breather between pages / batches, separate from the per-call delay
    page_pause_seconds: float = Field(default_factory=lambda: _env_float("LEADSCOUT_PAGE_PAUSE_SECONDS", 0.5))

    # Share one rate budget through the database across processes
    shared_rate_limit: bool = Field(
        default_factory=lambda: _env("LEADSCOUT_SHARED_RATE_LIMIT").lower() in ("1", "true", "yes")
    )

    # Enrichment lease duration for claimed raw results
    claim_ttl_seconds: int = Field(default_factory=lambda: _env_int("LEADSCOUT_CLAIM_TTL_SECONDS", 900))

    db_path: Path = Field(
        default_factory=lambda: Path(_env("LEADSCOUT_DB_PATH") or DATA_DIR / "leadscout.db")
    )

    def require_api_key(self) -> str:
        if not self.apollo_api_key:
            raise ApolloValidationError(
                "APOLLO_API_KEY environment variable is not set", field="apollo_api_key",
            )
        return self.apollo_api_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
