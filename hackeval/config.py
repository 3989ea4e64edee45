from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


class Settings(BaseModel):
    database_url: str = Field(
        default_factory=lambda: _env("HACKEVAL_DATABASE_URL", f"sqlite:///{DATA_DIR / 'hackeval.db'}")
    )
    ai_timeout_seconds: float = Field(
        default_factory=lambda: float(_env("HACKEVAL_AI_TIMEOUT_SECONDS", "60"))
    )
    default_locale: str = Field(default_factory=lambda: _env("HACKEVAL_DEFAULT_LOCALE", "es-ES"))
    host: str = Field(default_factory=lambda: _env("HACKEVAL_HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: int(_env("HACKEVAL_PORT", "8002")))
    log_level: str = Field(default_factory=lambda: _env("HACKEVAL_LOG_LEVEL", "INFO").upper())

    # Scores are checked against this range when no rubric is bound.
    default_scale_min: int = 0
    default_scale_max: int = 10


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
