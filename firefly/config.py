"""
Firefly Offline Sync — Centralized configuration.

Loads all settings from .env and validates required keys.
Core classes never read this module directly; main.py and the factories
pass the values they need into constructors.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from firefly/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Remote data store (REST, bearer-token auth)
    FIREFLY_API_URL: str
    FIREFLY_API_KEY: str = ""

    # Identity provider (token exchange / refresh)
    FIREFLY_AUTH_URL: str = ""
    FIREFLY_USER_ID: str = ""
    TOKEN_PATH: str = "data/firefly_token.json"

    # SQLite (on-device durable queue)
    DATABASE_PATH: str = "data/firefly_offline.db"

    # Sync coordinator
    SYNC_MAX_ATTEMPTS: int = 8
    SYNC_BASE_DELAY_SECONDS: float = 1.0
    SYNC_MAX_DELAY_SECONDS: float = 60.0
    SYNC_FAN_OUT: int = 4
    SYNC_INTERVAL_SECONDS: float = 300.0   # periodic sync check, 5 minutes
    RECONNECT_DELAY_SECONDS: float = 1.0   # let the connection settle first
    CONNECTIVITY_CHECK_SECONDS: float = 30.0

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = 10.0

    @field_validator("FIREFLY_API_URL", "FIREFLY_AUTH_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return (v or "").rstrip("/")

    @field_validator("SYNC_MAX_ATTEMPTS", "SYNC_FAN_OUT", mode="before")
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 1:
            raise ValueError("must be >= 1")
        return value


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    api_url = os.getenv("FIREFLY_API_URL", "")

    if not api_url or api_url.startswith("your-"):
        print("ERROR: FIREFLY_API_URL is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        FIREFLY_API_URL=api_url,
        FIREFLY_API_KEY=os.getenv("FIREFLY_API_KEY", ""),
        FIREFLY_AUTH_URL=os.getenv("FIREFLY_AUTH_URL", ""),
        FIREFLY_USER_ID=os.getenv("FIREFLY_USER_ID", ""),
        TOKEN_PATH=os.getenv("TOKEN_PATH", "data/firefly_token.json"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/firefly_offline.db"),
        SYNC_MAX_ATTEMPTS=os.getenv("SYNC_MAX_ATTEMPTS", "8"),
        SYNC_BASE_DELAY_SECONDS=os.getenv("SYNC_BASE_DELAY_SECONDS", "1.0"),
        SYNC_MAX_DELAY_SECONDS=os.getenv("SYNC_MAX_DELAY_SECONDS", "60.0"),
        SYNC_FAN_OUT=os.getenv("SYNC_FAN_OUT", "4"),
        SYNC_INTERVAL_SECONDS=os.getenv("SYNC_INTERVAL_SECONDS", "300"),
        RECONNECT_DELAY_SECONDS=os.getenv("RECONNECT_DELAY_SECONDS", "1.0"),
        CONNECTIVITY_CHECK_SECONDS=os.getenv("CONNECTIVITY_CHECK_SECONDS", "30"),
        HTTP_TIMEOUT_SECONDS=os.getenv("HTTP_TIMEOUT_SECONDS", "10"),
    )


# Singleton, imported by the entry point and factories as:
#   from firefly.config import settings
settings = _load_settings()
