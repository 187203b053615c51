from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# -----------------------------
# .env Loader
# -----------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


def env_first(*keys: str, default: Optional[str] = None) -> Optional[str]:
    for key in keys:
        v = env_str(key)
        if v:
            return v
    return default


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    FORCE_IN_MEMORY: bool
    BIRD_API_KEY: Optional[str]
    BIRD_WORKSPACE_ID: Optional[str]
    BIRD_CHANNEL_ID: Optional[str]
    BIRD_API_BASE: str
    BIRD_DRY_RUN: bool
    STRIPE_SECRET_KEY: Optional[str]
    PUBLIC_BASE_URL: str
    WEBHOOK_TOKEN: Optional[str]
    CRON_TOKEN: Optional[str]
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    EVENT_CACHE_SIZE: int
    EVENT_CACHE_TTL_SEC: int
    HTTP_TIMEOUT_SEC: float
    BROADCAST_DELAY_SEC: float


def load_settings() -> Settings:
    """Build a fresh Settings snapshot from the current environment."""
    return Settings(
        AIRTABLE_API_KEY=env_first("AIRTABLE_API_KEY", "AIRTABLE_TOKEN"),
        AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
        FORCE_IN_MEMORY=env_bool("CAREBIRD_FORCE_IN_MEMORY"),
        BIRD_API_KEY=env_first("BIRD_API_KEY", "MESSAGEBIRD_API_KEY"),
        BIRD_WORKSPACE_ID=env_str("BIRD_WORKSPACE_ID"),
        BIRD_CHANNEL_ID=env_str("BIRD_CHANNEL_ID"),
        BIRD_API_BASE=env_str("BIRD_API_BASE", "https://api.bird.com"),
        BIRD_DRY_RUN=env_bool("BIRD_DRY_RUN"),
        STRIPE_SECRET_KEY=env_str("STRIPE_SECRET_KEY"),
        PUBLIC_BASE_URL=env_first("PUBLIC_BASE_URL", "NGROK_URL", default="http://localhost:3000"),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN"),
        CRON_TOKEN=env_str("CRON_TOKEN"),
        REDIS_URL=env_str("REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", False),
        EVENT_CACHE_SIZE=env_int("EVENT_CACHE_SIZE", 10000),
        EVENT_CACHE_TTL_SEC=env_int("EVENT_CACHE_TTL_SEC", 24 * 60 * 60),
        HTTP_TIMEOUT_SEC=env_float("HTTP_TIMEOUT_SEC", 5.0),
        BROADCAST_DELAY_SEC=env_float("BROADCAST_DELAY_SEC", 2.0),
    )


@lru_cache(maxsize=1)
def settings() -> Settings:
    return load_settings()
