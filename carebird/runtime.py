"""
🧠 carebird runtime core
------------------------
Centralized utilities for logging, timing, timestamps and phone
normalization shared by the webhook, the gateways and the broadcast job.
"""

from __future__ import annotations

import logging
import os
import re
import sys
import time
from datetime import datetime, timezone
from typing import Optional

_LOGGING_CONFIGURED = False
_GLOBAL_HOOK_INSTALLED = False
_CORE_ENV_LOGGED = False
_WHITESPACE = re.compile(r"\s+")


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def mask_value(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    """Normalize string or int log level."""
    if value is None:
        env_level = os.getenv("CAREBIRD_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True


def get_logger(name: str = "carebird") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


# ────────────────────────────────────────────────
# GLOBAL EXCEPTION HOOK
# ────────────────────────────────────────────────
def install_global_exception_hook() -> None:
    """Route uncaught exceptions through the logging system."""
    global _GLOBAL_HOOK_INSTALLED
    if _GLOBAL_HOOK_INSTALLED:
        return

    def _hook(exc_type, exc, tb):
        logger = get_logger("uncaught")
        logger.error("Uncaught exception (%s): %s", exc_type.__name__, exc, exc_info=(exc_type, exc, tb))

    sys.excepthook = _hook
    _GLOBAL_HOOK_INSTALLED = True


def log_core_env(cfg) -> None:
    """Logs a masked summary of the active settings once per process."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    logger = get_logger("env")
    logger.info(
        "Core env summary:\n"
        "• Airtable Key=%s | Base=%s\n"
        "• Bird Key=%s | Workspace=%s | Channel=%s | DryRun=%s\n"
        "• Stripe Key=%s | Redis=%s | PublicBaseUrl=%s",
        mask_value(cfg.AIRTABLE_API_KEY),
        cfg.AIRTABLE_BASE_ID or "<missing>",
        mask_value(cfg.BIRD_API_KEY),
        cfg.BIRD_WORKSPACE_ID or "<missing>",
        cfg.BIRD_CHANNEL_ID or "<missing>",
        cfg.BIRD_DRY_RUN,
        mask_value(cfg.STRIPE_SECRET_KEY),
        bool(cfg.REDIS_URL),
        cfg.PUBLIC_BASE_URL,
    )
    _CORE_ENV_LOGGED = True


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Return ISO8601 UTC timestamp (Z suffix)."""
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ────────────────────────────────────────────────
# PHONE UTILITIES
# ────────────────────────────────────────────────
def normalize_phone(value: str | None) -> str:
    """Strip every whitespace character; the result is the Phone Record key."""
    if not value:
        return ""
    return _WHITESPACE.sub("", str(value)).strip()


def to_e164(value: str | None) -> str:
    """Ensure a leading '+' for outbound sends (Bird expects E.164)."""
    phone = normalize_phone(value)
    if not phone:
        return ""
    return phone if phone.startswith("+") else f"+{phone}"


# ────────────────────────────────────────────────
# PERF TIMER
# ────────────────────────────────────────────────
class PerfTimer:
    """Context manager that measures a block in milliseconds and logs it."""

    def __init__(self, label: str, *, log: bool = True):
        self.label = label
        self.log = log
        self.start: float | None = None
        self.elapsed_ms = 0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    @property
    def so_far_ms(self) -> int:
        if self.start is None:
            return 0
        return int((time.perf_counter() - self.start) * 1000)

    def __exit__(self, *_):
        self.elapsed_ms = self.so_far_ms
        if self.log:
            get_logger("perf").info("⏱ %s: %sms", self.label, self.elapsed_ms)
