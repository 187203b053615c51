"""Explicit result type for best-effort collaborator calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from carebird.runtime import get_logger

T = TypeVar("T")

_default_logger = get_logger("carebird.outcome")


@dataclass(frozen=True)
class CallResult(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None


def attempt(
    label: str,
    fn: Callable[..., T],
    *args: Any,
    logger: Optional[logging.Logger] = None,
    **kwargs: Any,
) -> CallResult[T]:
    """
    Run one collaborator call and capture its outcome.

    Exceptions are logged under `label` and returned as a failed CallResult;
    the caller decides whether to continue.
    """
    log = logger or _default_logger
    try:
        return CallResult(ok=True, value=fn(*args, **kwargs))
    except Exception as exc:
        log.error("❌ %s failed: %s", label, exc, exc_info=log.isEnabledFor(logging.DEBUG))
        return CallResult(ok=False, error=exc)
