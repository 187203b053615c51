"""Reusable token-based auth helpers for webhook and cron routes."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request

from carebird.config import Settings, settings


def _token_from_authorization(header: str | None) -> str | None:
    if not header:
        return None
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _provided_token(request: Request, header_name: str) -> Optional[str]:
    provided = request.query_params.get("token")
    provided = provided or request.headers.get(header_name)
    return provided or _token_from_authorization(request.headers.get("Authorization"))


async def require_webhook_token(request: Request, cfg: Settings = Depends(settings)) -> None:
    """Enforce WEBHOOK_TOKEN when configured (query, X-Webhook-Token or Bearer)."""
    expected = cfg.WEBHOOK_TOKEN
    if not expected:
        return  # no auth configured

    if _provided_token(request, "x-webhook-token") != expected:
        raise HTTPException(status_code=401, detail="Invalid webhook token")


async def require_cron_token(request: Request, cfg: Settings = Depends(settings)) -> None:
    expected = cfg.CRON_TOKEN
    if not expected:
        return

    if _provided_token(request, "x-cron-token") != expected:
        raise HTTPException(status_code=401, detail="Invalid cron token")
