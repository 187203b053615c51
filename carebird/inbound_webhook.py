# carebird/inbound_webhook.py
"""
Bird inbound SMS webhook routes.

POST /bird-sms-webhook (and the legacy /api/bird/webhook/sms) hand the raw
body to the InboundProcessor in a worker thread. GET answers Bird's
verification challenge or reports endpoint health.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from carebird.auth import require_webhook_token
from carebird.bird_sender import BirdClient
from carebird.config import settings
from carebird.datastore import RecordStore
from carebird.idempotency import build_event_cache
from carebird.inbound_processor import InboundProcessor
from carebird.payments import build_payments_gateway
from carebird.runtime import get_logger

logger = get_logger("inbound_webhook")

router = APIRouter(tags=["inbound"])

WEBHOOK_PATH = "/bird-sms-webhook"
LEGACY_WEBHOOK_PATH = "/api/bird/webhook/sms"


@lru_cache(maxsize=1)
def get_processor() -> InboundProcessor:
    """Process-wide processor; the processed-event cache must outlive requests."""
    cfg = settings()
    store = RecordStore(cfg)
    return InboundProcessor(
        cfg,
        store=store,
        payments=build_payments_gateway(cfg),
        messenger=BirdClient(cfg),
        cache=build_event_cache(cfg),
    )


@router.get(WEBHOOK_PATH)
@router.get(LEGACY_WEBHOOK_PATH)
async def webhook_verification(
    request: Request,
    challenge: Optional[str] = Query(None),
    verification_token: Optional[str] = Query(None),
):
    token = challenge or verification_token
    if token:
        logger.info("🔐 Webhook verification GET request received")
        return {"challenge": token, "verified": True}
    return {
        "status": "ok",
        "endpoint": request.url.path,
        "method": "POST",
        "message": "Bird SMS Webhook endpoint is ready",
    }


@router.post(WEBHOOK_PATH, dependencies=[Depends(require_webhook_token)])
@router.post(LEGACY_WEBHOOK_PATH, dependencies=[Depends(require_webhook_token)])
async def inbound_handler(request: Request, processor: InboundProcessor = Depends(get_processor)):
    """Acknowledge every parseable delivery; 400 only for a malformed body."""
    raw = await request.body()
    result = await run_in_threadpool(processor.handle_inbound, raw)
    return JSONResponse(status_code=result.status_code, content=result.body)
