# carebird/monthly_broadcast.py
"""
📅 Monthly Message Delivery
---------------------------
Sends the monthly message to every active/completed subscriber whose phone
is known in the Phone Numbers table and whose last message is not STOP.

GET /api/bird/send-monthly-messages?dryRun=true   (CRON_TOKEN guarded)
python -m carebird.monthly_broadcast --dryrun
"""

from __future__ import annotations

import argparse
import json
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from carebird.airtable_schema import payments_field_map
from carebird.auth import require_cron_token
from carebird.bird_sender import BirdClient
from carebird.config import Settings, settings
from carebird.datastore import RecordStore
from carebird.runtime import configure_logging, get_logger, iso_now, normalize_phone, to_e164
from carebird.templates import MessageTemplates, load_templates

log = get_logger("monthly_broadcast")

router = APIRouter(prefix="/api/bird", tags=["broadcast"])


def _lookup_phone_key(store, phone: str) -> Optional[str]:
    """Phone Records may be keyed with or without the leading '+'; return the key that exists."""
    candidates = [to_e164(phone)]
    bare = normalize_phone(phone)
    if bare not in candidates:
        candidates.append(bare)
    for candidate in candidates:
        if store.find_by_phone(candidate):
            return candidate
    return None


def run_monthly_broadcast(
    store,
    messenger,
    templates: MessageTemplates,
    *,
    dry_run: bool = False,
    delay_sec: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    f = payments_field_map()
    payments = store.get_active_payments()
    log.info("📋 %s active/completed payments (dry_run=%s)", len(payments), dry_run)

    eligible = skipped = sent = errors = 0
    results: List[Dict[str, Any]] = []
    sends_done = 0

    for payment in payments:
        fields = payment.get("fields") or {}
        status = fields.get(f["STATUS"])
        raw_phone = fields.get(f["PHONE"])
        try:
            if not raw_phone or not normalize_phone(str(raw_phone)):
                log.info("⏩ Skipping payment %s - no phone number", payment.get("id"))
                skipped += 1
                results.append({"paymentId": payment.get("id"), "phoneNumber": None, "status": status,
                                "reason": "No phone number"})
                continue

            phone = to_e164(str(raw_phone))
            phone_key = _lookup_phone_key(store, phone)
            if not phone_key:
                log.info("⏩ Skipping %s - not in Phone Numbers table", phone)
                skipped += 1
                results.append({"paymentId": payment.get("id"), "phoneNumber": phone, "status": status,
                                "reason": "Phone number not found in Phone Numbers table"})
                continue

            if store.has_stop_message(phone_key):
                log.info("⏩ Skipping %s - has STOP message", phone)
                skipped += 1
                results.append({"paymentId": payment.get("id"), "phoneNumber": phone, "status": status,
                                "reason": "STOP message found"})
                continue

            eligible += 1
            detail = {
                "paymentId": payment.get("id"),
                "phoneNumber": phone,
                "status": status,
                "email": fields.get(f["EMAIL"]),
                "tier": fields.get(f["TIER"]),
                "paymentType": fields.get(f["PAYMENT_TYPE"]),
            }

            if dry_run:
                log.info("🔍 [DRY RUN] Would send monthly message to %s", phone)
                results.append({**detail, "sent": False, "dryRun": True})
                continue

            if sends_done and delay_sec > 0:
                sleep(delay_sec)
            sends_done += 1
            try:
                messenger.send_direct(phone, templates.monthlyMessage)
            except Exception as exc:
                errors += 1
                log.error("❌ Failed to send monthly message to %s: %s", phone, exc)
                results.append({**detail, "sent": False, "error": str(exc)})
                continue
            sent += 1
            log.info("✅ Monthly message sent to %s", phone)
            results.append({**detail, "sent": True, "timestamp": iso_now()})
        except Exception as exc:
            errors += 1
            log.error("❌ Error processing payment %s: %s", payment.get("id"), exc)
            results.append({"paymentId": payment.get("id"), "error": str(exc)})

    summary = {
        "totalPayments": len(payments),
        "eligible": eligible,
        "skipped": skipped,
        "sent": 0 if dry_run else sent,
        "errors": errors,
    }
    log.info("📊 Monthly delivery: %s", summary)
    return {"success": True, "dryRun": dry_run, "summary": summary, "results": results}


# ---------- HTTP ----------
def get_broadcast_collaborators(cfg: Settings = Depends(settings)) -> Dict[str, Any]:
    store = RecordStore(cfg)
    return {
        "store": store,
        "messenger": BirdClient(cfg),
        "templates": load_templates(store),
        "delay_sec": cfg.BROADCAST_DELAY_SEC,
    }


@router.get("/send-monthly-messages", dependencies=[Depends(require_cron_token)])
async def send_monthly_messages(
    dryRun: bool = Query(False),
    deps: Dict[str, Any] = Depends(get_broadcast_collaborators),
):
    try:
        return await run_in_threadpool(
            run_monthly_broadcast,
            deps["store"],
            deps["messenger"],
            deps["templates"],
            dry_run=dryRun,
            delay_sec=deps["delay_sec"],
        )
    except Exception as exc:
        log.error("❌ Monthly message delivery failed: %s", exc)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


# ---------- CLI ----------
def _parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Monthly Message Delivery")
    p.add_argument("--dryrun", action="store_true", help="List eligible subscribers without sending")
    p.add_argument("--delay", type=float, default=None, help="Seconds between sends (default BROADCAST_DELAY_SEC)")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> Dict[str, Any]:
    args = _parse_args(argv)
    configure_logging()
    cfg = settings()
    store = RecordStore(cfg)
    res = run_monthly_broadcast(
        store,
        BirdClient(cfg),
        load_templates(store),
        dry_run=args.dryrun,
        delay_sec=cfg.BROADCAST_DELAY_SEC if args.delay is None else args.delay,
    )
    print(json.dumps(res, indent=2))
    return res


if __name__ == "__main__":
    main()
