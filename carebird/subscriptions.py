"""
Payment Record workflows triggered by inbound keywords.

UNSUB drops an active paid subscriber to the free tier (status `completed`).
STOP does the same for any subscriber but lands on status `cancelled`, so the
two outcomes stay distinguishable. In both, the Stripe cancel is best-effort:
a failure is logged and the Airtable update still runs.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from carebird.airtable_schema import EXTERNAL_ID_KEYS, FREE_TIER, PaymentStatus, payments_field_map
from carebird.outcome import attempt
from carebird.runtime import get_logger

logger = get_logger(__name__)


def _cleared_payment(status: PaymentStatus) -> Dict[str, Any]:
    cleared: Dict[str, Any] = {"tier": FREE_TIER, "amount": 0, "status": status.value}
    cleared.update({key: "" for key in EXTERNAL_ID_KEYS})
    return cleared


def _payment_fields(record: Dict[str, Any]):
    f = payments_field_map()
    fields = record.get("fields") or {}
    tier = fields.get(f["TIER"])
    status = fields.get(f["STATUS"])
    subscription_id: Optional[str] = fields.get(f["STRIPE_SUBSCRIPTION_ID"])
    if not isinstance(subscription_id, str) or not subscription_id.strip():
        subscription_id = None
    return tier, status, subscription_id


def _cancel_subscription(payments, subscription_id: str) -> bool:
    logger.info("💳 Cancelling Stripe subscription: %s", subscription_id)
    result = attempt("Stripe cancel", payments.cancel_subscription, subscription_id, logger=logger)
    if result.ok:
        logger.info("✅ Stripe subscription %s cancelled", subscription_id)
    return result.ok


def process_unsubscribe(phone: str, store, payments) -> bool:
    """Move an active paid subscriber to the free tier; False when there is nothing to do."""
    lookup = attempt("Payment lookup", store.find_payment_by_phone, phone, logger=logger)
    if not lookup.ok:
        return False
    record = lookup.value
    if not record:
        logger.info("ℹ️ No payment record found for %s", phone)
        return False

    tier, status, subscription_id = _payment_fields(record)
    if not tier or tier == FREE_TIER or status != PaymentStatus.ACTIVE.value:
        logger.info("ℹ️ No active paid subscription for %s (tier=%s, status=%s)", phone, tier, status)
        return False

    if subscription_id:
        _cancel_subscription(payments, subscription_id)

    update = attempt(
        "Payment update (unsubscribe)",
        store.update_payment_record,
        record["id"],
        _cleared_payment(PaymentStatus.COMPLETED),
        logger=logger,
    )
    if not update.ok:
        return False
    logger.info("✅ Unsubscribed %s → free tier", phone)
    return True


def process_stop(phone: str, store, payments) -> bool:
    """
    Clear the subscriber's Payment Record after a STOP.

    Returns True even when no Payment Record exists or the update fails: the
    durable opt-out is the "STOP" text already written to the Phone Record.
    """
    lookup = attempt("Payment lookup", store.find_payment_by_phone, phone, logger=logger)
    record = lookup.value if lookup.ok else None
    if not record:
        if lookup.ok:
            logger.info("ℹ️ No payment record for %s; STOP marker is on the phone record", phone)
        return True

    _, status, subscription_id = _payment_fields(record)
    if subscription_id and status == PaymentStatus.ACTIVE.value:
        _cancel_subscription(payments, subscription_id)

    update = attempt(
        "Payment update (stop)",
        store.update_payment_record,
        record["id"],
        _cleared_payment(PaymentStatus.CANCELLED),
        logger=logger,
    )
    if update.ok:
        logger.info("✅ STOP processed for %s → payment record cleared", phone)
    return True
