# carebird/inbound_processor.py
"""
Inbound SMS processor.

One delivery goes through: parse → challenge → dedupe → normalize → persist
→ keyword workflow → reply → mark processed. Every delivery that parses as a
JSON object is acknowledged with 200; only an unparseable body gets a 400.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from carebird.config import Settings
from carebird.outcome import attempt
from carebird.payload import InboundEvent, challenge_value, is_challenge, parse_event
from carebird.runtime import PerfTimer, get_logger, normalize_phone
from carebird.subscriptions import process_stop, process_unsubscribe
from carebird.templates import MessageTemplates, build_welcome_link, load_templates

logger = get_logger("inbound")


class Keyword(str, Enum):
    LOVE = "LOVE"
    UNSUB = "UNSUB"
    STOP = "STOP"


_KEYWORDS: Dict[str, Keyword] = {
    "LOVE": Keyword.LOVE,
    "UNSUB": Keyword.UNSUB,
    "UNSUBSCRIBE": Keyword.UNSUB,
    "STOP": Keyword.STOP,
}


def classify_keyword(text: str) -> Optional[Keyword]:
    """Exact, case-insensitive match on the trimmed body."""
    return _KEYWORDS.get((text or "").strip().upper())


@dataclass
class InboundResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def _decode(raw: Union[bytes, str, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


class InboundProcessor:
    """Idempotent handler for inbound SMS webhook deliveries."""

    def __init__(
        self,
        cfg: Settings,
        *,
        store,
        payments,
        messenger,
        cache,
        templates: Optional[MessageTemplates] = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.payments = payments
        self.messenger = messenger
        self.cache = cache
        self._templates = templates

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def handle_inbound(self, raw: Union[bytes, str, Dict[str, Any]]) -> InboundResult:
        with PerfTimer("inbound webhook") as timer:
            body = _decode(raw)
            if body is None:
                logger.warning("❌ Invalid JSON payload")
                return InboundResult(400, {"status": "error", "message": "Invalid JSON payload"})

            if is_challenge(body):
                logger.info("🔐 Webhook verification challenge received")
                return InboundResult(200, {"challenge": challenge_value(body), "verified": True})

            event_id: Optional[str] = None
            try:
                event = parse_event(body)
                event_id = event.event_id
                logger.info("📨 Inbound event: %s", event.summary())

                if event_id and not self.cache.claim(event_id):
                    logger.info("⏭️ Event %s already processed or in flight", event_id)
                    return InboundResult(
                        200,
                        {
                            "status": "received",
                            "event_id": event_id,
                            "action": "duplicate",
                            "message": "Already processed",
                        },
                    )

                try:
                    return InboundResult(200, self._process(event, timer))
                finally:
                    # No-op once _process marked the id; otherwise a redelivery may retry.
                    self.cache.release(event_id)
            except Exception as exc:
                logger.exception("❌ Inbound processing failed (event_id=%s): %s", event_id, exc)
                return InboundResult(
                    200,
                    {
                        "status": "received",
                        "error": str(exc),
                        "event_id": event_id,
                        "processingTimeMs": timer.so_far_ms,
                    },
                )

    # ------------------------------------------------------------------
    # Core flow
    # ------------------------------------------------------------------
    def _process(self, event: InboundEvent, timer: PerfTimer) -> Dict[str, Any]:
        phone = normalize_phone(event.sender_phone)
        if not phone:
            logger.warning("⚠️ No valid phone number found (event_id=%s)", event.event_id)
            return {"status": "received", "warning": "No valid phone number found", "event_id": event.event_id}

        message = event.body_text
        if not message.strip():
            logger.warning("⚠️ Empty message text from %s", phone)
            return {"status": "received", "warning": "Empty message text", "event_id": event.event_id, "phone": phone}

        action = self._persist(phone, message)

        keyword = classify_keyword(message)
        reply_sent = False
        unsub_processed = False
        stop_processed = False

        if keyword is Keyword.LOVE:
            link = build_welcome_link(self.cfg.PUBLIC_BASE_URL, phone)
            reply_sent = self.reply_in_conversation(phone, self.templates().love_reply(link), event.conversation_id)
        elif keyword is Keyword.UNSUB:
            unsub_processed = self.process_unsubscribe(phone)
            reply_sent = self.reply_in_conversation(phone, self.templates().unsubReply, event.conversation_id)
        elif keyword is Keyword.STOP:
            stop_processed = self.process_stop(phone)
            reply_sent = self.reply_in_conversation(phone, self.templates().stopReply, event.conversation_id)

        self.cache.mark(event.event_id)

        logger.info(
            "✅ Inbound %s processed: phone=%s action=%s keyword=%s reply=%s unsub=%s stop=%s",
            event.event_id, phone, action, keyword.value if keyword else None,
            reply_sent, unsub_processed, stop_processed,
        )
        return {
            "status": "received",
            "event_id": event.event_id,
            "phone": phone,
            "message": message,
            "action": action,
            "keyword": keyword.value if keyword else None,
            "replySent": reply_sent,
            "unsubProcessed": unsub_processed,
            "stopProcessed": stop_processed,
            "processingTimeMs": timer.so_far_ms,
        }

    def _persist(self, phone: str, message: str) -> str:
        existing = self.store.find_by_phone(phone)
        if existing:
            self.store.update_phone_record(existing["id"], phone, message)
            return "updated"
        self.store.create_phone_record(phone, message)
        return "created"

    def templates(self) -> MessageTemplates:
        if self._templates is None:
            return load_templates(self.store)
        return self._templates

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------
    def process_unsubscribe(self, phone: str) -> bool:
        logger.info("🔄 Processing unsubscribe for %s", phone)
        return process_unsubscribe(phone, self.store, self.payments)

    def process_stop(self, phone: str) -> bool:
        logger.info("🛑 Processing STOP for %s", phone)
        return process_stop(phone, self.store, self.payments)

    def reply_in_conversation(self, phone: str, message: str, conversation_id: Optional[str]) -> bool:
        """
        Deliver a reply, preferring the inbound thread.

        Order: the given conversation → find-or-create by phone → channel
        direct. True once any attempt succeeds; never raises.
        """
        if conversation_id:
            result = attempt(
                "Reply in conversation",
                self.messenger.send_in_conversation,
                conversation_id,
                phone,
                message,
                logger=logger,
            )
            if result.ok and result.value:
                return True
            logger.info("↪️ Falling back to find/create conversation for %s", phone)

        result = attempt("Reply via conversation lookup", self.messenger.send_to_phone, phone, message, logger=logger)
        if result.ok and result.value:
            return True

        logger.info("↪️ Falling back to channel-direct send for %s", phone)
        result = attempt("Reply via channel", self.messenger.send_direct, phone, message, logger=logger)
        if result.ok and result.value:
            return True

        logger.error("❌ All reply attempts failed for %s", phone)
        return False
