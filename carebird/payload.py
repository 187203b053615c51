"""
Inbound webhook payload normalization.

Bird delivers inbound SMS events in several shapes (Channels API envelope,
Conversations API message, classic SMS API, and ad-hoc nestings under
`data` / `event` / `message`). Each field is read through an ordered list
of extractors; the first one that yields a usable value wins. The order of
every list below is part of the webhook's behavior and is covered by tests.

Nothing in this module raises on unexpected shapes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from carebird.runtime import iso_now

Extractor = Callable[[Any], Optional[str]]

# Sender value some payload producers use for "no sender".
UNKNOWN_SENDER = "Unknown"


# ---------------------------------------------------------------------------
# Extractor primitives
# ---------------------------------------------------------------------------


def _walk(obj: Any, keys: Sequence[Any]) -> Any:
    cur = obj
    for key in keys:
        if isinstance(key, int):
            if not isinstance(cur, (list, tuple)) or len(cur) <= key:
                return None
            cur = cur[key]
        else:
            if not isinstance(cur, Mapping):
                return None
            cur = cur.get(key)
    return cur


def _scalar(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int, float)):
        text = str(value)
        return text if text.strip() else None
    return None


def path(*keys: Any) -> Extractor:
    """Extractor for a scalar at `keys` (str keys for objects, ints for lists)."""

    def extract(obj: Any) -> Optional[str]:
        return _scalar(_walk(obj, keys))

    extract.__name__ = ".".join(str(k) for k in keys)
    return extract


def json_object(*keys: Any) -> Extractor:
    """Extractor that serializes a non-empty object found at `keys`."""

    def extract(obj: Any) -> Optional[str]:
        value = _walk(obj, keys)
        if isinstance(value, Mapping) and value:
            return json.dumps(value, separators=(",", ":"), sort_keys=True)
        return None

    extract.__name__ = "json:" + ".".join(str(k) for k in keys)
    return extract


def first_match(obj: Any, extractors: Sequence[Extractor]) -> Optional[str]:
    for extractor in extractors:
        value = extractor(obj)
        if value is not None:
            return value
    return None


# ---------------------------------------------------------------------------
# Priority lists
# ---------------------------------------------------------------------------

EVENT_ID_EXTRACTORS: Tuple[Extractor, ...] = (
    path("id"),
    path("messageId"),
    path("message_id"),
    path("eventId"),
    path("event_id"),
    path("webhookId"),
    path("webhook_id"),
)

SENDER_EXTRACTORS: Tuple[Extractor, ...] = (
    # Conversations API
    path("sender", "contact", "identifierValue"),
    path("sender", "contact", "platformAddress"),
    path("sender", "contact", "msisdn"),
    path("sender", "contact", "phoneNumber"),
    path("sender", "identifierValue"),
    path("sender", "platformAddress"),
    path("sender", "msisdn"),
    path("sender", "phoneNumber"),
    # Contact object
    path("contact", "identifierValue"),
    path("contact", "platformAddress"),
    path("contact", "msisdn"),
    path("contact", "phoneNumber"),
    # Classic SMS API
    path("from"),
    path("originator"),
    path("phoneNumber"),
    path("phone"),
    path("msisdn"),
    path("source"),
)

RECIPIENT_EXTRACTORS: Tuple[Extractor, ...] = (
    path("recipient", "contact", "identifierValue"),
    path("recipient", "contact", "platformAddress"),
    path("recipient", "contact", "msisdn"),
    path("recipient", "identifierValue"),
    path("recipient", "platformAddress"),
    path("recipient", "msisdn"),
    path("receiver", "contacts", 0, "identifierValue"),
    path("to"),
    path("destination"),
    path("recipient"),
)

BODY_EXTRACTORS: Tuple[Extractor, ...] = (
    # Channels API: {"body": {"type": "text", "text": {"text": "LOVE"}}}
    path("body", "text"),
    path("body", "text", "text"),
    path("body"),
    # Conversations API
    path("preview", "text"),
    path("content"),
    path("content", "text"),
    # Classic SMS API
    path("message"),
    path("text"),
    # Last resort: keep the raw structured body
    json_object("body"),
)

# Conversation id is looked up in the unwrapped payload first, then the envelope.
PAYLOAD_CONVERSATION_EXTRACTORS: Tuple[Extractor, ...] = (
    path("conversationId"),
    path("conversation_id"),
    path("conversation", "id"),
)
ENVELOPE_CONVERSATION_EXTRACTORS: Tuple[Extractor, ...] = PAYLOAD_CONVERSATION_EXTRACTORS
CONTEXT_CONVERSATION_EXTRACTORS: Tuple[Extractor, ...] = (
    path("context", "conversationId"),
    path("context", "conversation_id"),
)

TIMESTAMP_EXTRACTORS: Tuple[Extractor, ...] = (
    path("createdAt"),
    path("created_at"),
    path("timestamp"),
    path("time"),
    path("date"),
    path("receivedAt"),
    path("received_at"),
)


# ---------------------------------------------------------------------------
# Envelope handling
# ---------------------------------------------------------------------------


def is_channels_envelope(body: Mapping[str, Any]) -> bool:
    return isinstance(body.get("payload"), Mapping) and (
        body.get("service") == "channels" or body.get("event") == "sms.inbound"
    )


def unwrap_payload(body: Mapping[str, Any]) -> Tuple[Mapping[str, Any], str]:
    """
    Return (payload, source) where source names the key that was unwrapped.

    Priority: payload → data → event.data → event → message → top level.
    Only object values are unwrapped; a string `event` or `message` is data,
    not an envelope.
    """
    candidates: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
        ("payload", ("payload",)),
        ("data", ("data",)),
        ("event.data", ("event", "data")),
        ("event", ("event",)),
        ("message", ("message",)),
    )
    for source, keys in candidates:
        value = _walk(body, keys)
        if isinstance(value, Mapping) and value:
            return value, source
    return body, "root"


def is_challenge(body: Mapping[str, Any]) -> bool:
    return body.get("type") == "webhook_verification" or bool(body.get("challenge"))


def challenge_value(body: Mapping[str, Any]) -> Optional[str]:
    return _scalar(body.get("challenge")) or _scalar(body.get("verification_token"))


def extract_event_id(body: Mapping[str, Any]) -> Optional[str]:
    if is_channels_envelope(body):
        found = first_match(body["payload"], EVENT_ID_EXTRACTORS)
        if found:
            return found
    return first_match(body, EVENT_ID_EXTRACTORS)


def extract_sender(payload: Any) -> Optional[str]:
    sender = first_match(payload, SENDER_EXTRACTORS)
    if sender is None or sender.strip() == UNKNOWN_SENDER:
        return None
    return sender


def extract_body(payload: Any) -> str:
    return first_match(payload, BODY_EXTRACTORS) or ""


def extract_recipient(payload: Any) -> Optional[str]:
    return first_match(payload, RECIPIENT_EXTRACTORS)


def extract_conversation_id(body: Any, payload: Any) -> Optional[str]:
    return (
        first_match(payload, PAYLOAD_CONVERSATION_EXTRACTORS)
        or first_match(body, ENVELOPE_CONVERSATION_EXTRACTORS)
        or first_match(payload, CONTEXT_CONVERSATION_EXTRACTORS)
    )


def extract_timestamp(payload: Any) -> str:
    return first_match(payload, TIMESTAMP_EXTRACTORS) or iso_now()


# ---------------------------------------------------------------------------
# Normalized event
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InboundEvent:
    event_id: Optional[str]
    sender_phone: Optional[str]
    body_text: str
    recipient: Optional[str]
    conversation_id: Optional[str]
    received_at: str
    source: str = "root"

    def summary(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "from": self.sender_phone,
            "to": self.recipient,
            "conversation_id": self.conversation_id,
            "message": self.body_text[:80],
            "received_at": self.received_at,
            "source": self.source,
        }


def parse_event(body: Mapping[str, Any]) -> InboundEvent:
    """Normalize one decoded webhook body into an InboundEvent."""
    payload, source = unwrap_payload(body)
    return InboundEvent(
        event_id=extract_event_id(body),
        sender_phone=extract_sender(payload),
        body_text=extract_body(payload),
        recipient=extract_recipient(payload),
        conversation_id=extract_conversation_id(body, payload),
        received_at=extract_timestamp(payload),
        source=source,
    )
