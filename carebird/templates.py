"""
Reply and broadcast texts.

Texts live in the Airtable Content table (section `messages`, JSON Data
column) under the keys loveReply, unsubReply, stopReply, welcomeMessage and
monthlyMessage. Any key missing from the store, or the whole section when
the store is unreachable, falls back to the defaults below.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict
from urllib.parse import quote

from carebird.runtime import get_logger

logger = get_logger(__name__)

LINK_PLACEHOLDER = "{link}"


@dataclass(frozen=True)
class MessageTemplates:
    loveReply: str = "Thank you for the love 💛 Join us here: {link}"
    unsubReply: str = "You have been unsubscribed from paid messages. You will keep receiving free updates. Reply STOP to opt out entirely."
    stopReply: str = "You have been opted out and will not receive further messages."
    welcomeMessage: str = "Welcome! Thank you for joining. Reply UNSUB to cancel your subscription or STOP to opt out."
    monthlyMessage: str = "Your monthly note of compassion and connection. Thank you for being part of the community 💛"

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "MessageTemplates":
        """Defaults overridden by every non-empty string value in `data`."""
        overrides = {
            f.name: data[f.name]
            for f in fields(cls)
            if isinstance(data.get(f.name), str) and data[f.name].strip()
        }
        return replace(cls(), **overrides)

    def love_reply(self, link: str) -> str:
        return self.loveReply.replace(LINK_PLACEHOLDER, link)


def build_welcome_link(base_url: str, phone: str) -> str:
    return f"{(base_url or '').rstrip('/')}/?phone={quote(phone or '', safe='')}"


def load_templates(store) -> MessageTemplates:
    """Read templates from the Record Store; defaults on any failure."""
    try:
        data = store.get_messages_section()
    except Exception as exc:
        logger.warning("⚠️ Message templates unavailable (%s); using defaults", exc)
        return MessageTemplates()
    if not data:
        logger.info("Message templates not found in Content table; using defaults")
    return MessageTemplates.from_mapping(data or {})
