# carebird/bird_sender.py
"""
📡 Bird Sender: Outbound Messaging Gateway
- Conversation send (reply inside an existing thread)
- Find-or-create conversation by phone, then send (404 → recreate once)
- Channel-direct send (no conversation threading)
- Every non-2xx raises BirdError with status + body
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx

from carebird.config import Settings
from carebird.runtime import get_logger, to_e164

logger = get_logger("bird_sender")


# =========================
# Errors
# =========================


class BirdError(RuntimeError):
    """Custom error that carries HTTP metadata and response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:  # pragma: no cover - string formatting helper
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


# =========================
# Small helpers
# =========================
def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _extract_error_body(resp: httpx.Response) -> Any:
    """Parse JSON body if available; fallback to plain text."""
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "errors", "code"):
            value = body.get(key)
            if _has_value(value):
                return str(value)
    return str(body)


def _participant_phones(conversation: Dict[str, Any]) -> List[str]:
    participants = conversation.get("participants") or conversation.get("featuredParticipants") or []
    phones: List[str] = []
    for participant in participants:
        contact = (participant or {}).get("contact") or {}
        value = contact.get("identifierValue") or contact.get("platformAddress")
        if value:
            phones.append(str(value))
    return phones


# =========================
# Client
# =========================
class BirdClient:
    """Bird Channels/Conversations API client bound to one workspace + channel."""

    def __init__(self, cfg: Settings, *, http: Optional[httpx.Client] = None) -> None:
        self.api_key = cfg.BIRD_API_KEY
        self.workspace_id = cfg.BIRD_WORKSPACE_ID
        self.channel_id = cfg.BIRD_CHANNEL_ID
        self.api_base = cfg.BIRD_API_BASE.rstrip("/")
        self.dry_run = cfg.BIRD_DRY_RUN
        self._http = http or httpx.Client(timeout=cfg.HTTP_TIMEOUT_SEC)

    # ---- transport ----
    def _require_config(self, *, channel: bool = False) -> None:
        required = [("BIRD_API_KEY", self.api_key), ("BIRD_WORKSPACE_ID", self.workspace_id)]
        if channel:
            required.append(("BIRD_CHANNEL_ID", self.channel_id))
        missing = [name for name, value in required if not value]
        if missing:
            raise BirdError(f"Bird API configuration missing: {', '.join(missing)}")

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        if self.dry_run:
            logger.info("[DRY RUN] %s %s json=%s", method, url, payload)
            return {"id": f"dry_{int(time.time() * 1000)}", "status": "accepted"}

        resp = self._http.request(
            method,
            url,
            json=payload,
            headers={"Authorization": f"AccessKey {self.api_key}", "Content-Type": "application/json"},
        )
        if resp.is_error:
            body = _extract_error_body(resp)
            summary = _summarize_error_body(body)
            logger.error("Bird %s error body: %s", resp.status_code, body)
            message = f"Bird HTTP {resp.status_code}"
            if summary:
                message = f"{message}: {summary}"
            raise BirdError(message, status_code=resp.status_code, body=body)
        try:
            data = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return data if isinstance(data, dict) else {"raw": data}

    @staticmethod
    def _text(text: str) -> str:
        body = (text or "").strip()
        if not body:
            raise BirdError("Message text is required")
        return body

    # ---- conversations ----
    def _conversation_message_path(self, conversation_id: str) -> str:
        return f"/workspaces/{self.workspace_id}/conversations/{conversation_id}/messages"

    def _post_to_conversation(self, conversation_id: str, text: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            self._conversation_message_path(conversation_id),
            {"content": {"text": text}, "direction": "outgoing"},
        )

    def find_conversation(self, phone: str) -> Optional[str]:
        """Return the id of a conversation whose participant matches `phone`."""
        data = self._request("GET", f"/workspaces/{self.workspace_id}/conversations?limit=100")
        conversations = data.get("results") or data.get("items") or data.get("data") or []
        bare = phone.lstrip("+")
        for conv in conversations:
            for contact_phone in _participant_phones(conv or {}):
                if contact_phone == phone or bare in contact_phone:
                    logger.info("✅ Found existing conversation: %s", conv.get("id"))
                    return conv.get("id")
        return None

    def create_conversation(self, phone: str) -> str:
        self._require_config(channel=True)
        data = self._request(
            "POST",
            f"/workspaces/{self.workspace_id}/conversations",
            {
                "channelId": self.channel_id,
                "participants": [{"contact": {"identifierValue": phone, "identifierType": "phone"}}],
            },
        )
        conversation_id = data.get("id")
        if not conversation_id:
            raise BirdError("Bird did not return a conversation id", body=data)
        logger.info("📝 Created new conversation: %s", conversation_id)
        return conversation_id

    def find_or_create_conversation(self, phone: str) -> str:
        try:
            found = self.find_conversation(phone)
        except BirdError as exc:
            logger.warning("⚠️ Conversation lookup failed (%s); creating a new one", exc)
            found = None
        return found or self.create_conversation(phone)

    # =========================
    # Gateway operations
    # =========================
    def send_in_conversation(self, conversation_id: str, phone: str, text: str) -> bool:
        """Reply inside the given conversation thread."""
        self._require_config()
        if not conversation_id:
            raise BirdError("conversation_id is required")
        logger.info("📤 Sending reply to %s in conversation %s", to_e164(phone), conversation_id)
        self._post_to_conversation(conversation_id, self._text(text))
        return True

    def send_to_phone(self, phone: str, text: str) -> bool:
        """Find or create the phone's conversation and send into it."""
        self._require_config(channel=True)
        target = to_e164(phone)
        if not target:
            raise BirdError("Phone number is required")
        body = self._text(text)
        logger.info("📤 Sending SMS to %s via conversation find/create", target)
        conversation_id = self.find_or_create_conversation(target)
        try:
            self._post_to_conversation(conversation_id, body)
        except BirdError as exc:
            if exc.status_code != 404:
                raise
            logger.warning("⚠️ Conversation %s not found, creating a new one", conversation_id)
            self._post_to_conversation(self.create_conversation(target), body)
        return True

    def send_direct(self, phone: str, text: str) -> bool:
        """Send through the channel endpoint, bypassing conversation threading."""
        self._require_config(channel=True)
        target = to_e164(phone)
        if not target:
            raise BirdError("Phone number is required")
        logger.info("📤 Sending SMS directly via channel to %s", target)
        self._request(
            "POST",
            f"/workspaces/{self.workspace_id}/channels/{self.channel_id}/messages",
            {
                "receiver": {"contacts": [{"identifierValue": target}]},
                "body": {"type": "text", "text": {"text": self._text(text)}},
            },
        )
        return True
