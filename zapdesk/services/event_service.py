"""Inbound gateway event helpers: signature check, event classes, payload normalization."""

import hashlib
import hmac
import time
from typing import Any, Optional

from zapdesk.schemas.webhook import MESSAGE_RECEIVED_EVENT

EVENT_CLASS_MESSAGE = "message"
EVENT_CLASS_MESSAGE_STATUS = "message_status"
EVENT_CLASS_SYSTEM = "system"
EVENT_CLASS_DATA = "data"
EVENT_CLASS_PRESENCE = "presence"
EVENT_CLASS_TYPEBOT = "typebot"
EVENT_CLASS_UNKNOWN = "unknown"

# Evolution API names, normalized to upper snake case
MESSAGE_EVENTS = {"MESSAGE_RECEIVED", "MESSAGES_UPSERT"}
# Receipts, deletions and echoes of our own sends; acknowledged, never routed
MESSAGE_STATUS_EVENTS = {"MESSAGES_UPDATE", "MESSAGES_DELETE", "SEND_MESSAGE"}
SYSTEM_EVENTS = {"QRCODE_UPDATED", "CONNECTION_UPDATE", "APPLICATION_STARTUP", "LOGOUT_INSTANCE", "REMOVE_INSTANCE"}
DATA_EVENTS = {
    "CONTACTS_SET",
    "CONTACTS_UPSERT",
    "CONTACTS_UPDATE",
    "CHATS_SET",
    "CHATS_UPSERT",
    "CHATS_UPDATE",
    "CHATS_DELETE",
    "GROUPS_UPSERT",
    "GROUPS_UPDATE",
    "GROUP_PARTICIPANTS_UPDATE",
    "LABELS_EDIT",
    "LABELS_ASSOCIATION",
    "MESSAGES_SET",
}
PRESENCE_EVENTS = {"PRESENCE_UPDATE"}
TYPEBOT_EVENTS = {"TYPEBOT_START", "TYPEBOT_CHANGE_STATUS"}

SIGNATURE_HEADERS = ("X-Hub-Signature-256", "X-Signature")


def _event_key(event: Optional[str]) -> str:
    return (event or "").strip().replace(".", "_").replace("-", "_").upper()


def classify_event(event: Optional[str]) -> str:
    key = _event_key(event)
    if key in MESSAGE_EVENTS:
        return EVENT_CLASS_MESSAGE
    if key in MESSAGE_STATUS_EVENTS:
        return EVENT_CLASS_MESSAGE_STATUS
    if key in SYSTEM_EVENTS:
        return EVENT_CLASS_SYSTEM
    if key in DATA_EVENTS:
        return EVENT_CLASS_DATA
    if key in PRESENCE_EVENTS:
        return EVENT_CLASS_PRESENCE
    if key in TYPEBOT_EVENTS:
        return EVENT_CLASS_TYPEBOT
    return EVENT_CLASS_UNKNOWN


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body or b"", hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, provided: Optional[str]) -> bool:
    """Hex HMAC-SHA256 of the raw body, with or without a ``sha256=`` prefix."""
    if not provided:
        return False
    candidate = provided.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), candidate.lower().encode("utf-8"))


def get_request_signature(headers) -> Optional[str]:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value.strip()
    return None


def _jid_to_phone(jid: Optional[str]) -> str:
    return (jid or "").split("@", 1)[0].split(":", 1)[0]


def _extract_text(message: dict) -> Optional[str]:
    if not isinstance(message, dict):
        return None
    if isinstance(message.get("conversation"), str):
        return message["conversation"]
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and isinstance(extended.get("text"), str):
        return extended["text"]
    for media_key in ("imageMessage", "videoMessage", "documentMessage"):
        media = message.get(media_key)
        if isinstance(media, dict) and media.get("caption"):
            return media["caption"]
    for key in message:
        if key.endswith("Message"):
            return f"[{key[: -len('Message')]}]"
    return None


def is_native_upsert(payload: dict[str, Any]) -> bool:
    data = payload.get("data")
    return (
        _event_key(payload.get("event")) == "MESSAGES_UPSERT"
        and isinstance(data, dict)
        and isinstance(data.get("key"), dict)
    )


def normalize_evolution_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Turn a native Evolution ``messages.upsert`` body into the canonical webhook shape.

    Anything else is returned unchanged.
    """
    if not is_native_upsert(payload):
        return payload

    data = payload["data"]
    key = data["key"]
    timestamp = data.get("messageTimestamp")
    if isinstance(timestamp, str) and timestamp.isdigit():
        timestamp = int(timestamp)
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        timestamp = int(time.time())

    push_name = data.get("pushName")
    return {
        "event": MESSAGE_RECEIVED_EVENT,
        "instanceId": payload.get("instance") or payload.get("instanceId"),
        "data": {
            "messageId": key.get("id"),
            "from": _jid_to_phone(key.get("remoteJid")),
            "to": _jid_to_phone(payload.get("sender") or payload.get("destination") or payload.get("instance")),
            "text": {"message": _extract_text(data.get("message") or {})},
            "timestamp": timestamp,
            "fromMe": bool(key.get("fromMe")),
            "senderName": push_name,
            "pushName": push_name,
        },
    }


def has_routable_content(payload: dict[str, Any]) -> bool:
    """False for a normalized upsert the bot has nothing to answer: our own send, or no text."""
    data = payload.get("data") or {}
    text = data.get("text") or {}
    return not data.get("fromMe") and bool(text.get("message"))
