"""Outbound messages through the Evolution API gateway."""

import re
from typing import Any, Callable, Optional

import httpx

from zapdesk.config import settings
from zapdesk.logging_config import get_logger
from zapdesk.schemas.outbound import OutboundMessage
from zapdesk.services.result import Result

logger = get_logger("sender_service")


class OutboundValidationError(ValueError):
    """Outbound instruction is missing type-specific fields or has an unknown type."""


class GatewayError(Exception):
    """Gateway call failed; safe to retry later."""


def sanitize_phone(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def _require(data: dict, *fields: str) -> None:
    missing = [name for name in fields if not data.get(name)]
    if missing:
        raise OutboundValidationError(f"Missing required field(s): {', '.join(missing)}")


def _text(phone: str, data: dict) -> tuple[str, dict]:
    if not isinstance(data.get("message"), str) or not data["message"]:
        raise OutboundValidationError("Text message requires data.message string")
    return "sendText", {"number": phone, "text": data["message"]}


def _media(mediatype: str, field: str) -> Callable[[str, dict], tuple[str, dict]]:
    def build(phone: str, data: dict) -> tuple[str, dict]:
        _require(data, field)
        body = {"number": phone, "mediatype": mediatype, "media": data[field]}
        if mediatype == "document":
            body["fileName"] = data.get("filename") or data.get("fileName") or "document"
        else:
            body["caption"] = data.get("caption") or ""
        return "sendMedia", body

    return build


def _audio(phone: str, data: dict) -> tuple[str, dict]:
    _require(data, "audio")
    return "sendWhatsAppAudio", {"number": phone, "audio": data["audio"]}


def _buttons(phone: str, data: dict) -> tuple[str, dict]:
    _require(data, "message", "buttons")
    return "sendButtons", {
        "number": phone,
        "title": data.get("title") or "",
        "description": data["message"],
        "footer": data.get("footer") or "",
        "buttons": data["buttons"],
    }


def _list(phone: str, data: dict) -> tuple[str, dict]:
    _require(data, "message", "sections")
    return "sendList", {
        "number": phone,
        "title": data["message"],
        "description": data.get("description") or "",
        "buttonText": data.get("buttonText") or "Menu",
        "footerText": data.get("footer") or data.get("footerText") or "",
        "sections": data["sections"],
    }


def _location(phone: str, data: dict) -> tuple[str, dict]:
    if data.get("latitude") is None or data.get("longitude") is None:
        raise OutboundValidationError("Location message requires data.latitude and data.longitude")
    return "sendLocation", {
        "number": phone,
        "name": data.get("name") or "",
        "address": data.get("address") or "",
        "latitude": data["latitude"],
        "longitude": data["longitude"],
    }


def _contact(phone: str, data: dict) -> tuple[str, dict]:
    _require(data, "contacts")
    return "sendContact", {"number": phone, "contact": data["contacts"]}


BUILDERS: dict[str, Callable[[str, dict], tuple[str, dict]]] = {
    "text": _text,
    "image": _media("image", "image"),
    "video": _media("video", "video"),
    "document": _media("document", "document"),
    "audio": _audio,
    "button": _buttons,
    "buttons": _buttons,
    "list": _list,
    "location": _location,
    "contact": _contact,
}


def build_gateway_request(message: OutboundMessage) -> tuple[str, dict[str, Any]]:
    """Map an outbound instruction to (endpoint url, JSON body)."""
    builder = BUILDERS.get((message.type or "").strip().lower())
    if builder is None:
        raise OutboundValidationError(f"Unsupported message type: {message.type}")

    operation, body = builder(message.phone, message.data or {})
    base_url = settings.evolution_api_url.rstrip("/")
    return f"{base_url}/message/{operation}/{settings.evolution_instance_name}", body


def send_message(message: OutboundMessage, *, client: Optional[httpx.Client] = None) -> Result[dict]:
    """Send one instruction. Validation problems raise; gateway problems return a failure."""
    url, body = build_gateway_request(message)
    headers = {"Content-Type": "application/json"}
    if settings.evolution_api_key:
        headers["apikey"] = settings.evolution_api_key

    try:
        if client is not None:
            response = client.post(url, json=body, headers=headers)
        else:
            with httpx.Client(timeout=settings.evolution_timeout_seconds) as http:
                response = http.post(url, json=body, headers=headers)
    except httpx.HTTPError as e:
        logger.error(f"Evolution API transport error: {e}", extra={"context": {"url": url, "type": message.type}})
        return Result.failure(str(e), "gateway_unreachable")

    if response.status_code >= 400:
        logger.error(
            "Evolution API rejected message",
            extra={"context": {"url": url, "status": response.status_code, "body": response.text[:300]}},
        )
        return Result.failure(
            f"Evolution API error: {response.status_code}",
            "gateway_error",
            status=response.status_code,
        )

    try:
        data = response.json()
    except ValueError:
        data = {"raw": response.text}

    logger.info("Message sent", extra={"context": {"type": message.type, "phone": message.phone}})
    return Result.success(data)


def send_or_raise(message: OutboundMessage) -> dict:
    """send_message for pipeline use: gateway failures raise GatewayError so the turn is retried."""
    result = send_message(message)
    if not result.ok:
        raise GatewayError(result.error)
    return result.value
