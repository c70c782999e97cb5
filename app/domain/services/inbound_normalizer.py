"""Inbound normalizer: channel-specific webhook payloads to canonical events.

Every parser is a pure function of the payload. Payload fields that are
optional at the provider are optional here; a message without a sender is
a NormalizationError.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any, Callable

from app.core.clock import from_epoch, utcnow
from app.core.exceptions import NormalizationError
from app.core.idempotency import synthesize_provider_message_id
from app.core.phone import normalize_channel
from app.persistence.models.conversation import MessageStatus, MessageType

logger = logging.getLogger(__name__)

SUPPORTED_CHANNELS = ("whatsapp", "instagram", "facebook", "email", "webchat", "sms")

_MEDIA_KINDS = ("image", "audio", "video", "document", "sticker")

_DEFAULT_MIME = {
    "image": "image/jpeg",
    "audio": "audio/ogg",
    "video": "video/mp4",
    "document": "application/pdf",
    "sticker": "image/webp",
}

_META_STATUS_MAP = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
}


@dataclass(frozen=True)
class MediaDescriptor:
    """Reference to provider-hosted media."""

    media_id: str
    mime_type: str | None
    kind: str


@dataclass(frozen=True)
class InboundEvent:
    """Canonical inbound message."""

    channel: str
    provider_message_id: str
    from_address: str
    text: str
    received_at: datetime
    from_name: str | None = None
    media: MediaDescriptor | None = None
    message_type: str = MessageType.TEXT.value
    wa_id: str | None = None
    external_thread_id: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class StatusUpdate:
    """Delivery receipt for an outbound message."""

    channel: str
    provider_message_id: str
    status: MessageStatus
    occurred_at: datetime
    error: str | None = None


def _timestamp(value: Any, millis: bool = False) -> datetime:
    if value in (None, ""):
        return utcnow()
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return utcnow()
    return from_epoch(seconds / 1000 if millis else seconds)


def _ensure_id(channel: str, provider_id: str | None, address: str, text: str, received_at: datetime) -> str:
    if provider_id:
        return str(provider_id)
    synthesized = synthesize_provider_message_id(address, text, received_at)
    logger.debug(f"Synthesized provider id {synthesized} for {channel} message")
    return synthesized


def _whatsapp_text(message: dict[str, Any]) -> tuple[str, MediaDescriptor | None, str]:
    msg_type = message.get("type") or "text"

    if msg_type == "text":
        return (message.get("text") or {}).get("body", ""), None, MessageType.TEXT.value
    if msg_type == "button":
        return (message.get("button") or {}).get("text", ""), None, MessageType.TEXT.value
    if msg_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title", ""), None, MessageType.TEXT.value
    if msg_type == "location":
        location = message.get("location") or {}
        text = f"[location: {location.get('latitude')}, {location.get('longitude')}]"
        return text, None, MessageType.LOCATION.value
    if msg_type in _MEDIA_KINDS:
        body = message.get(msg_type) or {}
        media = None
        if body.get("id"):
            media = MediaDescriptor(
                media_id=body["id"],
                mime_type=body.get("mime_type") or _DEFAULT_MIME[msg_type],
                kind=msg_type,
            )
        if msg_type == "document":
            text = body.get("caption") or f"[document: {body.get('filename') or 'file'}]"
        else:
            text = body.get("caption") or f"[{msg_type}]"
        message_type = MessageType.IMAGE.value if msg_type == "sticker" else msg_type
        return text, media, message_type

    return f"[{msg_type}]", None, MessageType.UNKNOWN.value


def parse_whatsapp(payload: dict[str, Any]) -> list[InboundEvent]:
    """Parse a WhatsApp Cloud API webhook.

    Status-only callbacks and echoes of our own messages yield no events.
    """
    events: list[InboundEvent] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            our_number_id = (value.get("metadata") or {}).get("phone_number_id")
            names = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts") or []
            }
            for message in value.get("messages") or []:
                sender = message.get("from")
                if not sender:
                    raise NormalizationError("whatsapp", "message without sender")
                if our_number_id and (message.get("context") or {}).get("from") == our_number_id:
                    continue

                text, media, message_type = _whatsapp_text(message)
                received_at = _timestamp(message.get("timestamp"))
                events.append(InboundEvent(
                    channel="whatsapp",
                    provider_message_id=_ensure_id("whatsapp", message.get("id"), sender, text, received_at),
                    from_address=sender,
                    from_name=names.get(sender),
                    text=text,
                    media=media,
                    message_type=message_type,
                    received_at=received_at,
                    wa_id=sender,
                    external_thread_id=f"{our_number_id}:{sender}" if our_number_id else None,
                    raw_payload=message,
                ))
    return events


def _messenger_parser(channel: str) -> Callable[[dict[str, Any]], list[InboundEvent]]:
    def parse(payload: dict[str, Any]) -> list[InboundEvent]:
        events: list[InboundEvent] = []
        for entry in payload.get("entry") or []:
            for item in entry.get("messaging") or []:
                message = item.get("message")
                if not message or message.get("is_echo"):
                    continue
                sender = (item.get("sender") or {}).get("id")
                if not sender:
                    raise NormalizationError(channel, "messaging item without sender.id")

                text = message.get("text") or ""
                media = None
                message_type = MessageType.TEXT.value
                attachments = message.get("attachments") or []
                if attachments:
                    first = attachments[0]
                    kind = first.get("type") or "file"
                    url = (first.get("payload") or {}).get("url")
                    if kind in ("image", "audio", "video") and url:
                        media = MediaDescriptor(media_id=url, mime_type=None, kind=kind)
                        message_type = kind
                    elif kind == "file" and url:
                        media = MediaDescriptor(media_id=url, mime_type=None, kind="document")
                        message_type = MessageType.DOCUMENT.value
                    if not text:
                        text = f"[{kind}]"

                received_at = _timestamp(item.get("timestamp"), millis=True)
                events.append(InboundEvent(
                    channel=channel,
                    provider_message_id=_ensure_id(channel, message.get("mid"), sender, text, received_at),
                    from_address=sender,
                    text=text,
                    media=media,
                    message_type=message_type,
                    received_at=received_at,
                    external_thread_id=(item.get("recipient") or {}).get("id"),
                    raw_payload=item,
                ))
        return events

    return parse


def parse_email(payload: dict[str, Any]) -> list[InboundEvent]:
    """Parse a flat inbound email payload (``from``, ``subject``, ``text``...)."""
    name, address = parseaddr(payload.get("from") or "")
    if not address:
        raise NormalizationError("email", "missing from address")

    subject = (payload.get("subject") or "").strip()
    body = (payload.get("text") or "").strip()
    text = body or subject

    received_at = utcnow()
    if payload.get("date"):
        try:
            parsed = parsedate_to_datetime(payload["date"])
            received_at = parsed if parsed.tzinfo is None else _timestamp(parsed.timestamp())
        except (TypeError, ValueError):
            logger.debug(f"Unparseable email date: {payload.get('date')}")

    return [InboundEvent(
        channel="email",
        provider_message_id=_ensure_id("email", payload.get("message_id"), address, text, received_at),
        from_address=address,
        from_name=payload.get("from_name") or name or None,
        text=text,
        received_at=received_at,
        external_thread_id=payload.get("in_reply_to") or payload.get("message_id"),
        raw_payload=payload,
    )]


def parse_webchat(payload: dict[str, Any]) -> list[InboundEvent]:
    """Parse a web widget message keyed by visitor session."""
    session_id = payload.get("session_id")
    if not session_id:
        raise NormalizationError("webchat", "missing session_id")

    text = payload.get("text") or ""
    received_at = _timestamp(payload.get("timestamp"))
    return [InboundEvent(
        channel="webchat",
        provider_message_id=_ensure_id("webchat", payload.get("message_id"), session_id, text, received_at),
        from_address=session_id,
        from_name=payload.get("visitor_name"),
        text=text,
        received_at=received_at,
        external_thread_id=session_id,
        raw_payload=payload,
    )]


def parse_sms(payload: dict[str, Any]) -> list[InboundEvent]:
    """Parse Twilio inbound SMS form fields."""
    sender = payload.get("From")
    if not sender:
        raise NormalizationError("sms", "missing From")

    text = payload.get("Body") or ""
    media = None
    message_type = MessageType.TEXT.value
    if int(payload.get("NumMedia") or 0) > 0 and payload.get("MediaUrl0"):
        mime = payload.get("MediaContentType0")
        kind = (mime or "image/").split("/")[0]
        if kind not in ("image", "audio", "video"):
            kind = "document"
        media = MediaDescriptor(media_id=payload["MediaUrl0"], mime_type=mime, kind=kind)
        message_type = kind
        text = text or f"[{kind}]"

    received_at = utcnow()
    return [InboundEvent(
        channel="sms",
        provider_message_id=_ensure_id("sms", payload.get("MessageSid"), sender, text, received_at),
        from_address=sender,
        text=text,
        media=media,
        message_type=message_type,
        received_at=received_at,
        external_thread_id=payload.get("To"),
        raw_payload=dict(payload),
    )]


_PARSERS: dict[str, Callable[[dict[str, Any]], list[InboundEvent]]] = {
    "whatsapp": parse_whatsapp,
    "instagram": _messenger_parser("instagram"),
    "facebook": _messenger_parser("facebook"),
    "email": parse_email,
    "webchat": parse_webchat,
    "sms": parse_sms,
}


def normalize(channel: str, payload: dict[str, Any]) -> list[InboundEvent]:
    """Map a raw webhook payload to canonical inbound events.

    Args:
        channel: Channel tag of the webhook
        payload: Decoded webhook body

    Returns:
        Zero or more events (status-only callbacks produce none)

    Raises:
        NormalizationError: For unknown channels or payloads without a sender
    """
    channel = normalize_channel(channel)
    parser = _PARSERS.get(channel)
    if parser is None:
        raise NormalizationError(channel, "unsupported channel")
    if not isinstance(payload, dict):
        raise NormalizationError(channel, "payload is not a JSON object")
    return parser(payload)


def parse_status_updates(channel: str, payload: dict[str, Any]) -> list[StatusUpdate]:
    """Extract delivery receipts from a WhatsApp webhook.

    Other channels report no receipts through this path.
    """
    if normalize_channel(channel) != "whatsapp":
        return []

    updates: list[StatusUpdate] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            for status in (change.get("value") or {}).get("statuses") or []:
                mapped = _META_STATUS_MAP.get(status.get("status"))
                if not mapped or not status.get("id"):
                    continue
                errors = status.get("errors") or []
                updates.append(StatusUpdate(
                    channel="whatsapp",
                    provider_message_id=status["id"],
                    status=mapped,
                    occurred_at=_timestamp(status.get("timestamp")),
                    error=errors[0].get("title") if errors else None,
                ))
    return updates
