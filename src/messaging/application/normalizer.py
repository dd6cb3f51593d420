"""
Channel normalizer: turns adapter event payloads into ``InboundMessage`` records.

Two payload shapes reach the pipeline:

* ``channel.message.received`` from the Cloud API, Discord and Instagram adapters
  (``from`` is a bare MSISDN or a platform user id);
* ``whatsapp.message.received`` from the QR transport (``from`` is a full JID, with the
  resolved phone in ``fromPhone`` when the transport knows it).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union
from uuid import UUID

from src.messaging.domain.entities import InboundMessage
from src.messaging.domain.exceptions import UnsupportedPayloadError
from src.messaging.domain.identity import (
    PhoneIdentity,
    PlatformIdentity,
    SenderIdentity,
    clean_phone,
    identity_from_jid,
    is_linked_id,
)
from src.messaging.domain.value_objects import MessageType

_TYPE_MAP: Dict[str, MessageType] = {
    "text": MessageType.TEXT,
    "image": MessageType.IMAGE,
    "video": MessageType.VIDEO,
    "audio": MessageType.AUDIO,
    "document": MessageType.DOCUMENT,
    "location": MessageType.LOCATION,
    "sticker": MessageType.STICKER,
    "contact": MessageType.CONTACT,
    "interactive": MessageType.INTERACTIVE,
    "button": MessageType.INTERACTIVE,
    "template": MessageType.TEMPLATE,
}

_WHATSAPP_CHANNEL_NAMES = frozenset({"whatsapp", "whatsapp_official", "whatsapp_unofficial"})


def map_message_type(raw: Optional[str]) -> MessageType:
    """Unknown or missing types degrade to text."""
    return _TYPE_MAP.get((raw or "").strip().lower(), MessageType.TEXT)


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> datetime:
    """Accepts datetimes, ISO-8601 strings and epoch seconds/milliseconds."""
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    seconds: Optional[float] = None
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        try:
            seconds = float(str(value).strip())
        except ValueError:
            pass
    if seconds is not None:
        if seconds > 1e11:  # milliseconds
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise UnsupportedPayloadError(f"Timestamp out of range {value!r}") from exc
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise UnsupportedPayloadError(f"Unparseable timestamp {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _require(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise UnsupportedPayloadError(f"Channel event is missing {key!r}", details={"field": key})
    return value


def _channel_id(payload: Mapping[str, Any]) -> UUID:
    raw = _require(payload, "channelId")
    try:
        return raw if isinstance(raw, UUID) else UUID(str(raw))
    except ValueError as exc:
        raise UnsupportedPayloadError(f"Invalid channelId {raw!r}") from exc


def _channel_sender(channel: str, sender: str) -> SenderIdentity:
    if channel in _WHATSAPP_CHANNEL_NAMES:
        if "@" in sender:
            return identity_from_jid(sender)
        return PhoneIdentity(clean_phone(sender))
    return PlatformIdentity(platform=channel, user_id=sender.strip())


def normalize_channel_event(payload: Mapping[str, Any]) -> InboundMessage:
    """``channel.message.received`` (Cloud API, Discord, Instagram)."""
    channel = str(payload.get("channel") or "whatsapp").strip().lower()
    sender = _channel_sender(channel, str(_require(payload, "from")))

    media = None
    if payload.get("mediaId"):
        media = {"id": payload["mediaId"], "type": payload.get("mediaType")}

    interactive = None
    reply = payload.get("interactiveReply")
    if reply:
        interactive = {"type": reply.get("type"), "id": reply.get("id"), "title": reply.get("title")}

    metadata: Dict[str, Any] = {"channel": channel}
    if payload.get("replyTo"):
        metadata["reply_to"] = payload["replyTo"]

    return InboundMessage(
        channel_id=_channel_id(payload),
        sender=sender,
        sender_name=(payload.get("customerName") or None),
        external_message_id=(payload.get("externalMessageId") or None),
        content=payload.get("content"),
        type=map_message_type(payload.get("type")),
        timestamp=parse_timestamp(payload.get("timestamp")),
        media=media,
        interactive=interactive,
        location=payload.get("location"),
        metadata=metadata,
    )


def normalize_whatsapp_qr_event(payload: Mapping[str, Any]) -> InboundMessage:
    """``whatsapp.message.received`` (QR transport, always text)."""
    jid = str(_require(payload, "from"))
    # A linked id never carries a usable phone, whatever the transport put in fromPhone.
    phone_hint = None if is_linked_id(jid) else payload.get("fromPhone")
    return InboundMessage(
        channel_id=_channel_id(payload),
        sender=identity_from_jid(jid, phone_hint),
        sender_name=(payload.get("pushName") or None),
        external_message_id=(payload.get("messageId") or None),
        content=payload.get("text"),
        type=MessageType.TEXT,
        timestamp=parse_timestamp(payload.get("timestamp")),
        metadata={"channel": "whatsapp_unofficial", "jid": jid},
    )
