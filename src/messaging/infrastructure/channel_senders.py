"""
Outbound transports, keyed by channel type.

WhatsApp Official goes straight to the Graph API. Channels whose transport lives in a
separate adapter (Discord, Instagram) are reached through a channel-typed event on the
bus; the QR transport registers its own sender at startup.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol
from uuid import UUID

import httpx

from src.shared.config import get_settings
from src.shared.events import DomainEvent, EventBus
from src.shared.logging import get_logger
from src.messaging.domain.events import channel_send_event
from src.messaging.domain.exceptions import ChannelSendError, SenderNotConfiguredError
from src.messaging.domain.identity import clean_phone
from src.messaging.domain.value_objects import ChannelType, MessageType
from .models import ChannelORM

logger = get_logger(__name__)


@dataclass(frozen=True)
class SendRequest:
    tenant_id: UUID
    channel: ChannelORM
    conversation_id: UUID
    message_id: UUID
    recipient: str
    content: Optional[str]
    type: MessageType = MessageType.TEXT
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendReceipt:
    # None when the transport accepted the message without a provider id (event-dispatched channels).
    provider_message_id: Optional[str]


class ChannelSender(Protocol):
    async def send(self, request: SendRequest) -> SendReceipt: ...


class CredentialsProvider(Protocol):
    async def get(self, channel: ChannelORM) -> Dict[str, Any]: ...


class ChannelCredentialsProvider:
    """Reads the channel's own credentials blob; decryption happens upstream of this service."""

    async def get(self, channel: ChannelORM) -> Dict[str, Any]:
        return dict(channel.credentials or {})


class WhatsAppCloudSender:
    """Text sends through the WhatsApp Cloud API (graph.facebook.com)."""

    def __init__(
        self,
        *,
        credentials: Optional[CredentialsProvider] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self._credentials = credentials or ChannelCredentialsProvider()
        self._base_url = (base_url or settings.wa_api_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.wa_http_timeout_seconds
        self._transport = transport

    async def send(self, request: SendRequest) -> SendReceipt:
        creds = await self._credentials.get(request.channel)
        phone_number_id = creds.get("phone_number_id") or creds.get("phoneNumberId")
        token = creds.get("access_token") or creds.get("accessToken")
        if not phone_number_id or not token:
            raise SenderNotConfiguredError(
                "WhatsApp channel is missing phone_number_id/access_token",
                details={"channel_id": str(request.channel.id)},
            )

        url = f"{self._base_url}/{phone_number_id}/messages"
        body = {
            "messaging_product": "whatsapp",
            "to": clean_phone(request.recipient),
            "type": "text",
            "text": {"body": request.content},
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(url, headers={"Authorization": f"Bearer {token}"}, json=body)

        if not resp.is_success:
            logger.warning(
                "whatsapp_send_rejected",
                channel_id=str(request.channel.id),
                message_id=str(request.message_id),
                status_code=resp.status_code,
            )
            raise ChannelSendError(
                f"WhatsApp API responded {resp.status_code}",
                details={"status_code": resp.status_code, "body": resp.text[:500]},
            )

        data = resp.json() if resp.content else {}
        messages = data.get("messages") or [{}]
        return SendReceipt(provider_message_id=messages[0].get("id"))


class EventChannelSender:
    """Hands the message to the channel's own adapter via ``channel.<type>.send``."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    async def send(self, request: SendRequest) -> SendReceipt:
        channel_type = ChannelType(request.channel.type)
        event_type = channel_send_event(channel_type)
        if not self._bus.has_handlers(event_type):
            raise SenderNotConfiguredError(f"No adapter subscribed to {event_type}")
        await self._bus.publish(
            DomainEvent(
                event_type=event_type,
                tenant_id=request.tenant_id,
                payload={
                    "message_id": str(request.message_id),
                    "conversation_id": str(request.conversation_id),
                    "channel_id": str(request.channel.id),
                    "tenant_id": str(request.tenant_id),
                    "recipient": request.recipient,
                    "content": request.content,
                    "type": request.type.value,
                    **request.extra,
                },
            ),
            strict=True,
        )
        return SendReceipt(provider_message_id=None)


class SenderRegistry:
    def __init__(self, senders: Optional[Mapping[ChannelType, ChannelSender]] = None) -> None:
        self._senders: Dict[ChannelType, ChannelSender] = dict(senders or {})

    def register(self, channel_type: ChannelType, sender: ChannelSender) -> None:
        self._senders[channel_type] = sender

    def get(self, channel_type: ChannelType) -> ChannelSender:
        sender = self._senders.get(ChannelType(channel_type))
        if sender is None:
            raise SenderNotConfiguredError(f"No sender registered for {ChannelType(channel_type).value}")
        return sender


def default_sender_registry(bus: EventBus, *, whatsapp: Optional[ChannelSender] = None) -> SenderRegistry:
    """Cloud API for WhatsApp Official, adapter events for Discord and Instagram."""
    events = EventChannelSender(bus)
    return SenderRegistry({
        ChannelType.WHATSAPP_OFFICIAL: whatsapp or WhatsAppCloudSender(),
        ChannelType.DISCORD: events,
        ChannelType.INSTAGRAM: events,
    })
