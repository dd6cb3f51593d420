"""Dependency wiring for the messaging and inbox routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.events import EventBus
from src.shared.exceptions import ValidationError
from src.conversation.application.services.conversation_service import ConversationService
from src.messaging.application.channel_listener import ChannelMessageListener
from src.messaging.application.ingestion_service import MessageIngestionService
from src.messaging.application.outbound_dispatcher import OutboundDispatcher
from src.messaging.application.webhook_events import WebhookEventService
from src.messaging.infrastructure.channel_senders import SenderRegistry, default_sender_registry


@dataclass
class MessagingServices:
    session_factory: async_sessionmaker[AsyncSession]
    event_bus: EventBus
    senders: SenderRegistry
    ingestion: MessageIngestionService
    listener: ChannelMessageListener
    dispatcher: OutboundDispatcher
    webhook_events: WebhookEventService
    conversations: ConversationService


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    event_bus: EventBus,
    *,
    senders: Optional[SenderRegistry] = None,
    dispatcher: Optional[OutboundDispatcher] = None,
) -> MessagingServices:
    senders = senders or default_sender_registry(event_bus)
    ingestion = MessageIngestionService(session_factory, event_bus)
    return MessagingServices(
        session_factory=session_factory,
        event_bus=event_bus,
        senders=senders,
        ingestion=ingestion,
        listener=ChannelMessageListener(session_factory, ingestion),
        dispatcher=dispatcher or OutboundDispatcher(session_factory, senders),
        webhook_events=WebhookEventService(session_factory),
        conversations=ConversationService(session_factory, event_bus),
    )


def get_services(request: Request) -> MessagingServices:
    return request.app.state.services


async def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> UUID:
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise ValidationError("X-Tenant-ID must be a UUID", code="invalid_tenant_id")


def get_conversation_service(services: MessagingServices = Depends(get_services)) -> ConversationService:
    return services.conversations


def get_dispatcher(services: MessagingServices = Depends(get_services)) -> OutboundDispatcher:
    return services.dispatcher
