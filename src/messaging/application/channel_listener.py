from __future__ import annotations

from typing import Any, Callable, Mapping, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.events import DomainEvent, EventBus
from src.shared.logging import get_logger
from src.messaging.domain.entities import InboundMessage
from src.messaging.domain.events import CHANNEL_MESSAGE_RECEIVED, WHATSAPP_MESSAGE_RECEIVED
from src.messaging.domain.exceptions import ChannelNotFoundError, UnsupportedPayloadError
from src.messaging.infrastructure.repositories import ChannelRepository
from .ingestion_service import IngestResult, MessageIngestionService
from .normalizer import normalize_channel_event, normalize_whatsapp_qr_event

logger = get_logger(__name__)

Normalizer = Callable[[Mapping[str, Any]], InboundMessage]

NORMALIZERS = {
    CHANNEL_MESSAGE_RECEIVED: normalize_channel_event,
    WHATSAPP_MESSAGE_RECEIVED: normalize_whatsapp_qr_event,
}


class ChannelMessageListener:
    """
    Bridges channel adapter events into the ingestion pipeline.

    The tenant is never taken from the event: it is derived from the channel's owning
    store. Events that cannot be mapped to a channel/tenant are logged and dropped;
    raising would only make the transport redeliver something that can never succeed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ingestion: MessageIngestionService,
    ) -> None:
        self._sf = session_factory
        self._ingestion = ingestion

    def register(self, bus: EventBus) -> None:
        bus.subscribe(CHANNEL_MESSAGE_RECEIVED, self.on_event)
        bus.subscribe(WHATSAPP_MESSAGE_RECEIVED, self.on_event)

    async def on_event(self, event: DomainEvent) -> None:
        await self.handle(event.event_type, event.payload)

    async def handle(self, event_type: str, payload: Mapping[str, Any]) -> Optional[IngestResult]:
        normalizer = NORMALIZERS.get(event_type)
        if normalizer is None:
            raise UnsupportedPayloadError(f"Unknown channel event type {event_type!r}")

        try:
            inbound = normalizer(payload)
        except UnsupportedPayloadError as exc:
            logger.warning("channel_event_dropped", reason="invalid_payload", event_type=event_type, error=exc.message)
            return None

        tenant_id = await self._tenant_for(inbound.channel_id)
        if tenant_id is None:
            return None

        try:
            result = await self._ingestion.ingest(tenant_id, inbound)
        except ChannelNotFoundError:
            logger.warning("channel_event_dropped", reason="channel_not_found", channel_id=str(inbound.channel_id))
            return None
        return result

    async def _tenant_for(self, channel_id: UUID) -> Optional[UUID]:
        async with self._sf() as s:
            found = await ChannelRepository(s).get_with_tenant(channel_id)
        if found is None:
            logger.warning("channel_event_dropped", reason="channel_not_found", channel_id=str(channel_id))
            return None
        _, tenant_id = found
        if tenant_id is None:
            logger.warning("channel_event_dropped", reason="store_not_found", channel_id=str(channel_id))
            return None
        return tenant_id
