from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.events import DomainEvent, EventBus
from src.shared.logging import get_logger, time_block
from src.messaging.domain.entities import InboundMessage
from src.messaging.domain.events import MESSAGE_RECEIVED
from src.messaging.domain.exceptions import ChannelNotFoundError, DuplicateMessageError
from src.messaging.infrastructure.models import ChannelORM, ConversationORM, MessageORM
from src.messaging.infrastructure.repositories import ChannelRepository, ConversationRepository, MessageRepository
from .conversation_resolver import ConversationResolver
from .persister import TransactionalPersister

logger = get_logger(__name__)


@dataclass(frozen=True)
class IngestResult:
    message: MessageORM
    conversation: Optional[ConversationORM]
    is_new_conversation: bool
    duplicate: bool = False


class MessageIngestionService:
    """
    Inbound pipeline: dedup gate, conversation resolution, transactional write, fan-out.

    Redelivered events (same tenant and external message id) return the stored message
    and touch nothing else. Events without an external id cannot be deduplicated and are
    always accepted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: EventBus,
        *,
        resolver: Optional[ConversationResolver] = None,
        persister: Optional[TransactionalPersister] = None,
    ) -> None:
        self._sf = session_factory
        self._bus = event_bus
        self._resolver = resolver or ConversationResolver(session_factory)
        self._persister = persister or TransactionalPersister(session_factory)

    async def ingest(self, tenant_id: UUID, inbound: InboundMessage) -> IngestResult:
        log = logger.bind(tenant_id=str(tenant_id), channel_id=str(inbound.channel_id))

        async with self._sf() as s:
            if inbound.external_message_id:
                existing = await MessageRepository(s).find_by_external_id(tenant_id, inbound.external_message_id)
                if existing is not None:
                    log.info("inbound_duplicate_skipped", message_id=str(existing.id))
                    return await self._duplicate_result(s, tenant_id, existing)
            else:
                log.warning("inbound_without_external_id")

            found = await ChannelRepository(s).get_with_tenant(inbound.channel_id)
            if found is None or found[1] != tenant_id:
                raise ChannelNotFoundError(
                    f"Channel {inbound.channel_id} not found for tenant",
                    details={"channel_id": str(inbound.channel_id)},
                )

        with time_block("ingest.persist", logger=log):
            conversation, is_new = await self._resolver.resolve(tenant_id, inbound)
            try:
                persisted = await self._persister.persist_inbound(
                    tenant_id, conversation.id, inbound, is_new_conversation=is_new
                )
            except DuplicateMessageError as dup:
                # Lost the race against a concurrent delivery of the same event.
                async with self._sf() as s:
                    return await self._duplicate_result(s, tenant_id, dup.existing)

        log.info(
            "message_ingested",
            message_id=str(persisted.message.id),
            conversation_id=str(persisted.conversation.id),
            is_new_conversation=is_new,
        )

        await self._fan_out(tenant_id, persisted.message, persisted.conversation, persisted.channel, is_new)
        return IngestResult(
            message=persisted.message,
            conversation=persisted.conversation,
            is_new_conversation=is_new,
        )

    async def _duplicate_result(self, s: AsyncSession, tenant_id: UUID, message: MessageORM) -> IngestResult:
        conversation = await ConversationRepository(s).get(tenant_id, message.conversation_id)
        return IngestResult(message=message, conversation=conversation, is_new_conversation=False, duplicate=True)

    async def _fan_out(
        self,
        tenant_id: UUID,
        message: MessageORM,
        conversation: ConversationORM,
        channel: ChannelORM,
        is_new: bool,
    ) -> None:
        # Best-effort and synchronous; the durable follow-up is the process-incoming job
        # committed with the message.
        await self._bus.publish(
            DomainEvent(
                event_type=MESSAGE_RECEIVED,
                tenant_id=tenant_id,
                payload={
                    "message": message,
                    "conversation": conversation,
                    "channel": channel,
                    "is_new_conversation": is_new,
                },
            )
        )
