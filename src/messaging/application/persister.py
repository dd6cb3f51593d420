from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.logging import get_logger
from src.messaging.domain.entities import InboundMessage
from src.messaging.domain.exceptions import ConversationNotFoundError, DuplicateMessageError
from src.messaging.domain.value_objects import MessageDirection, MessageSender, MessageStatus
from src.messaging.infrastructure.job_queue import PROCESS_INCOMING, JobQueue
from src.messaging.infrastructure.models import ChannelORM, ConversationORM, MessageORM
from src.messaging.infrastructure.repositories import ChannelRepository, ConversationRepository, MessageRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class PersistedInbound:
    message: MessageORM
    conversation: ConversationORM
    channel: ChannelORM


class TransactionalPersister:
    """
    Writes an accepted inbound message and everything that depends on it in one
    transaction: the message row, the conversation counters and reopen, the channel
    activity stamp and the ``process-incoming`` job. Either all of it commits or none.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sf = session_factory

    async def persist_inbound(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        inbound: InboundMessage,
        *,
        is_new_conversation: bool,
    ) -> PersistedInbound:
        async with self._sf() as s:
            try:
                async with s.begin():
                    message = await MessageRepository(s).add(
                        MessageORM(
                            tenant_id=tenant_id,
                            conversation_id=conversation_id,
                            direction=MessageDirection.INBOUND,
                            type=inbound.type,
                            status=MessageStatus.DELIVERED,
                            sender=MessageSender.CUSTOMER,
                            external_id=inbound.external_message_id,
                            content=inbound.content,
                            media=inbound.media,
                            location=inbound.location,
                            interactive=inbound.interactive,
                            metadata_=dict(inbound.metadata),
                            delivered_at=inbound.timestamp,
                        )
                    )

                    conversations = ConversationRepository(s)
                    await conversations.record_inbound(conversation_id, inbound.timestamp)
                    await ChannelRepository(s).record_inbound(inbound.channel_id, inbound.timestamp)
                    await JobQueue(s).enqueue(
                        PROCESS_INCOMING,
                        {
                            "messageId": str(message.id),
                            "conversationId": str(conversation_id),
                            "channelId": str(inbound.channel_id),
                            "tenantId": str(tenant_id),
                            "isNewConversation": is_new_conversation,
                        },
                    )

                    conversation = await conversations.get(tenant_id, conversation_id, fresh=True)
                    if conversation is None:
                        raise ConversationNotFoundError(f"Conversation {conversation_id} vanished mid-write")
                    channel = await s.get(ChannelORM, inbound.channel_id, populate_existing=True)
            except IntegrityError as exc:
                if not inbound.external_message_id:
                    raise
                existing = await self._find_existing(tenant_id, inbound.external_message_id)
                if existing is None:
                    raise
                logger.info(
                    "inbound_duplicate_on_insert",
                    tenant_id=str(tenant_id),
                    message_id=str(existing.id),
                )
                raise DuplicateMessageError(inbound.external_message_id, existing) from exc

        return PersistedInbound(message=message, conversation=conversation, channel=channel)

    async def _find_existing(self, tenant_id: UUID, external_id: str):
        async with self._sf() as s:
            return await MessageRepository(s).find_by_external_id(tenant_id, external_id)
