"""
Handlers for the durable ``messaging`` queue.

Every handler must be safe to run more than once for the same payload: the worker
delivers at least once, and a job can be picked up again after a crash mid-run.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.database import utcnow
from src.shared.events import DomainEvent, EventBus
from src.shared.logging import get_logger
from src.messaging.domain.events import CONVERSATION_CREATED, MESSAGE_PROCESSED
from src.messaging.domain.value_objects import ChannelType, MessageDirection, MessageStatus
from src.messaging.infrastructure.channel_senders import SendRequest, SenderRegistry
from src.messaging.infrastructure.job_queue import PROCESS_INCOMING, SEND_MESSAGE
from src.messaging.infrastructure.models import ChannelORM, ConversationORM, MessageORM
from src.messaging.infrastructure.repositories import ChannelRepository, ConversationRepository

from .outbound_dispatcher import NO_TEXT_CONTENT_ERROR, recipient_for

logger = get_logger(__name__)


def _uuid(payload: Mapping[str, Any], key: str) -> UUID:
    return UUID(str(payload[key]))


class ProcessIncomingHandler:
    """Secondary work for an ingested message: ``message.processed`` and, for a new thread, ``conversation.created``."""

    name = PROCESS_INCOMING

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], event_bus: EventBus) -> None:
        self._sf = session_factory
        self._bus = event_bus

    async def __call__(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        message_id = _uuid(payload, "messageId")
        conversation_id = _uuid(payload, "conversationId")
        tenant_id = _uuid(payload, "tenantId")

        async with self._sf() as s:
            message = await s.get(MessageORM, message_id)
            conversation = await ConversationRepository(s).get(tenant_id, conversation_id)

        if message is None or conversation is None:
            logger.warning(
                "process_incoming_target_missing",
                message_id=str(message_id),
                conversation_id=str(conversation_id),
            )
            return {"status": "not_found"}

        await self._bus.publish(
            DomainEvent(
                event_type=MESSAGE_PROCESSED,
                tenant_id=tenant_id,
                payload={
                    "message": message,
                    "conversation": conversation,
                    "channel_id": payload.get("channelId"),
                    "tenant_id": str(tenant_id),
                },
            )
        )

        if payload.get("isNewConversation"):
            await self._bus.publish(
                DomainEvent(
                    event_type=CONVERSATION_CREATED,
                    tenant_id=tenant_id,
                    payload={
                        "conversation": conversation,
                        "tenant_id": str(tenant_id),
                        "first_message": message,
                    },
                )
            )
        return {"status": "processed", "messageId": str(message_id)}


class SendMessageHandler:
    """
    Delivers a queued outbound message. One provider attempt per job attempt; the queue's
    backoff is the retry policy. A message is only marked ``sent`` with a provider id.
    """

    name = SEND_MESSAGE

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], senders: SenderRegistry) -> None:
        self._sf = session_factory
        self._senders = senders

    async def __call__(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        message_id = _uuid(payload, "messageId")

        async with self._sf() as s:
            message = await s.get(MessageORM, message_id)
            if message is None:
                return {"status": "not_found"}
            if message.direction != MessageDirection.OUTBOUND or message.status != MessageStatus.PENDING:
                return {"status": "skipped", "reason": f"message is {MessageStatus(message.status).value}"}
            if (message.metadata_ or {}).get("dispatched_at"):
                return {"status": "skipped", "reason": "already dispatched to adapter"}
            conversation = await s.get(ConversationORM, message.conversation_id)
            channel = await ChannelRepository(s).get(_uuid(payload, "channelId"))

        if channel is None or conversation is None:
            await self._mark_failed(message_id, "Channel not found" if channel is None else "Conversation not found")
            return {"status": "failed"}

        channel_type = ChannelType(channel.type)
        if channel_type.is_whatsapp and not (message.content or "").strip():
            await self._mark_failed(message_id, NO_TEXT_CONTENT_ERROR)
            return {"status": "failed"}

        receipt = await self._senders.get(channel_type).send(
            SendRequest(
                tenant_id=message.tenant_id,
                channel=channel,
                conversation_id=message.conversation_id,
                message_id=message_id,
                recipient=recipient_for(conversation),
                content=message.content,
                type=message.type,
            )
        )

        now = utcnow()
        async with self._sf() as s:
            async with s.begin():
                if receipt.provider_message_id:
                    await s.execute(
                        sa.update(MessageORM)
                        .where(MessageORM.id == message_id, MessageORM.status == MessageStatus.PENDING)
                        .values(status=MessageStatus.SENT, external_id=receipt.provider_message_id, sent_at=now)
                    )
                    await ConversationRepository(s).record_outbound(message.conversation_id, now)
                    await ChannelRepository(s).record_outbound(channel.id, now)
                    status = "sent"
                elif channel_type.is_whatsapp:
                    raise RuntimeError("WhatsApp returned no messageId")
                else:
                    await s.execute(
                        sa.update(MessageORM)
                        .where(MessageORM.id == message_id)
                        .values(metadata_={**(message.metadata_ or {}), "dispatched_at": now.isoformat()})
                    )
                    status = "dispatched"

        logger.info("send_message_job_done", message_id=str(message_id), status=status)
        return {"status": status, "messageId": str(message_id)}

    async def on_exhausted(self, payload: Mapping[str, Any], error: str) -> None:
        await self._mark_failed(_uuid(payload, "messageId"), f"send-message exhausted retries: {error}")

    async def _mark_failed(self, message_id: UUID, error: str) -> None:
        async with self._sf() as s:
            async with s.begin():
                await s.execute(
                    sa.update(MessageORM)
                    .where(MessageORM.id == message_id, MessageORM.status == MessageStatus.PENDING)
                    .values(status=MessageStatus.FAILED, error_message=error)
                )
        logger.warning("outbound_marked_failed", message_id=str(message_id), error=error)


def build_handlers(
    session_factory: async_sessionmaker[AsyncSession],
    event_bus: EventBus,
    senders: SenderRegistry,
) -> Dict[str, Any]:
    return {
        PROCESS_INCOMING: ProcessIncomingHandler(session_factory, event_bus),
        SEND_MESSAGE: SendMessageHandler(session_factory, senders),
    }
