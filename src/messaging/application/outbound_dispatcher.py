"""
Outbound dispatch with send-then-persist ordering.

The provider's confirmation decides whether a message "left the building": for WhatsApp
the row is written only after the send attempt resolved, as ``sent`` with the provider
id or ``failed`` with the reason. Channels dispatched through their adapter's event are
stored ``pending`` until the adapter confirms.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.config import get_settings
from src.shared.database import utcnow
from src.shared.exceptions import ValidationError
from src.shared.logging import get_logger, time_block
from src.messaging.domain.exceptions import (
    ChannelNotFoundError,
    ConversationNotFoundError,
    DuplicateMessageError,
    MessageNotFoundError,
    NoRecipientError,
)
from src.messaging.domain.value_objects import (
    MESSAGE_STATUS_RANK,
    ChannelType,
    MessageDirection,
    MessageSender,
    MessageStatus,
    MessageType,
)
from src.messaging.infrastructure.channel_senders import SendRequest, SenderRegistry
from src.messaging.infrastructure.job_queue import SEND_MESSAGE, JobQueue
from src.messaging.infrastructure.models import ChannelORM, ConversationORM, MessageORM
from src.messaging.infrastructure.repositories import ChannelRepository, ConversationRepository, MessageRepository

logger = get_logger(__name__)

WHATSAPP_SEND_ATTEMPTS = 2
NO_TEXT_CONTENT_ERROR = "No text content to send via WhatsApp"

Sleep = Callable[[float], Awaitable[Any]]


def recipient_for(conversation: ConversationORM) -> str:
    recipient = conversation.customer_external_id or conversation.customer_phone
    if not recipient:
        raise NoRecipientError(
            "Conversation has no customer identifier to send to",
            details={"conversation_id": str(conversation.id)},
        )
    return recipient


class OutboundDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        senders: SenderRegistry,
        *,
        retry_delay_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._sf = session_factory
        self._senders = senders
        self._retry_delay = (
            retry_delay_seconds if retry_delay_seconds is not None else get_settings().outbound_retry_delay_seconds
        )
        self._sleep = sleep

    async def send(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        content: Optional[str],
        *,
        type: MessageType = MessageType.TEXT,
        sender: MessageSender = MessageSender.AGENT,
        sender_id: Optional[UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageORM:
        conversation, channel = await self._load_target(tenant_id, conversation_id)
        recipient = recipient_for(conversation)
        channel_type = ChannelType(channel.type)
        message_id = uuid.uuid4()
        log = logger.bind(
            tenant_id=str(tenant_id),
            conversation_id=str(conversation_id),
            channel_id=str(channel.id),
            message_id=str(message_id),
        )

        draft = dict(
            id=message_id,
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            direction=MessageDirection.OUTBOUND,
            type=type,
            sender=sender,
            sender_id=sender_id,
            content=content,
            metadata_=dict(metadata or {}),
        )

        if not channel_type.is_whatsapp:
            return await self._dispatch_via_adapter(log, tenant_id, channel, recipient, draft)

        if not (content or "").strip():
            log.warning("outbound_not_attempted", reason="no_text_content")
            return await self._persist(draft, status=MessageStatus.FAILED, error=NO_TEXT_CONTENT_ERROR)

        request = SendRequest(
            tenant_id=tenant_id,
            channel=channel,
            conversation_id=conversation_id,
            message_id=message_id,
            recipient=recipient,
            content=content,
            type=type,
        )
        provider_id, error = await self._send_with_retry(log, channel_type, request)
        if provider_id is None:
            log.warning("outbound_failed", error=error)
            return await self._persist(draft, status=MessageStatus.FAILED, error=error)

        try:
            return await self._persist(
                draft,
                status=MessageStatus.SENT,
                external_id=provider_id,
                sent_at=utcnow(),
                channel_id=channel.id,
            )
        except Exception:
            # The provider has the message; make sure the id is traceable even though our row is not.
            log.error("outbound_persist_failed_after_send", provider_message_id=provider_id, exc_info=True)
            raise

    async def enqueue(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        content: Optional[str],
        *,
        type: MessageType = MessageType.TEXT,
        sender: MessageSender = MessageSender.AGENT,
        sender_id: Optional[UUID] = None,
    ) -> MessageORM:
        """Queue a send: a pending row plus a ``send-message`` job, committed together."""
        conversation, channel = await self._load_target(tenant_id, conversation_id)
        recipient_for(conversation)
        async with self._sf() as s:
            async with s.begin():
                message = await MessageRepository(s).add(
                    MessageORM(
                        tenant_id=tenant_id,
                        conversation_id=conversation_id,
                        direction=MessageDirection.OUTBOUND,
                        type=type,
                        status=MessageStatus.PENDING,
                        sender=sender,
                        sender_id=sender_id,
                        content=content,
                        metadata_={},
                    )
                )
                await JobQueue(s).enqueue(
                    SEND_MESSAGE,
                    {
                        "messageId": str(message.id),
                        "conversationId": str(conversation_id),
                        "channelId": str(channel.id),
                    },
                )
        logger.info("outbound_enqueued", tenant_id=str(tenant_id), message_id=str(message.id))
        return message

    async def confirm_sent(self, tenant_id: UUID, message_id: UUID, external_id: str, *, at: Optional[datetime] = None) -> MessageORM:
        """Adapter callback: the provider accepted a pending outbound message."""
        if not external_id:
            raise ValidationError("external_id is required to confirm a send")
        at = at or utcnow()
        async with self._sf() as s:
            try:
                async with s.begin():
                    message = await MessageRepository(s).get(message_id)
                    if message is None or message.tenant_id != tenant_id:
                        raise MessageNotFoundError(f"Message {message_id} not found")
                    if message.status != MessageStatus.PENDING:
                        return message
                    message.status = MessageStatus.SENT
                    message.external_id = external_id
                    message.sent_at = at
                    message.error_message = None
                    await s.flush()
                    await ConversationRepository(s).record_outbound(message.conversation_id, at)
                    conversation = await s.get(ConversationORM, message.conversation_id)
                    if conversation is not None:
                        await ChannelRepository(s).record_outbound(conversation.channel_id, at)
            except IntegrityError as exc:
                raise DuplicateMessageError(external_id) from exc
        return message

    async def apply_status_update(
        self,
        tenant_id: UUID,
        external_id: str,
        status: MessageStatus,
        *,
        at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> Optional[MessageORM]:
        """Delivery receipts move a message forward only; unknown ids are ignored."""
        at = at or utcnow()
        async with self._sf() as s:
            async with s.begin():
                message = await MessageRepository(s).find_by_external_id(tenant_id, external_id)
                if message is None:
                    logger.info("status_update_unknown_message", tenant_id=str(tenant_id))
                    return None

                current = MessageStatus(message.status)
                if status == MessageStatus.FAILED:
                    if current not in (MessageStatus.PENDING, MessageStatus.SENT):
                        return message
                    message.status = MessageStatus.FAILED
                    message.error_message = error or "Delivery failed"
                    return message

                if current == MessageStatus.FAILED or MESSAGE_STATUS_RANK[status] <= MESSAGE_STATUS_RANK[current]:
                    return message
                message.status = status
                if status == MessageStatus.SENT and message.sent_at is None:
                    message.sent_at = at
                if status == MessageStatus.DELIVERED:
                    message.delivered_at = at
                if status == MessageStatus.READ:
                    message.read_at = at
                    if message.delivered_at is None:
                        message.delivered_at = at
        return message

    # ------------------------------------------------------------------ internals

    async def _load_target(self, tenant_id: UUID, conversation_id: UUID) -> Tuple[ConversationORM, ChannelORM]:
        async with self._sf() as s:
            conversation = await ConversationRepository(s).get(tenant_id, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            channel = await ChannelRepository(s).get(conversation.channel_id)
            if channel is None:
                raise ChannelNotFoundError(f"Channel {conversation.channel_id} not found")
        return conversation, channel

    async def _send_with_retry(self, log, channel_type: ChannelType, request: SendRequest) -> Tuple[Optional[str], str]:
        last_error = ""
        missing_id = False
        for attempt in range(1, WHATSAPP_SEND_ATTEMPTS + 1):
            try:
                sender = self._senders.get(channel_type)
                with time_block("outbound.send", logger=log, labels={"channel_type": channel_type.value}):
                    receipt = await sender.send(request)
                if receipt.provider_message_id:
                    log.info("outbound_sent", attempt=attempt)
                    return receipt.provider_message_id, ""
                missing_id = True
                last_error = "WhatsApp returned no messageId"
            except Exception as exc:
                missing_id = False
                last_error = str(exc) or exc.__class__.__name__
                log.warning("outbound_attempt_failed", attempt=attempt, error=last_error)

            if attempt < WHATSAPP_SEND_ATTEMPTS:
                await self._sleep(self._retry_delay)

        if missing_id:
            return None, f"WhatsApp returned no messageId after {WHATSAPP_SEND_ATTEMPTS} attempts"
        return None, f"WhatsApp send failed after {WHATSAPP_SEND_ATTEMPTS} attempts: {last_error}"

    async def _dispatch_via_adapter(self, log, tenant_id: UUID, channel: ChannelORM, recipient: str, draft: Dict[str, Any]) -> MessageORM:
        request = SendRequest(
            tenant_id=tenant_id,
            channel=channel,
            conversation_id=draft["conversation_id"],
            message_id=draft["id"],
            recipient=recipient,
            content=draft["content"],
            type=draft["type"],
        )
        try:
            await self._senders.get(ChannelType(channel.type)).send(request)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            log.warning("outbound_dispatch_failed", error=error)
            return await self._persist(draft, status=MessageStatus.FAILED, error=error)

        draft["metadata_"] = {**draft["metadata_"], "dispatched_at": utcnow().isoformat()}
        log.info("outbound_dispatched_to_adapter")
        return await self._persist(draft, status=MessageStatus.PENDING)

    async def _persist(
        self,
        draft: Dict[str, Any],
        *,
        status: MessageStatus,
        error: Optional[str] = None,
        external_id: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        channel_id: Optional[UUID] = None,
    ) -> MessageORM:
        async with self._sf() as s:
            async with s.begin():
                message = await MessageRepository(s).add(
                    MessageORM(
                        **draft,
                        status=status,
                        error_message=error,
                        external_id=external_id,
                        sent_at=sent_at,
                    )
                )
                if status == MessageStatus.SENT and sent_at is not None:
                    await ConversationRepository(s).record_outbound(draft["conversation_id"], sent_at)
                    if channel_id is not None:
                        await ChannelRepository(s).record_outbound(channel_id, sent_at)
        return message
