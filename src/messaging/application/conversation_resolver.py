from __future__ import annotations

from typing import List, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.logging import get_logger
from src.messaging.domain.entities import InboundMessage
from src.messaging.domain.identity import bare_identifier
from src.messaging.domain.value_objects import ConversationHandler, ConversationPriority, ConversationStatus
from src.messaging.infrastructure.models import ConversationORM
from src.messaging.infrastructure.repositories import ConversationRepository

logger = get_logger(__name__)


def identifier_candidates(external_id: str) -> List[str]:
    """Full identifier first, then the bare digits form older rows were stored under."""
    candidates = [external_id]
    bare = bare_identifier(external_id)
    if bare and bare != external_id:
        candidates.append(bare)
    return candidates


class ConversationResolver:
    """
    Find-or-create of the active conversation for (tenant, channel, customer).

    Creation is guarded by the partial unique index over active conversations: losing an
    insert race means somebody else created the thread, so the winner is looked up and
    returned instead.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sf = session_factory

    async def resolve(self, tenant_id: UUID, inbound: InboundMessage) -> Tuple[ConversationORM, bool]:
        identifiers = identifier_candidates(inbound.sender_external_id)

        async with self._sf() as s:
            repo = ConversationRepository(s)
            existing = await repo.find_active(tenant_id, inbound.channel_id, identifiers)
            if existing is not None:
                return await self._reconcile(s, tenant_id, existing, inbound), False

            conversation = ConversationORM(
                tenant_id=tenant_id,
                channel_id=inbound.channel_id,
                customer_external_id=inbound.sender_external_id,
                customer_name=inbound.sender_name,
                customer_phone=inbound.sender_phone,
                status=ConversationStatus.OPEN,
                handler=ConversationHandler.AI,
                priority=ConversationPriority.NORMAL,
                message_count=0,
                tags=[],
                ai_context={},
                metadata_={},
            )
            try:
                await repo.add(conversation)
                await s.commit()
            except IntegrityError:
                await s.rollback()
                logger.info(
                    "conversation_create_race_lost",
                    tenant_id=str(tenant_id),
                    channel_id=str(inbound.channel_id),
                )
                winner = await repo.find_active(tenant_id, inbound.channel_id, identifiers)
                if winner is None:
                    raise
                return await self._reconcile(s, tenant_id, winner, inbound), False

            logger.info(
                "conversation_created",
                tenant_id=str(tenant_id),
                channel_id=str(inbound.channel_id),
                conversation_id=str(conversation.id),
            )
            return conversation, True

    async def _reconcile(
        self,
        s: AsyncSession,
        tenant_id: UUID,
        conversation: ConversationORM,
        inbound: InboundMessage,
    ) -> ConversationORM:
        """Migrate the stored identifier and back-fill empty customer fields."""
        # A rollback expires loaded rows; keep the key around for the retry.
        conversation_id = conversation.id
        migrate_to = (
            inbound.sender_external_id
            if conversation.customer_external_id != inbound.sender_external_id
            else None
        )
        name = inbound.sender_name if not conversation.customer_name else None
        phone = inbound.sender_phone if not conversation.customer_phone else None
        if not (migrate_to or name or phone):
            return conversation

        repo = ConversationRepository(s)
        try:
            await repo.update_identity(
                conversation_id,
                customer_external_id=migrate_to,
                customer_name=name,
                customer_phone=phone,
            )
            await s.commit()
        except IntegrityError:
            # Another active row already owns the new identifier; keep ours as stored.
            await s.rollback()
            logger.warning(
                "conversation_identifier_migration_conflict",
                tenant_id=str(tenant_id),
                conversation_id=str(conversation_id),
            )
            await repo.update_identity(conversation_id, customer_name=name, customer_phone=phone)
            await s.commit()
        else:
            if migrate_to:
                logger.info(
                    "conversation_identifier_migrated",
                    tenant_id=str(tenant_id),
                    conversation_id=str(conversation_id),
                )

        refreshed = await repo.get(tenant_id, conversation_id, fresh=True)
        return refreshed or conversation
