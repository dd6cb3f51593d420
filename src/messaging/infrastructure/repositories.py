"""
Session-bound repositories for the messaging aggregates.

Each repository works inside the caller's transaction; committing is the caller's job.
Counter columns are only ever changed with SQL-side increments.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Tuple
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from src.messaging.domain.value_objects import ACTIVE_CONVERSATION_STATUSES, ConversationStatus
from .models import ChannelORM, ConversationORM, MessageORM, StoreORM


@dataclass
class ChannelRepository:
    session: AsyncSession

    async def get(self, channel_id: UUID) -> Optional[ChannelORM]:
        return await self.session.get(ChannelORM, channel_id)

    async def get_with_tenant(self, channel_id: UUID) -> Optional[Tuple[ChannelORM, Optional[UUID]]]:
        """Channel plus the tenant of its owning store (None when the store is gone)."""
        row = (
            await self.session.execute(
                sa.select(ChannelORM, StoreORM.tenant_id)
                .outerjoin(StoreORM, StoreORM.id == ChannelORM.store_id)
                .where(ChannelORM.id == channel_id)
            )
        ).first()
        if row is None:
            return None
        return row[0], row[1]

    async def record_inbound(self, channel_id: UUID, at: datetime) -> None:
        await self.session.execute(
            sa.update(ChannelORM)
            .where(ChannelORM.id == channel_id)
            .values(
                last_activity_at=at,
                messages_received=ChannelORM.messages_received + 1,
            )
        )

    async def record_outbound(self, channel_id: UUID, at: datetime) -> None:
        await self.session.execute(
            sa.update(ChannelORM)
            .where(ChannelORM.id == channel_id)
            .values(
                last_activity_at=at,
                messages_sent=ChannelORM.messages_sent + 1,
            )
        )


@dataclass
class ConversationRepository:
    session: AsyncSession

    async def get(self, tenant_id: UUID, conversation_id: UUID, *, fresh: bool = False) -> Optional[ConversationORM]:
        stmt = sa.select(ConversationORM).where(
            ConversationORM.id == conversation_id,
            ConversationORM.tenant_id == tenant_id,
        )
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalars().first()

    async def find_active(
        self,
        tenant_id: UUID,
        channel_id: UUID,
        identifiers: Sequence[str],
    ) -> Optional[ConversationORM]:
        """Most recently active conversation in the active set matching any identifier."""
        stmt = (
            sa.select(ConversationORM)
            .where(
                ConversationORM.tenant_id == tenant_id,
                ConversationORM.channel_id == channel_id,
                ConversationORM.customer_external_id.in_(list(identifiers)),
                ConversationORM.status.in_(list(ACTIVE_CONVERSATION_STATUSES)),
            )
            .order_by(
                ConversationORM.last_message_at.desc().nulls_last(),
                ConversationORM.created_at.desc(),
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalars().first()

    async def has_other_active(
        self, tenant_id: UUID, channel_id: UUID, customer_external_id: str, exclude_id: UUID
    ) -> bool:
        stmt = sa.select(sa.func.count()).select_from(ConversationORM).where(
            ConversationORM.tenant_id == tenant_id,
            ConversationORM.channel_id == channel_id,
            ConversationORM.customer_external_id == customer_external_id,
            ConversationORM.status.in_(list(ACTIVE_CONVERSATION_STATUSES)),
            ConversationORM.id != exclude_id,
        )
        return bool((await self.session.execute(stmt)).scalar_one())

    async def add(self, conversation: ConversationORM) -> ConversationORM:
        self.session.add(conversation)
        await self.session.flush()
        return conversation

    async def update_identity(
        self,
        conversation_id: UUID,
        *,
        customer_external_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> None:
        """Migrate the identifier and back-fill name/phone only where they are still empty."""
        values = {}
        if customer_external_id:
            values["customer_external_id"] = customer_external_id
        if customer_name:
            values["customer_name"] = sa.func.coalesce(sa.func.nullif(ConversationORM.customer_name, ""), customer_name)
        if customer_phone:
            values["customer_phone"] = sa.func.coalesce(sa.func.nullif(ConversationORM.customer_phone, ""), customer_phone)
        if not values:
            return
        await self.session.execute(
            sa.update(ConversationORM).where(ConversationORM.id == conversation_id).values(**values)
        )

    async def record_inbound(self, conversation_id: UUID, at: datetime) -> None:
        """Bump the unread counter, stamp activity and reopen a resolved thread."""
        await self.session.execute(
            sa.update(ConversationORM)
            .where(ConversationORM.id == conversation_id)
            .values(
                message_count=ConversationORM.message_count + 1,
                last_message_at=at,
                status=sa.case(
                    (ConversationORM.status == ConversationStatus.RESOLVED, sa.literal(ConversationStatus.OPEN.value)),
                    else_=ConversationORM.status,
                ),
                resolved_at=sa.case(
                    (ConversationORM.status == ConversationStatus.RESOLVED, sa.null()),
                    else_=ConversationORM.resolved_at,
                ),
            )
        )

    async def record_outbound(self, conversation_id: UUID, at: datetime) -> None:
        await self.session.execute(
            sa.update(ConversationORM)
            .where(ConversationORM.id == conversation_id)
            .values(
                last_message_at=at,
                first_response_at=sa.func.coalesce(ConversationORM.first_response_at, at),
            )
        )


@dataclass
class MessageRepository:
    session: AsyncSession

    async def get(self, message_id: UUID) -> Optional[MessageORM]:
        return await self.session.get(MessageORM, message_id)

    async def find_by_external_id(self, tenant_id: UUID, external_id: str) -> Optional[MessageORM]:
        stmt = sa.select(MessageORM).where(
            MessageORM.tenant_id == tenant_id,
            MessageORM.external_id == external_id,
        )
        return (await self.session.execute(stmt)).scalars().first()

    async def add(self, message: MessageORM) -> MessageORM:
        self.session.add(message)
        await self.session.flush()
        return message

    async def list_for_conversation(
        self,
        conversation_id: UUID,
        *,
        limit: int,
        offset: int = 0,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> Tuple[Sequence[MessageORM], int]:
        """Newest-first page and the total matching count."""
        conds = [MessageORM.conversation_id == conversation_id]
        if before is not None:
            conds.append(MessageORM.created_at < before)
        if after is not None:
            conds.append(MessageORM.created_at > after)

        total = (
            await self.session.execute(sa.select(sa.func.count()).select_from(MessageORM).where(*conds))
        ).scalar_one()
        rows = (
            await self.session.execute(
                sa.select(MessageORM)
                .where(*conds)
                .order_by(MessageORM.created_at.desc(), MessageORM.id.desc())
                .offset(offset)
                .limit(limit)
            )
        ).scalars().all()
        return rows, int(total)
