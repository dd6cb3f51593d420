from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.config import Settings, get_settings
from src.shared.database import utcnow
from src.shared.events import DomainEvent, EventBus
from src.shared.logging import get_logger
from src.messaging.domain.events import CONVERSATION_STATUS_CHANGED
from src.messaging.domain.exceptions import (
    ActiveConversationExistsError,
    ConversationNotFoundError,
    InvalidStatusTransitionError,
)
from src.messaging.domain.value_objects import (
    ACTIVE_CONVERSATION_STATUSES,
    ConversationHandler,
    ConversationPriority,
    ConversationStatus,
    can_transition,
)
from src.messaging.infrastructure.models import ConversationORM, MessageORM
from src.messaging.infrastructure.repositories import ConversationRepository, MessageRepository

logger = get_logger(__name__)

MAX_MESSAGES_PAGE = 100


@dataclass(frozen=True)
class PageMeta:
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def build(cls, total: int, page: int, limit: int) -> "PageMeta":
        return cls(total=total, page=page, limit=limit, total_pages=math.ceil(total / limit) if limit else 0)


class ConversationService:
    """
    Inbox operations over conversations: listing, status workflow, assignment, tagging
    and housekeeping. Every read and write is scoped to the caller's tenant.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: Optional[EventBus] = None,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self._sf = session_factory
        self._bus = event_bus
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------ queries

    async def list_conversations(
        self,
        tenant_id: UUID,
        *,
        status: Optional[ConversationStatus] = None,
        channel_id: Optional[UUID] = None,
        assigned_to_id: Optional[UUID] = None,
        handler: Optional[ConversationHandler] = None,
        priority: Optional[ConversationPriority] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[Sequence[ConversationORM], PageMeta]:
        page = max(1, page)
        limit = max(1, limit)
        conds: List[Any] = [ConversationORM.tenant_id == tenant_id]
        if status is not None:
            conds.append(ConversationORM.status == status)
        if channel_id is not None:
            conds.append(ConversationORM.channel_id == channel_id)
        if assigned_to_id is not None:
            conds.append(ConversationORM.assigned_to_id == assigned_to_id)
        if handler is not None:
            conds.append(ConversationORM.handler == handler)
        if priority is not None:
            conds.append(ConversationORM.priority == priority)
        if search:
            like = f"%{search.strip()}%"
            conds.append(
                sa.or_(
                    ConversationORM.customer_name.ilike(like),
                    ConversationORM.customer_phone.ilike(like),
                    ConversationORM.customer_external_id.ilike(like),
                )
            )

        async with self._sf() as s:
            total = (
                await s.execute(sa.select(sa.func.count()).select_from(ConversationORM).where(*conds))
            ).scalar_one()
            rows = (
                await s.execute(
                    sa.select(ConversationORM)
                    .where(*conds)
                    .order_by(
                        ConversationORM.last_message_at.desc().nulls_last(),
                        ConversationORM.created_at.desc(),
                    )
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).scalars().all()
        return rows, PageMeta.build(int(total), page, limit)

    async def get_conversation(self, tenant_id: UUID, conversation_id: UUID) -> ConversationORM:
        async with self._sf() as s:
            conversation = await ConversationRepository(s).get(tenant_id, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def get_messages(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        *,
        page: int = 1,
        limit: int = 50,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> Tuple[List[MessageORM], PageMeta]:
        """One page of messages in chronological order; page 1 is the newest page."""
        page = max(1, page)
        limit = min(max(1, limit), MAX_MESSAGES_PAGE)
        async with self._sf() as s:
            if await ConversationRepository(s).get(tenant_id, conversation_id) is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            rows, total = await MessageRepository(s).list_for_conversation(
                conversation_id, limit=limit, offset=(page - 1) * limit, before=before, after=after
            )
        return list(reversed(rows)), PageMeta.build(total, page, limit)

    async def get_stats(self, tenant_id: UUID) -> Dict[str, Any]:
        async with self._sf() as s:
            by_status = (
                await s.execute(
                    sa.select(ConversationORM.status, sa.func.count())
                    .where(ConversationORM.tenant_id == tenant_id)
                    .group_by(ConversationORM.status)
                )
            ).all()
            by_handler = (
                await s.execute(
                    sa.select(ConversationORM.handler, sa.func.count())
                    .where(
                        ConversationORM.tenant_id == tenant_id,
                        ConversationORM.status.in_(list(ACTIVE_CONVERSATION_STATUSES)),
                    )
                    .group_by(ConversationORM.handler)
                )
            ).all()
            unread = (
                await s.execute(
                    sa.select(sa.func.coalesce(sa.func.sum(ConversationORM.message_count), 0)).where(
                        ConversationORM.tenant_id == tenant_id
                    )
                )
            ).scalar_one()

        statuses = {st.value: 0 for st in ConversationStatus}
        statuses.update({ConversationStatus(st).value: int(n) for st, n in by_status})
        handlers = {h.value: 0 for h in ConversationHandler}
        handlers.update({ConversationHandler(h).value: int(n) for h, n in by_handler})
        return {
            "total": sum(statuses.values()),
            "by_status": statuses,
            "by_handler": handlers,
            "unread": int(unread),
        }

    # ------------------------------------------------------------------ status workflow

    async def change_status(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        new_status: ConversationStatus,
        *,
        user_id: Optional[UUID] = None,
        force: bool = False,
    ) -> ConversationORM:
        new_status = ConversationStatus(new_status)
        return await self._apply_status(tenant_id, conversation_id, new_status, user_id=user_id, force=force)

    async def assign(self, tenant_id: UUID, conversation_id: UUID, agent_id: UUID) -> ConversationORM:
        def _assign(c: ConversationORM) -> None:
            c.assigned_to_id = agent_id
            c.handler = ConversationHandler.HUMAN

        return await self._apply_status(
            tenant_id, conversation_id, ConversationStatus.ASSIGNED, user_id=agent_id, extra=_assign
        )

    async def unassign(self, tenant_id: UUID, conversation_id: UUID) -> ConversationORM:
        def _unassign(c: ConversationORM) -> None:
            c.assigned_to_id = None
            c.handler = ConversationHandler.UNASSIGNED

        return await self._apply_status(tenant_id, conversation_id, ConversationStatus.PENDING, extra=_unassign)

    # ------------------------------------------------------------------ attributes

    async def set_handler(self, tenant_id: UUID, conversation_id: UUID, handler: ConversationHandler) -> ConversationORM:
        def _set(c: ConversationORM) -> None:
            c.handler = ConversationHandler(handler)

        return await self._mutate(tenant_id, conversation_id, _set)

    async def update_priority(
        self, tenant_id: UUID, conversation_id: UUID, priority: ConversationPriority
    ) -> ConversationORM:
        def _set(c: ConversationORM) -> None:
            c.priority = ConversationPriority(priority)

        return await self._mutate(tenant_id, conversation_id, _set)

    async def add_tags(self, tenant_id: UUID, conversation_id: UUID, tags: Iterable[str]) -> ConversationORM:
        incoming = [t.strip() for t in tags if t and t.strip()]

        def _add(c: ConversationORM) -> None:
            merged = list(c.tags or [])
            for tag in incoming:
                if tag not in merged:
                    merged.append(tag)
            c.tags = merged

        return await self._mutate(tenant_id, conversation_id, _add)

    async def remove_tags(self, tenant_id: UUID, conversation_id: UUID, tags: Iterable[str]) -> ConversationORM:
        drop = {t.strip() for t in tags if t}

        def _remove(c: ConversationORM) -> None:
            c.tags = [t for t in (c.tags or []) if t not in drop]

        return await self._mutate(tenant_id, conversation_id, _remove)

    async def add_note(
        self, tenant_id: UUID, conversation_id: UUID, note: str, *, user: Optional[str] = None
    ) -> ConversationORM:
        entry = f"[{utcnow().isoformat()} - {user or 'system'}] {note.strip()}"

        def _append(c: ConversationORM) -> None:
            c.notes = f"{c.notes}\n{entry}" if c.notes else entry

        return await self._mutate(tenant_id, conversation_id, _append)

    async def mark_as_read(self, tenant_id: UUID, conversation_id: UUID) -> ConversationORM:
        def _read(c: ConversationORM) -> None:
            c.message_count = 0

        return await self._mutate(tenant_id, conversation_id, _read)

    # ------------------------------------------------------------------ housekeeping

    async def auto_close_stale(self, now: Optional[datetime] = None) -> int:
        """Close resolved threads past the grace period and open/pending threads gone quiet. Cross-tenant."""
        now = now or utcnow()
        resolved_cutoff = now - timedelta(hours=self._settings.stale_resolved_hours)
        inactive_cutoff = now - timedelta(days=self._settings.stale_inactive_days)

        stale = sa.or_(
            sa.and_(
                ConversationORM.status == ConversationStatus.RESOLVED,
                sa.func.coalesce(ConversationORM.resolved_at, ConversationORM.updated_at) < resolved_cutoff,
            ),
            sa.and_(
                ConversationORM.status.in_([ConversationStatus.OPEN, ConversationStatus.PENDING]),
                sa.func.coalesce(ConversationORM.last_message_at, ConversationORM.created_at) < inactive_cutoff,
            ),
        )
        async with self._sf() as s:
            async with s.begin():
                res = await s.execute(
                    sa.update(ConversationORM)
                    .where(stale)
                    .values(status=ConversationStatus.CLOSED, closed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        closed = int(res.rowcount or 0)
        if closed:
            logger.info("stale_conversations_closed", count=closed)
        return closed

    # ------------------------------------------------------------------ internals

    async def _mutate(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        fn: Callable[[ConversationORM], None],
    ) -> ConversationORM:
        async with self._sf() as s:
            async with s.begin():
                conversation = await self._load_for_update(s, tenant_id, conversation_id)
                fn(conversation)
        return conversation

    async def _apply_status(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        new_status: ConversationStatus,
        *,
        user_id: Optional[UUID] = None,
        force: bool = False,
        extra: Optional[Callable[[ConversationORM], None]] = None,
    ) -> ConversationORM:
        async with self._sf() as s:
            try:
                async with s.begin():
                    conversation = await self._load_for_update(s, tenant_id, conversation_id)
                    previous = ConversationStatus(conversation.status)
                    if extra is not None:
                        extra(conversation)
                    if previous == new_status:
                        return conversation
                    if not force and not can_transition(previous, new_status):
                        raise InvalidStatusTransitionError(
                            f"Cannot change conversation status from {previous.value} to {new_status.value}",
                            details={"from": previous.value, "to": new_status.value},
                        )
                    if previous == ConversationStatus.CLOSED and new_status in ACTIVE_CONVERSATION_STATUSES:
                        await self._ensure_no_other_active(s, conversation)

                    now = utcnow()
                    conversation.status = new_status
                    if new_status == ConversationStatus.RESOLVED:
                        conversation.resolved_at = now
                    elif new_status == ConversationStatus.CLOSED:
                        conversation.closed_at = now
                    elif previous in (ConversationStatus.RESOLVED, ConversationStatus.CLOSED):
                        conversation.resolved_at = None
                        conversation.closed_at = None
            except IntegrityError as exc:
                raise ActiveConversationExistsError(
                    "Another active conversation already exists for this customer",
                    details={"conversation_id": str(conversation_id)},
                ) from exc

        logger.info(
            "conversation_status_changed",
            tenant_id=str(tenant_id),
            conversation_id=str(conversation_id),
            previous_status=previous.value,
            status=new_status.value,
        )
        if self._bus is not None:
            await self._bus.publish(
                DomainEvent(
                    event_type=CONVERSATION_STATUS_CHANGED,
                    tenant_id=tenant_id,
                    payload={
                        "conversation": conversation,
                        "tenant_id": str(tenant_id),
                        "previous_status": previous.value,
                        "status": new_status.value,
                        "user_id": str(user_id) if user_id else None,
                    },
                )
            )
        return conversation

    async def _ensure_no_other_active(self, s: AsyncSession, conversation: ConversationORM) -> None:
        if await ConversationRepository(s).has_other_active(
            conversation.tenant_id,
            conversation.channel_id,
            conversation.customer_external_id,
            exclude_id=conversation.id,
        ):
            raise ActiveConversationExistsError(
                "Another active conversation already exists for this customer",
                details={"conversation_id": str(conversation.id)},
            )

    async def _load_for_update(self, s: AsyncSession, tenant_id: UUID, conversation_id: UUID) -> ConversationORM:
        conversation = (
            await s.execute(
                sa.select(ConversationORM)
                .where(ConversationORM.id == conversation_id, ConversationORM.tenant_id == tenant_id)
                .with_for_update()
            )
        ).scalars().first()
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation
