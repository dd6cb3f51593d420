"""
Idempotent bookkeeping for platform webhooks (order/customer events).

A webhook is recorded once per idempotency key; handlers then walk it through
``pending -> processing -> processed | failed | skipped | retry_pending``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.database import utcnow
from src.shared.logging import get_logger
from src.messaging.domain.exceptions import InvalidWebhookEventStateError, WebhookEventNotFoundError
from src.messaging.domain.value_objects import WebhookEventStatus
from src.messaging.infrastructure.models import WebhookEventORM

logger = get_logger(__name__)

_STARTABLE = frozenset({WebhookEventStatus.PENDING, WebhookEventStatus.RETRY_PENDING})
_FINAL = frozenset({WebhookEventStatus.PROCESSED, WebhookEventStatus.FAILED, WebhookEventStatus.SKIPPED})


class WebhookEventService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sf = session_factory

    async def record(
        self,
        source: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
        tenant_id: Optional[UUID] = None,
    ) -> Tuple[WebhookEventORM, bool]:
        """Store a webhook; a repeated idempotency key returns the first record and ``created=False``."""
        async with self._sf() as s:
            if idempotency_key:
                existing = await self._by_key(s, idempotency_key)
                if existing is not None:
                    logger.info("webhook_event_duplicate", source=source, event_type=event_type)
                    return existing, False

            event = WebhookEventORM(
                source=source,
                event_type=event_type,
                payload=payload,
                idempotency_key=idempotency_key,
                tenant_id=tenant_id,
                status=WebhookEventStatus.PENDING,
                attempts=0,
            )
            s.add(event)
            try:
                await s.commit()
            except IntegrityError:
                await s.rollback()
                winner = await self._by_key(s, idempotency_key) if idempotency_key else None
                if winner is None:
                    raise
                return winner, False

        logger.info("webhook_event_recorded", source=source, event_type=event_type, webhook_event_id=str(event.id))
        return event, True

    async def get(self, event_id: UUID) -> WebhookEventORM:
        async with self._sf() as s:
            event = await s.get(WebhookEventORM, event_id)
        if event is None:
            raise WebhookEventNotFoundError(f"Webhook event {event_id} not found")
        return event

    async def mark_processing(self, event_id: UUID) -> WebhookEventORM:
        return await self._transition(event_id, WebhookEventStatus.PROCESSING, allowed=_STARTABLE, attempt=True)

    async def mark_processed(self, event_id: UUID, result: Optional[Dict[str, Any]] = None) -> WebhookEventORM:
        return await self._transition(
            event_id,
            WebhookEventStatus.PROCESSED,
            allowed=frozenset({WebhookEventStatus.PROCESSING}),
            result=result,
        )

    async def mark_failed(self, event_id: UUID, error: str, *, retry: bool = False) -> WebhookEventORM:
        return await self._transition(
            event_id,
            WebhookEventStatus.RETRY_PENDING if retry else WebhookEventStatus.FAILED,
            allowed=frozenset({WebhookEventStatus.PROCESSING}),
            error=error,
        )

    async def mark_skipped(self, event_id: UUID, reason: str) -> WebhookEventORM:
        return await self._transition(
            event_id,
            WebhookEventStatus.SKIPPED,
            allowed=_STARTABLE | {WebhookEventStatus.PROCESSING},
            error=reason,
        )

    async def _by_key(self, s: AsyncSession, key: str) -> Optional[WebhookEventORM]:
        stmt = sa.select(WebhookEventORM).where(WebhookEventORM.idempotency_key == key)
        return (await s.execute(stmt)).scalars().first()

    async def _transition(
        self,
        event_id: UUID,
        target: WebhookEventStatus,
        *,
        allowed: frozenset,
        attempt: bool = False,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> WebhookEventORM:
        async with self._sf() as s:
            async with s.begin():
                event = await s.get(WebhookEventORM, event_id, with_for_update=True)
                if event is None:
                    raise WebhookEventNotFoundError(f"Webhook event {event_id} not found")
                current = WebhookEventStatus(event.status)
                if current not in allowed:
                    raise InvalidWebhookEventStateError(
                        f"Cannot move webhook event from {current.value} to {target.value}",
                        details={"current": current.value, "target": target.value},
                    )
                event.status = target
                if attempt:
                    event.attempts = (event.attempts or 0) + 1
                if result is not None:
                    event.result = result
                if error is not None:
                    event.error_message = error
                if target in _FINAL:
                    event.processed_at = utcnow()
        logger.info("webhook_event_transition", webhook_event_id=str(event_id), status=target.value)
        return event
