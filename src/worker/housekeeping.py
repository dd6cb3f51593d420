"""Periodic inbox and queue housekeeping run alongside the queue worker."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.config import Settings, get_settings
from src.shared.database import utcnow
from src.shared.logging import get_logger
from src.conversation.application.services.conversation_service import ConversationService
from src.messaging.infrastructure.job_queue import MESSAGING_QUEUE, JobQueue

logger = get_logger(__name__)


class HousekeepingScheduler:
    """
    Closes stale conversations and purges old completed queue jobs on fixed intervals.

    Failed jobs are never purged; they stay for operator retry.
    """

    def __init__(
        self,
        conversations: ConversationService,
        settings: Optional[Settings] = None,
        *,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        queue: str = MESSAGING_QUEUE,
    ):
        self.conversations = conversations
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.queue = queue
        self.scheduler = AsyncIOScheduler()

    def start(self) -> None:
        self.scheduler.add_job(
            self.sweep,
            IntervalTrigger(minutes=self.settings.stale_sweep_interval_minutes),
            id="auto_close_stale_conversations",
            name="Close stale conversations",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if self.session_factory is not None:
            self.scheduler.add_job(
                self.purge_jobs,
                IntervalTrigger(minutes=self.settings.queue_purge_interval_minutes),
                id="purge_completed_jobs",
                name="Purge completed queue jobs",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        self.scheduler.start()
        logger.info(
            "housekeeping_started",
            interval_minutes=self.settings.stale_sweep_interval_minutes,
            purge_interval_minutes=self.settings.queue_purge_interval_minutes if self.session_factory else None,
        )

    async def sweep(self) -> int:
        try:
            return await self.conversations.auto_close_stale()
        except Exception:
            # Next tick retries.
            logger.exception("housekeeping_sweep_failed")
            return 0

    async def purge_jobs(self, now: Optional[datetime] = None) -> int:
        if self.session_factory is None:
            return 0
        cutoff = (now or utcnow()) - timedelta(hours=self.settings.queue_completed_retention_hours)
        try:
            async with self.session_factory() as s:
                async with s.begin():
                    purged = await JobQueue(s, self.queue).purge_completed(cutoff)
        except Exception:
            logger.exception("housekeeping_purge_failed")
            return 0
        if purged:
            logger.info("completed_jobs_purged", count=purged, queue=self.queue)
        return purged

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("housekeeping_stopped")
