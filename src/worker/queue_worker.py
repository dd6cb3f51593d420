# src/worker/queue_worker.py
from __future__ import annotations

import asyncio
import json
import signal
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.shared.config import Settings, get_settings
from src.shared.database import dispose_engine, get_engine, get_session, init_models, utcnow
from src.shared.events import get_event_bus
from src.shared.logging import bind_request_context, clear_request_context, get_logger, setup_logging
from src.shared.redis import close_redis, get_redis
from src.conversation.application.services.conversation_service import ConversationService
from src.messaging.application.job_handlers import build_handlers
from src.messaging.infrastructure.channel_senders import default_sender_registry
from src.messaging.infrastructure.job_queue import LEASE_EXPIRED_ERROR, MESSAGING_QUEUE, JobQueue
from src.messaging.infrastructure.models import QueueJobORM
from src.worker.housekeeping import HousekeepingScheduler

logger = get_logger(__name__)

JobHandler = Callable[[Mapping[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


def dlq_key(queue: str) -> str:
    return f"dlq:queue:{queue}"


@dataclass
class JobOutcome:
    job_id: str
    name: str
    status: str
    error: Optional[str] = None


class QueueWorker:
    """
    Polls the ``queue_jobs`` table and runs each claimed job through its named handler.

    A failing job goes back to pending with exponential backoff until its attempt budget
    is spent; then it is marked failed, the handler's ``on_exhausted`` hook runs, and a
    dead-letter record is pushed to Redis when one is configured. A job whose worker died
    during its final attempt takes the same exhaustion path once its lease runs out.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: Mapping[str, JobHandler],
        *,
        redis: Optional[Redis] = None,
        settings: Optional[Settings] = None,
        queue: str = MESSAGING_QUEUE,
    ) -> None:
        self._sf = session_factory
        self._handlers = dict(handlers)
        self._redis = redis
        self._settings = settings or get_settings()
        self._queue = queue
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        logger.info("queue_worker_starting", queue=self._queue, handlers=sorted(self._handlers))
        try:
            while not self._stop.is_set():
                outcomes = await self.run_once()
                if not outcomes:
                    try:
                        await asyncio.wait_for(self._stop.wait(), timeout=self._settings.queue_poll_interval_seconds)
                    except asyncio.TimeoutError:
                        pass
        except asyncio.CancelledError:
            pass
        finally:
            logger.info("queue_worker_stopping", queue=self._queue)

    async def run_once(self, now: Optional[datetime] = None) -> List[JobOutcome]:
        """
        Claim one batch of due jobs and run them; returns what happened to each.

        Jobs whose lease ran out on their final attempt are failed first and reported
        alongside the batch.
        """
        async with self._sf() as s:
            async with s.begin():
                q = JobQueue(s, self._queue)
                expired = await q.expire_exhausted(now=now)
                jobs = await q.claim(
                    limit=self._settings.queue_batch_size,
                    visibility_timeout=self._settings.queue_visibility_timeout_seconds,
                    now=now,
                )
        outcomes = []
        for job in expired:
            bind_request_context(job_id=str(job.id), job_name=job.name)
            try:
                outcomes.append(await self._exhaust(job, job.last_error or LEASE_EXPIRED_ERROR))
            finally:
                clear_request_context()
        outcomes.extend([await self._run_job(job, now) for job in jobs])
        return outcomes

    async def _run_job(self, job: QueueJobORM, now: Optional[datetime]) -> JobOutcome:
        bind_request_context(job_id=str(job.id), job_name=job.name)
        log = logger.bind(attempt=job.attempts, max_attempts=job.max_attempts)
        try:
            handler = self._handlers.get(job.name)
            if handler is None:
                log.error("queue_job_unknown_handler")
                return await self._fail(job, f"No handler registered for job {job.name!r}", now, permanent=True)

            try:
                result = await handler(job.payload or {})
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                log.warning("queue_job_failed", error=error, exc_info=True)
                return await self._fail(job, error, now)

            async with self._sf() as s:
                async with s.begin():
                    await JobQueue(s, self._queue).complete(job.id, result)
            log.info("queue_job_completed")
            return JobOutcome(job_id=str(job.id), name=job.name, status="completed")
        finally:
            clear_request_context()

    async def _fail(self, job: QueueJobORM, error: str, now: Optional[datetime], *, permanent: bool = False) -> JobOutcome:
        if permanent:
            job.attempts = job.max_attempts
        async with self._sf() as s:
            async with s.begin():
                exhausted = await JobQueue(s, self._queue).fail(
                    job, error, cap_seconds=self._settings.queue_backoff_max_seconds, now=now
                )
        if not exhausted:
            return JobOutcome(job_id=str(job.id), name=job.name, status="retrying", error=error)
        return await self._exhaust(job, error)

    async def _exhaust(self, job: QueueJobORM, error: str) -> JobOutcome:
        logger.error("queue_job_exhausted", attempts=job.attempts, error=error)
        hook = getattr(self._handlers.get(job.name), "on_exhausted", None)
        if hook is not None:
            try:
                await hook(job.payload or {}, error)
            except Exception:
                logger.error("queue_job_exhaustion_hook_failed", exc_info=True)
        await self._dead_letter(job, error)
        return JobOutcome(job_id=str(job.id), name=job.name, status="failed", error=error)

    async def _dead_letter(self, job: QueueJobORM, error: str) -> None:
        if self._redis is None:
            return
        record = {
            "job_id": str(job.id),
            "queue": self._queue,
            "name": job.name,
            "payload": job.payload,
            "attempts": job.attempts,
            "error": error,
            "ts": utcnow().isoformat(),
        }
        try:
            await self._redis.lpush(dlq_key(self._queue), json.dumps(record, default=str))
        except Exception as exc:
            # The job row already carries the failure; the Redis copy is for operators.
            logger.warning("queue_dead_letter_push_failed", error=str(exc))


# =========================
# Entrypoint
# =========================

async def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    engine = get_engine()
    await init_models(engine)

    bus = get_event_bus()
    worker = QueueWorker(
        get_session(),
        build_handlers(get_session(), bus, default_sender_registry(bus)),
        redis=await get_redis(),
        settings=settings,
    )

    housekeeping = HousekeepingScheduler(
        ConversationService(get_session(), bus, settings=settings),
        settings,
        session_factory=get_session(),
    )
    housekeeping.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows
            pass

    try:
        await worker.run()
    finally:
        housekeeping.stop()
        await close_redis()
        await dispose_engine()


if __name__ == "__main__":
    # python -m src.worker.queue_worker
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
