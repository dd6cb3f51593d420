"""
Durable job queue backed by the ``queue_jobs`` table.

Jobs are written in the same transaction as the state they refer to, so a job exists
exactly when its data does. Workers claim due jobs with a visibility lease; a job whose
lease runs out while active (worker died mid-job) becomes claimable again while it
still has attempts left, and is failed once it has none.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from src.shared.config import get_settings
from src.shared.database import utcnow
from src.shared.logging import get_logger
from src.shared.exceptions import ConflictError
from src.messaging.domain.exceptions import JobNotFoundError
from src.messaging.domain.value_objects import JobStatus
from .models import QueueJobORM

logger = get_logger(__name__)

MESSAGING_QUEUE = "messaging"
PROCESS_INCOMING = "process-incoming"
SEND_MESSAGE = "send-message"

LEASE_EXPIRED_ERROR = "lease expired after final attempt"


def backoff_seconds(attempts: int, base: float, cap: float) -> float:
    # exponential backoff with cap: base, 2*base, 4*base, ...
    delay = base * (2 ** max(0, attempts - 1))
    return min(delay, cap)


@dataclass
class JobQueue:
    session: AsyncSession
    queue: str = MESSAGING_QUEUE

    async def enqueue(
        self,
        name: str,
        payload: Dict[str, Any],
        *,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        delay_seconds: float = 0.0,
    ) -> QueueJobORM:
        settings = get_settings()
        job = QueueJobORM(
            queue=self.queue,
            name=name,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts or settings.queue_max_attempts,
            backoff_base_seconds=(
                backoff_base_seconds if backoff_base_seconds is not None else settings.queue_backoff_base_seconds
            ),
            available_at=utcnow() + timedelta(seconds=delay_seconds),
        )
        self.session.add(job)
        await self.session.flush()
        logger.debug("job_enqueued", job_id=str(job.id), job_name=name, queue=self.queue)
        return job

    async def get(self, job_id: UUID) -> Optional[QueueJobORM]:
        return await self.session.get(QueueJobORM, job_id, populate_existing=True)

    async def claim(self, *, limit: int, visibility_timeout: float, now: Optional[datetime] = None) -> List[QueueJobORM]:
        """Lease up to ``limit`` due jobs. Each claim is a guarded update, so two workers never share a job."""
        now = now or utcnow()
        due = sa.or_(
            sa.and_(QueueJobORM.status == JobStatus.PENDING, QueueJobORM.available_at <= now),
            sa.and_(
                QueueJobORM.status == JobStatus.ACTIVE,
                QueueJobORM.locked_until < now,
                QueueJobORM.attempts < QueueJobORM.max_attempts,
            ),
        )
        candidates = (
            await self.session.execute(
                sa.select(QueueJobORM.id, QueueJobORM.status, QueueJobORM.attempts)
                .where(QueueJobORM.queue == self.queue, due)
                .order_by(QueueJobORM.available_at, QueueJobORM.created_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
        ).all()

        claimed: List[QueueJobORM] = []
        lease = now + timedelta(seconds=visibility_timeout)
        for job_id, status, attempts in candidates:
            res = await self.session.execute(
                sa.update(QueueJobORM)
                .where(
                    QueueJobORM.id == job_id,
                    QueueJobORM.status == status,
                    QueueJobORM.attempts == attempts,
                )
                .values(status=JobStatus.ACTIVE, attempts=attempts + 1, locked_until=lease)
            )
            if res.rowcount == 1:
                job = await self.get(job_id)
                if job is not None:
                    claimed.append(job)
        return claimed

    async def expire_exhausted(self, *, now: Optional[datetime] = None) -> List[QueueJobORM]:
        """
        Fail active jobs whose lease ran out on their last attempt.

        The worker died mid-job with no budget left, so the job is never leased again.
        Returns the jobs that were failed here so the caller can run its exhaustion path.
        """
        now = now or utcnow()
        candidates = (
            await self.session.execute(
                sa.select(QueueJobORM.id)
                .where(
                    QueueJobORM.queue == self.queue,
                    QueueJobORM.status == JobStatus.ACTIVE,
                    QueueJobORM.locked_until < now,
                    QueueJobORM.attempts >= QueueJobORM.max_attempts,
                )
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()

        expired: List[QueueJobORM] = []
        for job_id in candidates:
            res = await self.session.execute(
                sa.update(QueueJobORM)
                .where(QueueJobORM.id == job_id, QueueJobORM.status == JobStatus.ACTIVE)
                .values(
                    status=JobStatus.FAILED,
                    last_error=LEASE_EXPIRED_ERROR,
                    failed_at=now,
                    locked_until=None,
                )
            )
            if res.rowcount == 1:
                job = await self.get(job_id)
                if job is not None:
                    expired.append(job)
        return expired

    async def purge_completed(self, older_than: datetime) -> int:
        """Delete completed jobs finished before ``older_than``. Failed jobs stay for operators."""
        res = await self.session.execute(
            sa.delete(QueueJobORM)
            .where(
                QueueJobORM.queue == self.queue,
                QueueJobORM.status == JobStatus.COMPLETED,
                QueueJobORM.completed_at < older_than,
            )
            .execution_options(synchronize_session=False)
        )
        return int(res.rowcount or 0)

    async def complete(self, job_id: UUID, result: Optional[Dict[str, Any]] = None) -> None:
        now = utcnow()
        await self.session.execute(
            sa.update(QueueJobORM)
            .where(QueueJobORM.id == job_id)
            .values(status=JobStatus.COMPLETED, result=result, completed_at=now, locked_until=None)
        )

    async def fail(self, job: QueueJobORM, error: str, *, cap_seconds: float, now: Optional[datetime] = None) -> bool:
        """Record a failed attempt. Returns True when the job is exhausted and now terminally failed."""
        now = now or utcnow()
        if job.attempts >= job.max_attempts:
            await self.session.execute(
                sa.update(QueueJobORM)
                .where(QueueJobORM.id == job.id)
                .values(status=JobStatus.FAILED, last_error=error, failed_at=now, locked_until=None)
            )
            return True

        delay = backoff_seconds(job.attempts, job.backoff_base_seconds, cap_seconds)
        await self.session.execute(
            sa.update(QueueJobORM)
            .where(QueueJobORM.id == job.id)
            .values(
                status=JobStatus.PENDING,
                last_error=error,
                available_at=now + timedelta(seconds=delay),
                locked_until=None,
            )
        )
        return False

    async def counts(self) -> Dict[str, int]:
        """Job counts per status for this queue; every status is present."""
        rows = (
            await self.session.execute(
                sa.select(QueueJobORM.status, sa.func.count())
                .where(QueueJobORM.queue == self.queue)
                .group_by(QueueJobORM.status)
            )
        ).all()
        counts = {s.value: 0 for s in JobStatus}
        counts.update({JobStatus(s).value: int(n) for s, n in rows})
        return counts

    async def list_failed(self, *, limit: int = 50) -> Sequence[QueueJobORM]:
        stmt = (
            sa.select(QueueJobORM)
            .where(QueueJobORM.queue == self.queue, QueueJobORM.status == JobStatus.FAILED)
            .order_by(QueueJobORM.failed_at.desc())
            .limit(limit)
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def retry_failed(self, job_id: UUID) -> QueueJobORM:
        """Operator remediation: put a failed job back in line with a fresh attempt budget."""
        job = await self.get(job_id)
        if job is None or job.queue != self.queue:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status != JobStatus.FAILED:
            raise ConflictError(f"Job {job_id} is {job.status.value}, only failed jobs can be retried")
        job.status = JobStatus.PENDING
        job.attempts = 0
        job.available_at = utcnow()
        job.failed_at = None
        await self.session.flush()
        return job
