"""PostgreSQL-backed job queue for work that must run outside a request.

Refund transfers are the main producer: approving a refund for processing
enqueues a ``refund_payment`` job, and the worker submits the transfer to
the payment rail, polling until the rail reports an outcome.

Workers claim rows with SELECT ... FOR UPDATE SKIP LOCKED, so any number of
them may compete for jobs without processing one twice. Failed attempts
are rescheduled with exponential backoff until ``max_attempts`` is spent,
after which the job stays in ``failed`` (dead letter).

Usage:
    queue = JobQueueService(session)
    job = await queue.claim_job("worker-1")
    if job:
        try:
            ...
            await queue.complete_job(job.job_id)
        except Exception as e:
            await queue.fail_job(job.job_id, str(e))
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from handoff.core.clock import utcnow
from handoff.db.models.base import JobStatus
from handoff.db.models.jobs import Job

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from handoff.core.clock import Clock

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Job types the worker has handlers for."""

    REFUND_PAYMENT = "refund_payment"


class JobQueueError(Exception):
    """Base exception for job queue operations."""


class JobNotFoundError(JobQueueError):
    """Raised when a job cannot be found."""


class RetryLater(Exception):  # noqa: N818 - control flow signal, not an error
    """Raised by a handler that is waiting on an outside party.

    The worker keeps the handler's writes and reschedules the job with
    backoff instead of recording a failure.
    """

    def __init__(self, note: str, result: dict[str, Any] | None = None) -> None:
        self.note = note
        self.result = result
        super().__init__(note)


class JobQueueService:
    """Enqueue, claim and settle background jobs.

    Attributes:
        session: Async session; the caller owns the transaction.
        default_queue: Queue name for new jobs.
        default_max_attempts: Attempts before a job is dead-lettered.
        default_lock_timeout: Seconds a claimed job may run before it is stale.
        default_base_backoff: Base retry delay, doubled on each attempt.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_queue: str = "default",
        default_max_attempts: int = 3,
        default_lock_timeout: int = 300,
        default_base_backoff: int = 60,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.default_queue = default_queue
        self.default_max_attempts = default_max_attempts
        self.default_lock_timeout = default_lock_timeout
        self.default_base_backoff = default_base_backoff
        self._clock = clock

    async def enqueue(
        self,
        job_type: str | JobType,
        payload: dict[str, Any] | None = None,
        run_at: datetime | None = None,
        queue: str | None = None,
        priority: int = 100,
        max_attempts: int | None = None,
        base_backoff: int | None = None,
        correlation_id: str | None = None,
    ) -> Job:
        """Add a job to the queue.

        The row is flushed but not committed: it becomes visible to workers
        together with whatever state change produced it.

        Raises:
            JobQueueError: If the insert fails.
        """
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type

        job = Job(
            job_type=job_type_value,
            status=JobStatus.PENDING,
            run_at=run_at or self._clock(),
            payload_json=payload,
            queue=queue or self.default_queue,
            priority=priority,
            attempts=0,
            max_attempts=max_attempts or self.default_max_attempts,
            lock_timeout_seconds=self.default_lock_timeout,
            base_backoff_seconds=base_backoff or self.default_base_backoff,
            correlation_id=correlation_id,
        )

        try:
            self.session.add(job)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue job: %s", str(e))
            raise JobQueueError(f"Failed to enqueue job: {e}") from e

        logger.info(
            "Job enqueued: job_id=%s, job_type=%s, queue=%s, correlation_id=%s",
            job.job_id,
            job_type_value,
            job.queue,
            correlation_id,
        )
        return job

    async def claim_job(
        self,
        worker_id: str,
        queue: str | None = None,
        job_types: list[str] | None = None,
    ) -> Job | None:
        """Claim the next due job, or return None if there is none.

        Raises:
            JobQueueError: If the claim query fails.
        """
        now = self._clock()
        stmt = (
            select(Job)
            .where(
                Job.queue == (queue or self.default_queue),
                Job.status == JobStatus.PENDING,
                Job.run_at <= now,
            )
            .order_by(Job.priority, Job.run_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if job_types:
            stmt = stmt.where(Job.job_type.in_(job_types))

        try:
            result = await self.session.execute(stmt)
            job = result.scalar_one_or_none()
            if job is None:
                return None

            job.status = JobStatus.RUNNING
            job.locked_at = now
            job.locked_by = worker_id
            job.started_at = now
            job.attempts += 1
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to claim job: %s", str(e))
            raise JobQueueError(f"Failed to claim job: {e}") from e

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, job_type=%s, attempt=%d/%d",
            job.job_id,
            worker_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
        )
        return job

    async def complete_job(self, job_id: uuid.UUID, result: dict[str, Any] | None = None) -> None:
        """Mark a job as done.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await self._require_job(job_id)
        job.status = JobStatus.COMPLETED
        job.completed_at = self._clock()
        job.result_json = result
        job.locked_at = None
        job.locked_by = None
        await self._flush("complete", job_id)

        logger.info("Job completed: job_id=%s, job_type=%s", job_id, job.job_type)

    async def fail_job(self, job_id: uuid.UUID, error: str) -> bool:
        """Record a failed attempt.

        Returns:
            True if the job was rescheduled, False if it is dead-lettered.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await self._require_job(job_id)
        job.last_error = error

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.completed_at = self._clock()
            job.locked_at = None
            job.locked_by = None
            await self._flush("fail", job_id)
            logger.warning(
                "Job dead-lettered: job_id=%s, job_type=%s, attempts=%d, error=%s",
                job_id,
                job.job_type,
                job.attempts,
                error,
            )
            return False

        backoff = self._reschedule(job)
        await self._flush("fail", job_id)
        logger.info(
            "Job scheduled for retry: job_id=%s, job_type=%s, attempt=%d/%d, backoff=%ds",
            job_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
            backoff,
        )
        return True

    async def retry_later(
        self,
        job_id: uuid.UUID,
        note: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        """Put a running job back with backoff without recording an error.

        Used when the job made progress but is waiting on an outside party,
        such as a transfer the rail still reports as pending.
        """
        job = await self._require_job(job_id)
        if result is not None:
            job.result_json = result
        backoff = self._reschedule(job)
        await self._flush("reschedule", job_id)
        logger.info(
            "Job rescheduled: job_id=%s, job_type=%s, attempt=%d/%d, backoff=%ds, note=%s",
            job_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
            backoff,
            note,
        )

    async def cancel_pending(self, job_type: str | JobType, correlation_id: str) -> int:
        """Cancel queued jobs of one type for a correlation id.

        Returns:
            Number of jobs cancelled.
        """
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type
        stmt = (
            update(Job)
            .where(
                Job.job_type == job_type_value,
                Job.correlation_id == correlation_id,
                Job.status == JobStatus.PENDING,
            )
            .values(status=JobStatus.CANCELLED, completed_at=self._clock())
            .returning(Job.job_id)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise JobQueueError(f"Failed to cancel jobs: {e}") from e

        cancelled = list(result.scalars().all())
        if cancelled:
            logger.info(
                "Cancelled %d pending %s job(s) for %s",
                len(cancelled),
                job_type_value,
                correlation_id,
            )
        return len(cancelled)

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        stmt = select(Job).where(Job.job_id == job_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def cleanup_stale_jobs(self, stale_threshold_seconds: int = 600) -> int:
        """Release jobs whose worker died mid-run.

        Returns:
            Number of jobs put back to pending.
        """
        now = self._clock()
        threshold = now - timedelta(seconds=stale_threshold_seconds)
        stmt = (
            update(Job)
            .where(Job.status == JobStatus.RUNNING, Job.locked_at < threshold)
            .values(status=JobStatus.PENDING, locked_at=None, locked_by=None, run_at=now)
            .returning(Job.job_id)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to cleanup stale jobs: %s", str(e))
            raise JobQueueError(f"Failed to cleanup stale jobs: {e}") from e

        stale = list(result.scalars().all())
        if stale:
            logger.warning("Reset %d stale jobs: %s", len(stale), stale)
        return len(stale)

    def _reschedule(self, job: Job) -> int:
        # base * 2^(attempt-1)
        backoff = job.base_backoff_seconds * (2 ** max(job.attempts - 1, 0))
        job.run_at = self._clock() + timedelta(seconds=backoff)
        job.status = JobStatus.PENDING
        job.locked_at = None
        job.locked_by = None
        return backoff

    async def _require_job(self, job_id: uuid.UUID) -> Job:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def _flush(self, action: str, job_id: uuid.UUID) -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to %s job %s: %s", action, job_id, str(e))
            raise JobQueueError(f"Failed to {action} job: {e}") from e
