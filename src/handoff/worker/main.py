"""Handoff background worker.

Runs refund payment jobs outside request transactions. One loop iteration
claims at most one due job per queue, runs its handler in the claiming
session, and commits the outcome; handlers that are waiting on the payment
rail raise ``RetryLater`` and are picked up again after backoff. SIGTERM and
SIGINT stop the loop after the job in hand.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NoReturn

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from handoff.core.clock import utcnow
from handoff.db import to_async_url
from handoff.services.job_queue import JobQueueService, JobType, RetryLater

if TYPE_CHECKING:
    from datetime import datetime

    from handoff.core.config import Settings
    from handoff.db.models.jobs import Job
    from handoff.services.payment_rail import PaymentRail

logger = logging.getLogger(__name__)

JobHandler = Callable[[AsyncSession, "Job"], Coroutine[Any, Any, dict[str, Any] | None]]


@dataclass
class WorkerConfig:
    """Worker process settings.

    ``job_types`` narrows what this worker claims; empty means any type.
    Running jobs locked longer than ``stale_job_threshold_seconds`` are
    released back to the queue.
    """

    database_url: str
    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 1.0
    queues: list[str] = field(default_factory=lambda: ["default"])
    job_types: list[str] = field(default_factory=list)
    stale_job_threshold_seconds: int = 600
    shutdown_timeout: float = 30.0
    pool_size: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        return cls(
            database_url=to_async_url(str(settings.database.url)),
            pool_size=settings.database.pool_size,
        )


class Worker:
    """Polls the job queue and dispatches jobs to registered handlers.

    Several workers may share a queue; claims skip rows another worker holds.
    """

    def __init__(
        self,
        config: WorkerConfig,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.config = config
        self._shutdown_event = asyncio.Event()
        self._handlers: dict[str, JobHandler] = {}
        self._engine = None
        self._session_factory = session_factory
        self._started_at: datetime | None = None
        self._jobs_processed = 0
        self._jobs_failed = 0

    def register_handler(self, job_type: str | JobType, handler: JobHandler) -> None:
        type_str = job_type.value if isinstance(job_type, JobType) else job_type
        self._handlers[type_str] = handler
        logger.debug("Registered handler for job_type=%s", type_str)

    async def start(self) -> None:
        """Process jobs until stop() is called or a signal arrives."""
        self._started_at = utcnow()
        logger.info(
            "Worker starting: worker_id=%s, queues=%s, handlers=%s",
            self.config.worker_id,
            self.config.queues,
            sorted(self._handlers),
        )

        if self._session_factory is None:
            self._engine = create_async_engine(
                self.config.database_url,
                pool_size=self.config.pool_size,
                pool_pre_ping=True,
            )
            self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)

        try:
            await self._run_loop()
        finally:
            if self._engine is not None:
                await self._engine.dispose()
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, failed=%d",
                self.config.worker_id,
                self._jobs_processed,
                self._jobs_failed,
            )

    async def stop(self) -> None:
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def _run_loop(self) -> None:
        stopping = self._shutdown_event.is_set
        while not stopping():
            try:
                busy = False
                for queue in self.config.queues:
                    if stopping():
                        break
                    if await self.process_next(queue):
                        busy = True
                if stopping():
                    break
                await self._cleanup_stale_jobs()
                if not busy:
                    await self._idle()
            except Exception as e:
                logger.exception("Worker loop iteration failed: %s", e)
                await asyncio.sleep(1.0)

    async def _idle(self) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.config.poll_interval)

    async def process_next(self, queue: str = "default") -> bool:
        """Claim and run one job from ``queue``.

        Returns:
            True if a job was claimed.
        """
        async with self._session_factory() as session:
            job_queue = JobQueueService(session)
            job = await job_queue.claim_job(
                worker_id=self.config.worker_id,
                queue=queue,
                job_types=self.config.job_types or None,
            )
            if job is None:
                return False
            # Claim is visible to other workers before the handler runs
            await session.commit()

            job_id = job.job_id
            handler = self._handlers.get(job.job_type)
            if handler is None:
                error_msg = f"No handler registered for job_type={job.job_type}"
                logger.error(error_msg)
                await job_queue.fail_job(job_id, error_msg)
                await session.commit()
                self._jobs_failed += 1
                return True

            try:
                result = await handler(session, job)
            except RetryLater as later:
                # Keep the handler's progress, come back after backoff
                await job_queue.retry_later(job_id, note=later.note, result=later.result)
                await session.commit()
                return True
            except Exception as e:
                logger.exception(
                    "Job failed: job_id=%s, job_type=%s, error=%s",
                    job_id,
                    job.job_type,
                    e,
                )
                await session.rollback()
                await self._record_failure(job_id, str(e))
                return True

            await job_queue.complete_job(job_id, result)
            await session.commit()
            self._jobs_processed += 1
            return True

    async def _record_failure(self, job_id: uuid.UUID, error: str) -> None:
        async with self._session_factory() as session:
            will_retry = await JobQueueService(session).fail_job(job_id, error)
            await session.commit()
        if not will_retry:
            self._jobs_failed += 1

    async def _cleanup_stale_jobs(self) -> None:
        async with self._session_factory() as session:
            count = await JobQueueService(session).cleanup_stale_jobs(
                stale_threshold_seconds=self.config.stale_job_threshold_seconds
            )
            if count > 0:
                await session.commit()


_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


def register_default_handlers(worker: Worker, settings: Settings) -> PaymentRail:
    """Register the handlers for every JobType.

    Returns:
        The payment rail the handlers share; the caller closes it on shutdown.
    """
    from handoff.services.payment_rail import build_payment_rail
    from handoff.worker.handlers.refund_payment import make_refund_payment_handler

    rail = build_payment_rail(settings.payments)
    worker.register_handler(
        JobType.REFUND_PAYMENT,
        make_refund_payment_handler(rail, settings.payments),
    )
    return rail


async def _async_main(shutdown_event: asyncio.Event, settings: Settings | None = None) -> None:
    if settings is None:
        from handoff.core.settings import get_settings

        settings = get_settings()
    config = WorkerConfig.from_settings(settings)
    worker = Worker(config)
    rail = register_default_handlers(worker, settings)

    worker_task = asyncio.create_task(worker.start())
    try:
        await shutdown_event.wait()
        await worker.stop()
        try:
            await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Worker did not stop within timeout, forcing shutdown")
            worker_task.cancel()
    finally:
        await rail.close()


def run() -> NoReturn:
    """Run the worker process: logging, signal handlers, then the async loop."""
    global _shutdown_event

    from handoff.core.settings import get_settings

    logging.basicConfig(
        level=getattr(logging, get_settings().log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("Handoff worker starting...")

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Handoff worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
