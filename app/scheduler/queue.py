"""HARVEST — Work Queue.

``WorkQueue`` is the contract the scheduler relies on: named handlers,
one-shot ``emit`` and cron ``schedule``. ``SchedulerWorkQueue`` runs it
in-process on APScheduler; cron definitions are single-flight
(``max_instances=1``) so overlapping ticks of the same definition are
coalesced by the queue, not by the jobs.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from app.core.logging import get_logger

logger = get_logger("scheduler.queue")

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class WorkQueue(ABC):
    """Durable-queue contract: at-least-once delivery of named jobs."""

    @abstractmethod
    def register(self, job_name: str, handler: JobHandler) -> None:
        ...

    @abstractmethod
    def emit(self, job_name: str, payload: Dict[str, Any]) -> str:
        """Enqueue one run of ``job_name``. Returns the job id."""
        ...

    @abstractmethod
    def schedule(self, job_name: str, cron_expr: str, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class SchedulerWorkQueue(WorkQueue):
    """In-process queue on APScheduler's AsyncIOScheduler."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, job_name: str, handler: JobHandler) -> None:
        self._handlers[job_name] = handler

    def _handler(self, job_name: str) -> JobHandler:
        try:
            return self._handlers[job_name]
        except KeyError:
            raise KeyError(f"No handler registered for job '{job_name}'") from None

    async def _run(self, job_name: str, job_id: str, payload: Dict[str, Any]) -> None:
        handler = self._handler(job_name)
        logger.debug(f"Job {job_name} ({job_id}) starting", extra={"job": job_name})
        try:
            await handler(payload)
        except Exception as e:
            logger.error(
                f"Job {job_name} ({job_id}) failed: {e}",
                exc_info=True,
                extra={"job": job_name},
            )

    def emit(self, job_name: str, payload: Dict[str, Any]) -> str:
        self._handler(job_name)
        job_id = str(uuid.uuid4())
        self.scheduler.add_job(
            self._run,
            DateTrigger(run_date=datetime.now(timezone.utc)),
            args=[job_name, job_id, payload],
            id=job_id,
            name=job_name,
            misfire_grace_time=None,
        )
        return job_id

    def schedule(self, job_name: str, cron_expr: str, payload: Dict[str, Any]) -> None:
        self._handler(job_name)
        self.scheduler.add_job(
            self._run,
            CronTrigger.from_crontab(cron_expr, timezone=timezone.utc),
            args=[job_name, f"cron:{job_name}", payload],
            id=f"cron:{job_name}",
            name=job_name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        logger.info(f"Scheduled {job_name} at '{cron_expr}' UTC", extra={"job": job_name})

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Work queue started")

    def stop(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Work queue stopped")
