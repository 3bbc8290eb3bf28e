# jobs/maintenance.py
"""
Periodic queue maintenance.

Each task runs on its own interval and talks to the others only through
the job store's atomic operations. A tick runs in one transaction; a
failing tick is logged and the task carries on at the next interval.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs import queue, schedules
from jobs.clock import utcnow
from models.crawl_job import DEFAULT_MAX_RETRIES

logger = logging.getLogger(__name__)


class PeriodicTask:
    name = "periodic"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: float,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.interval = interval
        self.stop_event = stop_event or asyncio.Event()

    async def tick(self, db: AsyncSession, now: datetime) -> int:
        raise NotImplementedError

    async def run_once(self, now: datetime | None = None) -> int:
        async with self.session_factory() as db:
            try:
                changed = await self.tick(db, now or utcnow())
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return changed

    async def run(self) -> None:
        logger.info("%s starting (interval=%.0fs)", self.name, self.interval)
        while not self.stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s tick failed", self.name)

            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("%s stopped", self.name)

    def stop(self) -> None:
        self.stop_event.set()


class AgingSweeper(PeriodicTask):
    """Boosts queued jobs that have waited too long so nothing starves."""

    name = "aging-sweeper"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: float = 300.0,
        min_age: timedelta = timedelta(hours=1),
        boost: int = 10,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        super().__init__(session_factory, interval, stop_event)
        self.min_age = min_age
        self.boost = boost

    async def tick(self, db: AsyncSession, now: datetime) -> int:
        return await queue.age_starved_jobs(db, min_age=self.min_age, boost=self.boost, now=now)


class StuckJobReclaimer(PeriodicTask):
    """Requeues running jobs whose worker presumably died. Not a failure: retry_count is kept."""

    name = "stuck-job-reclaimer"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: float = 300.0,
        threshold: timedelta = timedelta(minutes=30),
        stop_event: asyncio.Event | None = None,
    ) -> None:
        super().__init__(session_factory, interval, stop_event)
        self.threshold = threshold

    async def tick(self, db: AsyncSession, now: datetime) -> int:
        return await queue.reclaim_stuck_jobs(db, threshold=self.threshold, now=now)


class StaleSubjectRequeuer(PeriodicTask):
    name = "stale-subject-requeuer"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: float = 3600.0,
        ttl: timedelta = timedelta(days=7),
        stop_event: asyncio.Event | None = None,
    ) -> None:
        super().__init__(session_factory, interval, stop_event)
        self.ttl = ttl

    async def tick(self, db: AsyncSession, now: datetime) -> int:
        return await queue.requeue_stale_subjects(db, ttl=self.ttl, now=now)


class ScheduledJobRunner(PeriodicTask):
    """
    Fires due scheduled jobs. A fire always advances last_run_at/next_run_at,
    whether or not the enqueue was a duplicate. Missed ticks are not replayed;
    an overdue job fires once on the next check.
    """

    name = "scheduled-job-runner"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: float = 60.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        super().__init__(session_factory, interval, stop_event)
        self.max_retries = max_retries

    async def tick(self, db: AsyncSession, now: datetime) -> int:
        due = await schedules.list_due_scheduled_jobs(db, now=now)
        if not due:
            return 0

        logger.info("Processing %d due scheduled jobs", len(due))
        fired = 0
        for scheduled in due:
            next_run_at = await schedules.record_run(db, scheduled, now=now)
            if next_run_at is None:
                logger.info("Scheduled job %s already fired elsewhere", scheduled.name)
                continue

            job = await queue.enqueue(
                db,
                scheduled.subject_id,
                priority=scheduled.priority,
                enqueued_by=f"scheduler:{scheduled.name}",
                max_retries=self.max_retries,
                now=now,
            )
            fired += 1
            logger.info(
                "Scheduled job %s fired subject=%s enqueued=%s next_run=%s",
                scheduled.name,
                scheduled.subject_id,
                job is not None,
                next_run_at.isoformat(),
            )
        return fired


def build_maintenance_tasks(
    settings,
    session_factory: async_sessionmaker[AsyncSession],
    stop_event: asyncio.Event,
) -> list[PeriodicTask]:
    return [
        AgingSweeper(
            session_factory,
            interval=settings.aging_interval_seconds,
            min_age=settings.aging_min_age,
            boost=settings.aging_priority_boost,
            stop_event=stop_event,
        ),
        StuckJobReclaimer(
            session_factory,
            interval=settings.reclaim_interval_seconds,
            threshold=settings.stuck_job_threshold,
            stop_event=stop_event,
        ),
        ScheduledJobRunner(
            session_factory,
            interval=settings.scheduler_interval_seconds,
            max_retries=settings.worker_max_retries,
            stop_event=stop_event,
        ),
        StaleSubjectRequeuer(
            session_factory,
            interval=settings.stale_requeue_interval_seconds,
            ttl=settings.stale_subject_ttl,
            stop_event=stop_event,
        ),
    ]
