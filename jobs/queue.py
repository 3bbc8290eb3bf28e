# jobs/queue.py
"""
Durable crawl job store.

Every mutation here is a single conditional statement (or a row-locked read
followed by a compare-and-set update) so that workers, maintenance tasks
and admin calls can interleave freely. Callers own the transaction: these
functions flush, the caller commits.
"""
from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from jobs import retry
from jobs.clock import utcnow
from jobs.errors import ActiveJobExists, InvalidPriority, InvalidStatus, JobNotFound
from models.crawl_job import (
    ACTIVE_STATUSES,
    DEFAULT_MAX_RETRIES,
    JOB_STATUSES,
    MAX_PRIORITY,
    MIN_PRIORITY,
    CrawlJob,
)

logger = logging.getLogger(__name__)

# how many times a claimer re-selects after losing a compare-and-set race
CLAIM_ATTEMPTS = 5

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def clamp_priority(value: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(value)))


def validate_priority(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPriority(value)
    if value < MIN_PRIORITY or value > MAX_PRIORITY:
        raise InvalidPriority(value)
    return value


def _clamped(expr):
    return case(
        (expr > MAX_PRIORITY, MAX_PRIORITY),
        (expr < MIN_PRIORITY, MIN_PRIORITY),
        else_=expr,
    )


async def get_job(db: AsyncSession, job_id: uuid.UUID) -> CrawlJob:
    job = await db.get(CrawlJob, job_id, populate_existing=True)
    if job is None:
        raise JobNotFound(job_id)
    return job


async def get_active_job(db: AsyncSession, subject_id: str) -> CrawlJob | None:
    stmt = select(CrawlJob).where(
        CrawlJob.subject_id == subject_id,
        CrawlJob.status.in_(ACTIVE_STATUSES),
    )
    return (await db.execute(stmt)).scalar_one_or_none()


# ─────────────────────────────────────────────
# enqueue / claim / outcome
# ─────────────────────────────────────────────

async def enqueue(
    db: AsyncSession,
    subject_id: str,
    priority: int = 0,
    enqueued_by: str | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    now: datetime | None = None,
) -> CrawlJob | None:
    """
    Insert a queued job for ``subject_id``, visible immediately.

    Returns None without touching anything when the subject already has a
    queued or running job.
    """
    validate_priority(priority)
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    now = now or utcnow()
    insert = _INSERTS.get(db.get_bind().dialect.name)
    if insert is None:
        raise RuntimeError(f"Unsupported database dialect: {db.get_bind().dialect.name}")

    stmt = (
        insert(CrawlJob)
        .values(
            id=uuid.uuid4(),
            subject_id=subject_id,
            status="queued",
            priority=priority,
            retry_count=0,
            max_retries=max_retries,
            visible_at=now,
            enqueued_by=enqueued_by,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=[CrawlJob.subject_id],
            index_where=CrawlJob.status.in_(ACTIVE_STATUSES),
        )
        .returning(CrawlJob.id)
    )
    job_id = (await db.execute(stmt)).scalar_one_or_none()

    if job_id is None:
        logger.debug("Enqueue skipped, subject %s already has an active job", subject_id)
        return None

    job = await get_job(db, job_id)
    logger.info(
        "Enqueued job %s subject=%s priority=%d by=%s",
        job.id,
        subject_id,
        priority,
        enqueued_by,
    )
    return job


async def claim_next(
    db: AsyncSession,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> CrawlJob | None:
    """
    Claims the highest-priority visible queued job (oldest first on ties)
    and moves it to running.

    Row locks with SKIP LOCKED keep concurrent claimers off each other's
    rows where the backend supports them; the status-guarded update is
    the compare-and-set that makes a double claim impossible everywhere.
    Losing every race yields None, never an error.
    """
    now = now or utcnow()

    candidate = (
        select(CrawlJob.id)
        .where(
            CrawlJob.status == "queued",
            CrawlJob.visible_at <= now,
        )
        .order_by(CrawlJob.priority.desc(), CrawlJob.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )

    for _ in range(CLAIM_ATTEMPTS):
        job_id = (await db.execute(candidate)).scalar_one_or_none()
        if job_id is None:
            return None

        result = await db.execute(
            update(CrawlJob)
            .where(CrawlJob.id == job_id, CrawlJob.status == "queued")
            .values(status="running", last_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug("Lost claim race for job %s", job_id)
            continue

        job = await get_job(db, job_id)
        logger.info(
            "Worker %s claimed job %s subject=%s priority=%d retry=%d/%d",
            worker_id,
            job.id,
            job.subject_id,
            job.priority,
            job.retry_count,
            job.max_retries,
        )
        return job

    return None


async def mark_success(
    db: AsyncSession,
    job_id: uuid.UUID,
    duration_ms: int,
    now: datetime | None = None,
) -> bool:
    now = now or utcnow()
    result = await db.execute(
        update(CrawlJob)
        .where(CrawlJob.id == job_id, CrawlJob.status == "running")
        .values(status="success", duration_ms=duration_ms, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await get_job(db, job_id)
        logger.warning("Job %s was not running, success not recorded", job_id)
        return False

    logger.info("Job %s completed in %dms", job_id, duration_ms)
    return True


async def mark_failure(
    db: AsyncSession,
    job_id: uuid.UUID,
    duration_ms: int | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
    retry_after: float | None = None,
) -> retry.RetryDecision | None:
    """
    Schedules a retry with backoff or marks the job permanently failed.
    A ``retry_after`` delay requested by the upstream pushes visibility out
    when it is longer than the backoff. Returns None when the job was no
    longer running.
    """
    now = now or utcnow()

    stmt = select(CrawlJob).where(CrawlJob.id == job_id).with_for_update()
    job = (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()
    if job is None:
        raise JobNotFound(job_id)
    if job.status != "running":
        logger.warning("Job %s is %s, failure not recorded", job_id, job.status)
        return None

    decision = retry.decide(job.retry_count, job.max_retries, now, rng=rng)
    if not decision.terminal and retry_after:
        decision = retry.honor_delay(decision, now, timedelta(seconds=retry_after))

    if decision.terminal:
        values = dict(status="failed", updated_at=now)
    else:
        values = dict(
            status="queued",
            retry_count=decision.retry_count,
            visible_at=decision.visible_at,
            next_retry_at=decision.visible_at,
            updated_at=now,
        )
    if duration_ms is not None:
        values["duration_ms"] = duration_ms

    result = await db.execute(
        update(CrawlJob)
        .where(
            CrawlJob.id == job_id,
            CrawlJob.status == "running",
            CrawlJob.retry_count == job.retry_count,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Job %s changed while recording failure, skipped", job_id)
        return None

    if decision.terminal:
        logger.error(
            "Job %s permanently failed after %d retries subject=%s",
            job_id,
            decision.retry_count,
            job.subject_id,
        )
    else:
        logger.warning(
            "Job %s retry %d/%d in %.0fs subject=%s",
            job_id,
            decision.retry_count,
            job.max_retries,
            decision.delay.total_seconds(),
            job.subject_id,
        )
    return decision


# ─────────────────────────────────────────────
# admin operations
# ─────────────────────────────────────────────

async def update_priority(db: AsyncSession, job_id: uuid.UUID, value: int) -> CrawlJob:
    validate_priority(value)
    result = await db.execute(
        update(CrawlJob)
        .where(CrawlJob.id == job_id)
        .values(priority=value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise JobNotFound(job_id)
    return await get_job(db, job_id)


async def boost_priority(db: AsyncSession, job_id: uuid.UUID, delta: int) -> CrawlJob:
    """Adds ``delta`` to the priority, clamped to [0, 100]."""
    result = await db.execute(
        update(CrawlJob)
        .where(CrawlJob.id == job_id)
        .values(priority=_clamped(CrawlJob.priority + int(delta)), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise JobNotFound(job_id)
    return await get_job(db, job_id)


async def _ensure_no_other_active(db: AsyncSession, job: CrawlJob) -> None:
    other = await get_active_job(db, job.subject_id)
    if other is not None and other.id != job.id:
        raise ActiveJobExists(job.subject_id, other.id)


async def force_retry(db: AsyncSession, job_id: uuid.UUID, now: datetime | None = None) -> CrawlJob:
    """Requeue immediately with the retry budget reset."""
    now = now or utcnow()
    job = await get_job(db, job_id)
    await _ensure_no_other_active(db, job)

    await db.execute(
        update(CrawlJob)
        .where(CrawlJob.id == job_id)
        .values(
            status="queued",
            retry_count=0,
            visible_at=now,
            next_retry_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    logger.info("Job %s force-retried subject=%s", job_id, job.subject_id)
    return await get_job(db, job_id)


async def update_status(
    db: AsyncSession,
    job_id: uuid.UUID,
    status: str,
    now: datetime | None = None,
) -> CrawlJob:
    if status not in JOB_STATUSES:
        raise InvalidStatus(status)

    now = now or utcnow()
    job = await get_job(db, job_id)
    if status in ACTIVE_STATUSES and job.status not in ACTIVE_STATUSES:
        await _ensure_no_other_active(db, job)

    values: dict = dict(status=status, updated_at=now)
    if status == "queued":
        values["visible_at"] = now
    elif status == "running":
        # keeps the stuck-job reclaimer able to recover it
        values["last_attempt_at"] = now

    await db.execute(
        update(CrawlJob)
        .where(CrawlJob.id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    logger.info("Job %s status %s -> %s", job_id, job.status, status)
    return await get_job(db, job_id)


async def bulk_update_status(db: AsyncSession, job_ids: Iterable[uuid.UUID], status: str) -> int:
    if status not in JOB_STATUSES:
        raise InvalidStatus(status)

    updated = 0
    for job_id in job_ids:
        try:
            await update_status(db, job_id, status)
        except (JobNotFound, ActiveJobExists) as exc:
            logger.warning("Bulk status update skipped %s: %s", job_id, exc)
            continue
        updated += 1
    return updated


async def bulk_force_retry(db: AsyncSession, job_ids: Iterable[uuid.UUID]) -> int:
    retried = 0
    for job_id in job_ids:
        try:
            await force_retry(db, job_id)
        except (JobNotFound, ActiveJobExists) as exc:
            logger.warning("Bulk retry skipped %s: %s", job_id, exc)
            continue
        retried += 1
    return retried


async def stats(db: AsyncSession) -> dict[str, int]:
    stmt = select(CrawlJob.status, func.count()).group_by(CrawlJob.status)
    rows = (await db.execute(stmt)).all()
    counts = {status: 0 for status in JOB_STATUSES}
    for status, count in rows:
        counts[status] = count
    counts["total"] = sum(count for _, count in rows)
    return counts


async def list_jobs(
    db: AsyncSession,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[CrawlJob]:
    stmt = select(CrawlJob)
    if status is not None:
        if status not in JOB_STATUSES:
            raise InvalidStatus(status)
        stmt = stmt.where(CrawlJob.status == status).order_by(
            CrawlJob.priority.desc(), CrawlJob.created_at.asc()
        )
    else:
        stmt = stmt.order_by(CrawlJob.created_at.desc())

    stmt = stmt.limit(limit).offset(offset)
    return list((await db.execute(stmt)).scalars().all())


# ─────────────────────────────────────────────
# maintenance
# ─────────────────────────────────────────────

async def age_starved_jobs(
    db: AsyncSession,
    min_age: timedelta = timedelta(hours=1),
    boost: int = 10,
    now: datetime | None = None,
) -> int:
    """
    Raises priority of queued jobs waiting longer than ``min_age``, at most
    once per ``min_age`` per job, never above 100.
    """
    now = now or utcnow()
    cutoff = now - min_age
    result = await db.execute(
        update(CrawlJob)
        .where(
            CrawlJob.status == "queued",
            CrawlJob.created_at < cutoff,
            CrawlJob.priority < MAX_PRIORITY,
            or_(CrawlJob.aged_at.is_(None), CrawlJob.aged_at <= cutoff),
        )
        .values(
            priority=_clamped(CrawlJob.priority + boost),
            aged_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Aged %d starved jobs by +%d", result.rowcount, boost)
    return result.rowcount


async def reclaim_stuck_jobs(
    db: AsyncSession,
    threshold: timedelta,
    now: datetime | None = None,
) -> int:
    """Returns running jobs whose last attempt is older than ``threshold`` to the queue."""
    now = now or utcnow()
    cutoff = now - threshold
    result = await db.execute(
        update(CrawlJob)
        .where(
            CrawlJob.status == "running",
            or_(
                CrawlJob.last_attempt_at < cutoff,
                and_(CrawlJob.last_attempt_at.is_(None), CrawlJob.updated_at < cutoff),
            ),
        )
        .values(status="queued", visible_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.warning("Reclaimed %d stuck jobs (threshold=%s)", result.rowcount, threshold)
    return result.rowcount


async def requeue_stale_subjects(
    db: AsyncSession,
    ttl: timedelta,
    now: datetime | None = None,
    enqueued_by: str = "system-stale",
) -> int:
    """Enqueues subjects whose latest job finished more than ``ttl`` ago."""
    now = now or utcnow()
    active = select(CrawlJob.subject_id).where(CrawlJob.status.in_(ACTIVE_STATUSES))
    stmt = (
        select(CrawlJob.subject_id)
        .where(CrawlJob.subject_id.not_in(active))
        .group_by(CrawlJob.subject_id)
        .having(func.max(CrawlJob.updated_at) < now - ttl)
        .order_by(func.max(CrawlJob.updated_at).asc())
    )
    subjects = list((await db.execute(stmt)).scalars().all())

    requeued = 0
    for subject_id in subjects:
        if await enqueue(db, subject_id, enqueued_by=enqueued_by, now=now) is not None:
            requeued += 1
    if requeued:
        logger.info("Requeued %d stale subjects", requeued)
    return requeued
