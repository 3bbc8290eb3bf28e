# jobs/schedules.py
"""
Scheduled job persistence. Recurrence expressions are validated before
anything is written, and next_run_at is always derived from the expression
relative to last_run_at (or creation time if the job never ran).
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobs import cron
from jobs.clock import as_utc, utcnow
from jobs.errors import DuplicateScheduledJobName, InvalidRecurrenceExpression, ScheduledJobNotFound
from jobs.queue import validate_priority
from models.scheduled_job import ScheduledJob

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "subject_id", "cron_expression", "enabled", "priority")


async def get_scheduled_job(db: AsyncSession, scheduled_job_id: uuid.UUID) -> ScheduledJob:
    job = await db.get(ScheduledJob, scheduled_job_id, populate_existing=True)
    if job is None:
        raise ScheduledJobNotFound(scheduled_job_id)
    return job


def _next_run_at(schedule: cron.Schedule, expression: str, reference: datetime) -> datetime:
    try:
        return schedule.next_after(reference)
    except (OverflowError, ValueError) as exc:
        raise InvalidRecurrenceExpression(expression, "next run is out of range") from exc


async def _ensure_name_free(db: AsyncSession, name: str, exclude_id: uuid.UUID | None = None) -> None:
    stmt = select(ScheduledJob.id).where(ScheduledJob.name == name)
    if exclude_id is not None:
        stmt = stmt.where(ScheduledJob.id != exclude_id)
    if (await db.execute(stmt)).first() is not None:
        raise DuplicateScheduledJobName(name)


async def create_scheduled_job(
    db: AsyncSession,
    name: str,
    subject_id: str,
    cron_expression: str,
    description: str | None = None,
    enabled: bool = True,
    priority: int = 0,
    created_by: str | None = None,
    now: datetime | None = None,
) -> ScheduledJob:
    schedule = cron.parse(cron_expression)
    validate_priority(priority)
    await _ensure_name_free(db, name)

    now = now or utcnow()
    job = ScheduledJob(
        name=name,
        description=description,
        subject_id=subject_id,
        cron_expression=cron_expression.strip(),
        enabled=enabled,
        priority=priority,
        next_run_at=_next_run_at(schedule, cron_expression, now),
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    await db.flush()

    logger.info(
        "Created scheduled job %s (%s) cron=%r next_run=%s",
        job.id,
        name,
        job.cron_expression,
        job.next_run_at.isoformat(),
    )
    return job


async def update_scheduled_job(
    db: AsyncSession,
    scheduled_job_id: uuid.UUID,
    **fields,
) -> ScheduledJob:
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise TypeError(f"Unknown scheduled job fields: {sorted(unknown)}")

    job = await get_scheduled_job(db, scheduled_job_id)

    next_run_at = None
    if fields.get("cron_expression") is not None:
        fields["cron_expression"] = fields["cron_expression"].strip()
        schedule = cron.parse(fields["cron_expression"])
        reference = as_utc(job.last_run_at) or as_utc(job.created_at)
        next_run_at = _next_run_at(schedule, fields["cron_expression"], reference)
    if fields.get("priority") is not None:
        validate_priority(fields["priority"])
    if fields.get("name") is not None and fields["name"] != job.name:
        await _ensure_name_free(db, fields["name"], exclude_id=job.id)

    for field, value in fields.items():
        if value is not None or field == "description":
            setattr(job, field, value)

    if next_run_at is not None:
        job.next_run_at = next_run_at

    job.updated_at = utcnow()
    await db.flush()
    logger.info("Updated scheduled job %s fields=%s", job.id, sorted(fields))
    return job


async def delete_scheduled_job(db: AsyncSession, scheduled_job_id: uuid.UUID) -> None:
    result = await db.execute(delete(ScheduledJob).where(ScheduledJob.id == scheduled_job_id))
    if result.rowcount != 1:
        raise ScheduledJobNotFound(scheduled_job_id)
    logger.info("Deleted scheduled job %s", scheduled_job_id)


async def toggle_scheduled_job(
    db: AsyncSession,
    scheduled_job_id: uuid.UUID,
    enabled: bool | None = None,
) -> ScheduledJob:
    """Sets ``enabled``, or flips it when no value is given."""
    job = await get_scheduled_job(db, scheduled_job_id)
    job.enabled = (not job.enabled) if enabled is None else enabled
    job.updated_at = utcnow()
    await db.flush()
    logger.info("Scheduled job %s enabled=%s", job.id, job.enabled)
    return job


async def list_scheduled_jobs(db: AsyncSession, limit: int = 100, offset: int = 0) -> list[ScheduledJob]:
    stmt = (
        select(ScheduledJob)
        .order_by(ScheduledJob.next_run_at.asc())
        .limit(limit)
        .offset(offset)
    )
    return list((await db.execute(stmt)).scalars().all())


async def list_due_scheduled_jobs(db: AsyncSession, now: datetime | None = None) -> list[ScheduledJob]:
    now = now or utcnow()
    stmt = (
        select(ScheduledJob)
        .where(ScheduledJob.enabled.is_(True), ScheduledJob.next_run_at <= now)
        .order_by(ScheduledJob.priority.desc(), ScheduledJob.next_run_at.asc())
    )
    return list((await db.execute(stmt.execution_options(populate_existing=True))).scalars().all())


async def record_run(db: AsyncSession, job: ScheduledJob, now: datetime | None = None) -> datetime | None:
    """
    Moves last_run_at/next_run_at forward, conditional on next_run_at not
    having changed since ``job`` was read. Returns the new next_run_at, or
    None when another runner got there first.
    """
    now = now or utcnow()
    next_run_at = cron.next_run(job.cron_expression, now)

    result = await db.execute(
        update(ScheduledJob)
        .where(ScheduledJob.id == job.id, ScheduledJob.next_run_at == job.next_run_at)
        .values(last_run_at=now, next_run_at=next_run_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return next_run_at
