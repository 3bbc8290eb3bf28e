# tests/test_schedules.py
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from jobs import schedules
from jobs.clock import as_utc
from jobs.errors import (
    DuplicateScheduledJobName,
    InvalidPriority,
    InvalidRecurrenceExpression,
    ScheduledJobNotFound,
)


@pytest.mark.asyncio
async def test_create_computes_next_run(db, t0):
    job = await schedules.create_scheduled_job(
        db, "hourly-golang", "golang", "@every 1h", priority=30, created_by="admin_abc", now=t0
    )

    assert job.enabled is True
    assert job.last_run_at is None
    assert as_utc(job.next_run_at) == t0 + timedelta(hours=1)
    assert job.created_by == "admin_abc"


@pytest.mark.asyncio
async def test_create_rejects_bad_input(db, t0):
    with pytest.raises(InvalidRecurrenceExpression):
        await schedules.create_scheduled_job(db, "bad", "golang", "0 * * * *", now=t0)
    with pytest.raises(InvalidPriority):
        await schedules.create_scheduled_job(db, "bad", "golang", "@daily", priority=500, now=t0)

    await schedules.create_scheduled_job(db, "taken", "golang", "@daily", now=t0)
    with pytest.raises(DuplicateScheduledJobName):
        await schedules.create_scheduled_job(db, "taken", "rust", "@daily", now=t0)


@pytest.mark.asyncio
async def test_update_recomputes_next_run_from_reference(db, t0):
    job = await schedules.create_scheduled_job(db, "s", "golang", "@every 1h", now=t0)

    updated = await schedules.update_scheduled_job(db, job.id, cron_expression="@every 3h", priority=10)

    assert updated.cron_expression == "@every 3h"
    assert updated.priority == 10
    assert as_utc(updated.next_run_at) == t0 + timedelta(hours=3)


@pytest.mark.asyncio
async def test_update_validates(db, t0):
    a = await schedules.create_scheduled_job(db, "a", "golang", "@daily", now=t0)
    await schedules.create_scheduled_job(db, "b", "golang", "@daily", now=t0)

    with pytest.raises(InvalidRecurrenceExpression):
        await schedules.update_scheduled_job(db, a.id, cron_expression="@sometimes")
    with pytest.raises(DuplicateScheduledJobName):
        await schedules.update_scheduled_job(db, a.id, name="b")
    with pytest.raises(TypeError):
        await schedules.update_scheduled_job(db, a.id, next_run_at=t0)
    with pytest.raises(ScheduledJobNotFound):
        await schedules.update_scheduled_job(db, uuid.uuid4(), priority=1)


@pytest.mark.asyncio
async def test_toggle_and_delete(db, t0):
    job = await schedules.create_scheduled_job(db, "s", "golang", "@daily", now=t0)

    assert (await schedules.toggle_scheduled_job(db, job.id)).enabled is False
    assert (await schedules.toggle_scheduled_job(db, job.id)).enabled is True
    assert (await schedules.toggle_scheduled_job(db, job.id, enabled=False)).enabled is False

    await schedules.delete_scheduled_job(db, job.id)
    with pytest.raises(ScheduledJobNotFound):
        await schedules.get_scheduled_job(db, job.id)
    with pytest.raises(ScheduledJobNotFound):
        await schedules.delete_scheduled_job(db, job.id)


@pytest.mark.asyncio
async def test_list_due_skips_disabled_and_future(db, t0):
    due = await schedules.create_scheduled_job(db, "due", "a", "@every 1h", now=t0)
    disabled = await schedules.create_scheduled_job(db, "off", "b", "@every 1h", enabled=False, now=t0)
    await schedules.create_scheduled_job(db, "later", "c", "@every 5h", now=t0)

    found = await schedules.list_due_scheduled_jobs(db, now=t0 + timedelta(hours=2))

    assert [j.id for j in found] == [due.id]
    assert disabled.id not in {j.id for j in found}
    assert len(await schedules.list_scheduled_jobs(db)) == 3


@pytest.mark.asyncio
async def test_record_run_advances_once(db, t0):
    await schedules.create_scheduled_job(db, "s", "golang", "@every 1h", now=t0)
    fire_at = t0 + timedelta(hours=1, minutes=5)
    (job,) = await schedules.list_due_scheduled_jobs(db, now=fire_at)

    next_run_at = await schedules.record_run(db, job, now=fire_at)
    assert next_run_at == fire_at + timedelta(hours=1)

    # a second runner holding the stale row loses
    assert await schedules.record_run(db, job, now=fire_at) is None

    refreshed = await schedules.get_scheduled_job(db, job.id)
    assert as_utc(refreshed.last_run_at) == fire_at
    assert as_utc(refreshed.next_run_at) == fire_at + timedelta(hours=1)


@pytest.mark.asyncio
async def test_oversized_interval_is_a_validation_error(db, t0):
    with pytest.raises(InvalidRecurrenceExpression):
        await schedules.create_scheduled_job(db, "huge", "golang", "@every 99999999999d", now=t0)
    with pytest.raises(InvalidRecurrenceExpression):
        await schedules.create_scheduled_job(db, "huge", "golang", "@every 999999999d", now=t0)

    job = await schedules.create_scheduled_job(db, "ok", "golang", "@daily", now=t0)
    with pytest.raises(InvalidRecurrenceExpression):
        await schedules.update_scheduled_job(db, job.id, cron_expression="@every 999999999d")
    assert job.cron_expression == "@daily"


@pytest.mark.asyncio
async def test_next_run_past_the_calendar_is_a_validation_error(db):
    late = datetime(9999, 6, 1, tzinfo=timezone.utc)

    with pytest.raises(InvalidRecurrenceExpression):
        await schedules.create_scheduled_job(db, "yearly", "golang", "@yearly", now=late)
    with pytest.raises(InvalidRecurrenceExpression):
        await schedules.create_scheduled_job(db, "every", "golang", "@every 3650d", now=late)
