# tests/test_job_queue.py
"""
Tests for the crawl job store.

Runs against a throwaway SQLite file; the claim and enqueue statements are
the same ones used on PostgreSQL, minus row locking.
"""
from __future__ import annotations

import asyncio
import random
import uuid
from datetime import timedelta

import pytest

from jobs import queue
from jobs.clock import as_utc
from jobs.errors import ActiveJobExists, InvalidPriority, InvalidStatus, JobNotFound


async def _claim(session_factory, worker_id, now):
    async with session_factory() as db:
        job = await queue.claim_next(db, worker_id=worker_id, now=now)
        await db.commit()
        return job


@pytest.mark.asyncio
async def test_enqueue_creates_visible_queued_job(db, t0):
    job = await queue.enqueue(db, "golang", priority=20, enqueued_by="admin", now=t0)

    assert job is not None
    assert job.status == "queued"
    assert job.priority == 20
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert as_utc(job.visible_at) == t0

    claimed = await queue.claim_next(db, now=t0)
    assert claimed.id == job.id


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_while_active(db, t0):
    first = await queue.enqueue(db, "golang", now=t0)
    assert await queue.enqueue(db, "golang", priority=90, now=t0) is None

    await queue.claim_next(db, now=t0)
    assert await queue.enqueue(db, "golang", now=t0) is None

    await queue.mark_success(db, first.id, duration_ms=120, now=t0)
    again = await queue.enqueue(db, "golang", now=t0)
    assert again is not None
    assert again.id != first.id


@pytest.mark.asyncio
async def test_enqueue_rejects_out_of_range_priority(db, t0):
    with pytest.raises(InvalidPriority):
        await queue.enqueue(db, "golang", priority=101, now=t0)
    with pytest.raises(InvalidPriority):
        await queue.enqueue(db, "golang", priority=-1, now=t0)


@pytest.mark.asyncio
async def test_claim_orders_by_priority_then_age(db, t0):
    low = await queue.enqueue(db, "low", priority=10, now=t0)
    older = await queue.enqueue(db, "older", priority=50, now=t0 + timedelta(seconds=1))
    newer = await queue.enqueue(db, "newer", priority=50, now=t0 + timedelta(seconds=2))

    now = t0 + timedelta(minutes=1)
    order = [(await queue.claim_next(db, now=now)).id for _ in range(3)]

    assert order == [older.id, newer.id, low.id]
    assert await queue.claim_next(db, now=now) is None


@pytest.mark.asyncio
async def test_claim_marks_running_and_records_attempt(db, t0):
    job = await queue.enqueue(db, "golang", now=t0)
    now = t0 + timedelta(seconds=5)

    claimed = await queue.claim_next(db, worker_id="worker-a", now=now)

    assert claimed.id == job.id
    assert claimed.status == "running"
    assert as_utc(claimed.last_attempt_at) == now


@pytest.mark.asyncio
async def test_claim_on_empty_queue_returns_none(db, t0):
    assert await queue.claim_next(db, now=t0) is None


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(session_factory, t0):
    async with session_factory() as db:
        for i in range(4):
            await queue.enqueue(db, f"sub{i}", priority=i, now=t0)
        await db.commit()

    claims = await asyncio.gather(*(_claim(session_factory, f"w{i}", t0) for i in range(4)))
    claimed_ids = [job.id for job in claims if job is not None]

    assert len(claimed_ids) == len(set(claimed_ids))
    async with session_factory() as db:
        assert (await queue.stats(db))["running"] == len(claimed_ids)


@pytest.mark.asyncio
async def test_concurrent_claimers_drain_in_priority_order(session_factory, t0):
    specs = [("a", 10, 0), ("b", 80, 1), ("c", 50, 2), ("d", 80, 3), ("e", 0, 4), ("f", 50, 5), ("g", 95, 6)]
    async with session_factory() as db:
        ids = {}
        for subject, priority, offset in specs:
            job = await queue.enqueue(db, subject, priority=priority, now=t0 + timedelta(seconds=offset))
            ids[job.id] = subject
        await db.commit()

    expected = [s for s, _, _ in sorted(specs, key=lambda spec: (-spec[1], spec[2]))]
    now = t0 + timedelta(minutes=1)
    drained: list[str] = []

    for round_no in range(10):
        claims = await asyncio.gather(*(_claim(session_factory, f"w{round_no}-{i}", now) for i in range(3)))
        subjects = [ids[job.id] for job in claims if job is not None]
        if not subjects:
            break
        # each round takes the best remaining jobs, whoever wins which race
        assert sorted(subjects) == sorted(expected[len(drained):len(drained) + len(subjects)])
        drained.extend(sorted(subjects, key=expected.index))

    assert drained == expected
    async with session_factory() as db:
        counts = await queue.stats(db)
        assert counts["running"] == len(specs)
        assert counts["queued"] == 0


@pytest.mark.asyncio
async def test_failure_schedules_backoff_then_exhausts(db, t0):
    rng = random.Random(7)
    job = await queue.enqueue(db, "AskReddit", max_retries=3, now=t0)
    now = t0

    for expected_retry in (1, 2, 3):
        claimed = await queue.claim_next(db, now=now)
        assert claimed.id == job.id

        decision = await queue.mark_failure(db, job.id, duration_ms=10, now=now, rng=rng)
        assert not decision.terminal
        assert decision.retry_count == expected_retry

        refreshed = await queue.get_job(db, job.id)
        assert refreshed.status == "queued"
        assert refreshed.retry_count == expected_retry
        assert as_utc(refreshed.visible_at) > now
        # invisible until the backoff elapses
        assert await queue.claim_next(db, now=now) is None

        now = decision.visible_at + timedelta(seconds=1)

    await queue.claim_next(db, now=now)
    decision = await queue.mark_failure(db, job.id, now=now, rng=rng)

    assert decision.terminal
    final = await queue.get_job(db, job.id)
    assert final.status == "failed"
    assert final.retry_count == 3


@pytest.mark.asyncio
async def test_failure_honors_upstream_retry_after(db, t0):
    job = await queue.enqueue(db, "golang", max_retries=3, now=t0)
    await queue.claim_next(db, now=t0)

    decision = await queue.mark_failure(db, job.id, now=t0, rng=random.Random(1), retry_after=3600)

    assert decision.visible_at == t0 + timedelta(seconds=3600)
    refreshed = await queue.get_job(db, job.id)
    assert as_utc(refreshed.visible_at) == t0 + timedelta(seconds=3600)
    assert refreshed.retry_count == 1
    assert await queue.claim_next(db, now=t0 + timedelta(minutes=59)) is None


@pytest.mark.asyncio
async def test_short_retry_after_keeps_backoff(db, t0):
    job = await queue.enqueue(db, "golang", max_retries=3, now=t0)
    await queue.claim_next(db, now=t0)

    decision = await queue.mark_failure(db, job.id, now=t0, rng=random.Random(1), retry_after=2)

    assert decision.visible_at - t0 >= timedelta(seconds=48)


@pytest.mark.asyncio
async def test_zero_retry_budget_fails_on_first_error(db, t0):
    job = await queue.enqueue(db, "golang", max_retries=0, now=t0)
    await queue.claim_next(db, now=t0)

    decision = await queue.mark_failure(db, job.id, now=t0)

    assert decision.terminal
    assert (await queue.get_job(db, job.id)).status == "failed"


@pytest.mark.asyncio
async def test_outcomes_only_apply_to_running_jobs(db, t0):
    job = await queue.enqueue(db, "golang", now=t0)

    assert await queue.mark_success(db, job.id, duration_ms=5, now=t0) is False
    assert await queue.mark_failure(db, job.id, now=t0) is None
    assert (await queue.get_job(db, job.id)).status == "queued"

    with pytest.raises(JobNotFound):
        await queue.mark_success(db, uuid.uuid4(), duration_ms=5)


@pytest.mark.asyncio
async def test_mark_success_records_duration(db, t0):
    job = await queue.enqueue(db, "golang", now=t0)
    await queue.claim_next(db, now=t0)

    assert await queue.mark_success(db, job.id, duration_ms=1234, now=t0) is True

    done = await queue.get_job(db, job.id)
    assert done.status == "success"
    assert done.duration_ms == 1234
    assert done.is_terminal


@pytest.mark.asyncio
async def test_update_priority_validates_range(db, t0):
    job = await queue.enqueue(db, "golang", now=t0)

    updated = await queue.update_priority(db, job.id, 75)
    assert updated.priority == 75

    with pytest.raises(InvalidPriority):
        await queue.update_priority(db, job.id, 150)
    with pytest.raises(JobNotFound):
        await queue.update_priority(db, uuid.uuid4(), 10)


@pytest.mark.asyncio
async def test_boost_priority_clamps(db, t0):
    job = await queue.enqueue(db, "golang", priority=95, now=t0)

    assert (await queue.boost_priority(db, job.id, 10)).priority == 100
    assert (await queue.boost_priority(db, job.id, -250)).priority == 0


@pytest.mark.asyncio
async def test_force_retry_resets_budget(db, t0):
    job = await queue.enqueue(db, "golang", max_retries=0, now=t0)
    await queue.claim_next(db, now=t0)
    await queue.mark_failure(db, job.id, now=t0)

    later = t0 + timedelta(hours=1)
    retried = await queue.force_retry(db, job.id, now=later)

    assert retried.status == "queued"
    assert retried.retry_count == 0
    assert as_utc(retried.visible_at) == later
    assert (await queue.claim_next(db, now=later)).id == job.id


@pytest.mark.asyncio
async def test_force_retry_refuses_second_active_job(db, t0):
    old = await queue.enqueue(db, "golang", max_retries=0, now=t0)
    await queue.claim_next(db, now=t0)
    await queue.mark_failure(db, old.id, now=t0)
    await queue.enqueue(db, "golang", now=t0)

    with pytest.raises(ActiveJobExists):
        await queue.force_retry(db, old.id, now=t0)


@pytest.mark.asyncio
async def test_update_status(db, t0):
    job = await queue.enqueue(db, "golang", now=t0)

    running = await queue.update_status(db, job.id, "running", now=t0)
    assert running.status == "running"
    assert as_utc(running.last_attempt_at) == t0

    assert (await queue.update_status(db, job.id, "failed", now=t0)).status == "failed"

    with pytest.raises(InvalidStatus):
        await queue.update_status(db, job.id, "paused")


@pytest.mark.asyncio
async def test_bulk_operations_count_successes(db, t0):
    a = await queue.enqueue(db, "a", now=t0)
    b = await queue.enqueue(db, "b", now=t0)

    updated = await queue.bulk_update_status(db, [a.id, b.id, uuid.uuid4()], "failed")
    assert updated == 2

    retried = await queue.bulk_force_retry(db, [a.id, uuid.uuid4()])
    assert retried == 1
    assert (await queue.get_job(db, a.id)).status == "queued"
    assert (await queue.get_job(db, b.id)).status == "failed"

    with pytest.raises(InvalidStatus):
        await queue.bulk_update_status(db, [a.id], "bogus")


@pytest.mark.asyncio
async def test_stats_and_listing(db, t0):
    a = await queue.enqueue(db, "a", priority=10, now=t0)
    b = await queue.enqueue(db, "b", priority=60, now=t0 + timedelta(seconds=1))
    c = await queue.enqueue(db, "c", priority=30, now=t0 + timedelta(seconds=2))
    await queue.claim_next(db, now=t0 + timedelta(minutes=1))

    counts = await queue.stats(db)
    assert counts == {"queued": 2, "running": 1, "success": 0, "failed": 0, "total": 3}

    queued = await queue.list_jobs(db, status="queued")
    assert [j.id for j in queued] == [c.id, a.id]

    everything = await queue.list_jobs(db)
    assert [j.id for j in everything] == [c.id, b.id, a.id]

    assert len(await queue.list_jobs(db, limit=1, offset=1)) == 1
    with pytest.raises(InvalidStatus):
        await queue.list_jobs(db, status="nope")


@pytest.mark.asyncio
async def test_aging_boosts_once_per_window(db, t0):
    starved = await queue.enqueue(db, "starved", priority=40, now=t0)
    fresh = await queue.enqueue(db, "fresh", priority=40, now=t0 + timedelta(minutes=90))
    capped = await queue.enqueue(db, "capped", priority=95, now=t0)

    now = t0 + timedelta(hours=2)
    assert await queue.age_starved_jobs(db, min_age=timedelta(hours=1), boost=10, now=now) == 2

    assert (await queue.get_job(db, starved.id)).priority == 50
    assert (await queue.get_job(db, fresh.id)).priority == 40
    assert (await queue.get_job(db, capped.id)).priority == 100

    # immediate re-run changes nothing
    assert await queue.age_starved_jobs(db, min_age=timedelta(hours=1), boost=10, now=now) == 0
    assert (await queue.get_job(db, starved.id)).priority == 50

    later = now + timedelta(hours=1)
    await queue.age_starved_jobs(db, min_age=timedelta(hours=1), boost=10, now=later)
    assert (await queue.get_job(db, starved.id)).priority == 60


@pytest.mark.asyncio
async def test_aging_ignores_running_jobs(db, t0):
    job = await queue.enqueue(db, "busy", priority=40, now=t0)
    await queue.claim_next(db, now=t0)

    assert await queue.age_starved_jobs(db, now=t0 + timedelta(hours=5)) == 0
    assert (await queue.get_job(db, job.id)).priority == 40


@pytest.mark.asyncio
async def test_reclaim_stuck_jobs_keeps_retry_count(db, t0):
    job = await queue.enqueue(db, "golang", now=t0)
    await queue.claim_next(db, now=t0)
    await queue.mark_failure(db, job.id, now=t0, rng=random.Random(1))
    retry_at = as_utc((await queue.get_job(db, job.id)).visible_at)
    await queue.claim_next(db, now=retry_at)

    threshold = timedelta(minutes=30)
    assert await queue.reclaim_stuck_jobs(db, threshold, now=retry_at + timedelta(minutes=10)) == 0

    now = retry_at + timedelta(minutes=31)
    assert await queue.reclaim_stuck_jobs(db, threshold, now=now) == 1

    reclaimed = await queue.get_job(db, job.id)
    assert reclaimed.status == "queued"
    assert reclaimed.retry_count == 1
    assert as_utc(reclaimed.visible_at) == now


@pytest.mark.asyncio
async def test_requeue_stale_subjects(db, t0):
    done = await queue.enqueue(db, "stale", now=t0)
    await queue.claim_next(db, now=t0)
    await queue.mark_success(db, done.id, duration_ms=1, now=t0)
    await queue.enqueue(db, "active", now=t0)

    ttl = timedelta(days=7)
    assert await queue.requeue_stale_subjects(db, ttl, now=t0 + timedelta(days=1)) == 0
    assert await queue.requeue_stale_subjects(db, ttl, now=t0 + timedelta(days=8)) == 1

    requeued = await queue.get_active_job(db, "stale")
    assert requeued.enqueued_by == "system-stale"
