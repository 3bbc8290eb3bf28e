# scripts/seed_crawl_jobs.py
"""
Seed sample crawl jobs and a daily schedule for each sample subreddit.
Run: python scripts/seed_crawl_jobs.py
"""
from __future__ import annotations

import asyncio
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlalchemy import select

from db.engine import dispose_engine
from db.session import get_db
from jobs.queue import enqueue
from jobs.schedules import create_scheduled_job
from models.scheduled_job import ScheduledJob

SUBREDDITS = ["AskReddit", "programming", "golang", "webdev", "dataisbeautiful"]


async def seed():
    async for db in get_db():
        for name in SUBREDDITS:
            job = await enqueue(db, name, priority=50, enqueued_by="seed")
            if job:
                print(f"Enqueued crawl job {job.id} for r/{name}")
            else:
                print(f"r/{name} already has an active job")

            schedule_name = f"daily-{name.lower()}"
            stmt = select(ScheduledJob.id).where(ScheduledJob.name == schedule_name)
            if (await db.execute(stmt)).first() is not None:
                print(f"Scheduled job {schedule_name} already exists")
                continue

            scheduled = await create_scheduled_job(
                db,
                name=schedule_name,
                subject_id=name,
                cron_expression="@daily",
                description=f"Daily refresh of r/{name}",
                created_by="seed",
            )
            print(f"Created scheduled job {scheduled.name} next_run={scheduled.next_run_at.isoformat()}")

    await dispose_engine()
    print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed())
