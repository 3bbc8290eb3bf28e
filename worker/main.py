# worker/main.py
"""
Crawler process: worker loops that claim and execute crawl jobs, plus the
periodic maintenance tasks that keep the queue healthy.
"""
from __future__ import annotations

import asyncio
import logging
import os
import platform
import signal
import sys
import time
import uuid

# Ensure project root is on path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.app.config import get_settings
from db.engine import dispose_engine
from db.session import get_session_factory
from jobs.errors import UpstreamThrottled
from jobs.handlers import JobHandler, crawl_subject
from jobs.maintenance import build_maintenance_tasks
from jobs.queue import claim_next, mark_failure, mark_success
from services.crawl_client import CrawlClient
from services.observability import log_event
from services.rate_limiter import RateLimiter

logger = logging.getLogger("worker")


def new_worker_id() -> str:
    return f"worker-{platform.node()}-{uuid.uuid4().hex[:8]}"


class CrawlWorker:
    """
    Polls for work, one job at a time. Execution happens outside any
    transaction; outcome recording happens in a fresh one. Stopping lets
    the in-flight job finish before the loop exits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: CrawlClient,
        handler: JobHandler = crawl_subject,
        poll_interval: float = 5.0,
        worker_id: str | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.handler = handler
        self.poll_interval = poll_interval
        self.worker_id = worker_id or new_worker_id()
        self.stop_event = stop_event or asyncio.Event()

    def stop(self) -> None:
        self.stop_event.set()

    async def run(self) -> None:
        logger.info("Worker %s starting (poll=%.1fs)", self.worker_id, self.poll_interval)

        while not self.stop_event.is_set():
            processed = False
            try:
                processed = await self.run_once()
            except Exception as exc:
                logger.exception("Worker loop error: %s", exc)

            if processed:
                continue
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Worker %s stopped", self.worker_id)

    async def run_once(self) -> bool:
        """Claim and execute at most one job. Returns False when the queue had nothing visible."""
        async with self.session_factory() as db:
            job = await claim_next(db, worker_id=self.worker_id)
            await db.commit()

        if job is None:
            return False

        t0 = time.monotonic()
        error: Exception | None = None
        try:
            await self.handler(job, self.client)
        except Exception as exc:
            error = exc
        duration_ms = int((time.monotonic() - t0) * 1000)

        async with self.session_factory() as db:
            if error is None:
                await mark_success(db, job.id, duration_ms)
            else:
                logger.warning("Job %s subject=%s failed: %r", job.id, job.subject_id, error)
                retry_after = error.retry_after if isinstance(error, UpstreamThrottled) else None
                decision = await mark_failure(db, job.id, duration_ms=duration_ms, retry_after=retry_after)
                await log_event(
                    db,
                    "job_failed",
                    "error",
                    source=self.worker_id,
                    message=str(error),
                    metadata={
                        "job_id": str(job.id),
                        "subject_id": job.subject_id,
                        "error_type": type(error).__name__,
                        "retry_count": decision.retry_count if decision else job.retry_count,
                        "terminal": bool(decision and decision.terminal),
                    },
                )
                if decision is not None and decision.terminal:
                    await log_event(
                        db,
                        "job_exhausted",
                        "error",
                        source=self.worker_id,
                        metadata={"job_id": str(job.id), "subject_id": job.subject_id},
                    )
            await db.commit()

        return True


async def run_crawler() -> None:
    settings = get_settings()
    session_factory = get_session_factory()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    limiter = RateLimiter.from_settings(settings)
    client = CrawlClient.from_settings(settings, limiter)

    workers = [
        CrawlWorker(
            session_factory,
            client,
            poll_interval=settings.worker_poll_interval,
            stop_event=stop_event,
        )
        for _ in range(max(1, settings.worker_concurrency))
    ]
    tasks = build_maintenance_tasks(settings, session_factory, stop_event)

    logger.info(
        "Crawler starting: %d workers, %.2f req/s, %d maintenance tasks",
        len(workers),
        settings.crawler_rps,
        len(tasks),
    )
    try:
        await asyncio.gather(*(w.run() for w in workers), *(t.run() for t in tasks))
    finally:
        limiter.close()
        await client.aclose()
        await dispose_engine()
        logger.info("Crawler shut down")


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    asyncio.run(run_crawler())


if __name__ == "__main__":
    main()
