# jobs/handlers.py
"""
Work performed once a crawl job has been claimed.

Handlers raise on any problem; the worker loop turns the exception into a
retry decision. Storing the fetched content is outside this repository.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from api.app.config import get_settings
from models.crawl_job import CrawlJob
from services.crawl_client import CrawlClient

logger = logging.getLogger(__name__)

JobHandler = Callable[[CrawlJob, CrawlClient], Awaitable[dict]]


async def crawl_subject(job: CrawlJob, client: CrawlClient) -> dict:
    limit = get_settings().max_posts_per_subject
    snapshot = await client.fetch_subject(job.subject_id, limit=limit)

    logger.info(
        "Crawled %s: subscribers=%s posts=%d (job %s)",
        snapshot.name,
        snapshot.subscribers,
        len(snapshot.post_ids),
        job.id,
    )
    return {
        "subject_id": job.subject_id,
        "subscribers": snapshot.subscribers,
        "posts": len(snapshot.post_ids),
    }
