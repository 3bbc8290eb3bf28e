# api/app/routes/admin_jobs.py
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import get_session, require_admin
from api.app.schemas.crawl_job import (
    BulkResult,
    BulkRetry,
    BulkStatusUpdate,
    CrawlJobResponse,
    EnqueueRequest,
    EnqueueResponse,
    EventResponse,
    JobStatsResponse,
    PriorityBoost,
    PriorityUpdate,
    StatusUpdate,
)
from jobs import queue
from services.observability import audit_admin_action, list_events

router = APIRouter(prefix="/admin", tags=["admin-jobs"])


@router.get("/jobs/stats", response_model=JobStatsResponse)
async def get_job_stats(
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    counts = await queue.stats(db)
    return JobStatsResponse(
        queued_count=counts["queued"],
        running_count=counts["running"],
        failed_count=counts["failed"],
        completed_count=counts["success"],
        total_count=counts["total"],
    )


@router.get("/jobs", response_model=list[CrawlJobResponse])
async def list_jobs(
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    jobs = await queue.list_jobs(db, status=status, limit=limit, offset=offset)
    return [CrawlJobResponse.model_validate(j) for j in jobs]


@router.post("/jobs", response_model=EnqueueResponse)
async def enqueue_job(
    body: EnqueueRequest,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    job = await queue.enqueue(
        db,
        body.subject_id,
        priority=body.priority,
        enqueued_by=actor,
        max_retries=body.max_retries,
    )
    await audit_admin_action(
        db, "enqueue_job", "crawl_job", str(job.id) if job else None, actor,
        {"subject_id": body.subject_id, "priority": body.priority, "enqueued": job is not None},
    )
    if job is None:
        return EnqueueResponse(enqueued=False)
    return EnqueueResponse(enqueued=True, job=CrawlJobResponse.model_validate(job))


@router.post("/jobs/bulk/status", response_model=BulkResult)
async def bulk_update_job_status(
    body: BulkStatusUpdate,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    updated = await queue.bulk_update_status(db, body.job_ids, body.status)
    await audit_admin_action(
        db, "bulk_update_job_status", "crawl_job", "bulk", actor,
        {"job_ids": [str(i) for i in body.job_ids], "new_status": body.status, "success_count": updated},
    )
    return BulkResult(success_count=updated, total_count=len(body.job_ids))


@router.post("/jobs/bulk/retry", response_model=BulkResult)
async def bulk_retry_jobs(
    body: BulkRetry,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    retried = await queue.bulk_force_retry(db, body.job_ids)
    await audit_admin_action(
        db, "bulk_retry_jobs", "crawl_job", "bulk", actor,
        {"job_ids": [str(i) for i in body.job_ids], "success_count": retried},
    )
    return BulkResult(success_count=retried, total_count=len(body.job_ids))


@router.get("/jobs/{job_id}", response_model=CrawlJobResponse)
async def get_job(
    job_id: uuid.UUID,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    return CrawlJobResponse.model_validate(await queue.get_job(db, job_id))


@router.put("/jobs/{job_id}/status", response_model=CrawlJobResponse)
async def update_job_status(
    job_id: uuid.UUID,
    body: StatusUpdate,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    job = await queue.update_status(db, job_id, body.status)
    await audit_admin_action(db, "update_job_status", "crawl_job", str(job_id), actor, {"new_status": body.status})
    return CrawlJobResponse.model_validate(job)


@router.put("/jobs/{job_id}/priority", response_model=CrawlJobResponse)
async def update_job_priority(
    job_id: uuid.UUID,
    body: PriorityUpdate,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    job = await queue.update_priority(db, job_id, body.priority)
    await audit_admin_action(db, "update_job_priority", "crawl_job", str(job_id), actor, {"new_priority": body.priority})
    return CrawlJobResponse.model_validate(job)


@router.post("/jobs/{job_id}/boost", response_model=CrawlJobResponse)
async def boost_job_priority(
    job_id: uuid.UUID,
    body: PriorityBoost,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    previous = (await queue.get_job(db, job_id)).priority
    job = await queue.boost_priority(db, job_id, body.boost)
    await audit_admin_action(
        db, "boost_job_priority", "crawl_job", str(job_id), actor,
        {"boost": body.boost, "previous_priority": previous, "new_priority": job.priority},
    )
    return CrawlJobResponse.model_validate(job)


@router.post("/jobs/{job_id}/retry", response_model=CrawlJobResponse)
async def retry_job(
    job_id: uuid.UUID,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    job = await queue.force_retry(db, job_id)
    await audit_admin_action(db, "retry_job", "crawl_job", str(job_id), actor)
    return CrawlJobResponse.model_validate(job)


@router.get("/audit-log", response_model=list[EventResponse])
async def get_audit_log(
    event_type: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    events = await list_events(db, event_type=event_type, limit=limit, offset=offset)
    return [EventResponse.model_validate(e) for e in events]
