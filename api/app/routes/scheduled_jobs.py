# api/app/routes/scheduled_jobs.py
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import get_session, require_admin
from api.app.schemas.scheduled_job import (
    ScheduledJobCreate,
    ScheduledJobResponse,
    ScheduledJobToggle,
    ScheduledJobUpdate,
)
from jobs import schedules
from services.observability import audit_admin_action

router = APIRouter(prefix="/admin/scheduled-jobs", tags=["admin-scheduled-jobs"])


@router.get("", response_model=list[ScheduledJobResponse])
async def list_scheduled_jobs(
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    jobs = await schedules.list_scheduled_jobs(db, limit=limit, offset=offset)
    return [ScheduledJobResponse.model_validate(j) for j in jobs]


@router.post("", response_model=ScheduledJobResponse, status_code=201)
async def create_scheduled_job(
    body: ScheduledJobCreate,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    job = await schedules.create_scheduled_job(
        db,
        name=body.name,
        subject_id=body.subject_id,
        cron_expression=body.cron_expression,
        description=body.description,
        enabled=body.enabled,
        priority=body.priority,
        created_by=actor,
    )
    await audit_admin_action(
        db, "create_scheduled_job", "scheduled_job", str(job.id), actor,
        {"name": job.name, "subject_id": job.subject_id, "cron_expression": job.cron_expression},
    )
    return ScheduledJobResponse.model_validate(job)


@router.get("/{scheduled_job_id}", response_model=ScheduledJobResponse)
async def get_scheduled_job(
    scheduled_job_id: uuid.UUID,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    return ScheduledJobResponse.model_validate(await schedules.get_scheduled_job(db, scheduled_job_id))


@router.put("/{scheduled_job_id}", response_model=ScheduledJobResponse)
async def update_scheduled_job(
    scheduled_job_id: uuid.UUID,
    body: ScheduledJobUpdate,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    changes = body.model_dump(exclude_unset=True)
    job = await schedules.update_scheduled_job(db, scheduled_job_id, **changes)
    await audit_admin_action(
        db, "update_scheduled_job", "scheduled_job", str(scheduled_job_id), actor,
        {"updates": changes},
    )
    return ScheduledJobResponse.model_validate(job)


@router.delete("/{scheduled_job_id}", status_code=204)
async def delete_scheduled_job(
    scheduled_job_id: uuid.UUID,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    await schedules.delete_scheduled_job(db, scheduled_job_id)
    await audit_admin_action(db, "delete_scheduled_job", "scheduled_job", str(scheduled_job_id), actor)


@router.post("/{scheduled_job_id}/toggle", response_model=ScheduledJobResponse)
async def toggle_scheduled_job(
    scheduled_job_id: uuid.UUID,
    body: ScheduledJobToggle | None = None,
    actor: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    job = await schedules.toggle_scheduled_job(
        db, scheduled_job_id, enabled=body.enabled if body is not None else None
    )
    await audit_admin_action(
        db, "toggle_scheduled_job", "scheduled_job", str(scheduled_job_id), actor,
        {"enabled": job.enabled},
    )
    return ScheduledJobResponse.model_validate(job)
