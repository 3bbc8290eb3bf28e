# api/app/schemas/crawl_job.py
from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CrawlJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    subject_id: str
    status: str
    priority: int
    retry_count: int
    max_retries: int
    visible_at: datetime
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    duration_ms: int | None = None
    enqueued_by: str | None = None
    created_at: datetime
    updated_at: datetime


class JobStatsResponse(BaseModel):
    queued_count: int
    running_count: int
    failed_count: int
    completed_count: int
    total_count: int


class EnqueueRequest(BaseModel):
    subject_id: str = Field(min_length=1, max_length=255)
    priority: int = 0
    max_retries: int = Field(default=3, ge=0)


class EnqueueResponse(BaseModel):
    enqueued: bool
    job: CrawlJobResponse | None = None


class StatusUpdate(BaseModel):
    status: str


class PriorityUpdate(BaseModel):
    priority: int


class PriorityBoost(BaseModel):
    boost: int


class BulkStatusUpdate(BaseModel):
    job_ids: list[uuid.UUID]
    status: str


class BulkRetry(BaseModel):
    job_ids: list[uuid.UUID]


class BulkResult(BaseModel):
    ok: bool = True
    success_count: int
    total_count: int


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str
    level: str
    source: str | None = None
    message: str | None = None
    metadata: dict | None = Field(default=None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime
