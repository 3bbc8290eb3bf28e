# api/app/schemas/scheduled_job.py
from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ScheduledJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None = None
    subject_id: str
    cron_expression: str
    enabled: bool
    priority: int
    last_run_at: datetime | None = None
    next_run_at: datetime
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class ScheduledJobCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    subject_id: str = Field(min_length=1, max_length=255)
    cron_expression: str
    enabled: bool = True
    priority: int = 0


class ScheduledJobUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    subject_id: str | None = Field(default=None, min_length=1, max_length=255)
    cron_expression: str | None = None
    enabled: bool | None = None
    priority: int | None = None


class ScheduledJobToggle(BaseModel):
    enabled: bool | None = None
