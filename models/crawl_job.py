# models/crawl_job.py
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin, UUIDPrimaryKey

# queued | running | success | failed
JOB_STATUSES = ("queued", "running", "success", "failed")
ACTIVE_STATUSES = ("queued", "running")
TERMINAL_STATUSES = ("success", "failed")

MIN_PRIORITY = 0
MAX_PRIORITY = 100
DEFAULT_MAX_RETRIES = 3

_ACTIVE_WHERE = text("status IN ('queued', 'running')")


class CrawlJob(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "crawl_jobs"
    __table_args__ = (
        # at most one queued-or-running job per subject
        Index(
            "uq_crawl_jobs_active_subject",
            "subject_id",
            unique=True,
            postgresql_where=_ACTIVE_WHERE,
            sqlite_where=_ACTIVE_WHERE,
        ),
        Index("ix_crawl_jobs_claim", "status", "priority", "created_at"),
        CheckConstraint("priority BETWEEN 0 AND 100", name="ck_crawl_jobs_priority_range"),
        CheckConstraint(
            "status IN ('queued', 'running', 'success', 'failed')", name="ck_crawl_jobs_status"
        ),
    )

    subject_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), default="queued", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=DEFAULT_MAX_RETRIES, nullable=False)
    visible_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # last time the aging sweeper boosted this job
    aged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enqueued_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
