# jobs/errors.py
"""
Errors surfaced by the job store, the recurrence parser and the crawl client.

Only validation errors reach admin callers. Anything raised while a job is
executing is caught by the worker loop and turned into a retry decision.
"""
from __future__ import annotations


class JobQueueError(Exception):
    """Base class for job queue errors."""


class JobNotFound(JobQueueError):
    def __init__(self, job_id) -> None:
        self.job_id = job_id
        super().__init__(f"Crawl job not found: {job_id}")


class ScheduledJobNotFound(JobQueueError):
    def __init__(self, scheduled_job_id) -> None:
        self.scheduled_job_id = scheduled_job_id
        super().__init__(f"Scheduled job not found: {scheduled_job_id}")


class DuplicateScheduledJobName(JobQueueError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Scheduled job name already in use: {name}")


class InvalidRecurrenceExpression(JobQueueError):
    def __init__(self, expression: str, reason: str = "unsupported expression") -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid recurrence expression {expression!r}: {reason}")


class InvalidPriority(JobQueueError):
    def __init__(self, value) -> None:
        self.value = value
        super().__init__(f"Priority must be an integer in [0, 100], got {value!r}")


class InvalidStatus(JobQueueError):
    def __init__(self, value) -> None:
        self.value = value
        super().__init__(f"Invalid job status: {value!r}")


class UpstreamThrottled(JobQueueError):
    """The upstream kept answering 429/5xx after every allowed attempt."""

    def __init__(self, retry_after: float | None = None, status_code: int | None = None) -> None:
        self.retry_after = retry_after
        self.status_code = status_code
        super().__init__(f"Upstream throttled (status={status_code}, retry_after={retry_after})")


class RateLimiterClosed(JobQueueError):
    def __init__(self) -> None:
        super().__init__("Rate limiter is closed")


class ActiveJobExists(JobQueueError):
    """Requeueing would give a subject a second queued-or-running job."""

    def __init__(self, subject_id: str, active_job_id=None) -> None:
        self.subject_id = subject_id
        self.active_job_id = active_job_id
        super().__init__(f"Subject {subject_id} already has an active job {active_job_id}")
