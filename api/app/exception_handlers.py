# api/app/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from jobs.errors import (
    ActiveJobExists,
    DuplicateScheduledJobName,
    InvalidPriority,
    InvalidRecurrenceExpression,
    InvalidStatus,
    JobNotFound,
    ScheduledJobNotFound,
)

logger = logging.getLogger(__name__)

EXCEPTION_STATUS = {
    JobNotFound: 404,
    ScheduledJobNotFound: 404,
    InvalidPriority: 400,
    InvalidStatus: 400,
    InvalidRecurrenceExpression: 400,
    DuplicateScheduledJobName: 409,
    ActiveJobExists: 409,
}


def add_exception_handlers(app: FastAPI) -> None:
    for exception, status_code in EXCEPTION_STATUS.items():

        def handler(request, exc, status_code=status_code):
            logger.info(
                "%s %s rejected with %d: %s",
                request.method, request.url.path, status_code, exc,
            )
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        app.add_exception_handler(exception, handler)
