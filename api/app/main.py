# api/app/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.app.exception_handlers import add_exception_handlers
from api.app.middleware.request_logging import RequestLoggingMiddleware
from api.app.routes import admin_jobs, health, scheduled_jobs
from db.engine import dispose_engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await dispose_engine()


app = FastAPI(
    title="Crawl Scheduler Admin API",
    description="Inspect and steer the crawl job queue and its recurring schedules",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
add_exception_handlers(app)

app.include_router(health.router)
app.include_router(admin_jobs.router, prefix="/v1")
app.include_router(scheduled_jobs.router, prefix="/v1")
