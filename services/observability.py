# services/observability.py
"""
Structured event logging to the events table.

Worker failures and every admin mutation land here in addition to the
process log, so operators can audit what happened to a job after the fact.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.event import Event

logger = logging.getLogger(__name__)


async def log_event(
    db: AsyncSession,
    event_type: str,
    level: str = "info",
    source: str | None = None,
    message: str | None = None,
    metadata: dict | None = None,
) -> Event:
    """Persist a structured event log entry."""
    event = Event(
        event_type=event_type,
        level=level,
        source=source,
        message=message,
        metadata_=metadata,
    )
    db.add(event)
    await db.flush()
    logger.log(
        getattr(logging, level.upper(), logging.INFO),
        "[%s] %s %s",
        event_type,
        message or "",
        metadata or {},
    )
    return event


async def audit_admin_action(
    db: AsyncSession,
    action: str,
    resource_type: str,
    resource_id: str | None,
    actor: str,
    details: dict | None = None,
) -> Event:
    return await log_event(
        db,
        f"admin.{action}",
        "info",
        source="admin-api",
        message=f"{actor} {action} {resource_type}:{resource_id}",
        metadata={
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "actor": actor,
            "details": details or {},
        },
    )


async def list_events(
    db: AsyncSession,
    event_type: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Event]:
    stmt = select(Event).order_by(Event.created_at.desc())
    if event_type is not None:
        stmt = stmt.where(Event.event_type == event_type)
    stmt = stmt.limit(limit).offset(offset)
    return list((await db.execute(stmt)).scalars().all())
