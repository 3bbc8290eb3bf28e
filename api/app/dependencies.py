# api/app/dependencies.py
from __future__ import annotations

import hashlib
import hmac
from collections.abc import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import Settings, get_settings
from db.session import get_db


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_db():
        yield session


def actor_label(token: str) -> str:
    """Stable audit label for a token that does not reveal any of it."""
    return f"admin_{hashlib.sha256(token.encode()).hexdigest()[:8]}"


async def require_admin(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Authenticate an admin by bearer token. Returns an actor label for the
    audit log derived from a hash of the token.
    """
    prefix = "Bearer "
    if not settings.admin_api_token or not authorization or not authorization.startswith(prefix):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid admin token",
        )

    token = authorization[len(prefix):]
    if not hmac.compare_digest(token, settings.admin_api_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid admin token",
        )
    return actor_label(token)
