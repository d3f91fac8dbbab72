"""
Shared FastAPI dependencies: session, pipeline, machine bearer keys and the
acting user supplied by the auth gateway.
"""
from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .services.pipeline import ReviewPipeline
from .settings import Settings, get_settings

security = HTTPBearer(auto_error=False)

SessionDep = Annotated[AsyncSession, Depends(get_session)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def get_pipeline(request: Request) -> ReviewPipeline:
    return request.app.state.pipeline


PipelineDep = Annotated[ReviewPipeline, Depends(get_pipeline)]


def _check_bearer(credentials: HTTPAuthorizationCredentials | None, expected: str | None) -> None:
    # Skip auth if no key configured (dev mode)
    if not expected:
        return
    if not credentials or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_review_sync_key(
    settings: SettingsDep,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    _check_bearer(credentials, settings.review_sync_api_key)


def require_cron_secret(
    settings: SettingsDep,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    _check_bearer(credentials, settings.cron_secret)


def get_actor(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """User id forwarded by the upstream auth gateway."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return x_user_id


ActorDep = Annotated[str, Depends(get_actor)]
