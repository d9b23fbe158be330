"""Shared FastAPI dependencies: admin auth and service construction."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.config import settings
from lifecycle.database import async_session_maker, get_db
from lifecycle.redis import get_optional_redis
from lifecycle.services.analytics_service import LifecycleAnalyticsService
from lifecycle.services.event_tracker import EventTracker
from lifecycle.services.lifecycle_service import UserLifecycleService


async def get_admin_user(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> str:
    """
    Validate the Admin Key header.
    Returns the key if valid, raises 401 otherwise.
    """
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing admin key",
        )

    valid_key = settings.admin_api_key
    if not valid_key or x_admin_key != valid_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )

    return x_admin_key


async def get_event_tracker(db: AsyncSession = Depends(get_db)) -> EventTracker:
    return EventTracker(db)


async def get_lifecycle_service(db: AsyncSession = Depends(get_db)) -> UserLifecycleService:
    return UserLifecycleService(
        db,
        session_factory=async_session_maker,
        redis=get_optional_redis(),
    )


async def get_analytics_service(db: AsyncSession = Depends(get_db)) -> LifecycleAnalyticsService:
    # Sections fan out over their own sessions when a factory is configured
    return LifecycleAnalyticsService(
        db=db,
        session_factory=async_session_maker,
        redis=get_optional_redis(),
    )
