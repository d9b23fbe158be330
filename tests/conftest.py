"""
Pytest configuration and fixtures.
"""

import sys
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Add app to path
sys.path.append(os.getcwd())

from lifecycle.database import Base
from lifecycle.fsm.states import STAGE_TRANSITION_ACTIVITY, EventSource
from lifecycle.models import ActivityLog, User
from lifecycle.services.event_store import build_event_metadata
from lifecycle.services.locks import UserLockRegistry

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite://"

# Wednesday; its ISO week starts on Monday 2026-03-16
NOW = datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create async engine for tests."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own BEGIN handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async_session = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def locks() -> UserLockRegistry:
    return UserLockRegistry(timeout_seconds=5)


@pytest.fixture
def make_user(db):
    """Insert a user; registered 30 days before NOW unless told otherwise."""

    async def _make_user(**fields) -> User:
        fields.setdefault("created_at", NOW - timedelta(days=30))
        user = User(**fields)
        db.add(user)
        await db.flush()
        return user

    return _make_user


@pytest.fixture
def add_event(db):
    """Insert a raw event row with the standard metadata layout."""

    async def _add_event(
        user_id: str,
        activity: str,
        created_at: datetime = NOW,
        data: dict = None,
        source: str = EventSource.USER_ACTION.value,
    ) -> ActivityLog:
        row = ActivityLog(
            user_id=user_id,
            activity=getattr(activity, "value", activity),
            description=f"test {getattr(activity, 'value', activity)}",
            event_metadata=build_event_metadata(data or {}, source),
            source=source,
            created_at=created_at,
        )
        db.add(row)
        await db.flush()
        return row

    return _add_event


@pytest.fixture
def add_transition(db):
    """Insert a STAGE_TRANSITION row directly."""

    async def _add_transition(
        user_id: str,
        from_stage,
        to_stage,
        created_at: datetime = NOW,
        days_in_previous_stage: int = 0,
        forced: bool = False,
        metadata=None,
    ) -> ActivityLog:
        if metadata is None:
            metadata = {
                "from_stage": getattr(from_stage, "value", from_stage),
                "to_stage": getattr(to_stage, "value", to_stage),
                "trigger_event": None,
                "trigger_event_id": None,
                "days_in_previous_stage": days_in_previous_stage,
                "timestamp": created_at.isoformat(),
                "forced": forced,
            }
        row = ActivityLog(
            user_id=user_id,
            activity=STAGE_TRANSITION_ACTIVITY,
            description="test transition",
            event_metadata=metadata,
            source=EventSource.SYSTEM_TRIGGER.value,
            created_at=created_at,
        )
        db.add(row)
        await db.flush()
        return row

    return _add_transition
