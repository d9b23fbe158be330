"""
Per-user stage locks.

Stage evaluation for one user is serialized in-process with an asyncio.Lock.
When a Redis client is supplied, a Redis lock is held as well so evaluations
in other worker processes wait too.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.asyncio.client import Redis
from redis.exceptions import LockError, RedisError

from lifecycle.config import settings
from lifecycle.exceptions import StageLockTimeoutError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "lifecycle:stage-lock:"


class UserLockRegistry:
    """Hands out one lock per user id; unused locks are garbage collected."""

    def __init__(
        self,
        redis: Optional[Redis] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.redis = redis
        self.timeout_seconds = timeout_seconds or settings.stage_lock_timeout_seconds
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _local_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._local_lock(user_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise StageLockTimeoutError(user_id) from None

        try:
            if self.redis is None:
                yield
                return

            async with self._redis_lock(user_id):
                yield
        finally:
            lock.release()

    @asynccontextmanager
    async def _redis_lock(self, user_id: str) -> AsyncIterator[None]:
        redis_lock = self.redis.lock(
            f"{LOCK_KEY_PREFIX}{user_id}",
            timeout=self.timeout_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        try:
            acquired = await redis_lock.acquire()
        except RedisError as e:
            # Redis down: fall back to the in-process lock only
            logger.warning(f"Redis stage lock unavailable for {user_id}: {e}")
            redis_lock = None
            acquired = True

        if not acquired:
            raise StageLockTimeoutError(user_id)

        try:
            yield
        finally:
            if redis_lock is not None:
                try:
                    await redis_lock.release()
                except LockError as e:
                    logger.warning(f"Redis stage lock for {user_id} expired before release: {e}")


# Shared by every engine in this process unless one is injected.
stage_locks = UserLockRegistry()
