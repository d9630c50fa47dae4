# locker/services/calendar/sync_lock.py
"""Non-blocking per-user lock serializing sync passes across workers."""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import UUID

import redis
from redis.exceptions import LockError

from locker.config.redis import RedisKeys, get_redis
from locker.config.settings import get_settings

logger = logging.getLogger(__name__)


class UserSyncLock:
    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self._client = client
        self.ttl_seconds = ttl_seconds or get_settings().SYNC_LOCK_TTL_SECONDS

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    @contextmanager
    def hold(self, user_id: UUID) -> Iterator[bool]:
        """Yield True when the lock was taken, False when another pass holds it."""
        lock = self.client.lock(
            RedisKeys.SYNC_LOCK.format(user_id=user_id),
            timeout=self.ttl_seconds,
            blocking=False,
        )
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except LockError:
                    # TTL elapsed mid-pass; the cursor compare-and-set still guards the write
                    logger.warning(f"Sync lock for user {user_id} expired before release")
