"""Per-subject mutual exclusion backed by Redis locks, for multi-process deployments."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import LockError, RedisError

from warden.moderation.domain.errors import TransientStoreError

logger = logging.getLogger(__name__)


class RedisSubjectLocks:
    def __init__(self, redis, *, timeout: float = 10.0, blocking_timeout: float = 5.0, prefix: str = "lock:ban") -> None:
        self._redis = redis
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, subject_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{self._prefix}:{subject_id}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise TransientStoreError() from exc
        if not acquired:
            raise TransientStoreError("subject_lock_timeout")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("subject lock lease expired before release", extra={"lock_subject": subject_id})
