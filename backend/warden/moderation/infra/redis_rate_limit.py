"""Redis sorted-set storage for rate-limit events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import ulid
from redis.exceptions import RedisError

from warden.moderation.domain.errors import TransientStoreError

KEY_INDEX = "rl:keys"


def _score(at: datetime) -> float:
    return at.timestamp()


def _from_score(score: float) -> datetime:
    return datetime.fromtimestamp(float(score), tz=timezone.utc)


def _weight(member: str) -> int:
    _, _, raw = member.rpartition(":")
    try:
        return int(raw)
    except ValueError:
        return 1


class RedisRateLimitEventStore:
    """One sorted set per (action, subject); members are ``<ulid>:<weight>`` scored by epoch seconds."""

    def __init__(self, redis, *, ttl_seconds: int = 86400) -> None:
        self._redis = redis
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def key(subject_key: str, action: str) -> str:
        return f"rl:{action}:{subject_key}"

    async def append(self, subject_key: str, action: str, at: datetime, *, weight: int = 1) -> None:
        key = self.key(subject_key, action)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zadd(key, {f"{ulid.new().str}:{int(weight)}": _score(at)})
                pipe.expire(key, self._ttl_seconds)
                pipe.sadd(KEY_INDEX, key)
                await pipe.execute()
        except RedisError as exc:
            raise TransientStoreError() from exc

    async def count_between(self, subject_key: str, action: str, since: datetime, until: datetime) -> int:
        try:
            return int(await self._redis.zcount(self.key(subject_key, action), f"({_score(since)}", _score(until)))
        except RedisError as exc:
            raise TransientStoreError() from exc

    async def nth_between(
        self, subject_key: str, action: str, since: datetime, until: datetime, index: int
    ) -> Optional[datetime]:
        try:
            rows = await self._redis.zrangebyscore(
                self.key(subject_key, action),
                f"({_score(since)}",
                _score(until),
                start=index,
                num=1,
                withscores=True,
            )
        except RedisError as exc:
            raise TransientStoreError() from exc
        if not rows:
            return None
        return _from_score(rows[0][1])

    async def last_at(self, subject_key: str, action: str, until: datetime) -> Optional[datetime]:
        try:
            rows = await self._redis.zrevrangebyscore(
                self.key(subject_key, action),
                _score(until),
                "-inf",
                start=0,
                num=1,
                withscores=True,
            )
        except RedisError as exc:
            raise TransientStoreError() from exc
        if not rows:
            return None
        return _from_score(rows[0][1])

    async def weight_between(self, subject_key: str, action: str, since: datetime, until: datetime) -> int:
        try:
            members = await self._redis.zrangebyscore(
                self.key(subject_key, action), f"({_score(since)}", _score(until)
            )
        except RedisError as exc:
            raise TransientStoreError() from exc
        return sum(_weight(str(member)) for member in members)

    async def purge_before(self, before: datetime) -> int:
        removed = 0
        try:
            keys = await self._redis.smembers(KEY_INDEX)
            for key in keys:
                removed += int(await self._redis.zremrangebyscore(key, "-inf", f"({_score(before)}"))
                if not await self._redis.exists(key):
                    await self._redis.srem(KEY_INDEX, key)
        except RedisError as exc:
            raise TransientStoreError() from exc
        return removed
