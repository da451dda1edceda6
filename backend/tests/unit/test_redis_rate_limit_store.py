from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from warden.infra.redis import redis_client
from warden.moderation.domain.errors import TransientStoreError
from warden.moderation.infra.redis_rate_limit import KEY_INDEX, RedisRateLimitEventStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class _DownRedis:
    async def zcount(self, *args, **kwargs):
        raise RedisConnectionError("down")

    async def zrangebyscore(self, *args, **kwargs):
        raise RedisConnectionError("down")

    def pipeline(self, *args, **kwargs):
        raise RedisConnectionError("down")


@pytest.mark.asyncio
async def test_counts_use_half_open_ranges() -> None:
    store = RedisRateLimitEventStore(redis_client)
    for offset in (0, 10, 20):
        await store.append("profile:u1", "post", NOW + timedelta(seconds=offset))

    assert await store.count_between("profile:u1", "post", NOW, NOW + timedelta(seconds=20)) == 2
    assert await store.count_between("profile:u1", "post", NOW - timedelta(seconds=1), NOW) == 1
    assert await store.nth_between(
        "profile:u1", "post", NOW - timedelta(seconds=1), NOW + timedelta(seconds=30), 1
    ) == NOW + timedelta(seconds=10)
    assert await store.nth_between("profile:u1", "post", NOW, NOW + timedelta(seconds=30), 5) is None


@pytest.mark.asyncio
async def test_last_at_ignores_future_events() -> None:
    store = RedisRateLimitEventStore(redis_client)
    await store.append("profile:u1", "follow", NOW)
    await store.append("profile:u1", "follow", NOW + timedelta(minutes=5))

    assert await store.last_at("profile:u1", "follow", NOW + timedelta(minutes=1)) == NOW
    assert await store.last_at("profile:u2", "follow", NOW) is None


@pytest.mark.asyncio
async def test_weight_between_sums_member_weights() -> None:
    store = RedisRateLimitEventStore(redis_client)
    await store.append("profile:u1", "weighted:query", NOW, weight=10)
    await store.append("profile:u1", "weighted:query", NOW, weight=5)
    await store.append("profile:u1", "weighted:query", NOW - timedelta(hours=2), weight=1)

    total = await store.weight_between("profile:u1", "weighted:query", NOW - timedelta(hours=1), NOW)
    assert total == 15


@pytest.mark.asyncio
async def test_append_sets_expiry_and_indexes_key(fake_redis) -> None:
    store = RedisRateLimitEventStore(redis_client, ttl_seconds=600)
    await store.append("profile:u1", "post", NOW)
    key = RedisRateLimitEventStore.key("profile:u1", "post")

    assert 0 < await fake_redis.ttl(key) <= 600
    assert await fake_redis.sismember(KEY_INDEX, key)


@pytest.mark.asyncio
async def test_purge_before_drops_old_events_and_empty_keys(fake_redis) -> None:
    store = RedisRateLimitEventStore(redis_client)
    await store.append("profile:u1", "post", NOW - timedelta(days=40))
    await store.append("profile:u1", "post", NOW)
    await store.append("profile:u2", "post", NOW - timedelta(days=45))

    removed = await store.purge_before(NOW - timedelta(days=30))

    assert removed == 2
    assert await store.count_between("profile:u1", "post", NOW - timedelta(days=60), NOW) == 1
    assert not await fake_redis.sismember(KEY_INDEX, RedisRateLimitEventStore.key("profile:u2", "post"))


@pytest.mark.asyncio
async def test_redis_errors_surface_as_transient() -> None:
    store = RedisRateLimitEventStore(_DownRedis())
    with pytest.raises(TransientStoreError):
        await store.count_between("profile:u1", "post", NOW - timedelta(minutes=1), NOW)
    with pytest.raises(TransientStoreError):
        await store.weight_between("profile:u1", "post", NOW - timedelta(minutes=1), NOW)
    with pytest.raises(TransientStoreError):
        await store.append("profile:u1", "post", NOW)
