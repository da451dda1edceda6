from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
from redis.exceptions import LockError

from warden.infra import postgres
from warden.infra.postgres import affected_rows
from warden.moderation.domain.audit import Severity
from warden.moderation.domain.errors import TransientStoreError
from warden.moderation.domain.bans import IpBan
from warden.moderation.infra.postgres_audit import PostgresAuditRepository
from warden.moderation.infra.postgres_bans import PostgresIpBanRepository
from warden.moderation.infra.postgres_flags import PostgresFlagRepository
from warden.moderation.infra.redis_locks import RedisSubjectLocks

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class _StubLock:
    def __init__(self, acquired: bool = True, release_error: bool = False) -> None:
        self.acquired = acquired
        self.release_error = release_error
        self.released = False

    async def acquire(self) -> bool:
        return self.acquired

    async def release(self) -> None:
        self.released = True
        if self.release_error:
            raise LockError("lease expired")


class _StubRedis:
    def __init__(self, lock: _StubLock) -> None:
        self._lock = lock
        self.names: list[str] = []

    def lock(self, name: str, **kwargs) -> _StubLock:
        self.names.append(name)
        return self._lock


def test_affected_rows_parses_command_tags() -> None:
    assert affected_rows("DELETE 3") == 3
    assert affected_rows("UPDATE 0") == 0
    assert affected_rows("garbage") == 0


@pytest.mark.asyncio
async def test_redis_lock_is_scoped_per_subject_and_released() -> None:
    lock = _StubLock()
    redis = _StubRedis(lock)
    async with RedisSubjectLocks(redis).hold("u1"):
        pass
    assert redis.names == ["lock:ban:u1"]
    assert lock.released


@pytest.mark.asyncio
async def test_redis_lock_timeout_is_transient() -> None:
    with pytest.raises(TransientStoreError) as exc:
        async with RedisSubjectLocks(_StubRedis(_StubLock(acquired=False))).hold("u1"):
            pass
    assert exc.value.detail == "subject_lock_timeout"


@pytest.mark.asyncio
async def test_expired_lease_on_release_is_tolerated() -> None:
    lock = _StubLock(release_error=True)
    async with RedisSubjectLocks(_StubRedis(lock)).hold("u1"):
        pass
    assert lock.released


@pytest.mark.asyncio
async def test_postgres_audit_purge_reports_deleted_rows() -> None:
    pool = MagicMock()
    pool.execute = AsyncMock(return_value="DELETE 2")
    repo = PostgresAuditRepository(pool)

    removed = await repo.purge((Severity.INFO, Severity.WARNING), before=NOW)

    assert removed == 2
    args = pool.execute.await_args.args
    assert args[1] == ["info", "warning"]
    assert args[2] == NOW


@pytest.mark.asyncio
async def test_pool_can_be_injected_and_closed() -> None:
    pool = MagicMock()
    pool.close = AsyncMock()
    postgres.set_pool(pool)

    assert await postgres.get_pool() is pool

    await postgres.close_pool()
    pool.close.assert_awaited_once()
    postgres.set_pool(None)


@pytest.mark.asyncio
async def test_postgres_connection_loss_is_transient() -> None:
    pool = MagicMock()
    pool.fetchval = AsyncMock(side_effect=asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed"))
    repo = PostgresAuditRepository(pool)

    with pytest.raises(TransientStoreError) as exc:
        await repo.count_severe("u1", since=NOW, until=NOW)

    assert exc.value.status_code == 503
    assert isinstance(exc.value.__cause__, asyncpg.exceptions.ConnectionDoesNotExistError)


@pytest.mark.asyncio
async def test_postgres_refused_connection_is_transient() -> None:
    pool = MagicMock()
    pool.fetch = AsyncMock(side_effect=ConnectionRefusedError("refused"))

    with pytest.raises(TransientStoreError):
        await PostgresFlagRepository(pool).list_open("post:1")


@pytest.mark.asyncio
async def test_postgres_ip_ban_upsert_keeps_stored_reason_and_maps_row() -> None:
    pool = MagicMock()
    pool.fetchrow = AsyncMock(
        return_value={
            "ip_address": "10.0.0.7",
            "reason": "scraping",
            "banned_by": "staff-2",
            "banned_at": NOW,
            "expires_at": None,
            "is_active": True,
        }
    )
    repo = PostgresIpBanRepository(pool)

    ban = await repo.upsert(IpBan(ip_address="10.0.0.7", banned_by="staff-2", banned_at=NOW))

    assert ban.reason == "scraping" and ban.is_effective(NOW)
    sql = pool.fetchrow.await_args.args[0]
    assert "COALESCE(EXCLUDED.reason, mod_ip_ban.reason)" in sql
    assert pool.fetchrow.await_args.args[1:] == ("10.0.0.7", None, "staff-2", NOW, None)


@pytest.mark.asyncio
async def test_postgres_ip_unban_only_counts_active_rows() -> None:
    pool = MagicMock()
    pool.execute = AsyncMock(return_value="UPDATE 0")

    assert await PostgresIpBanRepository(pool).deactivate("10.0.0.7") is False
    assert "AND is_active" in pool.execute.await_args.args[0]
