"""PostgreSQL persistence for ban state, ban history and IP bans."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional, Sequence

import asyncpg

from warden.infra.postgres import affected_rows
from warden.moderation.domain.bans import BanHistoryEntry, BanRecord, BanRepository, BanType, IpBan, IpBanRepository
from warden.moderation.infra.postgres_errors import translate_errors

_RECORD_COLUMNS = "profile_id, is_banned, banned_at, banned_until, reason, ban_count, last_ban_at"
_HISTORY_COLUMNS = (
    "id, profile_id, ban_type, reason, duration_hours, issuer_id, banned_at, banned_until, lifted_at, lifted_by, details"
)


def _row_to_record(row: asyncpg.Record) -> BanRecord:
    return BanRecord(
        profile_id=str(row["profile_id"]),
        is_banned=bool(row["is_banned"]),
        banned_at=row["banned_at"],
        banned_until=row["banned_until"],
        reason=row["reason"],
        ban_count=int(row["ban_count"]),
        last_ban_at=row["last_ban_at"],
    )


def _row_to_entry(row: asyncpg.Record) -> BanHistoryEntry:
    details = row["details"]
    return BanHistoryEntry(
        id=str(row["id"]),
        profile_id=str(row["profile_id"]),
        ban_type=BanType(str(row["ban_type"])),
        reason=str(row["reason"]),
        duration_hours=row["duration_hours"],
        issuer_id=row["issuer_id"],
        banned_at=row["banned_at"],
        banned_until=row["banned_until"],
        lifted_at=row["lifted_at"],
        lifted_by=row["lifted_by"],
        details=json.loads(details) if isinstance(details, str) else dict(details or {}),
    )


class PostgresBanRepository(BanRepository):
    """Stores ban state in mod_ban and the immutable ledger in mod_ban_history."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_errors
    async def get(self, profile_id: str) -> Optional[BanRecord]:
        row = await self._pool.fetchrow(
            f"SELECT {_RECORD_COLUMNS} FROM mod_ban WHERE profile_id = $1",
            profile_id,
        )
        return _row_to_record(row) if row else None

    @translate_errors
    async def apply(self, record: BanRecord, entry: BanHistoryEntry) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO mod_ban (profile_id, is_banned, banned_at, banned_until, reason, ban_count, last_ban_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (profile_id) DO UPDATE SET
                        is_banned = EXCLUDED.is_banned,
                        banned_at = EXCLUDED.banned_at,
                        banned_until = EXCLUDED.banned_until,
                        reason = EXCLUDED.reason,
                        ban_count = EXCLUDED.ban_count,
                        last_ban_at = EXCLUDED.last_ban_at
                    """,
                    record.profile_id,
                    record.is_banned,
                    record.banned_at,
                    record.banned_until,
                    record.reason,
                    record.ban_count,
                    record.last_ban_at,
                )
                await conn.execute(
                    """
                    INSERT INTO mod_ban_history (
                        id, profile_id, ban_type, reason, duration_hours, issuer_id, banned_at, banned_until, details
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                    """,
                    entry.id,
                    entry.profile_id,
                    entry.ban_type.value,
                    entry.reason,
                    entry.duration_hours,
                    entry.issuer_id,
                    entry.banned_at,
                    entry.banned_until,
                    json.dumps(dict(entry.details), default=str),
                )

    @translate_errors
    async def clear(
        self,
        profile_id: str,
        *,
        lifted_at: datetime,
        lifted_by: Optional[str],
        expired_by: Optional[datetime] = None,
    ) -> bool:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE mod_ban
                    SET is_banned = FALSE, banned_until = NULL, reason = NULL
                    WHERE profile_id = $1
                      AND is_banned
                      AND ($2::timestamptz IS NULL OR (banned_until IS NOT NULL AND banned_until <= $2))
                    RETURNING profile_id
                    """,
                    profile_id,
                    expired_by,
                )
                if row is None:
                    return False
                await conn.execute(
                    """
                    UPDATE mod_ban_history
                    SET lifted_at = $2, lifted_by = $3
                    WHERE profile_id = $1 AND lifted_at IS NULL
                    """,
                    profile_id,
                    lifted_at,
                    lifted_by,
                )
        return True

    @translate_errors
    async def history(self, profile_id: str) -> Sequence[BanHistoryEntry]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_HISTORY_COLUMNS}
            FROM mod_ban_history
            WHERE profile_id = $1
            ORDER BY banned_at DESC, id DESC
            """,
            profile_id,
        )
        return [_row_to_entry(row) for row in rows]

    @translate_errors
    async def list_expired(self, now: datetime, *, limit: int = 500) -> Sequence[BanRecord]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM mod_ban
            WHERE is_banned AND banned_until IS NOT NULL AND banned_until <= $1
            ORDER BY banned_until, profile_id
            LIMIT $2
            """,
            now,
            limit,
        )
        return [_row_to_record(row) for row in rows]


_IP_COLUMNS = "host(ip_address) AS ip_address, reason, banned_by, banned_at, expires_at, is_active"


def _row_to_ip_ban(row: asyncpg.Record) -> IpBan:
    return IpBan(
        ip_address=str(row["ip_address"]),
        banned_by=str(row["banned_by"]),
        banned_at=row["banned_at"],
        reason=row["reason"],
        expires_at=row["expires_at"],
        is_active=bool(row["is_active"]),
    )


class PostgresIpBanRepository(IpBanRepository):
    """Stores network bans in mod_ip_ban, one row per address."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_errors
    async def get(self, ip_address: str) -> Optional[IpBan]:
        row = await self._pool.fetchrow(
            f"SELECT {_IP_COLUMNS} FROM mod_ip_ban WHERE ip_address = $1::inet",
            ip_address,
        )
        return _row_to_ip_ban(row) if row else None

    @translate_errors
    async def upsert(self, ban: IpBan) -> IpBan:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO mod_ip_ban (ip_address, reason, banned_by, banned_at, expires_at, is_active)
            VALUES ($1::inet, $2, $3, $4, $5, TRUE)
            ON CONFLICT (ip_address) DO UPDATE SET
                reason = COALESCE(EXCLUDED.reason, mod_ip_ban.reason),
                banned_by = EXCLUDED.banned_by,
                banned_at = EXCLUDED.banned_at,
                expires_at = EXCLUDED.expires_at,
                is_active = TRUE
            RETURNING {_IP_COLUMNS}
            """,
            ban.ip_address,
            ban.reason,
            ban.banned_by,
            ban.banned_at,
            ban.expires_at,
        )
        return _row_to_ip_ban(row)

    @translate_errors
    async def deactivate(self, ip_address: str) -> bool:
        result = await self._pool.execute(
            "UPDATE mod_ip_ban SET is_active = FALSE WHERE ip_address = $1::inet AND is_active",
            ip_address,
        )
        return affected_rows(result) > 0
