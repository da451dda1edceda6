"""PostgreSQL adapters for the content view and user reports."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

import asyncpg

from warden.infra.postgres import affected_rows
from warden.moderation.domain.content import ContentRecord, ContentStore, Cursor, Report, ReportRepository
from warden.moderation.infra.postgres_errors import translate_errors

_CONTENT_COLUMNS = (
    "content_ref, author_id, status, text, content_rating, duration_seconds, file_size_bytes, "
    "created_at, last_checked_at, risk, flagged"
)


def _row_to_content(row: asyncpg.Record) -> ContentRecord:
    return ContentRecord(
        content_ref=str(row["content_ref"]),
        author_id=row["author_id"],
        status=str(row["status"]),
        text=row["text"],
        content_rating=row["content_rating"],
        duration_seconds=row["duration_seconds"],
        file_size_bytes=row["file_size_bytes"],
        created_at=row["created_at"],
        last_checked_at=row["last_checked_at"],
        risk=row["risk"],
        flagged=bool(row["flagged"]),
    )


class PostgresContentStore(ContentStore):
    """Reads the collaborator-owned mod_content_item view; writes only scan bookkeeping."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_errors
    async def get(self, content_ref: str) -> Optional[ContentRecord]:
        row = await self._pool.fetchrow(
            f"SELECT {_CONTENT_COLUMNS} FROM mod_content_item WHERE content_ref = $1",
            content_ref,
        )
        return _row_to_content(row) if row else None

    @translate_errors
    async def list_scan_candidates(
        self,
        *,
        stale_before: datetime,
        limit: int,
        cursor: Optional[Cursor] = None,
    ) -> Sequence[ContentRecord]:
        cursor_at, cursor_ref = cursor if cursor is not None else (None, None)
        rows = await self._pool.fetch(
            f"""
            SELECT {_CONTENT_COLUMNS} FROM mod_content_item
            WHERE status = 'live'
              AND ((text IS NOT NULL AND btrim(text) <> '') OR duration_seconds IS NOT NULL OR file_size_bytes IS NOT NULL)
              AND (last_checked_at IS NULL OR last_checked_at < $1)
              AND ($2::timestamptz IS NULL OR (created_at, content_ref) < ($2::timestamptz, $3::text))
            ORDER BY created_at DESC, content_ref DESC
            LIMIT $4
            """,
            stale_before,
            cursor_at,
            cursor_ref,
            limit,
        )
        return [_row_to_content(row) for row in rows]

    @translate_errors
    async def mark_checked(self, content_ref: str, *, checked_at: datetime, risk: float, flagged: bool) -> None:
        await self._pool.execute(
            """
            UPDATE mod_content_item
            SET last_checked_at = $2, risk = $3, flagged = $4
            WHERE content_ref = $1
            """,
            content_ref,
            checked_at,
            risk,
            flagged,
        )

    @translate_errors
    async def set_status(self, content_ref: str, status: str) -> bool:
        result = await self._pool.execute(
            "UPDATE mod_content_item SET status = $2 WHERE content_ref = $1",
            content_ref,
            status,
        )
        return affected_rows(result) > 0


class PostgresReportRepository(ReportRepository):
    """Stores user reports in mod_report."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_errors
    async def add(self, report: Report) -> Report:
        await self._pool.execute(
            """
            INSERT INTO mod_report (id, content_ref, reporter_id, reason, state, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            report.id,
            report.content_ref,
            report.reporter_id,
            report.reason,
            report.state,
            report.created_at,
        )
        return report

    @translate_errors
    async def count_open(self, content_ref: str) -> int:
        value = await self._pool.fetchval(
            "SELECT COUNT(*) FROM mod_report WHERE content_ref = $1 AND state = 'open'",
            content_ref,
        )
        return int(value or 0)

    @translate_errors
    async def resolve_open(self, content_ref: str, *, resolved_at: datetime) -> int:
        result = await self._pool.execute(
            """
            UPDATE mod_report SET state = 'resolved', resolved_at = $2
            WHERE content_ref = $1 AND state = 'open'
            """,
            content_ref,
            resolved_at,
        )
        return affected_rows(result)
