"""PostgreSQL persistence for moderation flags."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence

import asyncpg

from warden.infra.postgres import affected_rows
from warden.moderation.domain.flags import MAX_PRIORITY, FlagRepository, FlagState, ModerationFlag
from warden.moderation.infra.postgres_errors import translate_errors

_COLUMNS = (
    "id, content_ref, reasons, risk, source, priority, state, created_at, reviewed_at, reviewer_id, notes, escalated_at"
)
_OPEN = [FlagState.PENDING.value, FlagState.IN_REVIEW.value]


def _row_to_flag(row: asyncpg.Record) -> ModerationFlag:
    return ModerationFlag(
        id=str(row["id"]),
        content_ref=str(row["content_ref"]),
        reasons=tuple(row["reasons"] or ()),
        risk=float(row["risk"]),
        source=str(row["source"]),
        priority=int(row["priority"]),
        state=FlagState(str(row["state"])),
        created_at=row["created_at"],
        reviewed_at=row["reviewed_at"],
        reviewer_id=row["reviewer_id"],
        notes=row["notes"] or "",
        escalated_at=row["escalated_at"],
    )


class PostgresFlagRepository(FlagRepository):
    """Stores flags in mod_flag; a partial unique index keeps one open flag per content and source."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_errors
    async def insert_if_absent(self, flag: ModerationFlag) -> tuple[ModerationFlag, bool]:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO mod_flag (id, content_ref, reasons, risk, source, priority, state, created_at, notes)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (content_ref, source) WHERE state IN ('pending', 'in_review') DO NOTHING
            RETURNING {_COLUMNS}
            """,
            flag.id,
            flag.content_ref,
            list(flag.reasons),
            flag.risk,
            flag.source,
            flag.priority,
            flag.state.value,
            flag.created_at,
            flag.notes,
        )
        if row is not None:
            return _row_to_flag(row), True
        existing = await self._pool.fetchrow(
            f"""
            SELECT {_COLUMNS} FROM mod_flag
            WHERE content_ref = $1 AND source = $2 AND state = ANY($3::text[])
            """,
            flag.content_ref,
            flag.source,
            _OPEN,
        )
        if existing is None:  # pragma: no cover - the conflicting row was resolved in between
            raise RuntimeError("flag conflict without an open flag")
        return _row_to_flag(existing), False

    @translate_errors
    async def get(self, flag_id: str) -> Optional[ModerationFlag]:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM mod_flag WHERE id = $1", flag_id)
        return _row_to_flag(row) if row else None

    @translate_errors
    async def list_open(self, content_ref: str) -> Sequence[ModerationFlag]:
        rows = await self._pool.fetch(
            f"SELECT {_COLUMNS} FROM mod_flag WHERE content_ref = $1 AND state = ANY($2::text[])",
            content_ref,
            _OPEN,
        )
        return [_row_to_flag(row) for row in rows]

    @translate_errors
    async def list_queue(self, *, limit: int = 50) -> Sequence[ModerationFlag]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM mod_flag
            WHERE state = ANY($1::text[])
            ORDER BY priority DESC, created_at, id
            LIMIT $2
            """,
            _OPEN,
            limit,
        )
        return [_row_to_flag(row) for row in rows]

    @translate_errors
    async def list_auto_resolve_candidates(
        self, *, created_before: datetime, max_risk: float, limit: int
    ) -> Sequence[ModerationFlag]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM mod_flag f
            WHERE f.state = 'pending'
              AND f.risk < $1
              AND f.created_at <= $2
              AND NOT EXISTS (
                  SELECT 1 FROM mod_report r WHERE r.content_ref = f.content_ref AND r.state = 'open'
              )
            ORDER BY f.created_at, f.id
            LIMIT $3
            """,
            max_risk,
            created_before,
            limit,
        )
        return [_row_to_flag(row) for row in rows]

    @translate_errors
    async def list_auto_escalate_candidates(
        self, *, created_before: datetime, escalated_before: datetime, min_risk: float, limit: int
    ) -> Sequence[ModerationFlag]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM mod_flag
            WHERE state = 'pending'
              AND risk >= $1
              AND priority < $2
              AND created_at <= $3
              AND (escalated_at IS NULL OR escalated_at <= $4)
            ORDER BY created_at, id
            LIMIT $5
            """,
            min_risk,
            MAX_PRIORITY,
            created_before,
            escalated_before,
            limit,
        )
        return [_row_to_flag(row) for row in rows]

    @translate_errors
    async def transition(
        self,
        flag_id: str,
        *,
        from_states: Iterable[FlagState],
        to_state: FlagState,
        reviewed_at: Optional[datetime],
        reviewer_id: Optional[str],
        note: Optional[str] = None,
    ) -> Optional[ModerationFlag]:
        row = await self._pool.fetchrow(
            f"""
            UPDATE mod_flag
            SET state = $3,
                reviewed_at = $4,
                reviewer_id = $5,
                notes = CASE
                    WHEN $6::text IS NULL THEN notes
                    WHEN notes = '' THEN $6::text
                    ELSE notes || E'\\n' || $6::text
                END
            WHERE id = $1 AND state = ANY($2::text[])
            RETURNING {_COLUMNS}
            """,
            flag_id,
            [FlagState(s).value for s in from_states],
            to_state.value,
            reviewed_at,
            reviewer_id,
            note,
        )
        return _row_to_flag(row) if row else None

    @translate_errors
    async def bump_priority(
        self, flag_id: str, *, expected: int, new: int, note: str, escalated_at: datetime
    ) -> bool:
        result = await self._pool.execute(
            """
            UPDATE mod_flag
            SET priority = $3,
                escalated_at = $5,
                notes = CASE WHEN notes = '' THEN $4 ELSE notes || E'\\n' || $4 END
            WHERE id = $1 AND state = 'pending' AND priority = $2
            """,
            flag_id,
            expected,
            new,
            note,
            escalated_at,
        )
        return affected_rows(result) == 1

    @translate_errors
    async def purge_resolved(self, *, before: datetime) -> int:
        result = await self._pool.execute(
            "DELETE FROM mod_flag WHERE state = 'resolved' AND reviewed_at < $1",
            before,
        )
        return affected_rows(result)
