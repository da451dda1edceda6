"""PostgreSQL persistence for the audit trail."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Sequence

import asyncpg

from warden.infra.postgres import affected_rows
from warden.moderation.domain.audit import ENGINE_EVENT_TYPES, AuditEvent, AuditRepository, Severity
from warden.moderation.infra.postgres_errors import translate_errors

_EXCLUDED = sorted(ENGINE_EVENT_TYPES)


def _row_to_event(row: asyncpg.Record) -> AuditEvent:
    details = row["details"]
    return AuditEvent(
        id=str(row["id"]),
        subject_id=str(row["subject_id"]),
        event_type=str(row["event_type"]),
        severity=Severity(str(row["severity"])),
        created_at=row["created_at"],
        details=json.loads(details) if isinstance(details, str) else dict(details or {}),
        ip=row["ip"],
        device_id=row["device_id"],
    )


class PostgresAuditRepository(AuditRepository):
    """Stores audit events in mod_audit_event."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_errors
    async def append(self, event: AuditEvent) -> AuditEvent:
        await self._pool.execute(
            """
            INSERT INTO mod_audit_event (id, subject_id, event_type, severity, details, ip, device_id, created_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8)
            """,
            event.id,
            event.subject_id,
            event.event_type,
            event.severity.value,
            json.dumps(dict(event.details), default=str),
            event.ip,
            event.device_id,
            event.created_at,
        )
        return event

    @translate_errors
    async def count_severe(self, subject_id: str, *, since: datetime, until: datetime) -> int:
        value = await self._pool.fetchval(
            """
            SELECT COUNT(*) FROM mod_audit_event
            WHERE subject_id = $1
              AND created_at > $2 AND created_at <= $3
              AND severity IN ('error', 'critical')
              AND event_type <> ALL($4::text[])
            """,
            subject_id,
            since,
            until,
            _EXCLUDED,
        )
        return int(value or 0)

    @translate_errors
    async def count_violations(self, subject_id: str, *, since: datetime, until: datetime) -> int:
        value = await self._pool.fetchval(
            """
            SELECT COUNT(*) FROM mod_audit_event
            WHERE subject_id = $1
              AND created_at > $2 AND created_at <= $3
              AND event_type LIKE '%violation%'
              AND event_type <> ALL($4::text[])
            """,
            subject_id,
            since,
            until,
            _EXCLUDED,
        )
        return int(value or 0)

    @translate_errors
    async def count_type(self, subject_id: str, event_type: str, *, since: datetime, until: datetime) -> int:
        value = await self._pool.fetchval(
            """
            SELECT COUNT(*) FROM mod_audit_event
            WHERE subject_id = $1 AND event_type = $2 AND created_at > $3 AND created_at <= $4
            """,
            subject_id,
            event_type,
            since,
            until,
        )
        return int(value or 0)

    @translate_errors
    async def list_for_subject(self, subject_id: str, *, limit: int = 50) -> Sequence[AuditEvent]:
        rows = await self._pool.fetch(
            """
            SELECT id, subject_id, event_type, severity, details, ip, device_id, created_at
            FROM mod_audit_event
            WHERE subject_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2
            """,
            subject_id,
            limit,
        )
        return [_row_to_event(row) for row in rows]

    @translate_errors
    async def subjects_with_severe_since(self, since: datetime, *, limit: int = 500) -> Sequence[str]:
        rows = await self._pool.fetch(
            """
            SELECT DISTINCT subject_id FROM mod_audit_event
            WHERE created_at > $1
              AND severity IN ('error', 'critical')
              AND event_type <> ALL($2::text[])
            ORDER BY subject_id
            LIMIT $3
            """,
            since,
            _EXCLUDED,
            limit,
        )
        return [str(row["subject_id"]) for row in rows]

    @translate_errors
    async def purge(self, severities: Sequence[Severity], *, before: datetime) -> int:
        result = await self._pool.execute(
            "DELETE FROM mod_audit_event WHERE severity = ANY($1::text[]) AND created_at < $2",
            [Severity(s).value for s in severities],
            before,
        )
        return affected_rows(result)
