"""Append-only audit trail and the hook that feeds severe events into the ban ladder."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence

import ulid

from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.errors import ValidationError
from warden.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


SEVERE = frozenset({Severity.ERROR, Severity.CRITICAL})

# Events the engine writes about its own decisions. They never count as violations,
# otherwise each ban would push the subject further up the ladder.
ENGINE_EVENT_TYPES = frozenset(
    {
        "profile_auto_banned",
        "profile_manually_banned",
        "profile_unbanned",
        "ban_expired",
        "auto_ban_skipped",
        "ip_banned",
        "ip_unbanned",
        "flag_created",
        "flag_create_skipped",
        "flag_claimed",
        "flag_resolved",
        "flag_auto_resolved",
        "flag_escalated",
    }
)


def counts_toward_bans(event_type: str) -> bool:
    return event_type not in ENGINE_EVENT_TYPES


def is_violation_type(event_type: str) -> bool:
    return "violation" in event_type and counts_toward_bans(event_type)


@dataclass(frozen=True, slots=True)
class AuditEvent:
    id: str
    subject_id: str
    event_type: str
    severity: Severity
    created_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)
    ip: Optional[str] = None
    device_id: Optional[str] = None


class AuditRepository(Protocol):
    async def append(self, event: AuditEvent) -> AuditEvent:
        ...

    async def count_severe(self, subject_id: str, *, since: datetime, until: datetime) -> int:
        """Error/critical events in (since, until], engine events excluded."""

    async def count_violations(self, subject_id: str, *, since: datetime, until: datetime) -> int:
        """Violation-typed events of any severity in (since, until], engine events excluded."""

    async def count_type(self, subject_id: str, event_type: str, *, since: datetime, until: datetime) -> int:
        ...

    async def list_for_subject(self, subject_id: str, *, limit: int = 50) -> Sequence[AuditEvent]:
        ...

    async def subjects_with_severe_since(self, since: datetime, *, limit: int = 500) -> Sequence[str]:
        ...

    async def purge(self, severities: Sequence[Severity], *, before: datetime) -> int:
        ...


class InMemoryAuditRepository:
    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()

    async def append(self, event: AuditEvent) -> AuditEvent:
        async with self._lock:
            self._events.append(event)
        return event

    def _window(self, subject_id: str, since: datetime, until: datetime) -> list[AuditEvent]:
        return [e for e in self._events if e.subject_id == subject_id and since < e.created_at <= until]

    async def count_severe(self, subject_id: str, *, since: datetime, until: datetime) -> int:
        return sum(
            1
            for e in self._window(subject_id, since, until)
            if e.severity in SEVERE and counts_toward_bans(e.event_type)
        )

    async def count_violations(self, subject_id: str, *, since: datetime, until: datetime) -> int:
        return sum(1 for e in self._window(subject_id, since, until) if is_violation_type(e.event_type))

    async def count_type(self, subject_id: str, event_type: str, *, since: datetime, until: datetime) -> int:
        return sum(1 for e in self._window(subject_id, since, until) if e.event_type == event_type)

    async def list_for_subject(self, subject_id: str, *, limit: int = 50) -> Sequence[AuditEvent]:
        matches = [e for e in self._events if e.subject_id == subject_id]
        matches.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return matches[:limit]

    async def subjects_with_severe_since(self, since: datetime, *, limit: int = 500) -> Sequence[str]:
        subjects: list[str] = []
        for event in self._events:
            if event.created_at <= since or event.severity not in SEVERE:
                continue
            if not counts_toward_bans(event.event_type) or event.subject_id in subjects:
                continue
            subjects.append(event.subject_id)
        return sorted(subjects)[:limit]

    async def purge(self, severities: Sequence[Severity], *, before: datetime) -> int:
        wanted = set(severities)
        async with self._lock:
            kept = [e for e in self._events if not (e.severity in wanted and e.created_at < before)]
            removed = len(self._events) - len(kept)
            self._events = kept
        return removed


BanTrigger = Callable[..., Awaitable[object]]


class AuditLog:
    """Writes audit events; error/critical events re-evaluate the subject's ban ladder."""

    def __init__(self, repository: AuditRepository, *, ban_trigger: BanTrigger | None = None) -> None:
        self._repository = repository
        self._ban_trigger = ban_trigger

    @property
    def repository(self) -> AuditRepository:
        return self._repository

    def bind_ban_trigger(self, trigger: BanTrigger | None) -> None:
        self._ban_trigger = trigger

    async def log(
        self,
        subject_id: str,
        event_type: str,
        severity: Severity | str,
        details: Mapping[str, Any] | None = None,
        *,
        ctx: RequestContext | None = None,
        now: datetime | None = None,
    ) -> AuditEvent:
        event = await self.record(subject_id, event_type, severity, details, ctx=ctx, now=now)
        if event.severity in SEVERE and counts_toward_bans(event.event_type) and self._ban_trigger is not None:
            await self._ban_trigger(subject_id, event_type, now=event.created_at, ctx=ctx)
        return event

    async def record(
        self,
        subject_id: str,
        event_type: str,
        severity: Severity | str,
        details: Mapping[str, Any] | None = None,
        *,
        ctx: RequestContext | None = None,
        now: datetime | None = None,
    ) -> AuditEvent:
        """Append without touching the ban ladder."""
        if not subject_id or not str(subject_id).strip():
            raise ValidationError("subject_id_required")
        if not event_type or not str(event_type).strip():
            raise ValidationError("event_type_required")
        try:
            level = Severity(severity)
        except ValueError:
            raise ValidationError(f"invalid_severity:{severity}") from None
        event = AuditEvent(
            id=ulid.new().str,
            subject_id=str(subject_id),
            event_type=str(event_type),
            severity=level,
            created_at=now or datetime.now(timezone.utc),
            details=dict(details or {}),
            ip=ctx.ip if ctx else None,
            device_id=ctx.device_id if ctx else None,
        )
        stored = await self._repository.append(event)
        obs_metrics.inc_audit_event(level.value)
        logger.log(
            _LOG_LEVELS[level],
            "audit_event",
            extra={"event_type": event.event_type, "audit_subject": event.subject_id, "severity": level.value},
        )
        return stored

    async def count_severe(self, subject_id: str, *, since: datetime, until: datetime) -> int:
        return await self._repository.count_severe(subject_id, since=since, until=until)

    async def count_violations(self, subject_id: str, *, since: datetime, until: datetime) -> int:
        return await self._repository.count_violations(subject_id, since=since, until=until)

    async def count_type(self, subject_id: str, event_type: str, *, since: datetime, until: datetime) -> int:
        return await self._repository.count_type(subject_id, event_type, since=since, until=until)

    async def list_for_subject(self, subject_id: str, *, limit: int = 50) -> Sequence[AuditEvent]:
        return await self._repository.list_for_subject(subject_id, limit=limit)

    async def subjects_with_severe_since(self, since: datetime, *, limit: int = 500) -> Sequence[str]:
        return await self._repository.subjects_with_severe_since(since, limit=limit)


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}
