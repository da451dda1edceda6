"""Ban escalation: ladder evaluation, manual bans, lazy expiry and IP bans."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Mapping, Optional, Protocol, Sequence

import ulid

from warden.moderation.domain.audit import AuditLog, Severity
from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.errors import ValidationError
from warden.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class BanType(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"


class BanOutcome(str, Enum):
    BANNED = "banned"
    ALREADY_BANNED = "already_banned"
    NO_ACTION = "no_action"


@dataclass(slots=True)
class BanRecord:
    profile_id: str
    is_banned: bool = False
    banned_at: Optional[datetime] = None
    banned_until: Optional[datetime] = None
    reason: Optional[str] = None
    ban_count: int = 0
    last_ban_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.is_banned and (self.banned_until is None or self.banned_until > now)

    def is_expired(self, now: datetime) -> bool:
        return self.is_banned and self.banned_until is not None and self.banned_until <= now


@dataclass(frozen=True, slots=True)
class BanHistoryEntry:
    id: str
    profile_id: str
    ban_type: BanType
    reason: str
    duration_hours: Optional[int]
    issuer_id: Optional[str]
    banned_at: datetime
    banned_until: Optional[datetime]
    lifted_at: Optional[datetime] = None
    lifted_by: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)


class BanRepository(Protocol):
    async def get(self, profile_id: str) -> Optional[BanRecord]:
        ...

    async def apply(self, record: BanRecord, entry: BanHistoryEntry) -> None:
        """Upsert the record and insert the history row atomically."""

    async def clear(
        self,
        profile_id: str,
        *,
        lifted_at: datetime,
        lifted_by: Optional[str],
        expired_by: Optional[datetime] = None,
    ) -> bool:
        """Lift the ban and close open history rows.

        With ``expired_by`` set, only lifts a ban whose ``banned_until`` is at or before it.
        Returns whether a ban was lifted.
        """

    async def history(self, profile_id: str) -> Sequence[BanHistoryEntry]:
        ...

    async def list_expired(self, now: datetime, *, limit: int = 500) -> Sequence[BanRecord]:
        ...


class InMemoryBanRepository:
    def __init__(self) -> None:
        self._records: dict[str, BanRecord] = {}
        self._history: list[BanHistoryEntry] = []

    async def get(self, profile_id: str) -> Optional[BanRecord]:
        record = self._records.get(profile_id)
        return replace(record) if record else None

    async def apply(self, record: BanRecord, entry: BanHistoryEntry) -> None:
        self._records[record.profile_id] = replace(record)
        self._history.append(entry)

    async def clear(
        self,
        profile_id: str,
        *,
        lifted_at: datetime,
        lifted_by: Optional[str],
        expired_by: Optional[datetime] = None,
    ) -> bool:
        record = self._records.get(profile_id)
        if record is None or not record.is_banned:
            return False
        if expired_by is not None and (record.banned_until is None or record.banned_until > expired_by):
            return False
        record.is_banned = False
        record.banned_until = None
        record.reason = None
        self._history = [
            replace(entry, lifted_at=lifted_at, lifted_by=lifted_by)
            if entry.profile_id == profile_id and entry.lifted_at is None
            else entry
            for entry in self._history
        ]
        return True

    async def history(self, profile_id: str) -> Sequence[BanHistoryEntry]:
        rows = [entry for entry in self._history if entry.profile_id == profile_id]
        rows.sort(key=lambda entry: (entry.banned_at, entry.id), reverse=True)
        return rows

    async def list_expired(self, now: datetime, *, limit: int = 500) -> Sequence[BanRecord]:
        expired = [replace(r) for r in self._records.values() if r.is_expired(now)]
        expired.sort(key=lambda r: (r.banned_until, r.profile_id))
        return expired[:limit]


@dataclass(frozen=True, slots=True)
class BanRung:
    name: str
    measure: str  # "severe" (error/critical events) or "violation" (violation-typed events)
    window: timedelta
    threshold: int
    duration_hours: Optional[int]  # None means permanent


DEFAULT_LADDER: tuple[BanRung, ...] = (
    BanRung("severe_7d_permanent", "severe", timedelta(days=7), 100, None),
    BanRung("severe_7d_week", "severe", timedelta(days=7), 50, 168),
    BanRung("violations_24h_day", "violation", timedelta(hours=24), 10, 24),
)


class SubjectLocks(Protocol):
    def hold(self, subject_id: str) -> AsyncContextManager[None]:
        ...


class InProcessSubjectLocks:
    """One asyncio lock per subject, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, subject_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(subject_id, asyncio.Lock())
        self._users[subject_id] = self._users.get(subject_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[subject_id] -= 1
            if self._users[subject_id] == 0:
                del self._users[subject_id]
                self._locks.pop(subject_id, None)


class BanNotifier(Protocol):
    async def ban_issued(self, record: BanRecord, entry: BanHistoryEntry) -> None:
        ...


class BanService:
    """Issues, lifts and evaluates bans; every outcome lands in the audit trail."""

    def __init__(
        self,
        repository: BanRepository,
        audit: AuditLog,
        *,
        ladder: Sequence[BanRung] = DEFAULT_LADDER,
        locks: SubjectLocks | None = None,
        notifier: BanNotifier | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._ladder = tuple(ladder)
        self._locks = locks or InProcessSubjectLocks()
        self._notifier = notifier

    @property
    def repository(self) -> BanRepository:
        return self._repository

    async def is_banned(self, profile_id: str, *, now: datetime | None = None) -> bool:
        """Return the current ban state, clearing a lapsed temporary ban on the way."""
        _require(profile_id, "profile_id")
        now = now or datetime.now(timezone.utc)
        record = await self._repository.get(profile_id)
        if record is None or not record.is_banned:
            return False
        if not record.is_expired(now):
            return True
        if await self._repository.clear(profile_id, lifted_at=now, lifted_by=None, expired_by=now):
            obs_metrics.inc_ban_lifted("expired")
            await self._audit.record(
                profile_id,
                "ban_expired",
                Severity.INFO,
                {"banned_until": record.banned_until.isoformat() if record.banned_until else None},
                now=now,
            )
        return False

    async def active_ban(self, profile_id: str, *, now: datetime | None = None) -> Optional[BanRecord]:
        now = now or datetime.now(timezone.utc)
        record = await self._repository.get(profile_id)
        if record is not None and record.is_active(now):
            return record
        return None

    async def check_and_auto_ban(
        self,
        profile_id: str,
        violation_type: str,
        *,
        now: datetime | None = None,
        ctx: RequestContext | None = None,
    ) -> bool:
        outcome = await self.evaluate(profile_id, violation_type, now=now, ctx=ctx)
        return outcome is not BanOutcome.NO_ACTION

    async def evaluate(
        self,
        profile_id: str,
        violation_type: str,
        *,
        now: datetime | None = None,
        ctx: RequestContext | None = None,
    ) -> BanOutcome:
        _require(profile_id, "profile_id")
        now = now or datetime.now(timezone.utc)
        async with self._locks.hold(profile_id):
            if await self.is_banned(profile_id, now=now):
                await self._audit.record(
                    profile_id,
                    "auto_ban_skipped",
                    Severity.INFO,
                    {"reason": "already_banned", "violation_type": violation_type},
                    ctx=ctx,
                    now=now,
                )
                return BanOutcome.ALREADY_BANNED

            rung, counts = await self._match_rung(profile_id, now)
            if rung is None:
                logger.debug("no ban rung matched", extra={"profile_id": profile_id, **counts})
                return BanOutcome.NO_ACTION

            details = {"rung": rung.name, "violation_type": violation_type, **counts}
            if rung.duration_hours is None:
                reason = f"Automated permanent ban: {counts['severe_7d']} severe events in 7 days"
            else:
                reason = f"Automated {rung.duration_hours}h ban: {rung.name}"
            await self._apply(
                profile_id,
                reason=reason,
                duration_hours=rung.duration_hours,
                issuer_id=None,
                now=now,
                details=details,
                event_type="profile_auto_banned",
                severity=Severity.CRITICAL,
                ctx=ctx,
            )
            return BanOutcome.BANNED

    async def _match_rung(self, profile_id: str, now: datetime) -> tuple[Optional[BanRung], dict[str, int]]:
        cache: dict[tuple[str, timedelta], int] = {}
        for rung in self._ladder:
            key = (rung.measure, rung.window)
            if key not in cache:
                since = now - rung.window
                if rung.measure == "severe":
                    cache[key] = await self._audit.count_severe(profile_id, since=since, until=now)
                else:
                    cache[key] = await self._audit.count_violations(profile_id, since=since, until=now)
        counts = {
            "severe_7d": cache.get(("severe", timedelta(days=7)), 0),
            "violations_24h": cache.get(("violation", timedelta(hours=24)), 0),
        }
        for rung in self._ladder:
            if cache[(rung.measure, rung.window)] >= rung.threshold:
                return rung, counts
        return None, counts

    async def ban(
        self,
        profile_id: str,
        issuer_id: str,
        reason: str,
        duration_hours: int | None = None,
        *,
        now: datetime | None = None,
        ctx: RequestContext | None = None,
    ) -> BanRecord:
        _require(profile_id, "profile_id")
        _require(issuer_id, "issuer_id")
        _require(reason, "reason")
        if duration_hours is not None and duration_hours <= 0:
            raise ValidationError("duration_hours_must_be_positive")
        now = now or datetime.now(timezone.utc)
        async with self._locks.hold(profile_id):
            existing = await self._repository.get(profile_id)
            superseded = existing is not None and existing.is_active(now)
            if superseded:
                await self._repository.clear(profile_id, lifted_at=now, lifted_by=issuer_id)
                obs_metrics.inc_ban_lifted("superseded")
            details: dict[str, Any] = {"banned_by": issuer_id, "superseded": superseded}
            if duration_hours is None:
                # No way to tell "meant permanent" from "forgot the duration"; surface it.
                details["duration_unspecified"] = True
                logger.warning(
                    "manual ban without duration treated as permanent",
                    extra={"profile_id": profile_id, "issuer_id": issuer_id},
                )
            return await self._apply(
                profile_id,
                reason=reason,
                duration_hours=duration_hours,
                issuer_id=issuer_id,
                now=now,
                details=details,
                event_type="profile_manually_banned",
                severity=Severity.ERROR,
                ctx=ctx,
            )

    async def unban(
        self,
        profile_id: str,
        issuer_id: str,
        reason: str | None = None,
        *,
        now: datetime | None = None,
        ctx: RequestContext | None = None,
    ) -> bool:
        _require(profile_id, "profile_id")
        _require(issuer_id, "issuer_id")
        now = now or datetime.now(timezone.utc)
        async with self._locks.hold(profile_id):
            lifted = await self._repository.clear(profile_id, lifted_at=now, lifted_by=issuer_id)
            if lifted:
                obs_metrics.inc_ban_lifted("manual")
            await self._audit.record(
                profile_id,
                "profile_unbanned",
                Severity.INFO,
                {"unbanned_by": issuer_id, "reason": reason, "was_banned": lifted},
                ctx=ctx,
                now=now,
            )
            return lifted

    async def history(self, profile_id: str) -> Sequence[BanHistoryEntry]:
        _require(profile_id, "profile_id")
        return await self._repository.history(profile_id)

    async def _apply(
        self,
        profile_id: str,
        *,
        reason: str,
        duration_hours: Optional[int],
        issuer_id: Optional[str],
        now: datetime,
        details: Mapping[str, Any],
        event_type: str,
        severity: Severity,
        ctx: RequestContext | None,
    ) -> BanRecord:
        existing = await self._repository.get(profile_id)
        banned_until = now + timedelta(hours=duration_hours) if duration_hours is not None else None
        ban_type = BanType.PERMANENT if duration_hours is None else BanType.TEMPORARY
        record = BanRecord(
            profile_id=profile_id,
            is_banned=True,
            banned_at=now,
            banned_until=banned_until,
            reason=reason,
            ban_count=(existing.ban_count if existing else 0) + 1,
            last_ban_at=now,
        )
        entry = BanHistoryEntry(
            id=ulid.new().str,
            profile_id=profile_id,
            ban_type=ban_type,
            reason=reason,
            duration_hours=duration_hours,
            issuer_id=issuer_id,
            banned_at=now,
            banned_until=banned_until,
            details=dict(details),
        )
        await self._repository.apply(record, entry)
        obs_metrics.inc_ban_issued("manual" if issuer_id else "automated", ban_type.value)
        await self._audit.record(
            profile_id,
            event_type,
            severity,
            {
                "ban_id": entry.id,
                "ban_type": ban_type.value,
                "reason": reason,
                "duration_hours": duration_hours,
                "banned_until": banned_until.isoformat() if banned_until else None,
                "ban_count": record.ban_count,
                **details,
            },
            ctx=ctx,
            now=now,
        )
        await self._notify(record, entry)
        return record

    async def _notify(self, record: BanRecord, entry: BanHistoryEntry) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.ban_issued(record, entry)
        except Exception:  # notifier failures never undo a ban
            logger.exception("ban notification failed", extra={"profile_id": record.profile_id})


def _require(value: Optional[str], name: str) -> None:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name}_required")


@dataclass(slots=True)
class IpBan:
    ip_address: str
    banned_by: str
    banned_at: datetime
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True

    def is_effective(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at > now)


class IpBanRepository(Protocol):
    async def get(self, ip_address: str) -> Optional[IpBan]:
        ...

    async def upsert(self, ban: IpBan) -> IpBan:
        """Insert or reactivate; a missing reason keeps the stored one."""

    async def deactivate(self, ip_address: str) -> bool:
        ...


class InMemoryIpBanRepository:
    def __init__(self) -> None:
        self._bans: dict[str, IpBan] = {}

    async def get(self, ip_address: str) -> Optional[IpBan]:
        ban = self._bans.get(ip_address)
        return replace(ban) if ban else None

    async def upsert(self, ban: IpBan) -> IpBan:
        existing = self._bans.get(ban.ip_address)
        stored = replace(ban, reason=ban.reason or (existing.reason if existing else None))
        self._bans[ban.ip_address] = stored
        return replace(stored)

    async def deactivate(self, ip_address: str) -> bool:
        ban = self._bans.get(ip_address)
        if ban is None or not ban.is_active:
            return False
        ban.is_active = False
        return True


def normalize_ip(raw: str) -> str:
    try:
        return str(ipaddress.ip_address(str(raw).strip()))
    except ValueError:
        raise ValidationError("invalid_ip_address") from None


def ip_subject(ip_address: str) -> str:
    return f"ip:{ip_address}"


class IpBanService:
    """Staff-managed network bans, audited under an ``ip:<address>`` subject."""

    def __init__(self, repository: IpBanRepository, audit: AuditLog) -> None:
        self._repository = repository
        self._audit = audit

    @property
    def repository(self) -> IpBanRepository:
        return self._repository

    async def ban_ip(
        self,
        ip_address: str,
        issuer_id: str,
        reason: str | None = None,
        expires_at: datetime | None = None,
        *,
        now: datetime | None = None,
        ctx: RequestContext | None = None,
    ) -> IpBan:
        _require(issuer_id, "issuer_id")
        address = normalize_ip(ip_address)
        now = now or datetime.now(timezone.utc)
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at_must_be_in_future")
        ban = await self._repository.upsert(
            IpBan(
                ip_address=address,
                banned_by=issuer_id,
                banned_at=now,
                reason=reason.strip() if reason and reason.strip() else None,
                expires_at=expires_at,
            )
        )
        obs_metrics.inc_ban_issued("manual", "ip")
        await self._audit.record(
            ip_subject(address),
            "ip_banned",
            Severity.WARNING,
            {
                "banned_by": issuer_id,
                "reason": ban.reason,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
            ctx=ctx,
            now=now,
        )
        return ban

    async def unban_ip(
        self,
        ip_address: str,
        issuer_id: str,
        *,
        now: datetime | None = None,
        ctx: RequestContext | None = None,
    ) -> bool:
        _require(issuer_id, "issuer_id")
        address = normalize_ip(ip_address)
        now = now or datetime.now(timezone.utc)
        lifted = await self._repository.deactivate(address)
        if lifted:
            obs_metrics.inc_ban_lifted("ip_manual")
        await self._audit.record(
            ip_subject(address),
            "ip_unbanned",
            Severity.INFO,
            {"unbanned_by": issuer_id, "was_banned": lifted},
            ctx=ctx,
            now=now,
        )
        return lifted

    async def get(self, ip_address: str) -> Optional[IpBan]:
        return await self._repository.get(normalize_ip(ip_address))

    async def is_ip_banned(self, ip_address: str, *, now: datetime | None = None) -> bool:
        ban = await self._repository.get(normalize_ip(ip_address))
        return ban is not None and ban.is_effective(now or datetime.now(timezone.utc))
