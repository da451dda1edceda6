"""Moderation flag workflow: creation, human review, queue automation and visibility."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence

import ulid

from warden.moderation.domain.audit import AuditLog, Severity
from warden.moderation.domain.bans import BanService
from warden.moderation.domain.content import (
    HARD_HIDDEN_STATUSES,
    ContentRecord,
    ContentStore,
    InMemoryReportRepository,
    Report,
    ReportRepository,
)
from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.errors import InvalidTransition, NotFoundError, ValidationError
from warden.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

MAX_RISK = 10.0
MAX_PRIORITY = 100
URGENT_PRIORITY = 90
HIGH_RISK = 7.0
LOW_RISK = 3.0
REPORTS_TO_HIDE = 3
AUTO_RESOLVE_AGE = timedelta(days=7)
AUTO_ESCALATE_AGE = timedelta(hours=12)
ESCALATION_STEP = 20
AUTO_RESOLVE_NOTE = "Auto-resolved: low risk, no community reports, older than 7 days"
AUTO_ESCALATE_NOTE = "Auto-escalated: high risk item pending for more than 12 hours"

SOURCE_SCAN = "automated_scan"
SOURCE_FILTER = "automated_filter"
SOURCE_REPORT = "user_report"


class FlagState(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"


OPEN_STATES = frozenset({FlagState.PENDING, FlagState.IN_REVIEW})
RESOLVE_OUTCOMES = frozenset({"dismissed", "actioned"})


@dataclass(slots=True)
class ModerationFlag:
    id: str
    content_ref: str
    reasons: tuple[str, ...]
    risk: float
    source: str
    priority: int
    state: FlagState
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewer_id: Optional[str] = None
    notes: str = ""
    escalated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    @property
    def is_urgent(self) -> bool:
        return self.is_open and self.priority >= URGENT_PRIORITY


def priority_for_risk(risk: float) -> int:
    return max(0, min(int(risk * 10), MAX_PRIORITY))


def append_note(notes: str, note: Optional[str]) -> str:
    if not note:
        return notes
    return f"{notes}\n{note}" if notes else note


class FlagRepository(Protocol):
    async def insert_if_absent(self, flag: ModerationFlag) -> tuple[ModerationFlag, bool]:
        """Insert unless an open flag from the same source exists on the same content."""

    async def get(self, flag_id: str) -> Optional[ModerationFlag]:
        ...

    async def list_open(self, content_ref: str) -> Sequence[ModerationFlag]:
        ...

    async def list_queue(self, *, limit: int = 50) -> Sequence[ModerationFlag]:
        ...

    async def list_auto_resolve_candidates(
        self, *, created_before: datetime, max_risk: float, limit: int
    ) -> Sequence[ModerationFlag]:
        """Pending, risk below ``max_risk``, no open reports; oldest first, then id."""

    async def list_auto_escalate_candidates(
        self, *, created_before: datetime, escalated_before: datetime, min_risk: float, limit: int
    ) -> Sequence[ModerationFlag]:
        """Pending, risk at least ``min_risk``, priority below 100; oldest first, then id."""

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
        """Move the flag only if its current state is in ``from_states``; ``None`` otherwise."""

    async def bump_priority(
        self, flag_id: str, *, expected: int, new: int, note: str, escalated_at: datetime
    ) -> bool:
        """Set priority only while the flag is pending at ``expected`` priority."""

    async def purge_resolved(self, *, before: datetime) -> int:
        ...


class InMemoryFlagRepository:
    def __init__(self, reports: InMemoryReportRepository | None = None) -> None:
        self._flags: dict[str, ModerationFlag] = {}
        self._reports = reports

    async def insert_if_absent(self, flag: ModerationFlag) -> tuple[ModerationFlag, bool]:
        for existing in self._flags.values():
            if existing.is_open and existing.content_ref == flag.content_ref and existing.source == flag.source:
                return replace(existing), False
        self._flags[flag.id] = replace(flag)
        return flag, True

    async def get(self, flag_id: str) -> Optional[ModerationFlag]:
        flag = self._flags.get(flag_id)
        return replace(flag) if flag else None

    async def list_open(self, content_ref: str) -> Sequence[ModerationFlag]:
        return [replace(f) for f in self._flags.values() if f.content_ref == content_ref and f.is_open]

    async def list_queue(self, *, limit: int = 50) -> Sequence[ModerationFlag]:
        rows = [f for f in self._flags.values() if f.is_open]
        rows.sort(key=lambda f: (-f.priority, f.created_at, f.id))
        return [replace(f) for f in rows[:limit]]

    async def list_auto_resolve_candidates(
        self, *, created_before: datetime, max_risk: float, limit: int
    ) -> Sequence[ModerationFlag]:
        reported = self._reports.open_content_refs() if self._reports else set()
        rows = [
            f
            for f in self._flags.values()
            if f.state is FlagState.PENDING
            and f.risk < max_risk
            and f.created_at <= created_before
            and f.content_ref not in reported
        ]
        rows.sort(key=lambda f: (f.created_at, f.id))
        return [replace(f) for f in rows[:limit]]

    async def list_auto_escalate_candidates(
        self, *, created_before: datetime, escalated_before: datetime, min_risk: float, limit: int
    ) -> Sequence[ModerationFlag]:
        rows = [
            f
            for f in self._flags.values()
            if f.state is FlagState.PENDING
            and f.risk >= min_risk
            and f.priority < MAX_PRIORITY
            and f.created_at <= created_before
            and (f.escalated_at is None or f.escalated_at <= escalated_before)
        ]
        rows.sort(key=lambda f: (f.created_at, f.id))
        return [replace(f) for f in rows[:limit]]

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
        flag = self._flags.get(flag_id)
        if flag is None or flag.state not in set(from_states):
            return None
        flag.state = to_state
        flag.reviewed_at = reviewed_at
        flag.reviewer_id = reviewer_id
        flag.notes = append_note(flag.notes, note)
        return replace(flag)

    async def bump_priority(
        self, flag_id: str, *, expected: int, new: int, note: str, escalated_at: datetime
    ) -> bool:
        flag = self._flags.get(flag_id)
        if flag is None or flag.state is not FlagState.PENDING or flag.priority != expected:
            return False
        flag.priority = new
        flag.escalated_at = escalated_at
        flag.notes = append_note(flag.notes, note)
        return True

    async def purge_resolved(self, *, before: datetime) -> int:
        doomed = [
            flag_id
            for flag_id, f in self._flags.items()
            if f.state is FlagState.RESOLVED and f.reviewed_at is not None and f.reviewed_at < before
        ]
        for flag_id in doomed:
            del self._flags[flag_id]
        return len(doomed)


@dataclass(frozen=True, slots=True)
class QueueAutomationResult:
    processed: int = 0
    auto_resolved: int = 0
    escalated: int = 0
    errors: int = 0


@dataclass(frozen=True, slots=True)
class VisibilityDecision:
    hidden: bool
    reason: str


@dataclass(frozen=True, slots=True)
class ReportReceipt:
    report_id: str
    flag_id: str


def _content_subject(content_ref: str) -> str:
    return f"content:{content_ref}"


class FlagWorkflow:
    """pending -> in_review -> resolved, plus priority escalation while pending."""

    def __init__(
        self,
        *,
        flags: FlagRepository,
        reports: ReportRepository,
        content: ContentStore,
        bans: BanService,
        audit: AuditLog,
        batch_cap: int = 50,
        report_risk: float = 4.0,
    ) -> None:
        self._flags = flags
        self._reports = reports
        self._content = content
        self._bans = bans
        self._audit = audit
        self._batch_cap = batch_cap
        self._report_risk = report_risk

    @property
    def flags(self) -> FlagRepository:
        return self._flags

    async def create_flag(
        self,
        content_ref: str,
        reasons: Sequence[str],
        risk: float,
        source: str,
        *,
        ctx: RequestContext | None = None,
        now: datetime | None = None,
    ) -> str:
        if not content_ref or not str(content_ref).strip():
            raise ValidationError("content_ref_required")
        content = await self._content.get(content_ref)
        flag, _ = await self.open_flag(content_ref, reasons, risk, source, content=content, ctx=ctx, now=now)
        return flag.id

    async def open_flag(
        self,
        content_ref: str,
        reasons: Sequence[str],
        risk: float,
        source: str,
        *,
        content: ContentRecord | None = None,
        ctx: RequestContext | None = None,
        now: datetime | None = None,
    ) -> tuple[ModerationFlag, bool]:
        """Create a pending flag, or return the open one already raised by ``source``."""
        cleaned = _validate_reasons(reasons)
        if isinstance(risk, bool) or not isinstance(risk, (int, float)) or not 0 <= risk <= MAX_RISK:
            raise ValidationError("risk_out_of_range")
        if not source or not str(source).strip():
            raise ValidationError("source_required")
        now = now or datetime.now(timezone.utc)
        candidate = ModerationFlag(
            id=ulid.new().str,
            content_ref=content_ref,
            reasons=cleaned,
            risk=float(risk),
            source=source,
            priority=priority_for_risk(risk),
            state=FlagState.PENDING,
            created_at=now,
        )
        flag, created = await self._flags.insert_if_absent(candidate)
        if not created:
            await self._audit.record(
                _content_subject(content_ref),
                "flag_create_skipped",
                Severity.INFO,
                {"existing_flag_id": flag.id, "source": source, "reasons": list(cleaned)},
                ctx=ctx,
                now=now,
            )
            return flag, False

        obs_metrics.inc_flag_created(source)
        await self._audit.record(
            _content_subject(content_ref),
            "flag_created",
            Severity.INFO,
            {"flag_id": flag.id, "source": source, "risk": flag.risk, "priority": flag.priority, "reasons": list(cleaned)},
            ctx=ctx,
            now=now,
        )
        author = content.author_id if content else None
        if author and flag.risk >= LOW_RISK:
            severity = Severity.ERROR if flag.risk >= HIGH_RISK else Severity.WARNING
            await self._audit.log(
                author,
                "content_violation",
                severity,
                {"flag_id": flag.id, "content_ref": content_ref, "risk": flag.risk, "reasons": list(cleaned)},
                ctx=ctx,
                now=now,
            )
        return flag, True

    async def has_open_flag(self, content_ref: str) -> bool:
        return bool(await self._flags.list_open(content_ref))

    async def report_content(
        self,
        ctx: RequestContext,
        content_ref: str,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> ReportReceipt:
        if not ctx.subject_id:
            raise ValidationError("reporter_required")
        if not reason or not reason.strip():
            raise ValidationError("reason_required")
        content = await self._content.get(content_ref)
        if content is None:
            raise NotFoundError("content_not_found")
        now = now or datetime.now(timezone.utc)
        report = await self._reports.add(
            Report(
                id=ulid.new().str,
                content_ref=content_ref,
                reporter_id=ctx.subject_id,
                reason=reason.strip(),
                created_at=now,
            )
        )
        flag, _ = await self.open_flag(
            content_ref,
            [f"user_report:{report.reason}"],
            self._report_risk,
            SOURCE_REPORT,
            content=content,
            ctx=ctx,
            now=now,
        )
        return ReportReceipt(report_id=report.id, flag_id=flag.id)

    async def list_queue(self, *, limit: int = 50) -> Sequence[ModerationFlag]:
        if limit <= 0:
            raise ValidationError("limit_must_be_positive")
        return await self._flags.list_queue(limit=limit)

    async def get(self, flag_id: str) -> ModerationFlag:
        flag = await self._flags.get(flag_id)
        if flag is None:
            raise NotFoundError("flag_not_found")
        return flag

    async def claim(
        self,
        flag_id: str,
        reviewer_id: str,
        *,
        ctx: RequestContext | None = None,
        now: datetime | None = None,
    ) -> ModerationFlag:
        if not reviewer_id:
            raise ValidationError("reviewer_required")
        now = now or datetime.now(timezone.utc)
        flag = await self._flags.transition(
            flag_id,
            from_states=(FlagState.PENDING,),
            to_state=FlagState.IN_REVIEW,
            reviewed_at=None,
            reviewer_id=reviewer_id,
        )
        if flag is None:
            current = await self.get(flag_id)
            raise InvalidTransition(f"cannot_claim_from_{current.state.value}")
        obs_metrics.inc_flag_transition("claim")
        await self._audit.record(
            _content_subject(flag.content_ref),
            "flag_claimed",
            Severity.INFO,
            {"flag_id": flag.id, "reviewer_id": reviewer_id},
            ctx=ctx,
            now=now,
        )
        return flag

    async def resolve(
        self,
        flag_id: str,
        reviewer_id: str,
        *,
        outcome: str = "dismissed",
        notes: str | None = None,
        ctx: RequestContext | None = None,
        now: datetime | None = None,
    ) -> ModerationFlag:
        if not reviewer_id:
            raise ValidationError("reviewer_required")
        if outcome not in RESOLVE_OUTCOMES:
            raise ValidationError("invalid_outcome")
        now = now or datetime.now(timezone.utc)
        note = f"Resolved ({outcome})" + (f": {notes.strip()}" if notes and notes.strip() else "")
        flag = await self._flags.transition(
            flag_id,
            from_states=OPEN_STATES,
            to_state=FlagState.RESOLVED,
            reviewed_at=now,
            reviewer_id=reviewer_id,
            note=note,
        )
        if flag is None:
            await self.get(flag_id)
            raise InvalidTransition("flag_already_resolved")
        obs_metrics.inc_flag_transition(f"resolve_{outcome}")
        closed_reports = await self._reports.resolve_open(flag.content_ref, resolved_at=now)
        await self._audit.record(
            _content_subject(flag.content_ref),
            "flag_resolved",
            Severity.INFO,
            {"flag_id": flag.id, "reviewer_id": reviewer_id, "outcome": outcome, "reports_closed": closed_reports},
            ctx=ctx,
            now=now,
        )
        if outcome == "actioned":
            content = await self._content.get(flag.content_ref)
            if content is not None and content.author_id:
                await self._audit.log(
                    content.author_id,
                    "content_violation_confirmed",
                    Severity.ERROR,
                    {"flag_id": flag.id, "content_ref": flag.content_ref, "reviewer_id": reviewer_id},
                    ctx=ctx,
                    now=now,
                )
        return flag

    async def run_queue_automation(self, *, now: datetime | None = None) -> QueueAutomationResult:
        """Auto-resolve stale low-risk flags and escalate aging high-risk ones.

        Every item is a single conditional update, so overlapping runs converge.
        """
        now = now or datetime.now(timezone.utc)
        auto_resolved = 0
        escalated = 0
        errors = 0

        resolvable = await self._flags.list_auto_resolve_candidates(
            created_before=now - AUTO_RESOLVE_AGE, max_risk=LOW_RISK, limit=self._batch_cap
        )
        for flag in resolvable:
            try:
                if await self._auto_resolve(flag, now):
                    auto_resolved += 1
            except Exception:
                errors += 1
                obs_metrics.inc_queue_automation_error("auto_resolve")
                logger.exception("auto-resolve failed", extra={"flag_id": flag.id})

        escalatable = await self._flags.list_auto_escalate_candidates(
            created_before=now - AUTO_ESCALATE_AGE,
            escalated_before=now - AUTO_ESCALATE_AGE,
            min_risk=HIGH_RISK,
            limit=self._batch_cap,
        )
        for flag in escalatable:
            try:
                if await self._auto_escalate(flag, now):
                    escalated += 1
            except Exception:
                errors += 1
                obs_metrics.inc_queue_automation_error("auto_escalate")
                logger.exception("auto-escalate failed", extra={"flag_id": flag.id})

        result = QueueAutomationResult(
            processed=auto_resolved + escalated,
            auto_resolved=auto_resolved,
            escalated=escalated,
            errors=errors,
        )
        logger.info(
            "queue automation complete",
            extra={"processed": result.processed, "auto_resolved": auto_resolved, "escalated": escalated, "errors": errors},
        )
        return result

    async def _auto_resolve(self, flag: ModerationFlag, now: datetime) -> bool:
        if await self._reports.count_open(flag.content_ref) > 0:
            return False
        resolved = await self._flags.transition(
            flag.id,
            from_states=(FlagState.PENDING,),
            to_state=FlagState.RESOLVED,
            reviewed_at=now,
            reviewer_id=None,
            note=AUTO_RESOLVE_NOTE,
        )
        if resolved is None:
            return False
        obs_metrics.inc_flag_transition("auto_resolve")
        await self._audit.record(
            _content_subject(flag.content_ref),
            "flag_auto_resolved",
            Severity.INFO,
            {"flag_id": flag.id, "risk": flag.risk},
            now=now,
        )
        return True

    async def _auto_escalate(self, flag: ModerationFlag, now: datetime) -> bool:
        new_priority = min(flag.priority + ESCALATION_STEP, MAX_PRIORITY)
        bumped = await self._flags.bump_priority(
            flag.id,
            expected=flag.priority,
            new=new_priority,
            note=AUTO_ESCALATE_NOTE,
            escalated_at=now,
        )
        if not bumped:
            return False
        obs_metrics.inc_flag_transition("auto_escalate")
        await self._audit.record(
            _content_subject(flag.content_ref),
            "flag_escalated",
            Severity.WARNING,
            {"flag_id": flag.id, "risk": flag.risk, "from_priority": flag.priority, "to_priority": new_priority},
            now=now,
        )
        return True

    async def visibility(self, content_ref: str, *, now: datetime | None = None) -> VisibilityDecision:
        """Read-only; precedence is author ban, high-risk flag, hidden status, open reports."""
        now = now or datetime.now(timezone.utc)
        decision = await self._decide_visibility(content_ref, now)
        obs_metrics.inc_visibility_decision(decision.reason)
        return decision

    async def _decide_visibility(self, content_ref: str, now: datetime) -> VisibilityDecision:
        content = await self._content.get(content_ref)
        if content is None:
            return VisibilityDecision(hidden=False, reason="unknown_content")
        if content.author_id and await self._bans.active_ban(content.author_id, now=now) is not None:
            return VisibilityDecision(hidden=True, reason="author_banned")
        open_flags = await self._flags.list_open(content_ref)
        if any(flag.risk >= HIGH_RISK for flag in open_flags):
            return VisibilityDecision(hidden=True, reason="high_risk_flag")
        if content.status in HARD_HIDDEN_STATUSES:
            return VisibilityDecision(hidden=True, reason="content_status")
        if await self._reports.count_open(content_ref) >= REPORTS_TO_HIDE:
            return VisibilityDecision(hidden=True, reason="open_reports")
        return VisibilityDecision(hidden=False, reason="visible")

    async def filter_content(self, content_ref: str, *, now: datetime | None = None) -> bool:
        return (await self.visibility(content_ref, now=now)).hidden


def _validate_reasons(reasons: Sequence[str]) -> tuple[str, ...]:
    if isinstance(reasons, str):
        raise ValidationError("reasons_must_be_a_list")
    cleaned = tuple(str(reason).strip() for reason in reasons if reason is not None and str(reason).strip())
    if not cleaned:
        raise ValidationError("reasons_required")
    return cleaned
