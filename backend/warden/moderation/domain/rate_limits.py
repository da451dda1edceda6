"""Trailing-window rate limiting over an append-only event log."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from warden.moderation.domain.audit import AuditLog, Severity
from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.errors import TransientStoreError, ValidationError
from warden.moderation.domain.rate_limit_config import ActionLimit, RateLimitTable
from warden.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

SLOW_QUERY_MS = 5000
MEDIUM_QUERY_MS = 1000
VIOLATION_EVENT = "rate_limit_violation"


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after: Optional[float] = None
    reasons: tuple[str, ...] = ()


class RateLimitEventStore(Protocol):
    """Per (subject, action) event log. Counting ranges are (since, until]."""

    async def append(self, subject_key: str, action: str, at: datetime, *, weight: int = 1) -> None:
        ...

    async def count_between(self, subject_key: str, action: str, since: datetime, until: datetime) -> int:
        ...

    async def nth_between(
        self, subject_key: str, action: str, since: datetime, until: datetime, index: int
    ) -> Optional[datetime]:
        """Timestamp of the ``index``-th oldest event in range (0-based)."""

    async def last_at(self, subject_key: str, action: str, until: datetime) -> Optional[datetime]:
        ...

    async def weight_between(self, subject_key: str, action: str, since: datetime, until: datetime) -> int:
        ...

    async def purge_before(self, before: datetime) -> int:
        ...


def cost_for_duration(execution_ms: float) -> int:
    """Map an operation's execution time to its weight against the query budget."""
    if execution_ms > SLOW_QUERY_MS:
        return 10
    if execution_ms > MEDIUM_QUERY_MS:
        return 5
    return 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    """Evaluates every threshold configured for an action; any violation denies.

    ``check`` never writes. Callers ``record`` the event once the action has actually
    happened, so speculative checks cost nothing.
    """

    def __init__(self, store: RateLimitEventStore, table: RateLimitTable) -> None:
        self._store = store
        self._table = table

    @property
    def table(self) -> RateLimitTable:
        return self._table

    @property
    def store(self) -> RateLimitEventStore:
        return self._store

    async def check(
        self,
        subject_key: str,
        action: str,
        now: datetime | None = None,
        *,
        active_count: int | None = None,
        account_created_at: datetime | None = None,
    ) -> RateLimitDecision:
        if not subject_key:
            raise ValidationError("subject_key_required")
        if active_count is not None and active_count < 0:
            raise ValidationError("active_count_negative")
        limit = self._table.get(action)
        now = now or _now()
        try:
            decision = await self._evaluate(limit, subject_key, now, active_count, account_created_at)
        except TransientStoreError:
            return self._store_failure(limit, subject_key)
        obs_metrics.inc_rate_limit_decision(action, decision.allowed)
        return decision

    async def _evaluate(
        self,
        limit: ActionLimit,
        subject_key: str,
        now: datetime,
        active_count: int | None,
        account_created_at: datetime | None,
    ) -> RateLimitDecision:
        violations: list[tuple[str, Optional[float]]] = []

        if limit.min_account_age_seconds:
            if account_created_at is None:
                violations.append(("account_age_unknown", None))
            else:
                age = (now - account_created_at).total_seconds()
                if age < limit.min_account_age_seconds:
                    violations.append(("account_age", limit.min_account_age_seconds - age))

        if limit.max_active is not None and active_count is not None and active_count >= limit.max_active:
            violations.append(("max_active", None))

        if limit.cooldown_seconds:
            last = await self._store.last_at(subject_key, limit.action, now)
            if last is not None:
                elapsed = (now - last).total_seconds()
                if elapsed < limit.cooldown_seconds:
                    violations.append(("cooldown", limit.cooldown_seconds - elapsed))

        for window in limit.windows:
            since = now - timedelta(seconds=window.seconds)
            count = await self._store.count_between(subject_key, limit.action, since, now)
            if count < window.max_count:
                continue
            retry_after: Optional[float] = None
            if window.max_count > 0:
                # the window frees up once the (count - max + 1) oldest events have aged out
                boundary = await self._store.nth_between(
                    subject_key, limit.action, since, now, count - window.max_count
                )
                if boundary is not None:
                    retry_after = max(0.0, (boundary + timedelta(seconds=window.seconds) - now).total_seconds())
            violations.append((f"window:{window.name}", retry_after))

        if not violations:
            return RateLimitDecision(allowed=True)
        waits = [wait for _, wait in violations if wait is not None]
        return RateLimitDecision(
            allowed=False,
            retry_after=round(max(waits), 3) if waits else None,
            reasons=tuple(reason for reason, _ in violations),
        )

    def _store_failure(self, limit: ActionLimit, subject_key: str) -> RateLimitDecision:
        if limit.fail_closed:
            obs_metrics.inc_rate_limit_store_failure(limit.action, "fail_closed")
            logger.warning(
                "rate limit store unavailable; denying",
                extra={"action": limit.action, "subject_key": subject_key},
            )
            return RateLimitDecision(allowed=False, reasons=("store_unavailable",))
        obs_metrics.inc_rate_limit_store_failure(limit.action, "fail_open")
        logger.warning(
            "rate limit store unavailable; allowing",
            extra={"action": limit.action, "subject_key": subject_key},
        )
        return RateLimitDecision(allowed=True, reasons=("store_unavailable",))

    async def record(self, subject_key: str, action: str, now: datetime | None = None) -> bool:
        if not subject_key:
            raise ValidationError("subject_key_required")
        limit = self._table.get(action)
        try:
            await self._store.append(subject_key, limit.action, now or _now())
        except TransientStoreError:
            obs_metrics.inc_rate_limit_store_failure(limit.action, "record_dropped")
            logger.warning("rate limit event not recorded", extra={"action": action, "subject_key": subject_key})
            return False
        return True

    async def check_weighted(
        self,
        subject_key: str,
        cost: int,
        budget: int | None = None,
        *,
        name: str = "query",
        now: datetime | None = None,
    ) -> bool:
        if not subject_key:
            raise ValidationError("subject_key_required")
        if cost < 0:
            raise ValidationError("cost_negative")
        config = self._table.budget(name)
        limit = config.budget if budget is None else budget
        if limit < 0:
            raise ValidationError("budget_negative")
        now = now or _now()
        since = now - timedelta(seconds=config.window_seconds)
        try:
            used = await self._store.weight_between(subject_key, _weighted_action(name), since, now)
        except TransientStoreError:
            obs_metrics.inc_rate_limit_store_failure(_weighted_action(name), "fail_open")
            logger.warning("weighted budget store unavailable; allowing", extra={"budget": name})
            return True
        allowed = used + cost <= limit
        obs_metrics.inc_rate_limit_decision(_weighted_action(name), allowed)
        return allowed

    async def record_weighted(
        self,
        subject_key: str,
        cost: int,
        *,
        name: str = "query",
        now: datetime | None = None,
    ) -> bool:
        if not subject_key:
            raise ValidationError("subject_key_required")
        if cost < 0:
            raise ValidationError("cost_negative")
        self._table.budget(name)
        try:
            await self._store.append(subject_key, _weighted_action(name), now or _now(), weight=cost)
        except TransientStoreError:
            obs_metrics.inc_rate_limit_store_failure(_weighted_action(name), "record_dropped")
            logger.warning("weighted event not recorded", extra={"budget": name})
            return False
        return True

    async def record_execution(
        self,
        subject_key: str,
        execution_ms: float,
        *,
        name: str = "query",
        now: datetime | None = None,
    ) -> int:
        """Record an operation by its execution time and return the cost charged."""
        cost = cost_for_duration(execution_ms)
        if execution_ms > SLOW_QUERY_MS:
            obs_metrics.inc_slow_query()
            logger.warning(
                "slow_query_detected",
                extra={"subject_key": subject_key, "execution_ms": execution_ms, "budget": name},
            )
        await self.record_weighted(subject_key, cost, name=name, now=now)
        return cost


def _weighted_action(name: str) -> str:
    return f"weighted:{name}"


class RateLimitGate:
    """Front door used by request handlers: checks, and audits every denial."""

    def __init__(
        self,
        limiter: RateLimiter,
        audit: AuditLog,
        *,
        abuse_threshold: int = 5,
        abuse_window: timedelta = timedelta(hours=1),
    ) -> None:
        self._limiter = limiter
        self._audit = audit
        self._abuse_threshold = abuse_threshold
        self._abuse_window = abuse_window

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    def subject_key(self, ctx: RequestContext, action: str) -> str:
        limit = self._limiter.table.get(action)
        key = ctx.subject_key(limit.key_scope)
        if key is None:
            raise ValidationError(f"missing_{limit.key_scope}_identity")
        return key

    async def enforce(
        self,
        ctx: RequestContext,
        action: str,
        *,
        now: datetime | None = None,
        active_count: int | None = None,
        account_created_at: datetime | None = None,
    ) -> RateLimitDecision:
        key = self.subject_key(ctx, action)
        now = now or _now()
        decision = await self._limiter.check(
            key,
            action,
            now,
            active_count=active_count,
            account_created_at=account_created_at,
        )
        if not decision.allowed:
            await self._report_denial(ctx, key, action, decision, now)
        return decision

    async def complete(self, ctx: RequestContext, action: str, *, now: datetime | None = None) -> bool:
        return await self._limiter.record(self.subject_key(ctx, action), action, now)

    async def _report_denial(
        self,
        ctx: RequestContext,
        key: str,
        action: str,
        decision: RateLimitDecision,
        now: datetime,
    ) -> None:
        subject = ctx.audit_subject() or key
        prior = await self._audit.count_type(subject, VIOLATION_EVENT, since=now - self._abuse_window, until=now)
        severity = Severity.ERROR if prior + 1 >= self._abuse_threshold else Severity.WARNING
        await self._audit.log(
            subject,
            VIOLATION_EVENT,
            severity,
            {
                "action": action,
                "subject_key": key,
                "reasons": list(decision.reasons),
                "retry_after": decision.retry_after,
                "recent_denials": prior + 1,
            },
            ctx=ctx,
            now=now,
        )
