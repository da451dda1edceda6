from datetime import datetime, timedelta, timezone

import pytest

from warden.moderation.domain.audit import (
    AuditLog,
    InMemoryAuditRepository,
    Severity,
    counts_toward_bans,
    is_violation_type,
)
from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.errors import ValidationError

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TriggerSpy:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, subject_id: str, event_type: str, **kwargs) -> bool:
        self.calls.append((subject_id, event_type))
        return False


def test_violation_classification() -> None:
    assert is_violation_type("rate_limit_violation")
    assert is_violation_type("content_violation_confirmed")
    assert not is_violation_type("login_failed")
    assert not counts_toward_bans("profile_auto_banned")
    assert counts_toward_bans("login_failed")


@pytest.mark.asyncio
async def test_log_records_context_and_details() -> None:
    audit = AuditLog(InMemoryAuditRepository())
    ctx = RequestContext(subject_id="u1", ip="10.0.0.9", device_id="dev-1")
    event = await audit.log("u1", "login_failed", "warning", {"attempt": 3}, ctx=ctx, now=NOW)

    assert event.severity is Severity.WARNING
    assert event.ip == "10.0.0.9"
    assert event.device_id == "dev-1"
    assert event.details == {"attempt": 3}
    assert [e.id for e in await audit.list_for_subject("u1")] == [event.id]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "subject_id, event_type, severity, detail",
    [
        ("", "login_failed", "info", "subject_id_required"),
        ("u1", " ", "info", "event_type_required"),
        ("u1", "login_failed", "fatal", "invalid_severity:fatal"),
    ],
)
async def test_log_rejects_invalid_input(subject_id, event_type, severity, detail) -> None:
    audit = AuditLog(InMemoryAuditRepository())
    with pytest.raises(ValidationError) as exc:
        await audit.log(subject_id, event_type, severity)
    assert exc.value.detail == detail


@pytest.mark.asyncio
async def test_only_severe_countable_events_trigger_ban_evaluation() -> None:
    spy = TriggerSpy()
    audit = AuditLog(InMemoryAuditRepository(), ban_trigger=spy)

    await audit.log("u1", "login_failed", Severity.WARNING, now=NOW)
    await audit.log("u1", "profile_manually_banned", Severity.ERROR, now=NOW)
    await audit.record("u1", "rate_limit_violation", Severity.ERROR, now=NOW)
    await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=NOW)
    await audit.log("u1", "fraud_signal", Severity.CRITICAL, now=NOW)

    assert spy.calls == [("u1", "rate_limit_violation"), ("u1", "fraud_signal")]


@pytest.mark.asyncio
async def test_counts_respect_window_and_engine_exclusions() -> None:
    audit = AuditLog(InMemoryAuditRepository())
    await audit.log("u1", "rate_limit_violation", Severity.WARNING, now=NOW - timedelta(hours=1))
    await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=NOW - timedelta(hours=2))
    await audit.log("u1", "spam_detected", Severity.ERROR, now=NOW - timedelta(hours=3))
    await audit.log("u1", "profile_auto_banned", Severity.CRITICAL, now=NOW - timedelta(hours=1))
    await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=NOW - timedelta(days=2))

    since = NOW - timedelta(hours=24)
    assert await audit.count_severe("u1", since=since, until=NOW) == 2
    assert await audit.count_violations("u1", since=since, until=NOW) == 2
    assert await audit.count_type("u1", "profile_auto_banned", since=since, until=NOW) == 1
    assert await audit.subjects_with_severe_since(since) == ["u1"]


@pytest.mark.asyncio
async def test_purge_removes_only_requested_severities() -> None:
    repo = InMemoryAuditRepository()
    audit = AuditLog(repo)
    old = NOW - timedelta(days=400)
    await audit.log("u1", "login_failed", Severity.INFO, now=old)
    await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=old)
    await audit.log("u1", "profile_auto_banned", Severity.CRITICAL, now=old)
    await audit.log("u1", "login_failed", Severity.INFO, now=NOW)

    assert await repo.purge((Severity.INFO, Severity.WARNING), before=NOW - timedelta(days=90)) == 1
    remaining = {(e.event_type, e.severity) for e in await audit.list_for_subject("u1")}
    assert remaining == {
        ("rate_limit_violation", Severity.ERROR),
        ("profile_auto_banned", Severity.CRITICAL),
        ("login_failed", Severity.INFO),
    }
