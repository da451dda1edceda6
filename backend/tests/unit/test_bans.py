import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from warden.moderation.domain.audit import AuditLog, InMemoryAuditRepository, Severity
from warden.moderation.domain.bans import (
    BanOutcome,
    BanService,
    BanType,
    InMemoryBanRepository,
    InMemoryIpBanRepository,
    IpBanService,
)
from warden.moderation.domain.errors import ValidationError

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.issued: list[str] = []

    async def ban_issued(self, record, entry) -> None:
        self.issued.append(record.profile_id)
        if self.fail:
            raise RuntimeError("webhook down")


def _wire(notifier=None) -> tuple[AuditLog, BanService]:
    audit = AuditLog(InMemoryAuditRepository())
    service = BanService(InMemoryBanRepository(), audit, notifier=notifier)
    audit.bind_ban_trigger(service.check_and_auto_ban)
    return audit, service


async def _event_types(audit: AuditLog, subject_id: str) -> list[str]:
    return [e.event_type for e in await audit.list_for_subject(subject_id, limit=500)]


@pytest.mark.asyncio
async def test_ten_violations_in_a_day_ban_for_24_hours() -> None:
    audit, service = _wire()
    for i in range(9):
        await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=NOW + timedelta(minutes=i))
    assert not await service.is_banned("u1", now=NOW + timedelta(minutes=9))

    tenth = NOW + timedelta(minutes=10)
    await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=tenth)

    record = await service.active_ban("u1", now=tenth)
    assert record is not None
    assert record.banned_until == tenth + timedelta(hours=24)
    assert record.ban_count == 1
    assert "profile_auto_banned" in await _event_types(audit, "u1")


@pytest.mark.asyncio
async def test_violation_rung_counts_warnings_once_triggered() -> None:
    audit, service = _wire()
    for i in range(9):
        await audit.log("u1", "rate_limit_violation", Severity.WARNING, now=NOW + timedelta(minutes=i))
    assert not await service.is_banned("u1", now=NOW + timedelta(minutes=9))

    await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=NOW + timedelta(minutes=10))
    assert await service.is_banned("u1", now=NOW + timedelta(minutes=11))


@pytest.mark.asyncio
async def test_temporary_ban_expires_lazily_on_read() -> None:
    audit, service = _wire()
    for i in range(10):
        await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=NOW + timedelta(seconds=i))
    banned_at = NOW + timedelta(seconds=9)
    assert await service.is_banned("u1", now=banned_at + timedelta(hours=23))

    later = banned_at + timedelta(hours=24, seconds=1)
    assert not await service.is_banned("u1", now=later)

    record = await service.repository.get("u1")
    assert record is not None and not record.is_banned
    assert "ban_expired" in await _event_types(audit, "u1")
    history = await service.history("u1")
    assert history[0].lifted_at == later


@pytest.mark.asyncio
async def test_fifty_severe_events_ban_for_a_week() -> None:
    audit, service = _wire()
    for i in range(50):
        await audit.log("u1", "spam_detected", Severity.ERROR, now=NOW + timedelta(seconds=i))
    last = NOW + timedelta(seconds=49)

    record = await service.active_ban("u1", now=last)
    assert record is not None
    assert record.banned_until == last + timedelta(hours=168)


@pytest.mark.asyncio
async def test_hundred_severe_events_ban_permanently() -> None:
    audit = AuditLog(InMemoryAuditRepository())
    service = BanService(InMemoryBanRepository(), audit)
    for i in range(100):
        await audit.log("u1", "spam_detected", Severity.ERROR, now=NOW - timedelta(minutes=i))

    outcome = await service.evaluate("u1", "spam_detected", now=NOW)

    assert outcome is BanOutcome.BANNED
    record = await service.active_ban("u1", now=NOW + timedelta(days=3650))
    assert record is not None
    assert record.banned_until is None
    history = await service.history("u1")
    assert history[0].ban_type is BanType.PERMANENT
    assert history[0].details["severe_7d"] == 100


@pytest.mark.asyncio
async def test_permanent_rung_outranks_the_daily_violation_rung() -> None:
    audit = AuditLog(InMemoryAuditRepository())
    service = BanService(InMemoryBanRepository(), audit)
    for i in range(89):
        await audit.log("u1", "spam_detected", Severity.ERROR, now=NOW - timedelta(days=2, minutes=i))
    for i in range(12):
        await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=NOW - timedelta(minutes=i))

    outcome = await service.evaluate("u1", "rate_limit_violation", now=NOW)

    assert outcome is BanOutcome.BANNED
    record = await service.active_ban("u1", now=NOW)
    assert record is not None
    assert record.banned_until is None
    details = (await service.history("u1"))[0].details
    assert (details["rung"], details["severe_7d"], details["violations_24h"]) == ("severe_7d_permanent", 101, 12)


@pytest.mark.asyncio
async def test_engine_events_never_feed_the_ladder() -> None:
    audit, service = _wire()
    for i in range(120):
        await audit.log("u1", "profile_auto_banned", Severity.CRITICAL, now=NOW + timedelta(seconds=i))
    assert not await service.is_banned("u1", now=NOW + timedelta(minutes=5))


@pytest.mark.asyncio
async def test_already_banned_subject_is_skipped() -> None:
    audit, service = _wire()
    await service.ban("u1", "staff-1", "spam", 48, now=NOW)

    outcome = await service.evaluate("u1", "rate_limit_violation", now=NOW + timedelta(minutes=1))

    assert outcome is BanOutcome.ALREADY_BANNED
    assert "auto_ban_skipped" in await _event_types(audit, "u1")
    assert len(await service.history("u1")) == 1


@pytest.mark.asyncio
async def test_concurrent_evaluations_issue_a_single_ban() -> None:
    audit, service = _wire()
    audit.bind_ban_trigger(None)
    for i in range(10):
        await audit.log("u1", "rate_limit_violation", Severity.ERROR, now=NOW - timedelta(minutes=i))

    outcomes = await asyncio.gather(
        *(service.evaluate("u1", "rate_limit_violation", now=NOW) for _ in range(5))
    )

    assert outcomes.count(BanOutcome.BANNED) == 1
    assert outcomes.count(BanOutcome.ALREADY_BANNED) == 4
    assert len(await service.history("u1")) == 1


@pytest.mark.asyncio
async def test_manual_ban_and_unban() -> None:
    audit, service = _wire()
    record = await service.ban("u1", "staff-1", "harassment", 12, now=NOW)
    assert record.banned_until == NOW + timedelta(hours=12)
    assert await service.is_banned("u1", now=NOW + timedelta(hours=1))

    assert await service.unban("u1", "staff-1", "appeal accepted", now=NOW + timedelta(hours=2))
    assert not await service.is_banned("u1", now=NOW + timedelta(hours=2))
    assert not await service.unban("u1", "staff-1", now=NOW + timedelta(hours=3))

    events = await audit.list_for_subject("u1")
    unbans = [e for e in events if e.event_type == "profile_unbanned"]
    assert [e.details["was_banned"] for e in unbans] == [False, True]
    history = await service.history("u1")
    assert history[0].lifted_by == "staff-1"


@pytest.mark.asyncio
async def test_manual_ban_without_duration_is_permanent_and_marked() -> None:
    _, service = _wire()
    record = await service.ban("u1", "staff-1", "ban evasion", now=NOW)
    assert record.banned_until is None
    history = await service.history("u1")
    assert history[0].ban_type is BanType.PERMANENT
    assert history[0].details["duration_unspecified"] is True


@pytest.mark.asyncio
async def test_manual_ban_supersedes_active_ban() -> None:
    _, service = _wire()
    await service.ban("u1", "staff-1", "spam", 24, now=NOW)
    record = await service.ban("u1", "staff-2", "escalated", 72, now=NOW + timedelta(hours=1))

    assert record.ban_count == 2
    assert record.banned_until == NOW + timedelta(hours=73)
    history = await service.history("u1")
    assert len(history) == 2
    assert history[1].lifted_at == NOW + timedelta(hours=1)
    assert history[0].details["superseded"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "args, detail",
    [
        (("u1", "", "spam", 1), "issuer_id_required"),
        (("u1", "staff-1", " ", 1), "reason_required"),
        (("u1", "staff-1", "spam", 0), "duration_hours_must_be_positive"),
    ],
)
async def test_manual_ban_validation(args, detail) -> None:
    _, service = _wire()
    with pytest.raises(ValidationError) as exc:
        await service.ban(*args, now=NOW)
    assert exc.value.detail == detail


@pytest.mark.asyncio
async def test_notifier_failure_does_not_undo_ban() -> None:
    notifier = RecordingNotifier(fail=True)
    _, service = _wire(notifier)
    await service.ban("u1", "staff-1", "spam", 1, now=NOW)
    assert notifier.issued == ["u1"]
    assert await service.is_banned("u1", now=NOW)


def _ip_service() -> tuple[AuditLog, IpBanService]:
    audit, _ = _wire()
    return audit, IpBanService(InMemoryIpBanRepository(), audit)


@pytest.mark.asyncio
async def test_ip_ban_is_normalized_and_audited_under_ip_subject() -> None:
    audit, service = _ip_service()

    ban = await service.ban_ip("2001:DB8::0001", "staff-1", "scraping", now=NOW)

    assert ban.ip_address == "2001:db8::1"
    assert await service.is_ip_banned("2001:db8:0:0:0:0:0:1", now=NOW + timedelta(days=400))
    assert await _event_types(audit, "ip:2001:db8::1") == ["ip_banned"]


@pytest.mark.asyncio
async def test_ip_ban_expires_and_rebans_keep_the_reason() -> None:
    _, service = _ip_service()
    await service.ban_ip("10.0.0.7", "staff-1", "credential stuffing", NOW + timedelta(hours=1), now=NOW)
    assert await service.is_ip_banned("10.0.0.7", now=NOW + timedelta(minutes=59))
    assert not await service.is_ip_banned("10.0.0.7", now=NOW + timedelta(hours=1))

    again = await service.ban_ip("10.0.0.7", "staff-2", now=NOW + timedelta(hours=2))

    assert again.reason == "credential stuffing"
    assert again.banned_by == "staff-2"
    assert again.expires_at is None
    assert await service.is_ip_banned("10.0.0.7", now=NOW + timedelta(days=30))


@pytest.mark.asyncio
async def test_ip_unban_reports_whether_a_ban_was_lifted() -> None:
    audit, service = _ip_service()
    await service.ban_ip("10.0.0.7", "staff-1", now=NOW)

    assert await service.unban_ip("10.0.0.7", "staff-1", now=NOW + timedelta(minutes=1))
    assert not await service.is_ip_banned("10.0.0.7", now=NOW + timedelta(minutes=1))
    assert not await service.unban_ip("10.0.0.7", "staff-1", now=NOW + timedelta(minutes=2))
    assert not await service.unban_ip("10.0.0.8", "staff-1", now=NOW + timedelta(minutes=2))

    events = await audit.list_for_subject("ip:10.0.0.7")
    unbans = [e.details["was_banned"] for e in events if e.event_type == "ip_unbanned"]
    assert sorted(unbans) == [False, True]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ip, expires_at, detail",
    [
        ("not-an-ip", None, "invalid_ip_address"),
        ("10.0.0.300", None, "invalid_ip_address"),
        ("10.0.0.7", NOW - timedelta(seconds=1), "expires_at_must_be_in_future"),
    ],
)
async def test_ip_ban_validation(ip, expires_at, detail) -> None:
    _, service = _ip_service()
    with pytest.raises(ValidationError) as exc:
        await service.ban_ip(ip, "staff-1", "abuse", expires_at, now=NOW)
    assert exc.value.detail == detail
