from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from warden.moderation.domain.audit import AuditLog, InMemoryAuditRepository, Severity
from warden.moderation.domain.bans import BanService, InMemoryBanRepository
from warden.moderation.domain.content import ContentRecord, InMemoryContentStore, InMemoryReportRepository
from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.errors import InvalidTransition, NotFoundError, ValidationError
from warden.moderation.domain.flags import FlagState, FlagWorkflow, InMemoryFlagRepository

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


async def _wire() -> SimpleNamespace:
    audit = AuditLog(InMemoryAuditRepository())
    bans = BanService(InMemoryBanRepository(), audit)
    audit.bind_ban_trigger(bans.check_and_auto_ban)
    reports = InMemoryReportRepository()
    content = InMemoryContentStore()
    await content.put(ContentRecord("post:1", NOW - timedelta(hours=2), author_id="author-1", text="hello there"))
    workflow = FlagWorkflow(
        flags=InMemoryFlagRepository(reports=reports),
        reports=reports,
        content=content,
        bans=bans,
        audit=audit,
    )
    return SimpleNamespace(audit=audit, bans=bans, reports=reports, content=content, workflow=workflow)


async def _types(audit: AuditLog, subject: str) -> list[str]:
    return [e.event_type for e in await audit.list_for_subject(subject, limit=200)]


@pytest.mark.asyncio
async def test_create_flag_is_idempotent_per_source() -> None:
    env = await _wire()
    first = await env.workflow.create_flag("post:1", ["spam"], 5, "automated_scan", now=NOW)
    again = await env.workflow.create_flag("post:1", ["spam", "links"], 6, "automated_scan", now=NOW)
    other = await env.workflow.create_flag("post:1", ["slur"], 5, "automated_filter", now=NOW)

    assert again == first
    assert other != first
    flag = await env.workflow.get(first)
    assert flag.state is FlagState.PENDING
    assert flag.priority == 50
    assert flag.reasons == ("spam",)
    assert (await _types(env.audit, "content:post:1")).count("flag_create_skipped") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reasons, risk, source, detail",
    [
        ("spam", 5, "automated_scan", "reasons_must_be_a_list"),
        ([" "], 5, "automated_scan", "reasons_required"),
        (["spam"], 10.5, "automated_scan", "risk_out_of_range"),
        (["spam"], -1, "automated_scan", "risk_out_of_range"),
        (["spam"], True, "automated_scan", "risk_out_of_range"),
        (["spam"], 5, "", "source_required"),
    ],
)
async def test_create_flag_validation(reasons, risk, source, detail) -> None:
    env = await _wire()
    with pytest.raises(ValidationError) as exc:
        await env.workflow.create_flag("post:1", reasons, risk, source, now=NOW)
    assert exc.value.detail == detail


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "risk, expected",
    [(2, None), (5, Severity.WARNING), (8, Severity.ERROR)],
)
async def test_flag_risk_is_charged_to_the_author(risk, expected) -> None:
    env = await _wire()
    await env.workflow.create_flag("post:1", ["spam"], risk, "automated_scan", now=NOW)
    events = [e for e in await env.audit.list_for_subject("author-1") if e.event_type == "content_violation"]
    assert [e.severity for e in events] == ([] if expected is None else [expected])


@pytest.mark.asyncio
async def test_queue_orders_by_priority_and_marks_urgent() -> None:
    env = await _wire()
    low = await env.workflow.create_flag("post:a", ["x"], 2, "automated_scan", now=NOW)
    high = await env.workflow.create_flag("post:b", ["x"], 9.5, "automated_scan", now=NOW)
    mid = await env.workflow.create_flag("post:c", ["x"], 5, "automated_scan", now=NOW)

    queue = await env.workflow.list_queue()
    assert [f.id for f in queue] == [high, mid, low]
    assert queue[0].is_urgent
    assert not queue[1].is_urgent


@pytest.mark.asyncio
async def test_claim_then_resolve() -> None:
    env = await _wire()
    flag_id = await env.workflow.create_flag("post:1", ["spam"], 5, "automated_scan", now=NOW)

    claimed = await env.workflow.claim(flag_id, "staff-1", now=NOW)
    assert claimed.state is FlagState.IN_REVIEW
    assert claimed.reviewer_id == "staff-1"
    with pytest.raises(InvalidTransition) as exc:
        await env.workflow.claim(flag_id, "staff-2", now=NOW)
    assert exc.value.detail == "cannot_claim_from_in_review"

    resolved = await env.workflow.resolve(flag_id, "staff-1", notes="benign", now=NOW + timedelta(minutes=5))
    assert resolved.state is FlagState.RESOLVED
    assert resolved.reviewed_at == NOW + timedelta(minutes=5)
    assert "Resolved (dismissed): benign" in resolved.notes
    with pytest.raises(InvalidTransition) as exc:
        await env.workflow.resolve(flag_id, "staff-1", now=NOW)
    assert exc.value.detail == "flag_already_resolved"


@pytest.mark.asyncio
async def test_pending_flag_can_be_resolved_directly() -> None:
    env = await _wire()
    flag_id = await env.workflow.create_flag("post:1", ["spam"], 5, "automated_scan", now=NOW)
    resolved = await env.workflow.resolve(flag_id, "staff-1", now=NOW)
    assert resolved.state is FlagState.RESOLVED


@pytest.mark.asyncio
async def test_unknown_flag_and_bad_outcome() -> None:
    env = await _wire()
    with pytest.raises(NotFoundError):
        await env.workflow.claim("nope", "staff-1")
    with pytest.raises(NotFoundError):
        await env.workflow.resolve("nope", "staff-1")
    flag_id = await env.workflow.create_flag("post:1", ["spam"], 5, "automated_scan", now=NOW)
    with pytest.raises(ValidationError):
        await env.workflow.resolve(flag_id, "staff-1", outcome="ignored")


@pytest.mark.asyncio
async def test_resolved_flag_allows_a_fresh_one() -> None:
    env = await _wire()
    first = await env.workflow.create_flag("post:1", ["spam"], 5, "automated_scan", now=NOW)
    await env.workflow.resolve(first, "staff-1", now=NOW)
    second = await env.workflow.create_flag("post:1", ["spam"], 5, "automated_scan", now=NOW)
    assert second != first


@pytest.mark.asyncio
async def test_actioned_resolution_counts_against_author() -> None:
    env = await _wire()
    flag_id = await env.workflow.create_flag("post:1", ["spam"], 2, "automated_scan", now=NOW)
    await env.workflow.resolve(flag_id, "staff-1", outcome="actioned", now=NOW)
    events = await env.audit.list_for_subject("author-1")
    assert [(e.event_type, e.severity) for e in events] == [("content_violation_confirmed", Severity.ERROR)]


@pytest.mark.asyncio
async def test_user_report_opens_a_single_flag_and_is_closed_on_resolve() -> None:
    env = await _wire()
    first = await env.workflow.report_content(RequestContext(subject_id="r1"), "post:1", "harassment", now=NOW)
    second = await env.workflow.report_content(RequestContext(subject_id="r2"), "post:1", "spam", now=NOW)

    assert first.flag_id == second.flag_id
    flag = await env.workflow.get(first.flag_id)
    assert flag.source == "user_report"
    assert flag.risk == 4.0
    assert flag.reasons == ("user_report:harassment",)
    assert await env.reports.count_open("post:1") == 2

    await env.workflow.resolve(first.flag_id, "staff-1", now=NOW)
    assert await env.reports.count_open("post:1") == 0


@pytest.mark.asyncio
async def test_report_validation() -> None:
    env = await _wire()
    with pytest.raises(ValidationError):
        await env.workflow.report_content(RequestContext(), "post:1", "spam")
    with pytest.raises(ValidationError):
        await env.workflow.report_content(RequestContext(subject_id="r1"), "post:1", "  ")
    with pytest.raises(NotFoundError):
        await env.workflow.report_content(RequestContext(subject_id="r1"), "post:missing", "spam")
