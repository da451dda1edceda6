"""Moderation flag queue, user reports, publish-time filtering and visibility lookups."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from warden.api.deps import get_request_context, require_staff, require_subject, verify_internal_secret
from warden.moderation.domain.container import get_flag_workflow, get_rate_limit_gate, get_scan_service
from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.flags import ModerationFlag

router = APIRouter(prefix="/api/abuse/v1", tags=["abuse-flags"])


class FlagOut(BaseModel):
    id: str
    content_ref: str
    reasons: list[str]
    risk: float
    source: str
    priority: int
    state: str
    urgent: bool
    created_at: str
    reviewed_at: Optional[str]
    reviewer_id: Optional[str]
    notes: str

    @classmethod
    def from_domain(cls, flag: ModerationFlag) -> "FlagOut":
        return cls(
            id=flag.id,
            content_ref=flag.content_ref,
            reasons=list(flag.reasons),
            risk=flag.risk,
            source=flag.source,
            priority=flag.priority,
            state=flag.state.value,
            urgent=flag.is_urgent,
            created_at=flag.created_at.isoformat(),
            reviewed_at=flag.reviewed_at.isoformat() if flag.reviewed_at else None,
            reviewer_id=flag.reviewer_id,
            notes=flag.notes,
        )


class CreateFlagIn(BaseModel):
    content_ref: str = Field(..., min_length=1, max_length=128)
    reasons: list[str] = Field(..., min_length=1)
    risk: float = Field(..., ge=0, le=10)
    source: str = Field(..., min_length=1, max_length=64)


class ResolveFlagIn(BaseModel):
    outcome: Literal["dismissed", "actioned"] = "dismissed"
    notes: Optional[str] = Field(default=None, max_length=2000)


class ReportIn(BaseModel):
    content_ref: str = Field(..., min_length=1, max_length=128)
    reason: str = Field(..., min_length=1, max_length=255)


class VisibilityOut(BaseModel):
    content_ref: str
    hidden: bool
    reason: str


class FilterOut(BaseModel):
    content_ref: str
    filtered: bool
    reason: Optional[str]
    severity: Optional[str]


@router.post("/flags", status_code=status.HTTP_201_CREATED, dependencies=[Depends(verify_internal_secret)])
async def create_flag(payload: CreateFlagIn) -> dict[str, str]:
    flag_id = await get_flag_workflow().create_flag(
        payload.content_ref, payload.reasons, payload.risk, payload.source
    )
    return {"flag_id": flag_id}


@router.get("/flags", response_model=list[FlagOut])
async def list_flag_queue(
    limit: int = Query(default=50, ge=1, le=200),
    _: RequestContext = Depends(require_staff),
) -> list[FlagOut]:
    flags = await get_flag_workflow().list_queue(limit=limit)
    return [FlagOut.from_domain(flag) for flag in flags]


@router.post("/flags/{flag_id}/claim", response_model=FlagOut)
async def claim_flag(flag_id: str, ctx: RequestContext = Depends(require_staff)) -> FlagOut:
    flag = await get_flag_workflow().claim(flag_id, ctx.subject_id or "", ctx=ctx)
    return FlagOut.from_domain(flag)


@router.post("/flags/{flag_id}/resolve", response_model=FlagOut)
async def resolve_flag(
    flag_id: str,
    payload: ResolveFlagIn,
    ctx: RequestContext = Depends(require_staff),
) -> FlagOut:
    flag = await get_flag_workflow().resolve(
        flag_id, ctx.subject_id or "", outcome=payload.outcome, notes=payload.notes, ctx=ctx
    )
    return FlagOut.from_domain(flag)


@router.post("/reports", status_code=status.HTTP_201_CREATED, dependencies=[Depends(verify_internal_secret)])
async def submit_report(payload: ReportIn, ctx: RequestContext = Depends(require_subject)) -> dict[str, str]:
    gate = get_rate_limit_gate()
    decision = await gate.enforce(ctx, "report")
    if not decision.allowed:
        headers = {"Retry-After": str(int(decision.retry_after) + 1)} if decision.retry_after is not None else None
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate_limited", headers=headers)
    receipt = await get_flag_workflow().report_content(ctx, payload.content_ref, payload.reason)
    await gate.complete(ctx, "report")
    return {"report_id": receipt.report_id, "flag_id": receipt.flag_id}


@router.get("/content/{content_ref}/visibility", response_model=VisibilityOut)
async def content_visibility(
    content_ref: str,
    _: RequestContext = Depends(get_request_context),
) -> VisibilityOut:
    decision = await get_flag_workflow().visibility(content_ref)
    return VisibilityOut(content_ref=content_ref, hidden=decision.hidden, reason=decision.reason)


@router.post(
    "/content/{content_ref}/filter",
    response_model=FilterOut,
    dependencies=[Depends(verify_internal_secret)],
)
async def filter_content_on_ingest(
    content_ref: str,
    ctx: RequestContext = Depends(get_request_context),
) -> FilterOut:
    decision = await get_scan_service().filter_on_ingest(content_ref, ctx=ctx)
    return FilterOut(
        content_ref=content_ref,
        filtered=decision.should_filter,
        reason=decision.reason,
        severity=decision.severity,
    )
