"""Rate-limit checks for collaborating services acting on behalf of a caller."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from warden.api.deps import get_request_context, verify_internal_secret
from warden.moderation.domain.container import get_rate_limit_gate, get_rate_limiter
from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.rate_limits import RateLimitDecision

router = APIRouter(
    prefix="/api/abuse/v1/rate-limits",
    tags=["abuse-rate-limits"],
    dependencies=[Depends(verify_internal_secret)],
)


class RateLimitCheckIn(BaseModel):
    action: str = Field(..., min_length=1, max_length=64)
    active_count: Optional[int] = Field(default=None, ge=0)
    account_created_at: Optional[datetime] = None


class RateLimitRecordIn(BaseModel):
    action: str = Field(..., min_length=1, max_length=64)


class RateLimitDecisionOut(BaseModel):
    allowed: bool
    retry_after: Optional[float] = None
    reasons: list[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, decision: RateLimitDecision) -> "RateLimitDecisionOut":
        return cls(allowed=decision.allowed, retry_after=decision.retry_after, reasons=list(decision.reasons))


class WeightedCheckIn(BaseModel):
    cost: int = Field(..., ge=0)
    budget: Optional[int] = Field(default=None, ge=0)
    name: str = Field(default="query", max_length=64)


class WeightedRecordIn(BaseModel):
    execution_ms: float = Field(..., ge=0)
    name: str = Field(default="query", max_length=64)


def _weighted_key(ctx: RequestContext) -> str:
    key = ctx.subject_key("subject") or ctx.subject_key("ip")
    if key is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="missing_subject_identity")
    return key


@router.post("/check", response_model=RateLimitDecisionOut)
async def check_rate_limit(
    payload: RateLimitCheckIn,
    ctx: RequestContext = Depends(get_request_context),
) -> RateLimitDecisionOut:
    decision = await get_rate_limit_gate().enforce(
        ctx,
        payload.action,
        active_count=payload.active_count,
        account_created_at=payload.account_created_at,
    )
    return RateLimitDecisionOut.from_domain(decision)


@router.post("/record")
async def record_rate_limit_event(
    payload: RateLimitRecordIn,
    ctx: RequestContext = Depends(get_request_context),
) -> dict[str, bool]:
    return {"recorded": await get_rate_limit_gate().complete(ctx, payload.action)}


@router.post("/weighted/check")
async def check_weighted(
    payload: WeightedCheckIn,
    ctx: RequestContext = Depends(get_request_context),
) -> dict[str, bool]:
    allowed = await get_rate_limiter().check_weighted(
        _weighted_key(ctx), payload.cost, payload.budget, name=payload.name
    )
    return {"allowed": allowed}


@router.post("/weighted/record")
async def record_weighted(
    payload: WeightedRecordIn,
    ctx: RequestContext = Depends(get_request_context),
) -> dict[str, int]:
    cost = await get_rate_limiter().record_execution(_weighted_key(ctx), payload.execution_ms, name=payload.name)
    return {"cost": cost}
