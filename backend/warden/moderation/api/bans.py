"""Ban status lookups plus staff management of profile and IP bans."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from warden.api.deps import require_staff
from warden.moderation.domain.bans import BanHistoryEntry, BanRecord, IpBan
from warden.moderation.domain.container import get_ban_service, get_ip_ban_service
from warden.moderation.domain.context import RequestContext

router = APIRouter(prefix="/api/abuse/v1/bans", tags=["abuse-bans"])


class BanStatusOut(BaseModel):
    profile_id: str
    banned: bool


class BanOut(BaseModel):
    profile_id: str
    is_banned: bool
    banned_at: Optional[str]
    banned_until: Optional[str]
    reason: Optional[str]
    ban_count: int

    @classmethod
    def from_domain(cls, record: BanRecord) -> "BanOut":
        return cls(
            profile_id=record.profile_id,
            is_banned=record.is_banned,
            banned_at=record.banned_at.isoformat() if record.banned_at else None,
            banned_until=record.banned_until.isoformat() if record.banned_until else None,
            reason=record.reason,
            ban_count=record.ban_count,
        )


class BanHistoryOut(BaseModel):
    id: str
    ban_type: str
    reason: str
    duration_hours: Optional[int]
    issuer_id: Optional[str]
    banned_at: str
    banned_until: Optional[str]
    lifted_at: Optional[str]
    lifted_by: Optional[str]
    details: dict

    @classmethod
    def from_domain(cls, entry: BanHistoryEntry) -> "BanHistoryOut":
        return cls(
            id=entry.id,
            ban_type=entry.ban_type.value,
            reason=entry.reason,
            duration_hours=entry.duration_hours,
            issuer_id=entry.issuer_id,
            banned_at=entry.banned_at.isoformat(),
            banned_until=entry.banned_until.isoformat() if entry.banned_until else None,
            lifted_at=entry.lifted_at.isoformat() if entry.lifted_at else None,
            lifted_by=entry.lifted_by,
            details=dict(entry.details),
        )


class BanIn(BaseModel):
    profile_id: str = Field(..., min_length=1, max_length=128)
    reason: str = Field(..., min_length=1, max_length=500)
    duration_hours: Optional[int] = Field(default=None, gt=0, le=24 * 365 * 10)


class UnbanIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class IpBanIn(BaseModel):
    ip_address: str = Field(..., min_length=2, max_length=64)
    reason: Optional[str] = Field(default=None, max_length=500)
    expires_at: Optional[datetime] = None


class IpBanOut(BaseModel):
    ip_address: str
    banned: bool
    reason: Optional[str] = None
    banned_by: Optional[str] = None
    banned_at: Optional[str] = None
    expires_at: Optional[str] = None

    @classmethod
    def from_domain(cls, ban: IpBan, *, banned: bool) -> "IpBanOut":
        return cls(
            ip_address=ban.ip_address,
            banned=banned,
            reason=ban.reason,
            banned_by=ban.banned_by,
            banned_at=ban.banned_at.isoformat(),
            expires_at=ban.expires_at.isoformat() if ban.expires_at else None,
        )


@router.get("/ip/{ip_address}", response_model=IpBanOut)
async def ip_ban_status(ip_address: str) -> IpBanOut:
    ban = await get_ip_ban_service().get(ip_address)
    if ban is None:
        return IpBanOut(ip_address=ip_address, banned=False)
    return IpBanOut.from_domain(ban, banned=ban.is_effective(datetime.now(timezone.utc)))


@router.post("/ip", response_model=IpBanOut, status_code=status.HTTP_201_CREATED)
async def ban_ip(payload: IpBanIn, ctx: RequestContext = Depends(require_staff)) -> IpBanOut:
    ban = await get_ip_ban_service().ban_ip(
        payload.ip_address, ctx.subject_id or "", payload.reason, payload.expires_at, ctx=ctx
    )
    return IpBanOut.from_domain(ban, banned=True)


@router.post("/ip/{ip_address}/unban")
async def unban_ip(ip_address: str, ctx: RequestContext = Depends(require_staff)) -> dict[str, bool]:
    lifted = await get_ip_ban_service().unban_ip(ip_address, ctx.subject_id or "", ctx=ctx)
    return {"lifted": lifted}


@router.get("/{profile_id}", response_model=BanStatusOut)
async def ban_status(profile_id: str) -> BanStatusOut:
    return BanStatusOut(profile_id=profile_id, banned=await get_ban_service().is_banned(profile_id))


@router.post("", response_model=BanOut, status_code=status.HTTP_201_CREATED)
async def ban_profile(payload: BanIn, ctx: RequestContext = Depends(require_staff)) -> BanOut:
    record = await get_ban_service().ban(
        payload.profile_id, ctx.subject_id or "", payload.reason, payload.duration_hours, ctx=ctx
    )
    return BanOut.from_domain(record)


@router.post("/{profile_id}/unban")
async def unban_profile(
    profile_id: str,
    payload: UnbanIn,
    ctx: RequestContext = Depends(require_staff),
) -> dict[str, bool]:
    lifted = await get_ban_service().unban(profile_id, ctx.subject_id or "", payload.reason, ctx=ctx)
    return {"lifted": lifted}


@router.get("/{profile_id}/history", response_model=list[BanHistoryOut])
async def ban_history(profile_id: str, _: RequestContext = Depends(require_staff)) -> list[BanHistoryOut]:
    entries = await get_ban_service().history(profile_id)
    return [BanHistoryOut.from_domain(entry) for entry in entries]
