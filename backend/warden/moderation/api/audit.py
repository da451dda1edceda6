"""Audit trail ingestion for collaborators and lookup for staff."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from warden.api.deps import get_request_context, require_staff, verify_internal_secret
from warden.moderation.domain.audit import AuditEvent, Severity
from warden.moderation.domain.container import get_audit_log
from warden.moderation.domain.context import RequestContext

router = APIRouter(prefix="/api/abuse/v1/audit", tags=["abuse-audit"])


class AuditEventIn(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=128)
    event_type: str = Field(..., min_length=1, max_length=64)
    severity: Severity
    details: dict[str, Any] = Field(default_factory=dict)


class AuditEventOut(BaseModel):
    id: str
    subject_id: str
    event_type: str
    severity: str
    details: dict[str, Any]
    ip: Optional[str]
    created_at: str

    @classmethod
    def from_domain(cls, event: AuditEvent) -> "AuditEventOut":
        return cls(
            id=event.id,
            subject_id=event.subject_id,
            event_type=event.event_type,
            severity=event.severity.value,
            details=dict(event.details),
            ip=event.ip,
            created_at=event.created_at.isoformat(),
        )


@router.post(
    "",
    response_model=AuditEventOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_internal_secret)],
)
async def log_event(payload: AuditEventIn, ctx: RequestContext = Depends(get_request_context)) -> AuditEventOut:
    event = await get_audit_log().log(
        payload.subject_id, payload.event_type, payload.severity, payload.details, ctx=ctx
    )
    return AuditEventOut.from_domain(event)


@router.get("/{subject_id}", response_model=list[AuditEventOut])
async def list_events(
    subject_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    _: RequestContext = Depends(require_staff),
) -> list[AuditEventOut]:
    events = await get_audit_log().list_for_subject(subject_id, limit=limit)
    return [AuditEventOut.from_domain(event) for event in events]
