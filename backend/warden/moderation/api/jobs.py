"""Internal sweep triggers invoked by the external scheduler."""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query

from warden.api.deps import verify_internal_secret
from warden.moderation.domain import container
from warden.moderation.jobs import ban_sweep, retention

router = APIRouter(
    prefix="/api/abuse/v1/jobs",
    tags=["abuse-jobs"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.post("/scan-batch")
async def run_scan_batch(limit: Optional[int] = Query(default=None, ge=1, le=1000)) -> dict[str, int]:
    result = await container.get_scan_service().scan_batch(limit)
    return asdict(result)


@router.post("/queue-automation")
async def run_queue_automation() -> dict[str, int]:
    result = await container.get_flag_workflow().run_queue_automation()
    return asdict(result)


@router.post("/ban-sweep")
async def run_ban_sweep() -> dict[str, int]:
    result = await ban_sweep.run(container.get_ban_service(), container.get_audit_log())
    return asdict(result)


@router.post("/retention")
async def run_retention() -> dict[str, int]:
    return await retention.run(
        audit=container.get_audit_log().repository,
        flags=container.get_flag_workflow().flags,
        rate_limit_events=container.get_rate_limit_store(),
    )
