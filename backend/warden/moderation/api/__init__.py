"""Abuse-mitigation API routers."""

from fastapi import APIRouter

from . import audit, bans, flags, jobs, rate_limits

router = APIRouter()
router.include_router(rate_limits.router)
router.include_router(flags.router)
router.include_router(bans.router)
router.include_router(audit.router)
router.include_router(jobs.router)

__all__ = ["router"]
