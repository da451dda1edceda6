"""Periodic ban sweep: lift lapsed bans and re-run the ladder for recent offenders."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from warden.moderation.domain.audit import AuditLog
from warden.moderation.domain.bans import BanOutcome, BanService

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BanSweepResult:
    expired: int = 0
    evaluated: int = 0
    banned: int = 0
    errors: int = 0


async def run(
    service: BanService,
    audit: AuditLog,
    *,
    now: datetime | None = None,
    lookback: timedelta = timedelta(hours=24),
    limit: int = 500,
) -> BanSweepResult:
    """Safe to re-run: expiry is a conditional clear and the ladder skips banned subjects."""

    now = now or datetime.now(timezone.utc)
    expired = evaluated = banned = errors = 0

    for record in await service.repository.list_expired(now, limit=limit):
        try:
            still_banned = await service.is_banned(record.profile_id, now=now)
        except Exception:
            errors += 1
            logger.exception("ban expiry failed", extra={"profile_id": record.profile_id})
            continue
        if not still_banned:
            expired += 1

    for subject_id in await audit.subjects_with_severe_since(now - lookback, limit=limit):
        evaluated += 1
        try:
            active = await service.active_ban(subject_id, now=now)
            if active is not None:
                continue
            outcome = await service.evaluate(subject_id, "ban_sweep", now=now)
        except Exception:
            errors += 1
            logger.exception("ban sweep evaluation failed", extra={"profile_id": subject_id})
            continue
        if outcome is BanOutcome.BANNED:
            banned += 1

    result = BanSweepResult(expired=expired, evaluated=evaluated, banned=banned, errors=errors)
    logger.info(
        "ban sweep complete",
        extra={"expired": expired, "evaluated": evaluated, "banned": banned, "errors": errors},
    )
    return result
