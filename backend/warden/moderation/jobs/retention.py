"""Retention purge for audit events, resolved flags and rate-limit events."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict

from warden.moderation.domain.audit import AuditRepository, Severity
from warden.moderation.domain.flags import FlagRepository
from warden.moderation.domain.rate_limits import RateLimitEventStore
from warden.obs import metrics as obs_metrics
from warden.settings import settings

logger = logging.getLogger(__name__)


async def run(
    *,
    audit: AuditRepository,
    flags: FlagRepository,
    rate_limit_events: RateLimitEventStore,
    now: datetime | None = None,
) -> Dict[str, int]:
    """Critical audit events, bans and ban history are never purged."""

    now = now or datetime.now(timezone.utc)
    counts: Dict[str, int] = {}
    counts["audit_info_warning"] = await audit.purge(
        (Severity.INFO, Severity.WARNING),
        before=now - timedelta(days=settings.audit_retention_info_days),
    )
    counts["audit_error"] = await audit.purge(
        (Severity.ERROR,),
        before=now - timedelta(days=settings.audit_retention_error_days),
    )
    counts["resolved_flags"] = await flags.purge_resolved(
        before=now - timedelta(days=settings.flag_retention_days),
    )
    counts["rate_limit_events"] = await rate_limit_events.purge_before(
        now - timedelta(days=settings.rate_limit_event_retention_days),
    )
    for table, removed in counts.items():
        obs_metrics.inc_retention_purged(table, removed)
    logger.info("retention purge complete", extra=counts)
    return counts
