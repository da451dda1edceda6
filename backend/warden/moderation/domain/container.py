"""Lightweight service container shared by moderation modules."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Optional

import asyncpg
import httpx
from redis.asyncio import Redis

from warden.infra.redis import RedisProxy, redis_client
from warden.moderation.domain.audit import AuditLog, AuditRepository, InMemoryAuditRepository
from warden.moderation.domain.bans import (
    BanNotifier,
    BanRepository,
    BanService,
    InMemoryBanRepository,
    InMemoryIpBanRepository,
    InProcessSubjectLocks,
    IpBanRepository,
    IpBanService,
    SubjectLocks,
)
from warden.moderation.domain.classifier import ContentClassifier, HttpContentClassifier
from warden.moderation.domain.content import (
    ContentStore,
    InMemoryContentStore,
    InMemoryReportRepository,
    ReportRepository,
)
from warden.moderation.domain.flags import FlagRepository, FlagWorkflow, InMemoryFlagRepository
from warden.moderation.domain.rate_limit_config import RateLimitTable, load_rate_limit_table
from warden.moderation.domain.rate_limits import RateLimitEventStore, RateLimitGate, RateLimiter
from warden.moderation.domain.scanner import ContentRiskScanner, ContentScanService
from warden.moderation.infra.postgres_audit import PostgresAuditRepository
from warden.moderation.infra.postgres_bans import PostgresBanRepository, PostgresIpBanRepository
from warden.moderation.infra.postgres_content import PostgresContentStore, PostgresReportRepository
from warden.moderation.infra.postgres_flags import PostgresFlagRepository
from warden.moderation.infra.redis_locks import RedisSubjectLocks
from warden.moderation.infra.redis_rate_limit import RedisRateLimitEventStore
from warden.settings import settings

BACKEND_ROOT = Path(__file__).resolve().parents[3]


def _resolve_config_path(raw: str) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else BACKEND_ROOT / path


_redis_proxy: RedisProxy = redis_client
_rate_table: RateLimitTable = load_rate_limit_table(_resolve_config_path(settings.rate_limit_config_path))
_rate_store: RateLimitEventStore = RedisRateLimitEventStore(
    _redis_proxy, ttl_seconds=_rate_table.longest_window_seconds()
)
_audit_repository: AuditRepository = InMemoryAuditRepository()
_ban_repository: BanRepository = InMemoryBanRepository()
_ip_ban_repository: IpBanRepository = InMemoryIpBanRepository()
_report_repository: ReportRepository = InMemoryReportRepository()
_flag_repository: FlagRepository = InMemoryFlagRepository(reports=_report_repository)
_content_store: ContentStore = InMemoryContentStore()
_locks: SubjectLocks = InProcessSubjectLocks()
_notifier: Optional[BanNotifier] = None
_classifier: Optional[ContentClassifier] = None
_http_client: Optional[httpx.AsyncClient] = None

_audit_log: AuditLog
_ban_service: BanService
_ip_ban_service: IpBanService
_rate_limiter: RateLimiter
_rate_gate: RateLimitGate
_flag_workflow: FlagWorkflow
_scan_service: ContentScanService


def _build_classifier() -> Optional[ContentClassifier]:
    global _http_client
    if not settings.classifier_url:
        return None
    if _http_client is None:
        _http_client = httpx.AsyncClient()
    return HttpContentClassifier(
        http=_http_client,
        endpoint=settings.classifier_url,
        api_key=settings.classifier_api_key,
        request_timeout=settings.classifier_timeout_seconds,
    )


def _rebuild() -> None:
    global _audit_log, _ban_service, _ip_ban_service, _rate_limiter, _rate_gate, _flag_workflow, _scan_service
    _audit_log = AuditLog(_audit_repository)
    _ban_service = BanService(_ban_repository, _audit_log, locks=_locks, notifier=_notifier)
    _audit_log.bind_ban_trigger(_ban_service.check_and_auto_ban)
    _ip_ban_service = IpBanService(_ip_ban_repository, _audit_log)
    _rate_limiter = RateLimiter(_rate_store, _rate_table)
    _rate_gate = RateLimitGate(_rate_limiter, _audit_log, abuse_threshold=settings.rate_limit_abuse_threshold)
    _flag_workflow = FlagWorkflow(
        flags=_flag_repository,
        reports=_report_repository,
        content=_content_store,
        bans=_ban_service,
        audit=_audit_log,
        batch_cap=settings.queue_batch_cap,
    )
    _scan_service = ContentScanService(
        store=_content_store,
        scanner=ContentRiskScanner(
            classifier=_classifier,
            classifier_timeout=settings.classifier_timeout_seconds,
        ),
        workflow=_flag_workflow,
        staleness=timedelta(hours=settings.scan_staleness_hours),
        default_limit=settings.scan_batch_limit,
    )


_classifier = _build_classifier()
_rebuild()


def configure(
    *,
    redis_proxy: Optional[RedisProxy] = None,
    rate_table: Optional[RateLimitTable] = None,
    rate_store: Optional[RateLimitEventStore] = None,
    audit_repository: Optional[AuditRepository] = None,
    ban_repository: Optional[BanRepository] = None,
    ip_ban_repository: Optional[IpBanRepository] = None,
    flag_repository: Optional[FlagRepository] = None,
    report_repository: Optional[ReportRepository] = None,
    content_store: Optional[ContentStore] = None,
    locks: Optional[SubjectLocks] = None,
    notifier: Optional[BanNotifier] = None,
    classifier: Optional[ContentClassifier] = None,
) -> None:
    global _redis_proxy, _rate_table, _rate_store, _audit_repository, _ban_repository, _ip_ban_repository
    global _flag_repository, _report_repository, _content_store, _locks, _notifier, _classifier
    _redis_proxy = redis_proxy or _redis_proxy
    if rate_table is not None:
        _rate_table = rate_table
    if rate_store is not None:
        _rate_store = rate_store
    elif redis_proxy is not None or rate_table is not None:
        _rate_store = RedisRateLimitEventStore(_redis_proxy, ttl_seconds=_rate_table.longest_window_seconds())
    if audit_repository is not None:
        _audit_repository = audit_repository
    if ban_repository is not None:
        _ban_repository = ban_repository
    if ip_ban_repository is not None:
        _ip_ban_repository = ip_ban_repository
    if report_repository is not None:
        _report_repository = report_repository
    if flag_repository is not None:
        _flag_repository = flag_repository
    if content_store is not None:
        _content_store = content_store
    if locks is not None:
        _locks = locks
    if notifier is not None:
        _notifier = notifier
    if classifier is not None:
        _classifier = classifier
    _rebuild()


def configure_postgres(pool: asyncpg.Pool, redis_conn: Redis | RedisProxy) -> None:
    proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    configure(
        redis_proxy=proxy,
        audit_repository=PostgresAuditRepository(pool),
        ban_repository=PostgresBanRepository(pool),
        ip_ban_repository=PostgresIpBanRepository(pool),
        flag_repository=PostgresFlagRepository(pool),
        report_repository=PostgresReportRepository(pool),
        content_store=PostgresContentStore(pool),
        locks=RedisSubjectLocks(
            proxy,
            timeout=settings.ban_lock_timeout_seconds,
            blocking_timeout=settings.ban_lock_wait_seconds,
        ),
    )


async def shutdown() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def staff_ids() -> tuple[str, ...]:
    return tuple(settings.moderation_staff_ids)


def get_rate_limit_table() -> RateLimitTable:
    return _rate_table


def get_rate_limit_store() -> RateLimitEventStore:
    return _rate_store


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


def get_rate_limit_gate() -> RateLimitGate:
    return _rate_gate


def get_audit_log() -> AuditLog:
    return _audit_log


def get_ban_service() -> BanService:
    return _ban_service


def get_ip_ban_service() -> IpBanService:
    return _ip_ban_service


def get_flag_workflow() -> FlagWorkflow:
    return _flag_workflow


def get_scan_service() -> ContentScanService:
    return _scan_service


def get_content_store() -> ContentStore:
    return _content_store


def get_report_repository() -> ReportRepository:
    return _report_repository
