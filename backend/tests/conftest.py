import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from warden.infra.redis import redis_client, set_redis_client
from warden.main import app
from warden.moderation.domain import container
from warden.moderation.domain.audit import InMemoryAuditRepository
from warden.moderation.domain.bans import InMemoryBanRepository, InMemoryIpBanRepository, InProcessSubjectLocks
from warden.moderation.domain.content import InMemoryContentStore, InMemoryReportRepository
from warden.moderation.domain.flags import InMemoryFlagRepository
from warden.moderation.domain.rate_limit_config import RateLimitTable
from warden.settings import settings

STAFF_ID = "staff-1"
INTERNAL_TOKEN = "test-internal-token"


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def fresh_container():
	"""Every test starts from empty in-memory repositories and the default limit table."""
	reports = InMemoryReportRepository()
	container.configure(
		redis_proxy=redis_client,
		rate_table=RateLimitTable.default(),
		audit_repository=InMemoryAuditRepository(),
		ban_repository=InMemoryBanRepository(),
		ip_ban_repository=InMemoryIpBanRepository(),
		report_repository=reports,
		flag_repository=InMemoryFlagRepository(reports=reports),
		content_store=InMemoryContentStore(),
		locks=InProcessSubjectLocks(),
	)
	yield


@pytest.fixture(autouse=True)
def force_test_settings():
	original_staff = settings.moderation_staff_ids
	original_token = settings.internal_ops_token
	settings.moderation_staff_ids = (STAFF_ID,)
	settings.internal_ops_token = INTERNAL_TOKEN
	try:
		yield
	finally:
		settings.moderation_staff_ids = original_staff
		settings.internal_ops_token = original_token


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
