"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from warden import __version__
from warden.api import ops
from warden.api.errors import install_error_handlers
from warden.infra import postgres
from warden.infra.redis import redis_client
from warden.moderation import configure_postgres as configure_moderation
from warden.moderation import router as moderation_router
from warden.moderation import shutdown as shutdown_moderation
from warden.obs import init as obs_init
from warden.obs.logging import get_logger
from warden.settings import settings

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = None
	if settings.storage_backend == "postgres":
		pool = await postgres.init_pool()
		configure_moderation(pool, redis_client)
	logger.info(
		"warden starting",
		extra={"storage_backend": settings.storage_backend, "environment": settings.environment},
	)
	try:
		yield
	finally:
		await shutdown_moderation()
		if pool is not None:
			await postgres.close_pool()


app = FastAPI(title="Warden Abuse Mitigation", version=__version__, lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

app.include_router(ops.router, tags=["ops"])
app.include_router(moderation_router)
