"""AsyncPG pool management."""

from __future__ import annotations

from typing import Optional

import asyncpg

from warden.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None


def affected_rows(status: str) -> int:
	"""Row count from an asyncpg command tag such as ``DELETE 3``."""
	try:
		return int(str(status).rsplit(" ", 1)[-1])
	except ValueError:
		return 0
