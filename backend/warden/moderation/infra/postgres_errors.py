"""Maps asyncpg driver and connection failures onto the domain's transient error."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

import asyncpg

from warden.moderation.domain.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def translate_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except STORE_ERRORS as exc:
            logger.warning("postgres call failed", extra={"operation": func.__qualname__, "error": type(exc).__name__})
            raise TransientStoreError() from exc

    return wrapper
