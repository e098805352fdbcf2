"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from labquest.database import get_session as _get_session
from labquest.redis_client import get_redis as _get_redis

get_db = _get_session


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client (or None) as a FastAPI dependency."""
    yield _get_redis()
