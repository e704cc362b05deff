from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import StoreUnavailable


def create_redis_client(url: str | None = None) -> redis.Redis:
    return redis.from_url(url or Settings.redis_url, decode_responses=True)


def key(*parts: object) -> str:
    """Builds a namespaced store key, e.g. ``crawl:job:<id>``."""
    return ":".join([Settings.key_prefix, *(str(part) for part in parts)])


@asynccontextmanager
async def store_call(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise StoreUnavailable(f"{operation}: {exc}") from exc
