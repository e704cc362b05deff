"""Per-crawl URL frontier and in-flight task tracking in Redis.

Every mutation is a single round trip (SADD/HSET/HDEL inside one MULTI), so
concurrent workers in any number of processes never race on read-modify-write.
"""

from contextlib import asynccontextmanager
import json
import time
from typing import AsyncIterator, Iterable

import redis.asyncio as redis

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import StoreUnavailable
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.store import key, store_call

log_event = get_event_logger("frontier")


def frontier_key(crawl_id: str) -> str:
    return key(crawl_id, "urls")


def fetched_key(crawl_id: str) -> str:
    return key(crawl_id, "fetched")


def active_tasks_key(crawl_id: str) -> str:
    return key(crawl_id, "active_tasks")


class Frontier:
    """Per-crawl URL dedup.

    ``try_claim`` marks a URL as discovered, so it is enqueued at most once.
    ``try_start`` records which task processes a URL, so a second task for
    the same URL is skipped while redeliveries of the owning task proceed.
    A store outage raises ``StoreUnavailable`` unless ``degraded_skip`` is
    enabled, in which case the URL is reported as already seen and dropped.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        *,
        ttl_s: int | None = None,
        degraded_skip: bool | None = None,
    ) -> None:
        self.redis = redis_client
        self.ttl_s = ttl_s or Settings.frontier_ttl_s
        self.degraded_skip = (
            Settings.frontier_degraded_skip if degraded_skip is None else degraded_skip
        )

    async def _add(self, set_key: str, urls: list[str]) -> list[bool]:
        if not urls:
            return []
        try:
            async with store_call("frontier.claim"):
                pipe = self.redis.pipeline(transaction=True)
                for url in urls:
                    pipe.sadd(set_key, url)
                pipe.expire(set_key, self.ttl_s)
                results = await pipe.execute()
        except StoreUnavailable as exc:
            if not self.degraded_skip:
                raise
            log_event("degraded", key=set_key, urls=len(urls), error=exc.detail)
            return [False] * len(urls)
        return [bool(added) for added in results[:-1]]

    async def try_claim(self, crawl_id: str, normalized_url: str) -> bool:
        (claimed,) = await self._add(frontier_key(crawl_id), [normalized_url])
        return claimed

    async def claim_batch(self, crawl_id: str, urls: Iterable[str]) -> list[bool]:
        return await self._add(frontier_key(crawl_id), list(urls))

    async def try_start(self, crawl_id: str, normalized_url: str, task_id: str) -> bool:
        """Claims the URL for processing by ``task_id``.

        Returns True for the first task to start the URL and again for any
        redelivery or retry of that same task; False for any other task.
        """
        started_key = fetched_key(crawl_id)
        try:
            async with store_call("frontier.start"):
                pipe = self.redis.pipeline(transaction=True)
                pipe.hsetnx(started_key, normalized_url, task_id)
                pipe.hget(started_key, normalized_url)
                pipe.expire(started_key, self.ttl_s)
                _, owner, _ = await pipe.execute()
        except StoreUnavailable as exc:
            if not self.degraded_skip:
                raise
            log_event("degraded", key=started_key, urls=1, error=exc.detail)
            return False
        return owner == task_id

    async def count(self, crawl_id: str) -> int:
        async with store_call("frontier.count"):
            return int(await self.redis.scard(frontier_key(crawl_id)))

    async def purge(self, crawl_id: str) -> None:
        async with store_call("frontier.purge"):
            await self.redis.delete(frontier_key(crawl_id), fetched_key(crawl_id))


class TaskLease:
    def __init__(self) -> None:
        self.kept = False
        self.settled = False

    def keep(self) -> None:
        """Leaves the task registered: it went back to the queue, not to a terminal state."""
        self.kept = True

    def settle(self) -> None:
        """Marks the queue entry terminal; the task is released even if later bookkeeping fails."""
        self.settled = True


class ActiveTaskSet:
    """``crawl_id -> {task_id}`` of tasks admitted to a crawl and not yet terminal.

    A task is added when it is enqueued and again (idempotently) when a worker
    admits it, and removed on its terminal outcome. The crawl is finished when
    the set is empty.
    """

    def __init__(self, redis_client: redis.Redis, *, ttl_s: int | None = None) -> None:
        self.redis = redis_client
        self.ttl_s = ttl_s or Settings.frontier_ttl_s

    async def add(self, crawl_id: str, task_id: str, **metadata: object) -> None:
        entry = json.dumps({"added_at": time.time(), **metadata})
        async with store_call("active.add"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.hsetnx(active_tasks_key(crawl_id), task_id, entry)
            pipe.expire(active_tasks_key(crawl_id), self.ttl_s)
            await pipe.execute()

    async def remove(self, crawl_id: str, task_id: str) -> bool:
        async with store_call("active.remove"):
            return bool(await self.redis.hdel(active_tasks_key(crawl_id), task_id))

    async def count(self, crawl_id: str) -> int:
        async with store_call("active.count"):
            return int(await self.redis.hlen(active_tasks_key(crawl_id)))

    async def members(self, crawl_id: str) -> list[str]:
        async with store_call("active.members"):
            return list(await self.redis.hkeys(active_tasks_key(crawl_id)))

    async def clear(self, crawl_id: str) -> None:
        async with store_call("active.clear"):
            await self.redis.delete(active_tasks_key(crawl_id))

    @asynccontextmanager
    async def lease(self, crawl_id: str, task_id: str) -> AsyncIterator[TaskLease]:
        """Holds a task in the set for the duration of its processing.

        On every exit path the task is removed unless ``keep()`` was called.
        A store outage before the queue entry settles is not a terminal outcome:
        the task stays active in the queue and comes back through stalled
        recovery, so it stays registered. Once settled, it is always released.
        """
        await self.add(crawl_id, task_id)
        lease = TaskLease()
        try:
            yield lease
        except StoreUnavailable:
            if not lease.settled:
                lease.kept = True
            raise
        finally:
            if not lease.kept:
                await self.remove(crawl_id, task_id)
