from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import time

import redis.asyncio as redis

from crawl_orchestrator.config import Settings
from crawl_orchestrator.store import key, store_call

# Inserts the page unless the crawl already stored this URL or its quota is
# used up. Returns {inserted, quota_exceeded, pages_remaining}; remaining is
# -1 when the crawl has no quota.
UPSERT_PAGE_SCRIPT = """
local quota = tonumber(ARGV[1])
local url = ARGV[2]
local is_member = redis.call('SISMEMBER', KEYS[1], url)
local count = redis.call('SCARD', KEYS[1])
if is_member == 0 and quota > 0 and count >= quota then
    return {0, 1, 0}
end
local inserted = 0
if is_member == 0 then
    redis.call('SADD', KEYS[1], url)
    redis.call('HSET', KEYS[2], 'url', url, 'crawl_id', ARGV[3], 'title', ARGV[4],
        'text', ARGV[5], 'structured', ARGV[6], 'depth', ARGV[7], 'status', ARGV[8],
        'stored_at', ARGV[9])
    count = count + 1
    inserted = 1
end
if quota <= 0 then
    return {inserted, 0, -1}
end
local exceeded = 0
if count >= quota then
    exceeded = 1
end
return {inserted, exceeded, math.max(quota - count, 0)}
"""


def url_hash(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


@dataclass
class UpsertResult:
    inserted: bool
    quota_exceeded: bool
    pages_remaining: int


class PageStore:
    async def upsert_page(
        self,
        url: str,
        crawl_id: str,
        title: str | None,
        text: str,
        structured: dict,
        depth: int,
        status: str,
    ) -> UpsertResult:
        raise NotImplementedError


class RedisPageStore(PageStore):
    def __init__(self, redis_client: redis.Redis, *, quota: int | None = None) -> None:
        self.redis = redis_client
        self.quota = Settings.page_quota if quota is None else quota

    def urls_key(self, crawl_id: str) -> str:
        return key("pages", crawl_id, "urls")

    def page_key(self, crawl_id: str, url: str) -> str:
        return key("pages", crawl_id, url_hash(url))

    async def upsert_page(
        self,
        url: str,
        crawl_id: str,
        title: str | None,
        text: str,
        structured: dict,
        depth: int,
        status: str,
    ) -> UpsertResult:
        async with store_call("pages.upsert"):
            inserted, exceeded, remaining = await self.redis.eval(
                UPSERT_PAGE_SCRIPT,
                2,
                self.urls_key(crawl_id),
                self.page_key(crawl_id, url),
                self.quota,
                url,
                crawl_id,
                title or "",
                text,
                json.dumps(structured),
                depth,
                status,
                time.time(),
            )
        return UpsertResult(
            inserted=bool(int(inserted)),
            quota_exceeded=bool(int(exceeded)),
            pages_remaining=int(remaining),
        )

    async def get_page(self, crawl_id: str, url: str) -> dict | None:
        async with store_call("pages.get"):
            row = await self.redis.hgetall(self.page_key(crawl_id, url))
        if not row:
            return None
        row["structured"] = json.loads(row.get("structured") or "{}")
        row["depth"] = int(row.get("depth", 0))
        return row

    async def count(self, crawl_id: str) -> int:
        async with store_call("pages.count"):
            return int(await self.redis.scard(self.urls_key(crawl_id)))
