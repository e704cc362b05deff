from __future__ import annotations

import json
import time
from typing import Iterable

import redis.asyncio as redis

from crawl_orchestrator.config import Settings
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.orchestration.models import (
    CrawlJob,
    CrawlStatus,
    DomainPolicyConfig,
    StopReason,
)
from crawl_orchestrator.store import key, store_call

log_event = get_event_logger("jobs")

# Conditional status update: only moves the job if its current status is one
# of the expected ones, keeping the per-status index in step.
UPDATE_STATUS_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'status')
if not current then
    return -1
end
local allowed = false
for status in string.gmatch(ARGV[3], '[^,]+') do
    if status == current then
        allowed = true
    end
end
if not allowed then
    return 0
end
local created = redis.call('HGET', KEYS[1], 'created_at')
redis.call('ZREM', KEYS[2] .. current, ARGV[2])
redis.call('ZADD', KEYS[2] .. ARGV[1], created, ARGV[2])
redis.call('HSET', KEYS[1], 'status', ARGV[1])
for i = 4, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
return 1
"""


def _optional_float(value: str | None) -> float | None:
    if value in (None, ""):
        return None
    return float(value)


def _encode(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, (StopReason, CrawlStatus)):
        return value.value
    return str(value)


def job_from_hash(row: dict[str, str]) -> CrawlJob:
    stop_reason = row.get("stop_reason") or None
    return CrawlJob(
        id=row["id"],
        start_url=row["start_url"],
        max_depth=int(row["max_depth"]),
        domain_policy=DomainPolicyConfig.from_json(row["domain_policy"]),
        owner_id=row.get("owner_id", ""),
        priority=int(row.get("priority", 0)),
        status=CrawlStatus(row["status"]),
        created_at=float(row["created_at"]),
        started_at=_optional_float(row.get("started_at")),
        stop_requested_at=_optional_float(row.get("stop_requested_at")),
        stop_reason=StopReason(stop_reason) if stop_reason else None,
        completed_at=_optional_float(row.get("completed_at")),
        pages_crawled=int(row.get("pages_crawled", 0)),
        error_count=int(row.get("error_count", 0)),
        last_error=row.get("last_error", ""),
    )


class JobStore:
    async def create(self, job: CrawlJob) -> None:
        raise NotImplementedError

    async def get(self, job_id: str) -> CrawlJob | None:
        raise NotImplementedError

    async def update_status(
        self,
        job_id: str,
        status: CrawlStatus,
        *,
        expected: Iterable[CrawlStatus],
        **fields: object,
    ) -> bool:
        raise NotImplementedError

    async def increment_pages_count(self, job_id: str, by: int = 1) -> int:
        raise NotImplementedError

    async def increment_errors_count(
        self, job_id: str, by: int = 1, *, last_error: str = ""
    ) -> int:
        raise NotImplementedError

    async def log_event(
        self, job_id: str, level: str, message: str, metadata: dict | None = None
    ) -> None:
        raise NotImplementedError

    async def list_by_status(self, status: CrawlStatus) -> list[CrawlJob]:
        raise NotImplementedError

    async def recent(self, limit: int = 10) -> list[CrawlJob]:
        raise NotImplementedError


class RedisJobStore(JobStore):
    """Crawl job records as Redis hashes with a sorted index per status."""

    def __init__(self, redis_client: redis.Redis) -> None:
        self.redis = redis_client

    def job_key(self, job_id: str) -> str:
        return key("job", job_id)

    def log_key(self, job_id: str) -> str:
        return key("job", job_id, "log")

    def status_prefix(self) -> str:
        return key("jobs", "status", "")

    def all_key(self) -> str:
        return key("jobs", "all")

    async def create(self, job: CrawlJob) -> None:
        row = {
            name: _encode(value)
            for name, value in job.to_dict().items()
            if name != "allowed_domains"
        }
        row["domain_policy"] = job.domain_policy.to_json()
        async with store_call("jobs.create"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.hset(self.job_key(job.id), mapping=row)
            pipe.zadd(f"{self.status_prefix()}{job.status.value}", {job.id: job.created_at})
            pipe.zadd(self.all_key(), {job.id: job.created_at})
            await pipe.execute()

    async def get(self, job_id: str) -> CrawlJob | None:
        async with store_call("jobs.get"):
            row = await self.redis.hgetall(self.job_key(job_id))
        if not row:
            return None
        return job_from_hash(row)

    async def get_many(self, job_ids: list[str]) -> list[CrawlJob]:
        if not job_ids:
            return []
        async with store_call("jobs.get_many"):
            pipe = self.redis.pipeline(transaction=False)
            for job_id in job_ids:
                pipe.hgetall(self.job_key(job_id))
            rows = await pipe.execute()
        return [job_from_hash(row) for row in rows if row]

    async def update_status(
        self,
        job_id: str,
        status: CrawlStatus,
        *,
        expected: Iterable[CrawlStatus],
        **fields: object,
    ) -> bool:
        args: list[str] = []
        for name, value in fields.items():
            args.extend([name, _encode(value)])
        async with store_call("jobs.update_status"):
            result = await self.redis.eval(
                UPDATE_STATUS_SCRIPT,
                2,
                self.job_key(job_id),
                self.status_prefix(),
                status.value,
                job_id,
                ",".join(state.value for state in expected),
                *args,
            )
        return int(result) == 1

    async def increment_pages_count(self, job_id: str, by: int = 1) -> int:
        async with store_call("jobs.increment_pages"):
            return int(await self.redis.hincrby(self.job_key(job_id), "pages_crawled", by))

    async def increment_errors_count(
        self, job_id: str, by: int = 1, *, last_error: str = ""
    ) -> int:
        async with store_call("jobs.increment_errors"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.hincrby(self.job_key(job_id), "error_count", by)
            if last_error:
                pipe.hset(self.job_key(job_id), "last_error", last_error[:500])
            results = await pipe.execute()
        return int(results[0])

    async def log_event(
        self, job_id: str, level: str, message: str, metadata: dict | None = None
    ) -> None:
        entry = json.dumps(
            {
                "at": time.time(),
                "level": level,
                "message": message,
                "metadata": metadata or {},
            },
            default=str,
        )
        async with store_call("jobs.log_event"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.rpush(self.log_key(job_id), entry)
            pipe.ltrim(self.log_key(job_id), -Settings.job_log_max_entries, -1)
            await pipe.execute()

    async def logs(self, job_id: str, limit: int = 100) -> list[dict]:
        async with store_call("jobs.logs"):
            entries = await self.redis.lrange(self.log_key(job_id), -limit, -1)
        return [json.loads(entry) for entry in entries]

    async def list_by_status(self, status: CrawlStatus) -> list[CrawlJob]:
        async with store_call("jobs.list_by_status"):
            job_ids = await self.redis.zrange(f"{self.status_prefix()}{status.value}", 0, -1)
        return await self.get_many(list(job_ids))

    async def recent(self, limit: int = 10) -> list[CrawlJob]:
        async with store_call("jobs.recent"):
            job_ids = await self.redis.zrevrange(self.all_key(), 0, limit - 1)
        return await self.get_many(list(job_ids))
