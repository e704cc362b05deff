from __future__ import annotations

import time
import uuid

import redis.asyncio as redis

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import (
    InvalidTransition,
    InvalidUrlFormat,
    JobNotFound,
    StoreUnavailable,
)
from crawl_orchestrator.ingest.domain_policy import policy_for_crawl
from crawl_orchestrator.ingest.frontier import ActiveTaskSet, Frontier
from crawl_orchestrator.ingest.normalize import CRAWLABLE_SCHEMES, normalize_url
from crawl_orchestrator.ingest.queue import WorkQueue, clamp_priority
from crawl_orchestrator.ingest.robots import RobotsGate
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.orchestration.lifecycle import CrawlLifecycle
from crawl_orchestrator.orchestration.models import CrawlJob, CrawlStatus, TaskState
from crawl_orchestrator.orchestration.notify import Notifier
from crawl_orchestrator.storage.jobs import JobStore
from crawl_orchestrator.store import store_call

log_event = get_event_logger("facade")

DEFAULT_OWNER = "anonymous"


class OrchestrationFacade:
    """Operations offered to the HTTP and CLI layers."""

    def __init__(
        self,
        *,
        redis_client: redis.Redis,
        jobs: JobStore,
        queue: WorkQueue,
        frontier: Frontier,
        active: ActiveTaskSet,
        robots: RobotsGate,
        lifecycle: CrawlLifecycle,
        notifier: Notifier | None = None,
    ) -> None:
        self.redis = redis_client
        self.jobs = jobs
        self.queue = queue
        self.frontier = frontier
        self.active = active
        self.robots = robots
        self.lifecycle = lifecycle
        self.notifier = notifier

    def _notify(self, reason: str) -> None:
        if self.notifier is not None:
            self.notifier.notify(reason)

    async def _require(self, job_id: str) -> CrawlJob:
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def start_crawl(
        self,
        start_url: str,
        max_depth: int | None = None,
        allowed_domains: list[str] | None = None,
        owner_id: str | None = None,
        priority: int = 0,
    ) -> str:
        """Creates a pending crawl job; the scheduler admits it later."""
        depth = Settings.crawl_depth_default if max_depth is None else max_depth
        if depth < 0:
            raise ValueError("max_depth must be >= 0")
        url = normalize_url(start_url)
        if url.split(":", 1)[0] not in CRAWLABLE_SCHEMES:
            raise InvalidUrlFormat(url)
        job = CrawlJob(
            id=uuid.uuid4().hex,
            start_url=url,
            max_depth=depth,
            domain_policy=policy_for_crawl(url, allowed_domains),
            owner_id=owner_id or DEFAULT_OWNER,
            priority=clamp_priority(priority),
        )
        await self.jobs.create(job)
        await self.jobs.log_event(
            job.id,
            "info",
            "Crawl created",
            {"start_url": url, "max_depth": depth, "priority": job.priority},
        )
        log_event("created", crawl=job.id, url=url, depth=depth, owner=job.owner_id)
        self._notify("created")
        return job.id

    async def stop_crawl(self, job_id: str) -> CrawlJob:
        job = await self._require(job_id)
        if job.status.is_terminal:
            raise InvalidTransition(f"{job_id} is already {job.status.value}")
        await self.lifecycle.request_stop(job_id)
        return await self._require(job_id)

    async def get_status(self, job_id: str) -> dict:
        job = await self._require(job_id)
        return {
            "job": job.to_dict(),
            "active_task_count": await self.active.count(job_id),
            "queue": await self.queue.counts(job_id),
        }

    async def clear_queue(self) -> int:
        """Drops every non-active task and releases the crawls they belonged to."""
        removed = await self.queue.clear()
        await self.lifecycle.untrack(removed)
        self._notify("cleared")
        return sum(len(task_ids) for task_ids in removed.values())

    async def reset_all(self) -> dict:
        """Cancels every unfinished crawl and wipes queue and frontier state."""
        canceled = []
        for status in (CrawlStatus.PENDING, CrawlStatus.RUNNING, CrawlStatus.STOPPING):
            for job in await self.jobs.list_by_status(status):
                if await self.jobs.update_status(
                    job.id,
                    CrawlStatus.CANCELED,
                    expected=[status],
                    completed_at=time.time(),
                ):
                    canceled.append(job.id)
                await self.frontier.purge(job.id)
                await self.robots.purge(job.id)
                await self.active.clear(job.id)
        deleted = await self.queue.reset()
        for job_id in canceled:
            await self.jobs.log_event(job_id, "warning", "Crawl canceled by reset")
        log_event("reset_all", canceled=len(canceled), queue_keys=deleted)
        self._notify("reset")
        return {"canceled": canceled, "queue_keys_deleted": deleted}

    async def queue_stats(self, recent: int = 10) -> dict:
        return {
            "counts": await self.queue.counts(),
            "recent": [
                {
                    "task_id": queued.task.task_id,
                    "crawl_id": queued.task.crawl_id,
                    "url": queued.task.url,
                    "depth": queued.task.current_depth,
                    "state": queued.state.value,
                    "attempts": queued.attempts,
                    "last_error": queued.last_error,
                }
                for queued in await self.queue.recent(recent)
            ],
        }

    async def health(self) -> dict:
        try:
            async with store_call("health.ping"):
                await self.redis.ping()
            counts = await self.queue.counts()
        except StoreUnavailable as exc:
            return {"status": "down", "redis": "unreachable", "error": exc.detail}
        return {
            "status": "degraded" if counts.get(TaskState.FAILED.value) else "ok",
            "redis": "ok",
            "queue": counts,
        }
