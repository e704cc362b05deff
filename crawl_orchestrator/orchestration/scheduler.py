from __future__ import annotations

import asyncio
import logging

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import StoreUnavailable
from crawl_orchestrator.ingest.frontier import ActiveTaskSet, Frontier
from crawl_orchestrator.ingest.queue import WorkQueue
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.orchestration.lifecycle import CrawlLifecycle
from crawl_orchestrator.orchestration.models import (
    CrawlJob,
    CrawlStatus,
    FetchTask,
    TaskState,
)
from crawl_orchestrator.storage.jobs import JobStore

log_event = get_event_logger("scheduler")


class Scheduler:
    """Admits pending crawls and keeps running ones honest.

    Each tick recovers stalled tasks, finalizes crawls whose work drained
    outside a worker (stop with nothing in flight, stalled-task failures),
    then admits the oldest pending crawl of every owner with nothing
    running or stopping, up to ``max_running`` such crawls in total.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        queue: WorkQueue,
        frontier: Frontier,
        active: ActiveTaskSet,
        lifecycle: CrawlLifecycle,
        interval_s: float | None = None,
        max_running: int | None = None,
    ) -> None:
        self.jobs = jobs
        self.queue = queue
        self.frontier = frontier
        self.active = active
        self.lifecycle = lifecycle
        self.interval_s = interval_s or Settings.scheduler_interval_s
        self.max_running = max_running or Settings.max_running_crawls

    async def run(self, stop_event: asyncio.Event) -> None:
        log_event("scheduler_start", interval_s=self.interval_s, max_running=self.max_running)
        while not stop_event.is_set():
            try:
                await self.tick()
            except StoreUnavailable as exc:
                log_event("store_down", error=exc.detail, level=logging.WARNING)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
        log_event("scheduler_stop")

    async def tick(self) -> list[str]:
        await self.recover_stalled()
        await self.sweep()
        return await self.admit_pending()

    async def recover_stalled(self) -> int:
        recovery = await self.queue.recover_stalled()
        touched: set[str] = set()
        for task_id, crawl_id in recovery.failed:
            if not crawl_id:
                continue
            await self.active.remove(crawl_id, task_id)
            await self.jobs.increment_errors_count(crawl_id, last_error="stalled")
            await self.jobs.log_event(
                crawl_id, "error", "Task stalled too many times", {"task_id": task_id}
            )
            touched.add(crawl_id)
        for crawl_id in touched:
            await self.lifecycle.finalize_if_drained(crawl_id)
        return recovery.requeued + len(recovery.failed)

    async def sweep(self) -> None:
        for status in (CrawlStatus.STOPPING, CrawlStatus.RUNNING):
            for job in await self.jobs.list_by_status(status):
                await self.reconcile_active(job.id)
                await self.lifecycle.finalize_if_drained(job.id)

    async def reconcile_active(self, crawl_id: str) -> int:
        """Drops active-set entries whose queue entry already reached a terminal state."""
        members = set(await self.active.members(crawl_id))
        if not members:
            return 0
        released = 0
        for queued in await self.queue.list_by_crawl(crawl_id):
            if queued.task.task_id not in members:
                continue
            if queued.state in (TaskState.COMPLETED, TaskState.FAILED):
                released += int(await self.active.remove(crawl_id, queued.task.task_id))
        if released:
            log_event("reconcile", crawl=crawl_id, released=released)
        return released

    async def admit_pending(self) -> list[str]:
        running = [
            *await self.jobs.list_by_status(CrawlStatus.RUNNING),
            *await self.jobs.list_by_status(CrawlStatus.STOPPING),
        ]
        busy_owners = {job.owner_id for job in running}
        slots = self.max_running - len(running)
        admitted: list[str] = []
        if slots <= 0:
            return admitted
        for job in await self.jobs.list_by_status(CrawlStatus.PENDING):
            if len(admitted) >= slots:
                break
            if job.owner_id in busy_owners:
                continue
            if await self.admit(job):
                admitted.append(job.id)
                busy_owners.add(job.owner_id)
        return admitted

    async def admit(self, job: CrawlJob) -> bool:
        """Moves one pending job to running and enqueues its seed task.

        The seed is tracked before the status flips so the job is never
        running with an empty active set.
        """
        seed = FetchTask(
            crawl_id=job.id,
            url=job.start_url,
            current_depth=0,
            max_depth=job.max_depth,
            priority=job.priority,
        )
        await self.active.add(job.id, seed.task_id, url=job.start_url)
        if not await self.lifecycle.mark_running(job.id):
            await self.active.remove(job.id, seed.task_id)
            await self.lifecycle.finalize_if_drained(job.id)
            return False
        try:
            await self.frontier.try_claim(job.id, job.start_url)
            await self.queue.enqueue(seed)
        except StoreUnavailable as exc:
            log_event("admit_fail", crawl=job.id, error=exc.detail, level=logging.WARNING)
            await self.active.remove(job.id, seed.task_id)
            await self.lifecycle.rollback_to_pending(job.id, exc.detail)
            return False
        log_event(
            "admit",
            crawl=job.id,
            owner=job.owner_id,
            url=job.start_url,
            depth=job.max_depth,
            priority=job.priority,
        )
        return True
