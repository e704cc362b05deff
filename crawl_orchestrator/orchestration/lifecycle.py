"""Crawl job state machine.

pending -> running -> stopping -> crawled | failed | canceled

Every transition is a conditional update on the job's current status, so
concurrent finalizers in different processes cannot both win. A job leaves
running/stopping only once its active task set has drained to zero.
"""

from __future__ import annotations

import logging
import time

from crawl_orchestrator.ingest.frontier import ActiveTaskSet, Frontier
from crawl_orchestrator.ingest.queue import WorkQueue
from crawl_orchestrator.ingest.robots import RobotsGate
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.orchestration.models import CrawlJob, CrawlStatus, StopReason
from crawl_orchestrator.orchestration.notify import Notifier
from crawl_orchestrator.storage.jobs import JobStore

log_event = get_event_logger("lifecycle")

STOPPABLE = (CrawlStatus.PENDING, CrawlStatus.RUNNING)


def final_status(job: CrawlJob) -> CrawlStatus:
    """Terminal status for a job whose work has drained."""
    if job.status == CrawlStatus.STOPPING:
        if job.stop_reason == StopReason.QUOTA:
            return CrawlStatus.FAILED
        return CrawlStatus.CANCELED
    if job.pages_crawled == 0 and job.error_count > 0:
        return CrawlStatus.FAILED
    return CrawlStatus.CRAWLED


class CrawlLifecycle:
    def __init__(
        self,
        *,
        jobs: JobStore,
        queue: WorkQueue,
        frontier: Frontier,
        active: ActiveTaskSet,
        robots: RobotsGate,
        notifier: Notifier | None = None,
    ) -> None:
        self.jobs = jobs
        self.queue = queue
        self.frontier = frontier
        self.active = active
        self.robots = robots
        self.notifier = notifier

    def _notify(self, reason: str) -> None:
        if self.notifier is not None:
            self.notifier.notify(reason)

    async def mark_running(self, job_id: str) -> bool:
        started = await self.jobs.update_status(
            job_id,
            CrawlStatus.RUNNING,
            expected=[CrawlStatus.PENDING],
            started_at=time.time(),
        )
        if started:
            log_event("running", crawl=job_id)
            await self.jobs.log_event(job_id, "info", "Crawl started")
            self._notify("started")
        return started

    async def rollback_to_pending(self, job_id: str, error: str) -> bool:
        rolled_back = await self.jobs.update_status(
            job_id,
            CrawlStatus.PENDING,
            expected=[CrawlStatus.RUNNING],
            started_at=None,
        )
        log_event("rollback", crawl=job_id, error=error, level=logging.WARNING)
        if rolled_back:
            await self.jobs.log_event(
                job_id, "warning", "Admission rolled back", {"error": error}
            )
        return rolled_back

    async def request_stop(
        self, job_id: str, reason: StopReason = StopReason.REQUESTED
    ) -> bool:
        """Moves the job to stopping and drops its not-yet-started tasks.

        Tasks already being fetched finish on their own; the job reaches its
        terminal status when the last of them settles.
        """
        stopped = await self.jobs.update_status(
            job_id,
            CrawlStatus.STOPPING,
            expected=STOPPABLE,
            stop_requested_at=time.time(),
            stop_reason=reason,
        )
        if stopped:
            removed = await self.queue.remove_by_crawl(job_id)
            for task_id in removed:
                await self.active.remove(job_id, task_id)
            log_event("stopping", crawl=job_id, reason=reason.value, removed=len(removed))
            await self.jobs.log_event(
                job_id,
                "warning" if reason == StopReason.QUOTA else "info",
                "Crawl stopping",
                {"reason": reason.value, "removed_tasks": len(removed)},
            )
            self._notify("stopping")
        await self.finalize_if_drained(job_id)
        return stopped

    async def untrack(self, removed: dict[str, list[str]]) -> None:
        """Releases task ids that left the queue without running, then finalizes."""
        for crawl_id, task_ids in removed.items():
            for task_id in task_ids:
                await self.active.remove(crawl_id, task_id)
            await self.finalize_if_drained(crawl_id)

    async def finalize_if_drained(self, job_id: str) -> CrawlStatus | None:
        job = await self.jobs.get(job_id)
        if job is None or job.status not in (CrawlStatus.RUNNING, CrawlStatus.STOPPING):
            return None
        if await self.active.count(job_id) > 0:
            return None

        target = final_status(job)
        won = await self.jobs.update_status(
            job_id, target, expected=[job.status], completed_at=time.time()
        )
        if not won:
            return None

        await self.frontier.purge(job_id)
        await self.robots.purge(job_id)
        await self.active.clear(job_id)
        log_event(
            "finalize",
            crawl=job_id,
            status=target.value,
            pages=job.pages_crawled,
            errors=job.error_count,
        )
        await self.jobs.log_event(
            job_id,
            "info",
            f"Crawl {target.value}",
            {"pages_crawled": job.pages_crawled, "error_count": job.error_count},
        )
        self._notify("finalized")
        return target
