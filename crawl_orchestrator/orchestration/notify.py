from __future__ import annotations

import asyncio
import time

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import StoreUnavailable
from crawl_orchestrator.ingest.frontier import ActiveTaskSet
from crawl_orchestrator.ingest.queue import WorkQueue
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.storage.jobs import JobStore

log_event = get_event_logger("notify")


class Broadcaster:
    @property
    def subscriber_count(self) -> int:
        raise NotImplementedError

    def publish(self, snapshot: dict) -> None:
        raise NotImplementedError


class SubscriberBroadcaster(Broadcaster):
    """Fans snapshots out to in-process subscriber queues.

    A subscriber that falls behind loses snapshots instead of slowing the
    publisher down.
    """

    def __init__(self, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._subscribers: set[asyncio.Queue] = set()
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, snapshot: dict) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(snapshot)
            except asyncio.QueueFull:
                self.dropped += 1


class Notifier:
    """Builds crawl snapshots and hands them to a broadcaster in the background."""

    def __init__(
        self,
        broadcaster: Broadcaster,
        jobs: JobStore,
        queue: WorkQueue,
        active: ActiveTaskSet,
        *,
        recent_jobs: int | None = None,
    ) -> None:
        self.broadcaster = broadcaster
        self.jobs = jobs
        self.queue = queue
        self.active = active
        self.recent_jobs = recent_jobs or Settings.snapshot_recent_jobs
        self._pending: set[asyncio.Task] = set()

    def notify(self, reason: str) -> None:
        if self.broadcaster.subscriber_count == 0:
            return
        task = asyncio.create_task(self._publish(reason))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, reason: str) -> None:
        try:
            snapshot = await self.snapshot()
        except StoreUnavailable as exc:
            log_event("snapshot_fail", reason=reason, error=exc.detail)
            return
        snapshot["reason"] = reason
        self.broadcaster.publish(snapshot)

    async def snapshot(self) -> dict:
        crawls = []
        for job in await self.jobs.recent(self.recent_jobs):
            crawls.append(
                {
                    **job.to_dict(),
                    "queue": await self.queue.counts(job.id),
                    "active_tasks": await self.active.count(job.id),
                    "complete": job.status.is_terminal,
                }
            )
        return {
            "crawls": crawls,
            "queueStats": await self.queue.counts(),
            "at": time.time(),
        }

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending)
