"""Worker pool pulling fetch tasks from the shared queue.

Each slot loops: claim -> admission gate (crawl still running) -> priority
gate -> capacity gate -> pipeline under an active-task lease -> settle the
queue entry -> finalize the crawl if it drained.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import StoreUnavailable
from crawl_orchestrator.ingest.frontier import ActiveTaskSet, TaskLease
from crawl_orchestrator.ingest.pipeline import FetchPipeline, PipelineResult, TaskOutcome
from crawl_orchestrator.ingest.queue import WorkQueue
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.monitoring.metrics import (
    INFLIGHT_FETCHES,
    record_outcome,
    record_preemption,
)
from crawl_orchestrator.orchestration.lifecycle import CrawlLifecycle
from crawl_orchestrator.orchestration.models import (
    ClaimedTask,
    CrawlJob,
    CrawlStatus,
    StopReason,
)
from crawl_orchestrator.storage.jobs import JobStore

log_event = get_event_logger("worker")


@dataclass
class GateDecision:
    admitted: bool
    preempted: str | None = None


class PriorityGate:
    """Which crawl the pool currently favours, and at what priority.

    A task from another crawl is admitted only when its priority is strictly
    higher (the pool switches over) or the favoured crawl has no tasks left.
    """

    def __init__(self, active: ActiveTaskSet) -> None:
        self.active = active
        self.favored_crawl: str | None = None
        self.favored_priority = 0
        self._lock = asyncio.Lock()

    def _favor(self, crawl_id: str, priority: int) -> None:
        self.favored_crawl = crawl_id
        self.favored_priority = priority

    async def admit(self, crawl_id: str, priority: int) -> GateDecision:
        async with self._lock:
            if self.favored_crawl is None or self.favored_crawl == crawl_id:
                self._favor(crawl_id, priority)
                return GateDecision(admitted=True)
            if priority > self.favored_priority:
                previous = self.favored_crawl
                self._favor(crawl_id, priority)
                return GateDecision(admitted=True, preempted=previous)
            if await self.active.count(self.favored_crawl) == 0:
                self._favor(crawl_id, priority)
                return GateDecision(admitted=True)
            return GateDecision(admitted=False)


class StoreBreaker:
    """Pool-wide backoff while the shared store is unreachable."""

    def __init__(self, base_s: float | None = None, cap_s: float | None = None) -> None:
        self.base_s = base_s or Settings.store_backoff_base_s
        self.cap_s = cap_s or Settings.store_backoff_cap_s
        self.failures = 0
        self.open_until = 0.0

    def record_failure(self) -> float:
        self.failures += 1
        delay = min(self.base_s * 2 ** (self.failures - 1), self.cap_s)
        self.open_until = time.monotonic() + delay
        return delay

    def record_success(self) -> None:
        self.failures = 0
        self.open_until = 0.0

    def remaining(self) -> float:
        return max(0.0, self.open_until - time.monotonic())


class WorkerPool:
    def __init__(
        self,
        *,
        queue: WorkQueue,
        jobs: JobStore,
        active: ActiveTaskSet,
        pipeline: FetchPipeline,
        lifecycle: CrawlLifecycle,
        size: int | None = None,
        max_inflight: int | None = None,
        poll_interval_s: float | None = None,
        preempt_delay_ms: int | None = None,
        capacity_delay_ms: int | None = None,
        breaker: StoreBreaker | None = None,
    ) -> None:
        self.queue = queue
        self.jobs = jobs
        self.active = active
        self.pipeline = pipeline
        self.lifecycle = lifecycle
        self.size = size or Settings.max_concurrent_urls
        self.max_inflight = max_inflight or Settings.max_inflight_fetches
        self.poll_interval_s = poll_interval_s or Settings.poll_interval_s
        self.preempt_delay_ms = preempt_delay_ms or Settings.preempt_delay_ms
        self.capacity_delay_ms = capacity_delay_ms or Settings.capacity_delay_ms
        self.breaker = breaker or StoreBreaker()
        self.gate = PriorityGate(active)
        self.inflight = 0
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Lets every slot finish its current task, then exit."""
        self._stop.set()

    async def run(self) -> None:
        log_event("pool_start", size=self.size, max_inflight=self.max_inflight)
        slots = [asyncio.create_task(self._slot(slot)) for slot in range(self.size)]
        try:
            await asyncio.gather(*slots)
        finally:
            log_event("pool_stop", size=self.size)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _slot(self, slot: int) -> None:
        while not self._stop.is_set():
            backoff = self.breaker.remaining()
            if backoff > 0:
                await self._sleep(backoff)
                continue
            try:
                processed = await self.run_once()
            except StoreUnavailable as exc:
                delay = self.breaker.record_failure()
                log_event(
                    "store_down",
                    slot=slot,
                    error=exc.detail,
                    backoff_s=delay,
                    level=logging.WARNING,
                )
                continue
            self.breaker.record_success()
            if not processed:
                await self._sleep(self.poll_interval_s)

    async def run_once(self) -> bool:
        """Claims and handles one task; returns False when the queue was empty."""
        claimed = await self.queue.claim()
        if claimed is None:
            return False
        task = claimed.task
        log_event(
            "pick",
            crawl=task.crawl_id,
            url=task.url,
            depth=task.current_depth,
            priority=task.priority,
        )

        job = await self.jobs.get(task.crawl_id)
        if job is None or job.status != CrawlStatus.RUNNING:
            await self._discard(claimed, job)
            return True

        decision = await self.gate.admit(task.crawl_id, task.priority)
        if not decision.admitted:
            await self.queue.delay_for(task.task_id, self.preempt_delay_ms)
            log_event(
                "defer",
                crawl=task.crawl_id,
                favored=self.gate.favored_crawl,
                priority=task.priority,
            )
            return True
        if decision.preempted:
            moved = await self.queue.delay_crawl(decision.preempted, self.preempt_delay_ms)
            record_preemption()
            log_event(
                "preempt",
                crawl=task.crawl_id,
                previous=decision.preempted,
                priority=task.priority,
                delayed=moved,
            )

        if self.inflight >= self.max_inflight:
            await self.queue.delay_for(task.task_id, self.capacity_delay_ms)
            log_event("capacity", crawl=task.crawl_id, inflight=self.inflight)
            return True

        await self._process(claimed, job)
        return True

    async def _discard(self, claimed: ClaimedTask, job: CrawlJob | None) -> None:
        task = claimed.task
        await self.queue.complete(task.task_id)
        await self.active.remove(task.crawl_id, task.task_id)
        record_outcome(TaskOutcome.SKIPPED.value)
        log_event(
            "discard",
            crawl=task.crawl_id,
            url=task.url,
            status=job.status.value if job else "missing",
        )
        if job is not None:
            await self.lifecycle.finalize_if_drained(task.crawl_id)

    async def _process(self, claimed: ClaimedTask, job: CrawlJob) -> None:
        task = claimed.task
        self.inflight += 1
        INFLIGHT_FETCHES.inc()
        try:
            async with self.active.lease(task.crawl_id, task.task_id) as lease:
                result = await self._execute(claimed, job)
                await self._settle(claimed, result, lease)
        finally:
            self.inflight -= 1
            INFLIGHT_FETCHES.dec()
        await self.lifecycle.finalize_if_drained(task.crawl_id)

    async def _execute(self, claimed: ClaimedTask, job: CrawlJob) -> PipelineResult:
        task = claimed.task
        try:
            return await self.pipeline.run(task, job)
        except StoreUnavailable:
            raise
        except Exception as exc:
            log_event(
                "task_error",
                crawl=task.crawl_id,
                url=task.url,
                error=type(exc).__name__,
                detail=str(exc),
                level=logging.ERROR,
            )
            return PipelineResult(
                TaskOutcome.RETRY,
                reason="unexpected",
                error=f"{type(exc).__name__}: {exc}",
            )

    async def _settle(
        self, claimed: ClaimedTask, result: PipelineResult, lease: TaskLease
    ) -> None:
        task = claimed.task
        record_outcome(result.outcome.value)

        if result.outcome == TaskOutcome.DEFERRED:
            lease.keep()
            await self.queue.delay(task.task_id, result.retry_at_ms)
            return

        if result.outcome in (TaskOutcome.COMPLETED, TaskOutcome.SKIPPED):
            await self.queue.complete(task.task_id)
            lease.settle()
            if result.outcome == TaskOutcome.SKIPPED:
                await self.jobs.log_event(
                    task.crawl_id, "info", f"Skipped {task.url}", {"reason": result.reason}
                )
            return

        if result.outcome == TaskOutcome.QUOTA:
            await self.queue.complete(task.task_id)
            lease.settle()
            await self.lifecycle.request_stop(task.crawl_id, reason=StopReason.QUOTA)
            return

        retried = await self.queue.fail(
            task.task_id, result.error, retryable=result.outcome == TaskOutcome.RETRY
        )
        if retried:
            lease.keep()
            return
        lease.settle()
        await self.jobs.increment_errors_count(task.crawl_id, last_error=result.error)
        await self.jobs.log_event(
            task.crawl_id,
            "error",
            f"Failed {task.url}",
            {
                "reason": result.reason,
                "error": result.error,
                "attempts": claimed.attempts + 1,
            },
        )
