"""Per-task fetch + extract pipeline.

Admission (dedup, normalisation, domain policy, robots) -> crawl-delay slot
-> fetch -> extract -> persist -> expand links. Each step either moves on or
ends the task with a ``PipelineResult``; only ``StoreUnavailable`` escapes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable
from urllib.parse import urlsplit

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import (
    AdmissionError,
    DomainNotAllowed,
    DuplicateUrl,
    ExtractionVerificationFailed,
    FetchError,
    QuotaExceeded,
    RobotsDenied,
)
from crawl_orchestrator.ingest.domain_policy import is_allowed
from crawl_orchestrator.ingest.etl import ExtractedContent
from crawl_orchestrator.ingest.fetch import FetchResult
from crawl_orchestrator.ingest.frontier import ActiveTaskSet, Frontier
from crawl_orchestrator.ingest.normalize import (
    is_crawlable_url,
    normalize_url,
    try_normalize_url,
)
from crawl_orchestrator.ingest.queue import WorkQueue
from crawl_orchestrator.ingest.robots import RobotsGate
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.monitoring.metrics import record_page
from crawl_orchestrator.orchestration.models import CrawlJob, CrawlStatus, FetchTask
from crawl_orchestrator.storage.r2 import RawHtmlArchive
from crawl_orchestrator.storage.jobs import JobStore
from crawl_orchestrator.storage.pages import PageStore, url_hash

log_event = get_event_logger("pipeline")

Fetcher = Callable[[str], Awaitable[FetchResult]]
Extractor = Callable[[str, str], ExtractedContent]


class TaskOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    RETRY = "retry"
    FAILED = "failed"
    QUOTA = "quota"


@dataclass
class PipelineResult:
    outcome: TaskOutcome
    reason: str = ""
    error: str = ""
    retry_at_ms: int = 0
    inserted: bool = False
    children: int = 0


class FetchPipeline:
    def __init__(
        self,
        *,
        frontier: Frontier,
        active: ActiveTaskSet,
        queue: WorkQueue,
        robots: RobotsGate,
        jobs: JobStore,
        pages: PageStore,
        fetcher: Fetcher,
        extractor: Extractor,
        respect_crawl_delay: bool | None = None,
        archive: RawHtmlArchive | None = None,
    ) -> None:
        self.frontier = frontier
        self.active = active
        self.queue = queue
        self.robots = robots
        self.jobs = jobs
        self.pages = pages
        self.fetcher = fetcher
        self.extractor = extractor
        self.archive = archive
        self.respect_crawl_delay = (
            Settings.respect_crawl_delay
            if respect_crawl_delay is None
            else respect_crawl_delay
        )

    async def run(self, task: FetchTask, job: CrawlJob) -> PipelineResult:
        try:
            url = await self.admit(task, job)
        except AdmissionError as exc:
            log_event("skip", crawl=task.crawl_id, url=task.url, reason=exc.reason)
            return PipelineResult(TaskOutcome.SKIPPED, reason=exc.reason)

        if self.respect_crawl_delay:
            rules = await self.robots.rules_for(task.crawl_id, url)
            allowed, next_allowed = await self.robots.reserve_slot(url, rules)
            if not allowed:
                log_event("polite", crawl=task.crawl_id, url=url, next_allowed=next_allowed)
                return PipelineResult(
                    TaskOutcome.DEFERRED,
                    reason="crawl_delay",
                    retry_at_ms=next_allowed * 1000,
                )

        try:
            fetched = await self.fetcher(url)
        except FetchError as exc:
            log_event(
                "fetch_fail",
                crawl=task.crawl_id,
                url=url,
                status=exc.status,
                retryable=exc.retryable,
            )
            outcome = TaskOutcome.RETRY if exc.retryable else TaskOutcome.FAILED
            return PipelineResult(outcome, reason=exc.code, error=exc.detail)

        try:
            content = await asyncio.to_thread(self.extractor, fetched.html, fetched.url)
            if content.is_empty:
                raise ExtractionVerificationFailed(f"{url} has no text or paragraphs")
        except ExtractionVerificationFailed as exc:
            log_event("extract_fail", crawl=task.crawl_id, url=url)
            return PipelineResult(TaskOutcome.FAILED, reason=exc.code, error=exc.detail)

        try:
            return await self.persist_and_expand(task, job, url, fetched, content)
        except QuotaExceeded as exc:
            log_event("quota", crawl=task.crawl_id, url=url, inserted=exc.inserted)
            return PipelineResult(
                TaskOutcome.QUOTA, reason="quota", error=exc.detail, inserted=exc.inserted
            )

    async def admit(self, task: FetchTask, job: CrawlJob) -> str:
        """Runs the admission checks and returns the normalised URL."""
        url = normalize_url(task.url)
        if not await self.frontier.try_start(task.crawl_id, url, task.task_id):
            raise DuplicateUrl(url)
        if not is_allowed(url, job.domain_policy):
            raise DomainNotAllowed(url)
        if not await self.robots.is_allowed(task.crawl_id, url):
            raise RobotsDenied(url)
        return url

    async def persist_and_expand(
        self,
        task: FetchTask,
        job: CrawlJob,
        url: str,
        fetched: FetchResult,
        content: ExtractedContent,
    ) -> PipelineResult:
        structured = content.to_dict()["structured"]
        stored = await self.pages.upsert_page(
            url,
            task.crawl_id,
            content.structured.title,
            content.raw_text,
            structured,
            task.current_depth,
            "crawled",
        )
        if stored.inserted:
            await self.jobs.increment_pages_count(task.crawl_id)
            await self.jobs.log_event(
                task.crawl_id,
                "info",
                f"Crawled {url}",
                {"depth": task.current_depth, "status": fetched.status},
            )
            record_page(urlsplit(url).hostname or "")
            await self._archive(task, url, fetched.html)
        log_event(
            "stored",
            crawl=task.crawl_id,
            url=url,
            inserted=stored.inserted,
            remaining=stored.pages_remaining,
        )
        if stored.quota_exceeded:
            raise QuotaExceeded(
                f"{task.crawl_id} page quota used up", inserted=stored.inserted
            )
        if not stored.inserted or task.current_depth >= task.max_depth:
            return PipelineResult(TaskOutcome.COMPLETED, inserted=stored.inserted)
        current = await self.jobs.get(task.crawl_id)
        if current is None or current.status != CrawlStatus.RUNNING:
            return PipelineResult(TaskOutcome.COMPLETED, inserted=True)

        children = await self.expand(task, job, fetched.url, content)
        return PipelineResult(TaskOutcome.COMPLETED, inserted=True, children=children)

    async def expand(
        self, task: FetchTask, job: CrawlJob, base_url: str, content: ExtractedContent
    ) -> int:
        candidates: dict[str, None] = {}
        for link in content.structured.links:
            normalized = try_normalize_url(link.href, base_url)
            if not normalized or not is_crawlable_url(normalized):
                continue
            if not is_allowed(normalized, job.domain_policy):
                continue
            candidates[normalized] = None
        links = list(candidates)
        claimed = await self.frontier.claim_batch(task.crawl_id, links)

        enqueued = 0
        for link, is_new in zip(links, claimed):
            if not is_new:
                continue
            child = FetchTask(
                crawl_id=task.crawl_id,
                url=link,
                current_depth=task.current_depth + 1,
                max_depth=task.max_depth,
                priority=task.priority,
                parent_url=task.url,
            )
            await self.active.add(task.crawl_id, child.task_id, url=link)
            try:
                await self.queue.enqueue(child)
            except Exception:
                await self.active.remove(task.crawl_id, child.task_id)
                raise
            enqueued += 1
        log_event(
            "expand",
            crawl=task.crawl_id,
            url=task.url,
            links=len(links),
            enqueued=enqueued,
            depth=task.current_depth + 1,
        )
        return enqueued

    async def _archive(self, task: FetchTask, url: str, html: str) -> None:
        if self.archive is None:
            return
        try:
            await asyncio.to_thread(
                self.archive.upload, task.crawl_id, url_hash(url), html
            )
        except Exception as exc:
            log_event("r2_fail", url=url, error=type(exc).__name__)
