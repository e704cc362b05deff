from __future__ import annotations

from dataclasses import dataclass
import time

import fakeredis
import pytest

from crawl_orchestrator.errors import FetchError
from crawl_orchestrator.ingest.etl import extract
from crawl_orchestrator.ingest.fetch import FetchResult
from crawl_orchestrator.ingest.frontier import ActiveTaskSet, Frontier
from crawl_orchestrator.ingest.pipeline import FetchPipeline
from crawl_orchestrator.ingest.queue import WorkQueue
from crawl_orchestrator.ingest.robots import RobotsGate
from crawl_orchestrator.ingest.worker import WorkerPool
from crawl_orchestrator.orchestration.facade import OrchestrationFacade
from crawl_orchestrator.orchestration.lifecycle import CrawlLifecycle
from crawl_orchestrator.orchestration.models import FetchTask
from crawl_orchestrator.orchestration.notify import Notifier, SubscriberBroadcaster
from crawl_orchestrator.orchestration.scheduler import Scheduler
from crawl_orchestrator.storage.jobs import RedisJobStore
from crawl_orchestrator.storage.pages import RedisPageStore


def page(title: str, *links: str, text: str = "Some page text.") -> str:
    anchors = "".join(f'<a href="{href}">link {i}</a>' for i, href in enumerate(links))
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><h1>{title}</h1><p>{text}</p>{anchors}</body></html>"
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = float(int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWeb:
    """In-memory pages and robots.txt documents keyed by normalised URL."""

    def __init__(self) -> None:
        self.pages: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.robots: dict[str, str] = {}
        self.calls: list[str] = []
        self.gate = None

    async def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if url in self.errors:
            raise self.errors[url]
        if url not in self.pages:
            raise FetchError(f"{url} HTTP 404", status=404)
        return FetchResult(url=url, status=200, html=self.pages[url])

    async def fetch_robots(self, robots_url: str) -> str:
        return self.robots.get(robots_url, "")


@dataclass
class Harness:
    redis: fakeredis.FakeAsyncRedis
    server: fakeredis.FakeServer
    clock: FakeClock
    web: FakeWeb
    jobs: RedisJobStore
    pages: RedisPageStore
    queue: WorkQueue
    frontier: Frontier
    active: ActiveTaskSet
    robots: RobotsGate
    broadcaster: SubscriberBroadcaster
    notifier: Notifier
    lifecycle: CrawlLifecycle
    pipeline: FetchPipeline
    pool: WorkerPool
    scheduler: Scheduler
    facade: OrchestrationFacade

    async def start(self, url: str = "https://example.com/", **options: object) -> str:
        """Creates a crawl and lets the scheduler admit it."""
        job_id = await self.facade.start_crawl(url, **options)
        assert job_id in await self.scheduler.admit_pending()
        return job_id

    async def inject(self, crawl_id: str, url: str, *, depth: int = 1, priority: int = 0) -> str:
        """Tracks and enqueues a task the way link expansion does."""
        job = await self.jobs.get(crawl_id)
        task = FetchTask(
            crawl_id=crawl_id,
            url=url,
            current_depth=depth,
            max_depth=job.max_depth,
            priority=priority,
        )
        await self.active.add(crawl_id, task.task_id)
        await self.queue.enqueue(task)
        return task.task_id

    async def drain(self, limit: int = 200) -> int:
        handled = 0
        while handled < limit and await self.pool.run_once():
            handled += 1
        return handled


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(server: fakeredis.FakeServer):
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def web() -> FakeWeb:
    return FakeWeb()


@pytest.fixture
def make_harness(redis_client, server, clock, web):
    def factory(
        *, quota: int = 0, extractor=extract, max_running: int = 1, **pool_options
    ) -> Harness:
        jobs = RedisJobStore(redis_client)
        pages = RedisPageStore(redis_client, quota=quota)
        queue = WorkQueue(
            redis_client, max_attempts=3, retry_base_ms=0, retry_cap_ms=0, clock=clock
        )
        frontier = Frontier(redis_client, degraded_skip=False)
        active = ActiveTaskSet(redis_client)
        robots = RobotsGate(redis_client, web.fetch_robots, user_agent="TestBot")
        broadcaster = SubscriberBroadcaster()
        notifier = Notifier(broadcaster, jobs, queue, active)
        lifecycle = CrawlLifecycle(
            jobs=jobs,
            queue=queue,
            frontier=frontier,
            active=active,
            robots=robots,
            notifier=notifier,
        )
        pipeline = FetchPipeline(
            frontier=frontier,
            active=active,
            queue=queue,
            robots=robots,
            jobs=jobs,
            pages=pages,
            fetcher=web.fetch,
            extractor=extractor,
            respect_crawl_delay=False,
        )
        options = {
            "size": 2,
            "max_inflight": 10,
            "poll_interval_s": 0.01,
            "preempt_delay_ms": 5000,
            "capacity_delay_ms": 1000,
        }
        options.update(pool_options)
        pool = WorkerPool(
            queue=queue,
            jobs=jobs,
            active=active,
            pipeline=pipeline,
            lifecycle=lifecycle,
            **options,
        )
        scheduler = Scheduler(
            jobs=jobs,
            queue=queue,
            frontier=frontier,
            active=active,
            lifecycle=lifecycle,
            interval_s=0.01,
            max_running=max_running,
        )
        facade = OrchestrationFacade(
            redis_client=redis_client,
            jobs=jobs,
            queue=queue,
            frontier=frontier,
            active=active,
            robots=robots,
            lifecycle=lifecycle,
            notifier=notifier,
        )
        return Harness(
            redis=redis_client,
            server=server,
            clock=clock,
            web=web,
            jobs=jobs,
            pages=pages,
            queue=queue,
            frontier=frontier,
            active=active,
            robots=robots,
            broadcaster=broadcaster,
            notifier=notifier,
            lifecycle=lifecycle,
            pipeline=pipeline,
            pool=pool,
            scheduler=scheduler,
            facade=facade,
        )

    return factory


@pytest.fixture
def harness(make_harness) -> Harness:
    return make_harness()
