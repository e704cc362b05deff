"""Process wiring: one set of stores, gates and loops per process."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
import signal

import aiohttp
import redis.asyncio as redis

from crawl_orchestrator.ingest.etl import extract
from crawl_orchestrator.ingest.fetch import PageFetcher, create_session
from crawl_orchestrator.ingest.frontier import ActiveTaskSet, Frontier
from crawl_orchestrator.ingest.pipeline import Extractor, FetchPipeline, Fetcher
from crawl_orchestrator.ingest.queue import WorkQueue
from crawl_orchestrator.ingest.robots import RobotsGate, fetch_robots_txt
from crawl_orchestrator.ingest.worker import WorkerPool
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.monitoring.metrics_server import start_metrics_exporter
from crawl_orchestrator.orchestration.facade import OrchestrationFacade
from crawl_orchestrator.orchestration.lifecycle import CrawlLifecycle
from crawl_orchestrator.orchestration.notify import Broadcaster, Notifier, SubscriberBroadcaster
from crawl_orchestrator.orchestration.scheduler import Scheduler
from crawl_orchestrator.storage.jobs import RedisJobStore
from crawl_orchestrator.storage.pages import RedisPageStore
from crawl_orchestrator.storage.r2 import archive_from_settings
from crawl_orchestrator.store import create_redis_client

log_event = get_event_logger("runtime")


@dataclass
class Orchestrator:
    redis_client: redis.Redis
    jobs: RedisJobStore
    pages: RedisPageStore
    queue: WorkQueue
    frontier: Frontier
    active: ActiveTaskSet
    robots: RobotsGate
    broadcaster: Broadcaster
    notifier: Notifier
    lifecycle: CrawlLifecycle
    facade: OrchestrationFacade

    def scheduler(self, **options: object) -> Scheduler:
        return Scheduler(
            jobs=self.jobs,
            queue=self.queue,
            frontier=self.frontier,
            active=self.active,
            lifecycle=self.lifecycle,
            **options,
        )

    def worker_pool(
        self, fetcher: Fetcher, extractor: Extractor = extract, **options: object
    ) -> WorkerPool:
        pipeline = FetchPipeline(
            frontier=self.frontier,
            active=self.active,
            queue=self.queue,
            robots=self.robots,
            jobs=self.jobs,
            pages=self.pages,
            fetcher=fetcher,
            extractor=extractor,
            archive=archive_from_settings(),
        )
        return WorkerPool(
            queue=self.queue,
            jobs=self.jobs,
            active=self.active,
            pipeline=pipeline,
            lifecycle=self.lifecycle,
            **options,
        )


def build_orchestrator(
    redis_client: redis.Redis,
    session: aiohttp.ClientSession,
    *,
    broadcaster: Broadcaster | None = None,
) -> Orchestrator:
    jobs = RedisJobStore(redis_client)
    pages = RedisPageStore(redis_client)
    queue = WorkQueue(redis_client)
    frontier = Frontier(redis_client)
    active = ActiveTaskSet(redis_client)
    robots = RobotsGate(redis_client, partial(fetch_robots_txt, session))
    broadcaster = broadcaster or SubscriberBroadcaster()
    notifier = Notifier(broadcaster, jobs, queue, active)
    lifecycle = CrawlLifecycle(
        jobs=jobs,
        queue=queue,
        frontier=frontier,
        active=active,
        robots=robots,
        notifier=notifier,
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
    return Orchestrator(
        redis_client=redis_client,
        jobs=jobs,
        pages=pages,
        queue=queue,
        frontier=frontier,
        active=active,
        robots=robots,
        broadcaster=broadcaster,
        notifier=notifier,
        lifecycle=lifecycle,
        facade=facade,
    )


def _install_signal_handlers(stop_event: asyncio.Event, pool: WorkerPool | None) -> None:
    def request_shutdown() -> None:
        log_event("shutdown")
        stop_event.set()
        if pool is not None:
            pool.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass


async def run_services(
    *, workers: bool = True, scheduler: bool = True, metrics: bool = False
) -> None:
    """Runs the worker pool and/or the scheduler until SIGINT/SIGTERM."""
    if metrics:
        start_metrics_exporter()
    redis_client = create_redis_client()
    stop_event = asyncio.Event()
    async with create_session() as session:
        orchestrator = build_orchestrator(redis_client, session)
        pool = orchestrator.worker_pool(PageFetcher(session)) if workers else None
        _install_signal_handlers(stop_event, pool)
        loops = []
        if pool is not None:
            loops.append(asyncio.create_task(pool.run()))
        if scheduler:
            loops.append(asyncio.create_task(orchestrator.scheduler().run(stop_event)))
        try:
            await asyncio.gather(*loops)
        finally:
            await redis_client.aclose()


async def with_facade(operation, *args: object, **kwargs: object) -> object:
    """Runs one facade call against a fresh client, for CLI commands."""
    redis_client = create_redis_client()
    async with create_session() as session:
        facade = build_orchestrator(redis_client, session).facade
        try:
            return await operation(facade, *args, **kwargs)
        finally:
            await redis_client.aclose()
