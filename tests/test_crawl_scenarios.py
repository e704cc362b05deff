import asyncio

import pytest

from crawl_orchestrator.errors import FetchError
from crawl_orchestrator.ingest.etl import extract
from crawl_orchestrator.ingest.pipeline import TaskOutcome
from crawl_orchestrator.orchestration.models import CrawlStatus, StopReason

from conftest import page

ROOT = "https://example.com/"


def depth_counts(queued_tasks) -> dict[int, int]:
    counts: dict[int, int] = {}
    for queued in queued_tasks:
        depth = queued.task.current_depth
        counts[depth] = counts.get(depth, 0) + 1
    return counts


async def test_depth_one_crawl_enqueues_each_child_once(harness, web):
    web.pages[ROOT] = page("Home", "/a", "/b", "https://www.example.com/c/", "/")
    for name in "abc":
        web.pages[f"{ROOT}{name}"] = page(name, "/deeper", "/")
    job_id = await harness.start(ROOT, max_depth=1)

    assert await harness.pool.run_once()
    tasks = await harness.queue.list_by_crawl(job_id)
    assert depth_counts(tasks) == {0: 1, 1: 3}

    await harness.drain()
    tasks = await harness.queue.list_by_crawl(job_id)
    assert depth_counts(tasks) == {0: 1, 1: 3}
    assert sorted(web.calls) == [ROOT, f"{ROOT}a", f"{ROOT}b", f"{ROOT}c"]

    job = await harness.jobs.get(job_id)
    assert job.status == CrawlStatus.CRAWLED
    assert job.pages_crawled == 4
    assert job.completed_at is not None
    assert await harness.active.count(job_id) == 0
    assert await harness.frontier.count(job_id) == 0


async def test_replayed_task_is_not_double_counted(harness, web):
    web.pages[ROOT] = page("Home", "/a", "/b", "/c")
    job_id = await harness.start(ROOT, max_depth=1)
    claimed = await harness.queue.claim()
    job = await harness.jobs.get(job_id)

    first = await harness.pipeline.run(claimed.task, job)
    second = await harness.pipeline.run(claimed.task, job)

    assert (first.outcome, first.inserted, first.children) == (TaskOutcome.COMPLETED, True, 3)
    assert (second.outcome, second.inserted, second.children) == (TaskOutcome.COMPLETED, False, 0)
    assert (await harness.jobs.get(job_id)).pages_crawled == 1
    assert depth_counts(await harness.queue.list_by_crawl(job_id)) == {0: 1, 1: 3}


async def test_other_task_for_same_url_is_skipped(harness, web):
    web.pages[ROOT] = page("Home")
    job_id = await harness.start(ROOT, max_depth=0)
    await harness.inject(job_id, ROOT, depth=0)
    await harness.drain()
    assert web.calls == [ROOT]
    assert (await harness.jobs.get(job_id)).status == CrawlStatus.CRAWLED


async def test_stop_drains_active_tasks_to_canceled(harness, web):
    paths = [f"{ROOT}p{i}" for i in range(1, 7)]
    web.pages[ROOT] = page("Home", *paths)
    for url in paths:
        web.pages[url] = page(url)
    web.gate = asyncio.Event()
    job_id = await harness.start(ROOT, max_depth=1)
    for url in paths:
        await harness.inject(job_id, url)

    workers = [asyncio.create_task(harness.pool.run_once()) for _ in range(2)]
    while len(web.calls) < 2:
        await asyncio.sleep(0.01)
    assert (await harness.queue.counts(job_id))["waiting"] == 5
    assert await harness.active.count(job_id) == 7

    job = await harness.facade.stop_crawl(job_id)
    assert job.status == CrawlStatus.STOPPING
    assert job.stop_requested_at is not None
    counts = await harness.queue.counts(job_id)
    assert counts["waiting"] == 0
    assert counts["active"] == 2
    assert await harness.active.count(job_id) == 2

    web.gate.set()
    await asyncio.gather(*workers)

    job = await harness.jobs.get(job_id)
    assert job.status == CrawlStatus.CANCELED
    assert job.stop_reason == StopReason.REQUESTED
    assert await harness.active.count(job_id) == 0
    assert await harness.queue.counts(job_id) == {
        "waiting": 0,
        "delayed": 0,
        "active": 0,
        "completed": 2,
        "failed": 0,
    }


def failing_extractor(bad_url: str):
    def run(html: str, base_url: str):
        if base_url == bad_url:
            raise RuntimeError("parser crashed")
        return extract(html, base_url)

    return run


BAD = f"{ROOT}bad"


@pytest.mark.parametrize(
    "setup, errors",
    [
        ("invalid_url", 0),
        ("domain", 0),
        ("robots", 0),
        ("fetch_retryable", 1),
        ("fetch_fatal", 1),
        ("extract_empty", 1),
        ("extract_crash", 1),
        ("persist_crash", 1),
        ("expand_crash", 0),
    ],
)
async def test_failures_at_every_step_never_leak_active_tasks(
    make_harness, web, monkeypatch, setup, errors
):
    extractor = failing_extractor(BAD) if setup == "extract_crash" else extract
    harness = make_harness(extractor=extractor)
    web.pages[ROOT] = page("Home", "/bad")
    web.pages[BAD] = page("Bad", "/leaf")
    web.pages[f"{ROOT}leaf"] = page("Leaf")
    if setup == "robots":
        web.robots[f"{ROOT}robots.txt"] = "User-agent: *\nDisallow: /bad\n"
    elif setup == "fetch_retryable":
        web.errors[BAD] = FetchError("HTTP 503", status=503)
    elif setup == "fetch_fatal":
        web.errors[BAD] = FetchError("too large", retryable=False)
    elif setup == "extract_empty":
        web.pages[BAD] = "<html><body></body></html>"

    job_id = await harness.start(ROOT, max_depth=2)
    if setup == "invalid_url":
        await harness.inject(job_id, "http://[broken")
    elif setup == "domain":
        await harness.inject(job_id, "https://evil.com/x")

    original_upsert = harness.pages.upsert_page
    original_enqueue = harness.queue.enqueue

    async def crashing_upsert(url, *args, **kwargs):
        if url == BAD:
            raise RuntimeError("disk full")
        return await original_upsert(url, *args, **kwargs)

    async def crashing_enqueue(task, **kwargs):
        if task.parent_url == BAD:
            raise RuntimeError("enqueue exploded")
        return await original_enqueue(task, **kwargs)

    if setup == "persist_crash":
        monkeypatch.setattr(harness.pages, "upsert_page", crashing_upsert)
    elif setup == "expand_crash":
        monkeypatch.setattr(harness.queue, "enqueue", crashing_enqueue)

    await harness.drain()

    job = await harness.jobs.get(job_id)
    assert job.status.is_terminal
    assert job.status == CrawlStatus.CRAWLED
    assert job.error_count == errors
    assert await harness.active.count(job_id) == 0


async def test_seed_failure_fails_the_crawl(harness, web):
    web.errors[ROOT] = FetchError("HTTP 500", status=500)
    job_id = await harness.start(ROOT, max_depth=1)
    await harness.drain()
    job = await harness.jobs.get(job_id)
    assert job.status == CrawlStatus.FAILED
    assert job.error_count == 1
    assert web.calls == [ROOT, ROOT, ROOT]
    assert "HTTP 500" in job.last_error


async def test_quota_stops_crawl_as_failed(make_harness, web):
    harness = make_harness(quota=2)
    web.pages[ROOT] = page("Home", "/a", "/b", "/c")
    for name in "abc":
        web.pages[f"{ROOT}{name}"] = page(name)
    job_id = await harness.start(ROOT, max_depth=1)

    await harness.drain()

    job = await harness.jobs.get(job_id)
    assert job.status == CrawlStatus.FAILED
    assert job.stop_reason == StopReason.QUOTA
    assert job.pages_crawled == 2
    assert await harness.active.count(job_id) == 0
    assert len(web.calls) == 2


async def test_robots_failure_fails_open(harness, web):
    async def broken_robots(robots_url: str) -> str:
        raise FetchError("robots timeout")

    harness.robots.fetch_robots = broken_robots
    web.pages[ROOT] = page("Home")
    job_id = await harness.start(ROOT, max_depth=0)
    await harness.drain()
    assert web.calls == [ROOT]
    assert (await harness.jobs.get(job_id)).pages_crawled == 1


async def test_crawl_delay_defers_second_fetch_to_same_host(harness, web):
    harness.pipeline.respect_crawl_delay = True
    web.robots[f"{ROOT}robots.txt"] = "User-agent: *\nCrawl-delay: 30\n"
    web.pages[ROOT] = page("Home", "/a")
    web.pages[f"{ROOT}a"] = page("A")
    job_id = await harness.start(ROOT, max_depth=1)

    assert await harness.pool.run_once()
    assert await harness.pool.run_once()

    assert web.calls == [ROOT]
    tasks = await harness.queue.list_by_crawl(job_id)
    assert [queued.task.url for queued in tasks if queued.state.value == "delayed"] == [
        f"{ROOT}a"
    ]
    assert await harness.active.count(job_id) == 1
    assert (await harness.jobs.get(job_id)).status == CrawlStatus.RUNNING


async def test_pipeline_reports_quota_as_outcome(make_harness, web):
    harness = make_harness(quota=1)
    web.pages[ROOT] = page("Home", "/a")
    job_id = await harness.start(ROOT, max_depth=1)
    claimed = await harness.queue.claim()

    result = await harness.pipeline.run(claimed.task, await harness.jobs.get(job_id))

    assert result.outcome == TaskOutcome.QUOTA
    assert result.inserted
    assert "quota" in result.error
    assert result.children == 0
