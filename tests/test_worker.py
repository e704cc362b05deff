import asyncio

import pytest

from crawl_orchestrator.errors import FetchError, StoreUnavailable
from crawl_orchestrator.ingest.worker import PriorityGate, StoreBreaker
from crawl_orchestrator.orchestration.models import CrawlStatus, TaskState

from conftest import page


async def test_gate_favours_first_crawl(redis_client):
    from crawl_orchestrator.ingest.frontier import ActiveTaskSet

    active = ActiveTaskSet(redis_client)
    gate = PriorityGate(active)
    await active.add("a", "t1")

    assert (await gate.admit("a", 0)).admitted
    assert gate.favored_crawl == "a"
    assert not (await gate.admit("b", 0)).admitted
    assert not (await gate.admit("b", -1)).admitted

    decision = await gate.admit("b", 3)
    assert decision.admitted
    assert decision.preempted == "a"
    assert (gate.favored_crawl, gate.favored_priority) == ("b", 3)


async def test_gate_adopts_crawl_when_favoured_one_drained(redis_client):
    from crawl_orchestrator.ingest.frontier import ActiveTaskSet

    gate = PriorityGate(ActiveTaskSet(redis_client))
    await gate.admit("a", 5)
    decision = await gate.admit("b", 0)
    assert decision.admitted
    assert decision.preempted is None
    assert gate.favored_crawl == "b"


def test_breaker_backoff_doubles_and_caps():
    breaker = StoreBreaker(base_s=1, cap_s=5)
    assert [breaker.record_failure() for _ in range(5)] == [1, 2, 4, 5, 5]
    assert breaker.remaining() > 0
    breaker.record_success()
    assert breaker.remaining() == 0
    assert breaker.failures == 0


async def test_higher_priority_crawl_preempts_waiting_work(make_harness, web):
    harness = make_harness(max_running=2)
    web.pages["https://low.com/"] = page("Low", "/1", "/2")
    web.pages["https://high.com/"] = page("High")
    low = await harness.facade.start_crawl("https://low.com/", max_depth=1, owner_id="a")
    await harness.scheduler.admit_pending()
    assert await harness.pool.run_once()
    assert harness.pool.gate.favored_crawl == low
    assert (await harness.queue.counts(low))["waiting"] == 2

    high = await harness.facade.start_crawl(
        "https://high.com/", max_depth=0, owner_id="b", priority=5
    )
    assert await harness.scheduler.admit_pending() == [high]
    assert await harness.pool.run_once()

    assert harness.pool.gate.favored_crawl == high
    counts = await harness.queue.counts(low)
    assert counts["waiting"] == 0
    assert counts["delayed"] == 2
    assert (await harness.jobs.get(high)).status == CrawlStatus.CRAWLED
    assert await harness.active.count(low) == 2


async def test_lower_priority_crawl_waits_for_higher_one(make_harness, web):
    harness = make_harness(max_running=2)
    web.pages["https://high.com/"] = page("High", "/1")
    web.pages["https://high.com/1"] = page("High child")
    web.pages["https://low.com/"] = page("Low")
    high = await harness.facade.start_crawl(
        "https://high.com/", max_depth=1, owner_id="a", priority=5
    )
    low = await harness.facade.start_crawl("https://low.com/", max_depth=0, owner_id="b")
    await harness.scheduler.admit_pending()

    assert await harness.pool.run_once()
    assert harness.pool.gate.favored_crawl == high
    assert await harness.pool.run_once()
    assert web.calls == ["https://high.com/", "https://high.com/1"]
    assert (await harness.jobs.get(high)).status == CrawlStatus.CRAWLED

    assert await harness.pool.run_once()
    assert harness.pool.gate.favored_crawl == low
    assert (await harness.jobs.get(low)).status == CrawlStatus.CRAWLED


async def test_deferred_while_favoured_crawl_busy(make_harness, web):
    harness = make_harness(max_running=2)
    web.pages["https://low.com/"] = page("Low")
    first = await harness.start("https://first.com/", max_depth=0, owner_id="a")
    low = await harness.start("https://low.com/", max_depth=0, owner_id="b")
    harness.pool.gate.favored_crawl = first
    harness.pool.gate.favored_priority = 0
    await harness.queue.claim()

    assert await harness.pool.run_once()
    assert web.calls == []
    tasks = await harness.queue.list_by_crawl(low)
    assert [queued.state for queued in tasks] == [TaskState.DELAYED]
    assert await harness.active.count(low) == 1


async def test_capacity_gate_delays_task(make_harness, web):
    harness = make_harness(max_inflight=1)
    web.pages["https://example.com/"] = page("Home")
    job_id = await harness.start("https://example.com/", max_depth=0)
    harness.pool.inflight = 1

    assert await harness.pool.run_once()
    assert web.calls == []
    assert (await harness.queue.counts(job_id))["delayed"] == 1
    assert await harness.active.count(job_id) == 1


async def test_task_of_stopping_crawl_is_discarded(harness, web):
    web.pages["https://example.com/"] = page("Home")
    job_id = await harness.start("https://example.com/", max_depth=0)
    await harness.jobs.update_status(
        job_id, CrawlStatus.STOPPING, expected=[CrawlStatus.RUNNING]
    )

    assert await harness.pool.run_once()
    assert web.calls == []
    assert await harness.active.count(job_id) == 0
    assert (await harness.jobs.get(job_id)).status == CrawlStatus.CANCELED


async def test_store_outage_keeps_task_active(harness, web, monkeypatch):
    web.pages["https://example.com/"] = page("Home")
    job_id = await harness.start("https://example.com/", max_depth=0)

    async def store_down(*args, **kwargs):
        raise StoreUnavailable("pages.upsert: connection refused")

    monkeypatch.setattr(harness.pages, "upsert_page", store_down)
    with pytest.raises(StoreUnavailable):
        await harness.pool.run_once()
    assert await harness.active.count(job_id) == 1
    assert (await harness.queue.counts(job_id))["active"] == 1
    assert harness.pool.inflight == 0


async def test_pool_run_stops_gracefully(harness, web):
    web.pages["https://example.com/"] = page("Home")
    job_id = await harness.start("https://example.com/", max_depth=0)
    runner = asyncio.create_task(harness.pool.run())
    for _ in range(200):
        if (await harness.jobs.get(job_id)).status.is_terminal:
            break
        await asyncio.sleep(0.01)
    harness.pool.stop()
    await asyncio.wait_for(runner, timeout=2)
    assert (await harness.jobs.get(job_id)).status == CrawlStatus.CRAWLED


async def test_outage_after_settling_releases_task(harness, web, monkeypatch):
    web.pages["https://example.com/"] = page("Home")
    job_id = await harness.start("https://example.com/", max_depth=0)
    await harness.inject(job_id, "https://example.com/", depth=0)

    original = harness.jobs.log_event
    failures = []

    async def flaky_log(crawl_id, level, message, metadata=None):
        if message.startswith("Skipped") and not failures:
            failures.append(message)
            raise StoreUnavailable("jobs.log_event: connection reset")
        await original(crawl_id, level, message, metadata)

    monkeypatch.setattr(harness.jobs, "log_event", flaky_log)
    assert await harness.pool.run_once()
    with pytest.raises(StoreUnavailable):
        await harness.pool.run_once()

    assert failures
    assert await harness.active.count(job_id) == 0
    assert (await harness.queue.counts(job_id))["completed"] == 2

    await harness.scheduler.tick()
    assert (await harness.jobs.get(job_id)).status == CrawlStatus.CRAWLED


async def test_outage_after_terminal_failure_releases_task(harness, web, monkeypatch):
    web.errors["https://example.com/"] = FetchError("too large", retryable=False)
    job_id = await harness.start("https://example.com/", max_depth=0)

    async def store_down(*args, **kwargs):
        raise StoreUnavailable("jobs.increment_errors: connection reset")

    monkeypatch.setattr(harness.jobs, "increment_errors_count", store_down)
    with pytest.raises(StoreUnavailable):
        await harness.pool.run_once()

    assert await harness.active.count(job_id) == 0
    assert (await harness.queue.counts(job_id))["failed"] == 1
