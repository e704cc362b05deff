import asyncio

import fakeredis
import pytest

from crawl_orchestrator.errors import StoreUnavailable
from crawl_orchestrator.ingest.frontier import ActiveTaskSet, Frontier
from crawl_orchestrator.ingest.normalize import normalize_url


async def test_concurrent_claims_have_one_winner(redis_client):
    frontiers = [Frontier(redis_client) for _ in range(20)]
    results = await asyncio.gather(
        *(frontier.try_claim("c1", "https://example.com/a") for frontier in frontiers)
    )
    assert results.count(True) == 1


async def test_claim_dedups_equivalent_spellings(redis_client):
    frontier = Frontier(redis_client)
    assert await frontier.try_claim("c1", normalize_url("https://example.com/a"))
    assert not await frontier.try_claim("c1", normalize_url("https://EXAMPLE.com/a/"))


async def test_claims_are_per_crawl(redis_client):
    frontier = Frontier(redis_client)
    assert await frontier.try_claim("c1", "https://example.com/a")
    assert await frontier.try_claim("c2", "https://example.com/a")


async def test_claim_batch(redis_client):
    frontier = Frontier(redis_client)
    await frontier.try_claim("c1", "https://example.com/a")
    claimed = await frontier.claim_batch(
        "c1", ["https://example.com/a", "https://example.com/b", "https://example.com/b"]
    )
    assert claimed == [False, True, False]
    assert await frontier.count("c1") == 2
    assert await frontier.claim_batch("c1", []) == []


async def test_try_start_belongs_to_one_task(redis_client):
    frontier = Frontier(redis_client)
    url = "https://example.com/a"
    assert await frontier.try_start("c1", url, "task-1")
    assert await frontier.try_start("c1", url, "task-1")
    assert not await frontier.try_start("c1", url, "task-2")


async def test_purge_forgets_everything(redis_client):
    frontier = Frontier(redis_client)
    await frontier.try_claim("c1", "https://example.com/a")
    await frontier.try_start("c1", "https://example.com/a", "task-1")
    await frontier.purge("c1")
    assert await frontier.count("c1") == 0
    assert await frontier.try_claim("c1", "https://example.com/a")
    assert await frontier.try_start("c1", "https://example.com/a", "task-2")


async def test_claim_fails_loudly_when_store_is_down(redis_client, server):
    frontier = Frontier(redis_client, degraded_skip=False)
    server.connected = False
    with pytest.raises(StoreUnavailable):
        await frontier.try_claim("c1", "https://example.com/a")


async def test_degraded_mode_reports_seen(redis_client, server):
    frontier = Frontier(redis_client, degraded_skip=True)
    server.connected = False
    assert await frontier.try_claim("c1", "https://example.com/a") is False
    assert await frontier.claim_batch("c1", ["https://example.com/b"]) == [False]


async def test_active_set_add_is_idempotent(redis_client):
    active = ActiveTaskSet(redis_client)
    await active.add("c1", "t1")
    await active.add("c1", "t1")
    await active.add("c1", "t2")
    assert await active.count("c1") == 2
    assert sorted(await active.members("c1")) == ["t1", "t2"]
    assert await active.remove("c1", "t1")
    assert not await active.remove("c1", "t1")
    await active.clear("c1")
    assert await active.count("c1") == 0


async def test_lease_releases_on_error(redis_client):
    active = ActiveTaskSet(redis_client)
    with pytest.raises(RuntimeError):
        async with active.lease("c1", "t1"):
            assert await active.count("c1") == 1
            raise RuntimeError("boom")
    assert await active.count("c1") == 0


async def test_lease_keep_leaves_task_registered(redis_client):
    active = ActiveTaskSet(redis_client)
    async with active.lease("c1", "t1") as lease:
        lease.keep()
    assert await active.count("c1") == 1


async def test_lease_keeps_task_on_store_outage(redis_client):
    active = ActiveTaskSet(redis_client)
    with pytest.raises(StoreUnavailable):
        async with active.lease("c1", "t1"):
            raise StoreUnavailable("down")
    assert await active.count("c1") == 1


async def test_separate_clients_share_state(server):
    first = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    second = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    assert await Frontier(first).try_claim("c1", "https://example.com/a")
    assert not await Frontier(second).try_claim("c1", "https://example.com/a")
    await first.aclose()
    await second.aclose()
