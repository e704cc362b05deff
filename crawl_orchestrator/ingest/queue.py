"""Durable multi-consumer priority queue of fetch tasks in Redis.

Layout (all under ``<prefix>:q:``):

- ``task:<id>`` hash: payload, state, attempts, stalled, priority, seq, timestamps
- ``wait`` zset: ready tasks, score orders by priority desc then enqueue order
- ``delayed`` zset: score is the unix time the task becomes ready
- ``active`` zset: score is the claim time, used for stalled recovery
- ``completed`` / ``failed`` zsets: score is the finish time
- ``crawl:<crawl_id>`` set: every task id of a crawl

State moves are Lua scripts so a task is always in exactly one zset.
"""

from dataclasses import dataclass
import time
from typing import Callable

import redis.asyncio as redis

from crawl_orchestrator.config import Settings
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.orchestration.models import ClaimedTask, FetchTask, TaskState
from crawl_orchestrator.store import key, store_call

log_event = get_event_logger("queue")

PRIORITY_MIN = -1000
PRIORITY_MAX = 1000

# Scores are -priority * 1e10 + seq, formatted with %.0f to stay exact.
_SCORE = "string.format('%.0f', -tonumber({prio}) * 1e10 + tonumber({seq}))"

ENQUEUE_SCRIPT = f"""
local seq = redis.call('INCR', KEYS[5])
redis.call('HSET', KEYS[1],
    'payload', ARGV[2], 'crawl_id', ARGV[3], 'priority', ARGV[4], 'seq', seq,
    'attempts', 0, 'stalled', 0, 'enqueued_at', ARGV[5], 'last_error', '')
redis.call('SADD', KEYS[4], ARGV[1])
if tonumber(ARGV[6]) > tonumber(ARGV[5]) then
    redis.call('HSET', KEYS[1], 'state', 'delayed')
    redis.call('ZADD', KEYS[3], ARGV[6], ARGV[1])
else
    redis.call('HSET', KEYS[1], 'state', 'waiting')
    redis.call('ZADD', KEYS[2], {_SCORE.format(prio="ARGV[4]", seq="seq")}, ARGV[1])
end
return seq
"""

CLAIM_SCRIPT = """
local ids = redis.call('ZRANGE', KEYS[1], 0, 0)
if #ids == 0 then
    return nil
end
local id = ids[1]
local tkey = ARGV[2] .. id
redis.call('ZREM', KEYS[1], id)
redis.call('HSET', tkey, 'state', 'active', 'claimed_at', ARGV[1])
redis.call('ZADD', KEYS[2], ARGV[1], id)
return {id, redis.call('HGET', tkey, 'payload'), redis.call('HGET', tkey, 'attempts')}
"""

PROMOTE_SCRIPT = f"""
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[3])
for _, id in ipairs(ids) do
    local tkey = ARGV[2] .. id
    redis.call('ZREM', KEYS[1], id)
    local prio = redis.call('HGET', tkey, 'priority') or '0'
    local seq = redis.call('HGET', tkey, 'seq') or '0'
    redis.call('HSET', tkey, 'state', 'waiting')
    redis.call('ZADD', KEYS[2], {_SCORE.format(prio="prio", seq="seq")}, id)
end
return #ids
"""

DELAY_SCRIPT = """
local tkey = ARGV[3] .. ARGV[1]
local state = redis.call('HGET', tkey, 'state')
if state ~= 'waiting' and state ~= 'active' and state ~= 'delayed' then
    return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HSET', tkey, 'state', 'delayed')
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
return 1
"""

DELAY_CRAWL_SCRIPT = """
local moved = 0
for _, id in ipairs(redis.call('SMEMBERS', KEYS[1])) do
    local tkey = ARGV[2] .. id
    if redis.call('HGET', tkey, 'state') == 'waiting' then
        redis.call('ZREM', KEYS[2], id)
        redis.call('HSET', tkey, 'state', 'delayed')
        redis.call('ZADD', KEYS[3], ARGV[1], id)
        moved = moved + 1
    end
end
return moved
"""

COMPLETE_SCRIPT = """
local tkey = ARGV[3] .. ARGV[1]
if redis.call('HGET', tkey, 'state') ~= 'active' then
    return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HSET', tkey, 'state', 'completed', 'finished_at', ARGV[2])
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
return 1
"""

FAIL_SCRIPT = """
local tkey = ARGV[5] .. ARGV[1]
if redis.call('HGET', tkey, 'state') ~= 'active' then
    return {-1, 0}
end
local attempts = redis.call('HINCRBY', tkey, 'attempts', 1)
redis.call('HSET', tkey, 'last_error', ARGV[3])
redis.call('ZREM', KEYS[1], ARGV[1])
if tonumber(ARGV[4]) == 1 and attempts < tonumber(ARGV[6]) then
    local delay_ms = math.min(tonumber(ARGV[7]) * 2 ^ (attempts - 1), tonumber(ARGV[8]))
    local ready_at = tonumber(ARGV[2]) + delay_ms / 1000
    redis.call('HSET', tkey, 'state', 'delayed')
    redis.call('ZADD', KEYS[2], string.format('%.3f', ready_at), ARGV[1])
    return {1, attempts}
end
redis.call('HSET', tkey, 'state', 'failed', 'finished_at', ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
return {0, attempts}
"""

REMOVE_CRAWL_SCRIPT = """
local removed = {}
for _, id in ipairs(redis.call('SMEMBERS', KEYS[1])) do
    local tkey = ARGV[1] .. id
    local state = redis.call('HGET', tkey, 'state')
    if state == 'waiting' or state == 'delayed' or (ARGV[2] == '1' and state) then
        redis.call('ZREM', KEYS[2], id)
        redis.call('ZREM', KEYS[3], id)
        redis.call('ZREM', KEYS[4], id)
        redis.call('ZREM', KEYS[5], id)
        redis.call('ZREM', KEYS[6], id)
        redis.call('DEL', tkey)
        redis.call('SREM', KEYS[1], id)
        table.insert(removed, id)
    elseif not state then
        redis.call('SREM', KEYS[1], id)
    end
end
return removed
"""

RECOVER_SCRIPT = f"""
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local failed = {{}}
for _, id in ipairs(ids) do
    local tkey = ARGV[3] .. id
    redis.call('ZREM', KEYS[1], id)
    local stalled = redis.call('HINCRBY', tkey, 'stalled', 1)
    if stalled > tonumber(ARGV[4]) then
        redis.call('HSET', tkey, 'state', 'failed', 'finished_at', ARGV[2],
            'last_error', 'stalled')
        redis.call('ZADD', KEYS[3], ARGV[2], id)
        table.insert(failed, id)
        table.insert(failed, redis.call('HGET', tkey, 'crawl_id') or '')
    else
        local prio = redis.call('HGET', tkey, 'priority') or '0'
        local seq = redis.call('HGET', tkey, 'seq') or '0'
        redis.call('HSET', tkey, 'state', 'waiting')
        redis.call('ZADD', KEYS[2], {_SCORE.format(prio="prio", seq="seq")}, id)
    end
end
return {{#ids, failed}}
"""


@dataclass
class QueuedTask:
    task: FetchTask
    state: TaskState
    attempts: int
    last_error: str


@dataclass
class StalledRecovery:
    requeued: int
    failed: list[tuple[str, str]]


def clamp_priority(priority: int) -> int:
    return max(PRIORITY_MIN, min(PRIORITY_MAX, int(priority)))


class WorkQueue:
    def __init__(
        self,
        redis_client: redis.Redis,
        *,
        max_attempts: int | None = None,
        retry_base_ms: int | None = None,
        retry_cap_ms: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = redis_client
        self.max_attempts = max_attempts or Settings.task_max_attempts
        self.retry_base_ms = (
            Settings.retry_base_ms if retry_base_ms is None else retry_base_ms
        )
        self.retry_cap_ms = Settings.retry_cap_ms if retry_cap_ms is None else retry_cap_ms
        self.clock = clock
        self.task_prefix = key("q", "task", "")
        self.wait_key = key("q", "wait")
        self.delayed_key = key("q", "delayed")
        self.active_key = key("q", "active")
        self.completed_key = key("q", "completed")
        self.failed_key = key("q", "failed")
        self.seq_key = key("q", "seq")

    def crawl_key(self, crawl_id: str) -> str:
        return key("q", "crawl", crawl_id)

    def _state_keys(self) -> dict[TaskState, str]:
        return {
            TaskState.WAITING: self.wait_key,
            TaskState.DELAYED: self.delayed_key,
            TaskState.ACTIVE: self.active_key,
            TaskState.COMPLETED: self.completed_key,
            TaskState.FAILED: self.failed_key,
        }

    async def enqueue(
        self, task: FetchTask, *, priority: int | None = None, delay_ms: int = 0
    ) -> str:
        priority = clamp_priority(task.priority if priority is None else priority)
        task.priority = priority
        now = self.clock()
        ready_at = now + delay_ms / 1000 if delay_ms > 0 else 0
        async with store_call("queue.enqueue"):
            await self.redis.eval(
                ENQUEUE_SCRIPT,
                5,
                f"{self.task_prefix}{task.task_id}",
                self.wait_key,
                self.delayed_key,
                self.crawl_key(task.crawl_id),
                self.seq_key,
                task.task_id,
                task.to_payload(),
                task.crawl_id,
                priority,
                now,
                ready_at,
            )
        log_event("enqueue", crawl=task.crawl_id, url=task.url, depth=task.current_depth)
        return task.task_id

    async def promote_due(self, max_items: int = 100) -> int:
        """Moves delayed tasks whose ready time has passed back to waiting."""
        async with store_call("queue.promote"):
            return int(
                await self.redis.eval(
                    PROMOTE_SCRIPT,
                    2,
                    self.delayed_key,
                    self.wait_key,
                    self.clock(),
                    self.task_prefix,
                    max_items,
                )
            )

    async def claim(self) -> ClaimedTask | None:
        await self.promote_due()
        async with store_call("queue.claim"):
            result = await self.redis.eval(
                CLAIM_SCRIPT,
                2,
                self.wait_key,
                self.active_key,
                self.clock(),
                self.task_prefix,
            )
        if not result:
            return None
        _, payload, attempts = result
        return ClaimedTask(task=FetchTask.from_payload(payload), attempts=int(attempts or 0))

    async def complete(self, task_id: str) -> bool:
        async with store_call("queue.complete"):
            moved = await self.redis.eval(
                COMPLETE_SCRIPT,
                2,
                self.active_key,
                self.completed_key,
                task_id,
                self.clock(),
                self.task_prefix,
            )
        await self._trim_completed()
        return bool(moved)

    async def fail(self, task_id: str, error: str, *, retryable: bool = True) -> bool:
        """Records a failed attempt; returns True when the task was scheduled for retry."""
        async with store_call("queue.fail"):
            retried, attempts = await self.redis.eval(
                FAIL_SCRIPT,
                3,
                self.active_key,
                self.delayed_key,
                self.failed_key,
                task_id,
                self.clock(),
                error[:500],
                1 if retryable else 0,
                self.task_prefix,
                self.max_attempts,
                self.retry_base_ms,
                self.retry_cap_ms,
            )
        retried = int(retried)
        if retried == 1:
            log_event("retry", task=task_id, attempts=attempts, error=error)
        elif retried == 0:
            log_event("failed", task=task_id, attempts=attempts, error=error)
        return retried == 1

    async def delay(self, task_id: str, until_ms: int) -> bool:
        async with store_call("queue.delay"):
            moved = await self.redis.eval(
                DELAY_SCRIPT,
                3,
                self.wait_key,
                self.active_key,
                self.delayed_key,
                task_id,
                until_ms / 1000,
                self.task_prefix,
            )
        return bool(moved)

    async def delay_for(self, task_id: str, delay_ms: int) -> bool:
        return await self.delay(task_id, int((self.clock() * 1000) + delay_ms))

    async def delay_crawl(self, crawl_id: str, delay_ms: int) -> int:
        """Re-delays every waiting task of a crawl."""
        async with store_call("queue.delay_crawl"):
            return int(
                await self.redis.eval(
                    DELAY_CRAWL_SCRIPT,
                    3,
                    self.crawl_key(crawl_id),
                    self.wait_key,
                    self.delayed_key,
                    self.clock() + delay_ms / 1000,
                    self.task_prefix,
                )
            )

    async def remove_by_crawl(
        self, crawl_id: str, *, include_active: bool = False
    ) -> list[str]:
        """Removes a crawl's not-yet-started tasks; returns the removed task ids."""
        async with store_call("queue.remove_by_crawl"):
            removed = await self.redis.eval(
                REMOVE_CRAWL_SCRIPT,
                6,
                self.crawl_key(crawl_id),
                self.wait_key,
                self.delayed_key,
                self.active_key,
                self.completed_key,
                self.failed_key,
                self.task_prefix,
                "1" if include_active else "0",
            )
        return list(removed or [])

    async def list_by_crawl(self, crawl_id: str) -> list[QueuedTask]:
        async with store_call("queue.list_by_crawl"):
            task_ids = sorted(await self.redis.smembers(self.crawl_key(crawl_id)))
            return await self._load(task_ids)

    async def _load(self, task_ids: list[str]) -> list[QueuedTask]:
        if not task_ids:
            return []
        pipe = self.redis.pipeline(transaction=False)
        for task_id in task_ids:
            pipe.hgetall(f"{self.task_prefix}{task_id}")
        rows = await pipe.execute()
        tasks = []
        for row in rows:
            if not row or "payload" not in row:
                continue
            tasks.append(
                QueuedTask(
                    task=FetchTask.from_payload(row["payload"]),
                    state=TaskState(row.get("state", TaskState.WAITING.value)),
                    attempts=int(row.get("attempts", 0)),
                    last_error=row.get("last_error", ""),
                )
            )
        return tasks

    async def get(self, task_id: str) -> QueuedTask | None:
        async with store_call("queue.get"):
            tasks = await self._load([task_id])
        return tasks[0] if tasks else None

    async def counts(self, crawl_id: str | None = None) -> dict[str, int]:
        if crawl_id is not None:
            counts = {state.value: 0 for state in TaskState}
            for queued in await self.list_by_crawl(crawl_id):
                counts[queued.state.value] += 1
            return counts
        async with store_call("queue.counts"):
            pipe = self.redis.pipeline(transaction=False)
            states = self._state_keys()
            for state_key in states.values():
                pipe.zcard(state_key)
            results = await pipe.execute()
        return {state.value: int(count) for state, count in zip(states, results)}

    async def recent(self, limit: int = 10) -> list[QueuedTask]:
        """Most recently touched tasks across waiting, active, completed and failed."""
        async with store_call("queue.recent"):
            pipe = self.redis.pipeline(transaction=False)
            for state in (TaskState.ACTIVE, TaskState.WAITING, TaskState.COMPLETED, TaskState.FAILED):
                pipe.zrevrange(self._state_keys()[state], 0, limit - 1)
            groups = await pipe.execute()
            task_ids = [task_id for group in groups for task_id in group][:limit]
            return await self._load(task_ids)

    async def recover_stalled(
        self, *, stalled_timeout_s: int | None = None, max_stalled: int | None = None
    ) -> StalledRecovery:
        """Returns active tasks whose claim is older than the timeout to waiting.

        Tasks that stalled more than ``max_stalled`` times are failed instead;
        their ``(task_id, crawl_id)`` pairs are returned so the caller can
        release them from the crawl's active task set.
        """
        timeout = stalled_timeout_s or Settings.stalled_timeout_s
        limit = Settings.max_stalled_count if max_stalled is None else max_stalled
        now = self.clock()
        async with store_call("queue.recover_stalled"):
            count, failed = await self.redis.eval(
                RECOVER_SCRIPT,
                3,
                self.active_key,
                self.wait_key,
                self.failed_key,
                now - timeout,
                now,
                self.task_prefix,
                limit,
            )
        pairs = [(failed[i], failed[i + 1]) for i in range(0, len(failed or []), 2)]
        if count:
            log_event("stalled", recovered=count, failed=len(pairs))
        return StalledRecovery(requeued=int(count) - len(pairs), failed=pairs)

    async def _trim_completed(self) -> None:
        keep = Settings.completed_keep_count
        cutoff = self.clock() - Settings.completed_keep_age_s
        async with store_call("queue.trim"):
            expired = set(
                await self.redis.zrangebyscore(self.completed_key, "-inf", cutoff)
            )
            expired.update(await self.redis.zrange(self.completed_key, 0, -(keep + 1)))
            if not expired:
                return
            await self._drop(self.completed_key, sorted(expired))

    async def _drop(self, state_key: str, task_ids: list[str]) -> dict[str, list[str]]:
        pipe = self.redis.pipeline(transaction=False)
        for task_id in task_ids:
            pipe.hget(f"{self.task_prefix}{task_id}", "crawl_id")
        crawl_ids = await pipe.execute()
        dropped: dict[str, list[str]] = {}
        pipe = self.redis.pipeline(transaction=True)
        for task_id, crawl_id in zip(task_ids, crawl_ids):
            pipe.zrem(state_key, task_id)
            pipe.delete(f"{self.task_prefix}{task_id}")
            if crawl_id:
                pipe.srem(self.crawl_key(crawl_id), task_id)
                dropped.setdefault(crawl_id, []).append(task_id)
        await pipe.execute()
        return dropped

    async def clear(self) -> dict[str, list[str]]:
        """Drops every non-active task; returns removed task ids grouped by crawl."""
        removed: dict[str, list[str]] = {}
        async with store_call("queue.clear"):
            for state_key in (
                self.wait_key,
                self.delayed_key,
                self.completed_key,
                self.failed_key,
            ):
                task_ids = list(await self.redis.zrange(state_key, 0, -1))
                if not task_ids:
                    continue
                for crawl_id, ids in (await self._drop(state_key, task_ids)).items():
                    removed.setdefault(crawl_id, []).extend(ids)
        log_event("clear", crawls=len(removed), tasks=sum(map(len, removed.values())))
        return removed

    async def reset(self) -> int:
        """Deletes every queue key, active tasks included."""
        deleted = 0
        async with store_call("queue.reset"):
            async for queue_key in self.redis.scan_iter(match=key("q", "*"), count=1000):
                await self.redis.delete(queue_key)
                deleted += 1
        log_event("reset", keys=deleted)
        return deleted
