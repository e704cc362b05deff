"""robots.txt admission gate.

Fails open: when robots.txt cannot be fetched or parsed the URL is allowed.
Failures are cached per crawl like successes, so a broken host is fetched once.
"""

import asyncio
from dataclasses import asdict, dataclass
import json
import math
import re
import time
from typing import Awaitable, Callable
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import aiohttp
from cachetools import TTLCache
import redis.asyncio as redis

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import FetchError
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.store import key, store_call

log_event = get_event_logger("robots")

RobotsFetcher = Callable[[str], Awaitable[str]]


@dataclass
class RobotsRules:
    host: str
    ok: bool
    crawl_delay_s: int
    request_rate_s: int
    fetched_at: int
    text: str


def robots_cache_key(crawl_id: str) -> str:
    return key(crawl_id, "robots")


def robots_next_allowed_key(host: str) -> str:
    return key("robots", "next_allowed", host)


def robots_url_for(url: str) -> tuple[str, str]:
    parts = urlsplit(url)
    host = parts.netloc.lower()
    return host, f"{parts.scheme}://{host}/robots.txt"


async def fetch_robots_txt(session: aiohttp.ClientSession, robots_url: str) -> str:
    timeout = aiohttp.ClientTimeout(total=Settings.request_timeout_s)
    async with session.get(robots_url, timeout=timeout) as response:
        if response.status == 404:
            return ""
        if response.status != 200:
            raise FetchError(f"{robots_url} HTTP {response.status}", status=response.status)
        return await response.text()


_REQUEST_RATE = re.compile(r"^\s*(\d+)\s*/\s*([\d.]+)\s*([smhd])?\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def _parse_request_rate_value(value: str) -> int:
    """Seconds between requests for ``n/period[unit]``; 0 when unusable."""
    match = _REQUEST_RATE.match(value)
    if not match or int(match.group(1)) <= 0:
        return 0
    window_s = float(match.group(2)) * _UNIT_SECONDS[match.group(3) or "s"]
    if window_s <= 0:
        return 0
    return int(math.ceil(window_s / int(match.group(1))))


def _agent_groups(robots_txt: str) -> list[tuple[set[str], list[tuple[str, str]]]]:
    groups: list[tuple[set[str], list[tuple[str, str]]]] = []
    for raw_line in robots_txt.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if ":" not in line:
            continue
        name, value = (part.strip() for part in line.split(":", 1))
        if name.lower() == "user-agent":
            if not groups or groups[-1][1]:
                groups.append((set(), []))
            groups[-1][0].add(value.lower())
        elif groups:
            groups[-1][1].append((name.lower(), value))
    return groups


def _extract_request_rate(robots_txt: str, user_agent: str) -> int:
    # robotparser ignores Request-rate units, so the directive is read here.
    user_agent = user_agent.lower()
    exact = wildcard = 0
    for agents, directives in _agent_groups(robots_txt):
        if user_agent not in agents and "*" not in agents:
            continue
        for name, value in directives:
            rate_s = _parse_request_rate_value(value) if name == "request-rate" else 0
            if not rate_s:
                continue
            if user_agent in agents:
                exact = rate_s
            elif not wildcard:
                wildcard = rate_s
    return exact or wildcard


def _parser_for(text: str) -> RobotFileParser:
    parser = RobotFileParser()
    parser.parse(text.splitlines())
    return parser


def parse_robots(robots_txt: str, host: str, user_agent: str) -> RobotsRules:
    parser = _parser_for(robots_txt)
    delay = parser.crawl_delay(user_agent) or Settings.crawl_delay_default_s
    return RobotsRules(
        host=host,
        ok=True,
        crawl_delay_s=int(delay),
        request_rate_s=_extract_request_rate(robots_txt, user_agent),
        fetched_at=int(time.time()),
        text=robots_txt,
    )


class RobotsGate:
    def __init__(
        self,
        redis_client: redis.Redis,
        fetch_robots: RobotsFetcher,
        *,
        user_agent: str | None = None,
        ttl_s: int | None = None,
        parser_cache_size: int | None = None,
    ) -> None:
        self.redis = redis_client
        self.fetch_robots = fetch_robots
        self.user_agent = user_agent or Settings.user_agent
        self.ttl_s = ttl_s or Settings.frontier_ttl_s
        # Parsed robots.txt per (crawl, host); other processes never see purge().
        self._parsers: TTLCache = TTLCache(
            maxsize=parser_cache_size or Settings.robots_parser_cache_size,
            ttl=Settings.robots_parser_cache_ttl_s,
        )

    async def rules_for(self, crawl_id: str, url: str) -> RobotsRules:
        host, robots_url = robots_url_for(url)
        cache_key = robots_cache_key(crawl_id)
        async with store_call("robots.get"):
            cached = await self.redis.hget(cache_key, host)
        if cached:
            return RobotsRules(**json.loads(cached))

        try:
            robots_txt = await self.fetch_robots(robots_url)
            rules = parse_robots(robots_txt, host, self.user_agent)
        except (FetchError, aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as exc:
            log_event(
                "robots_open",
                crawl=crawl_id,
                host=host,
                error=type(exc).__name__,
                detail=str(exc),
            )
            rules = RobotsRules(
                host=host,
                ok=False,
                crawl_delay_s=Settings.crawl_delay_default_s,
                request_rate_s=0,
                fetched_at=int(time.time()),
                text="",
            )
        async with store_call("robots.set"):
            pipe = self.redis.pipeline()
            pipe.hset(cache_key, host, json.dumps(asdict(rules)))
            pipe.expire(cache_key, self.ttl_s)
            await pipe.execute()
        return rules

    async def is_allowed(self, crawl_id: str, url: str) -> bool:
        rules = await self.rules_for(crawl_id, url)
        if not rules.ok or not rules.text:
            return True
        parser_key = (crawl_id, rules.host)
        parser = self._parsers.get(parser_key)
        if parser is None:
            parser = _parser_for(rules.text)
            self._parsers[parser_key] = parser
        return parser.can_fetch(self.user_agent, url)

    async def reserve_slot(self, url: str, rules: RobotsRules) -> tuple[bool, int]:
        """Reserves the host's next fetch slot; returns (allowed, next_allowed_ts)."""
        delay_s = max(rules.crawl_delay_s, rules.request_rate_s)
        if delay_s <= 0:
            return True, 0
        host, _ = robots_url_for(url)
        return await reserve_next_allowed(self.redis, host, delay_s)

    async def purge(self, crawl_id: str) -> None:
        for parser_key in [cached for cached in self._parsers if cached[0] == crawl_id]:
            self._parsers.pop(parser_key, None)
        async with store_call("robots.purge"):
            await self.redis.delete(robots_cache_key(crawl_id))


async def reserve_next_allowed(
    redis_client: redis.Redis, host: str, delay_s: int
) -> tuple[bool, int]:
    now = int(time.time())
    script = """
    local now = tonumber(ARGV[1])
    local delay = tonumber(ARGV[2])
    local current = tonumber(redis.call("GET", KEYS[1]) or "0")
    if current <= now then
        local next_allowed = now + delay
        redis.call("SET", KEYS[1], next_allowed, "EX", delay + 60)
        return {1, next_allowed}
    end
    return {0, current}
    """
    async with store_call("robots.reserve"):
        allowed, next_allowed = await redis_client.eval(
            script, 1, robots_next_allowed_key(host), now, delay_s
        )
    return bool(int(allowed)), int(next_allowed)
