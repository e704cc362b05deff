import asyncio
from dataclasses import dataclass
import time

import aiohttp

from crawl_orchestrator.config import Settings
from crawl_orchestrator.errors import FetchError
from crawl_orchestrator.monitoring.metrics import FETCH_LATENCY_MS

REQUEST_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


@dataclass
class FetchResult:
    url: str
    status: int
    html: str


def create_session() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(
        headers={"User-Agent": Settings.user_agent, **REQUEST_HEADERS}
    )


class PageFetcher:
    """GETs a page with a bounded timeout and response size.

    Timeouts, connection errors and non-2xx responses raise a retryable
    ``FetchError``; an oversized body raises a non-retryable one.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        timeout_s: int | None = None,
        max_bytes: int | None = None,
    ) -> None:
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout_s or Settings.request_timeout_s)
        self.max_bytes = max_bytes or Settings.max_content_bytes

    async def __call__(self, url: str) -> FetchResult:
        started = time.monotonic()
        try:
            async with self.session.get(url, timeout=self.timeout) as response:
                if not 200 <= response.status < 300:
                    raise FetchError(f"{url} HTTP {response.status}", status=response.status)
                body = bytearray()
                async for chunk in response.content.iter_chunked(64 * 1024):
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        raise FetchError(
                            f"{url} exceeds {self.max_bytes} bytes",
                            status=response.status,
                            retryable=False,
                        )
                try:
                    html = bytes(body).decode(response.charset or "utf-8", errors="replace")
                except LookupError:
                    html = bytes(body).decode("utf-8", errors="replace")
                return FetchResult(url=str(response.url), status=response.status, html=html)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchError(f"{url} {type(exc).__name__}: {exc}") from exc
        finally:
            FETCH_LATENCY_MS.observe((time.monotonic() - started) * 1000)
