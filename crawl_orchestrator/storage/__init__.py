"""Storage subpackage: job records, stored pages and the raw HTML archive."""

from crawl_orchestrator.storage.jobs import JobStore, RedisJobStore
from crawl_orchestrator.storage.pages import PageStore, RedisPageStore, UpsertResult

__all__ = [
    "JobStore",
    "PageStore",
    "RedisJobStore",
    "RedisPageStore",
    "UpsertResult",
]
