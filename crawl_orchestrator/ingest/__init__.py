"""Ingest subpackage: URL admission, queueing, fetching and the worker pool."""

from crawl_orchestrator.ingest.domain_policy import is_allowed, policy_for_crawl
from crawl_orchestrator.ingest.etl import ExtractedContent, extract
from crawl_orchestrator.ingest.fetch import FetchResult, PageFetcher, create_session
from crawl_orchestrator.ingest.frontier import ActiveTaskSet, Frontier
from crawl_orchestrator.ingest.normalize import (
    is_crawlable_url,
    normalize_url,
    try_normalize_url,
)
from crawl_orchestrator.ingest.queue import WorkQueue
from crawl_orchestrator.ingest.robots import RobotsGate, RobotsRules, fetch_robots_txt
from crawl_orchestrator.ingest.pipeline import FetchPipeline, PipelineResult, TaskOutcome

__all__ = [
    # domain_policy
    "is_allowed",
    "policy_for_crawl",
    # etl
    "ExtractedContent",
    "extract",
    # fetch
    "FetchResult",
    "PageFetcher",
    "create_session",
    # frontier
    "ActiveTaskSet",
    "Frontier",
    # normalize
    "is_crawlable_url",
    "normalize_url",
    "try_normalize_url",
    # queue
    "WorkQueue",
    # robots
    "RobotsGate",
    "RobotsRules",
    "fetch_robots_txt",
    # pipeline
    "FetchPipeline",
    "PipelineResult",
    "TaskOutcome",
]
