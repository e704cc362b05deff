"""Monitoring subpackage: observability components."""

from crawl_orchestrator.monitoring.logging_utils import (
    get_event_logger,
    get_logger,
    log_event,
)
from crawl_orchestrator.monitoring.metrics import (
    FETCH_LATENCY_MS,
    INFLIGHT_FETCHES,
    PAGES_STORED,
    PREEMPTIONS,
    TASK_OUTCOMES,
    record_outcome,
    record_page,
    record_preemption,
)
from crawl_orchestrator.monitoring.metrics_server import (
    run_metrics_server,
    start_metrics_exporter,
)

__all__ = [
    # logging
    "get_event_logger",
    "get_logger",
    "log_event",
    # metrics
    "FETCH_LATENCY_MS",
    "INFLIGHT_FETCHES",
    "PAGES_STORED",
    "PREEMPTIONS",
    "TASK_OUTCOMES",
    "record_outcome",
    "record_page",
    "record_preemption",
    # metrics_server
    "run_metrics_server",
    "start_metrics_exporter",
]
