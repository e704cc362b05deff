import time

from prometheus_client import start_http_server

from crawl_orchestrator.config import Settings
from crawl_orchestrator.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("metrics")


def start_metrics_exporter(port: int | None = None) -> int:
    """Serves /metrics from a daemon thread of the calling process."""
    port = port or Settings.metrics_port
    start_http_server(port)
    log_event("metrics_start", port=port)
    return port


def run_metrics_server(port: int | None = None) -> None:
    start_metrics_exporter(port)
    while True:
        time.sleep(1)
