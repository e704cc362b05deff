from prometheus_client import Counter, Gauge, Histogram


PAGES_STORED = Counter(
    "crawler_pages_stored_total", "Pages newly stored by the crawler", ["domain"]
)
TASK_OUTCOMES = Counter(
    "crawler_task_outcomes_total", "Fetch task outcomes", ["outcome"]
)
PREEMPTIONS = Counter(
    "crawler_preemptions_total", "Times the worker pool switched favored crawl"
)
INFLIGHT_FETCHES = Gauge("crawler_inflight_fetches", "Fetches currently in flight")
FETCH_LATENCY_MS = Histogram(
    "crawler_fetch_latency_ms",
    "Page fetch latency in milliseconds",
    buckets=(50, 100, 250, 500, 1000, 2000, 5000, 10000, 30000),
)


def record_page(domain: str) -> None:
    PAGES_STORED.labels(domain=domain).inc()


def record_outcome(outcome: str) -> None:
    TASK_OUTCOMES.labels(outcome=outcome).inc()


def record_preemption() -> None:
    PREEMPTIONS.inc()
