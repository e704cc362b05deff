import os

from dotenv import load_dotenv


load_dotenv("secrets.env", override=False)


def env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None:
        raise RuntimeError(f"Missing required env var: {name}")
    return value


def env_bool(name: str, default: str = "false") -> bool:
    value = os.getenv(name, default).strip().lower()
    return value in {"1", "true", "yes", "y", "on"}


def env_list(name: str, default: str = "") -> list[str]:
    return [part.strip() for part in os.getenv(name, default).split(",") if part.strip()]


class Settings:
    user_agent = os.getenv("CRAWLER_USER_AGENT", "CrawlOrchestratorBot/0.1")
    redis_url = env("REDIS_URL", "redis://localhost:6379/0")
    key_prefix = os.getenv("CRAWL_KEY_PREFIX", "crawl")

    # Worker pool
    max_concurrent_urls = int(os.getenv("MAX_CONCURRENT_URLS", 10))
    max_inflight_fetches = int(
        os.getenv("MAX_INFLIGHT_FETCHES", os.getenv("MAX_CONCURRENT_URLS", 10))
    )
    poll_interval_s = float(os.getenv("WORKER_POLL_INTERVAL_S", "0.2"))
    preempt_delay_ms = int(os.getenv("PREEMPT_DELAY_MS", 5000))
    capacity_delay_ms = int(os.getenv("CAPACITY_DELAY_MS", 1000))
    store_backoff_base_s = float(os.getenv("STORE_BACKOFF_BASE_S", "1"))
    store_backoff_cap_s = float(os.getenv("STORE_BACKOFF_CAP_S", "30"))

    # Fetching
    request_timeout_s = int(os.getenv("REQUEST_TIMEOUT_S", 30))
    max_content_bytes = int(os.getenv("MAX_CONTENT_BYTES", 10 * 1024 * 1024))
    respect_crawl_delay = env_bool("RESPECT_CRAWL_DELAY", "true")
    crawl_delay_default_s = int(os.getenv("CRAWL_DELAY_DEFAULT_S", 0))
    robots_parser_cache_size = int(os.getenv("ROBOTS_PARSER_CACHE_SIZE", 1000))
    robots_parser_cache_ttl_s = int(os.getenv("ROBOTS_PARSER_CACHE_TTL_S", 3600))

    # Work queue
    task_max_attempts = int(os.getenv("TASK_MAX_ATTEMPTS", 3))
    retry_base_ms = int(os.getenv("RETRY_BASE_MS", 1000))
    retry_cap_ms = int(os.getenv("RETRY_CAP_MS", 30000))
    stalled_timeout_s = int(os.getenv("STALLED_TIMEOUT_S", 120))
    max_stalled_count = int(os.getenv("MAX_STALLED_COUNT", 1))
    completed_keep_count = int(os.getenv("COMPLETED_KEEP_COUNT", 1000))
    completed_keep_age_s = int(os.getenv("COMPLETED_KEEP_AGE_S", 24 * 3600))

    # Crawl lifecycle
    scheduler_interval_s = float(os.getenv("SCHEDULER_INTERVAL_S", "5"))
    max_running_crawls = int(os.getenv("MAX_RUNNING_CRAWLS", 1))
    crawl_depth_default = int(os.getenv("CRAWL_DEPTH_DEFAULT", 3))
    page_quota = int(os.getenv("CRAWL_PAGE_QUOTA", 0))
    frontier_ttl_s = int(os.getenv("FRONTIER_TTL_S", 7 * 24 * 3600))
    frontier_degraded_skip = env_bool("FRONTIER_DEGRADED_SKIP", "false")
    excluded_path_prefixes = env_list(
        "EXCLUDED_PATH_PREFIXES", "/admin,/private,/login,/logout"
    )
    job_log_max_entries = int(os.getenv("JOB_LOG_MAX_ENTRIES", 1000))

    # Surfaces
    crawl_log = env_bool("CRAWL_LOG", "true")
    metrics_port = int(os.getenv("METRICS_PORT", 9100))
    api_port = int(os.getenv("API_PORT", 8080))
    snapshot_recent_jobs = int(os.getenv("SNAPSHOT_RECENT_JOBS", 10))

    # Raw HTML archive
    r2_upload = env_bool("R2_UPLOAD", "false")
    r2_account_id = os.getenv("R2_ACCOUNT_ID", "")
    r2_access_key_id = os.getenv("R2_ACCESS_KEY_ID", "")
    r2_secret_access_key = os.getenv("R2_SECRET_ACCESS_KEY", "")
    r2_bucket_name = os.getenv("R2_BUCKET_NAME", "")
    r2_region = os.getenv("R2_REGION", "auto")
    r2_endpoint_url = os.getenv("R2_ENDPOINT_URL", "")
