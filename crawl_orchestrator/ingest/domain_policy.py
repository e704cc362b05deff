from urllib.parse import urlsplit

from crawl_orchestrator.config import Settings
from crawl_orchestrator.ingest.normalize import normalize_host
from crawl_orchestrator.orchestration.models import DomainPolicyConfig


def policy_for_crawl(
    start_url: str,
    allowed_domains: list[str] | None = None,
    *,
    allow_subdomains: bool = True,
    excluded_path_prefixes: list[str] | None = None,
) -> DomainPolicyConfig:
    """Builds the crawl's policy from an explicit allow-list or the start URL's host."""
    if allowed_domains:
        domains = {normalize_host(domain) for domain in allowed_domains if domain.strip()}
    else:
        domains = {normalize_host(urlsplit(start_url).hostname or "")}
    domains.discard("")
    prefixes = (
        excluded_path_prefixes
        if excluded_path_prefixes is not None
        else Settings.excluded_path_prefixes
    )
    return DomainPolicyConfig(
        allowed_domains=frozenset(domains),
        allow_subdomains=allow_subdomains,
        excluded_path_prefixes=tuple(prefixes),
    )


def host_allowed(host: str, config: DomainPolicyConfig) -> bool:
    for allowed in config.allowed_domains:
        if host == allowed:
            return True
        if config.allow_subdomains and host.endswith(f".{allowed}"):
            return True
    return False


def is_allowed(url: str, config: DomainPolicyConfig) -> bool:
    try:
        parts = urlsplit(url)
        host = normalize_host(parts.hostname or "")
    except ValueError:
        return False
    if not host or not host_allowed(host, config):
        return False
    path = (parts.path or "/").lower()
    return not any(
        path.startswith(prefix.lower()) for prefix in config.excluded_path_prefixes
    )
