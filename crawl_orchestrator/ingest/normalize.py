"""Canonical URL form used for frontier dedup.

``normalize_url`` is a pure function: equivalent spellings of one page must
produce the same string, otherwise the frontier lets duplicates through.
"""

import re
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from crawl_orchestrator.errors import InvalidUrlFormat

DEFAULT_PORTS = {"http": 80, "https": 443}
CRAWLABLE_SCHEMES = {"http", "https"}

NON_CRAWLABLE_PATH = re.compile(
    r"\.("
    r"jpg|jpeg|png|gif|ico|svg|webp|pdf|doc|docx|xls|xlsx|ppt|pptx|zip|tar|gz|rar|exe|dmg"
    r"|css|js|json|xml|txt|map"
    r"|mp3|mp4|avi|mov|wmv|wav|webm"
    r"|ttf|woff|woff2|eot"
    r")$",
    re.IGNORECASE,
)

_REPEATED_SLASHES = re.compile(r"/{2,}")


def normalize_host(host: str) -> str:
    host = host.strip().lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def normalize_url(raw: str, base: str | None = None) -> str:
    raw = (raw or "").strip()
    if not raw:
        raise InvalidUrlFormat(repr(raw))
    url = urljoin(base, raw) if base else raw
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        raise InvalidUrlFormat(url) from exc

    scheme = parts.scheme.lower()
    host = normalize_host(parts.hostname or "")
    if not scheme or not host:
        raise InvalidUrlFormat(url)

    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = _REPEATED_SLASHES.sub("/", parts.path.lower()) or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]

    query = ""
    if parts.query:
        pairs = parse_qsl(parts.query, keep_blank_values=True)
        query = urlencode(sorted(pairs))

    return urlunsplit((scheme, netloc, path, query, parts.fragment))


def try_normalize_url(raw: str, base: str | None = None) -> str | None:
    try:
        return normalize_url(raw, base)
    except InvalidUrlFormat:
        return None


def is_crawlable_url(url: str) -> bool:
    parts = urlsplit(url)
    if parts.scheme.lower() not in CRAWLABLE_SCHEMES:
        return False
    return not NON_CRAWLABLE_PATH.search(parts.path)
