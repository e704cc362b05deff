from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
import json
import time
import uuid


class CrawlStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    CRAWLED = "crawled"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {CrawlStatus.CRAWLED, CrawlStatus.FAILED, CrawlStatus.CANCELED}
)


class StopReason(str, Enum):
    REQUESTED = "requested"
    QUOTA = "quota"


class TaskState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DomainPolicyConfig:
    allowed_domains: frozenset[str]
    allow_subdomains: bool = True
    excluded_path_prefixes: tuple[str, ...] = ()

    def to_json(self) -> str:
        return json.dumps(
            {
                "allowed_domains": sorted(self.allowed_domains),
                "allow_subdomains": self.allow_subdomains,
                "excluded_path_prefixes": list(self.excluded_path_prefixes),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> DomainPolicyConfig:
        data = json.loads(raw)
        return cls(
            allowed_domains=frozenset(data.get("allowed_domains", [])),
            allow_subdomains=bool(data.get("allow_subdomains", True)),
            excluded_path_prefixes=tuple(data.get("excluded_path_prefixes", [])),
        )


@dataclass
class CrawlJob:
    id: str
    start_url: str
    max_depth: int
    domain_policy: DomainPolicyConfig
    owner_id: str = ""
    priority: int = 0
    status: CrawlStatus = CrawlStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    stop_requested_at: float | None = None
    stop_reason: StopReason | None = None
    completed_at: float | None = None
    pages_crawled: int = 0
    error_count: int = 0
    last_error: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start_url": self.start_url,
            "max_depth": self.max_depth,
            "owner_id": self.owner_id,
            "priority": self.priority,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "stop_requested_at": self.stop_requested_at,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "completed_at": self.completed_at,
            "pages_crawled": self.pages_crawled,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "allowed_domains": sorted(self.domain_policy.allowed_domains),
        }


def new_task_id() -> str:
    return uuid.uuid4().hex


@dataclass
class FetchTask:
    crawl_id: str
    url: str
    current_depth: int
    max_depth: int
    priority: int = 0
    parent_url: str | None = None
    task_id: str = field(default_factory=new_task_id)

    def to_payload(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_payload(cls, raw: str) -> FetchTask:
        data = json.loads(raw)
        return cls(
            crawl_id=data["crawl_id"],
            url=data["url"],
            current_depth=int(data["current_depth"]),
            max_depth=int(data["max_depth"]),
            priority=int(data.get("priority", 0)),
            parent_url=data.get("parent_url"),
            task_id=data["task_id"],
        )


@dataclass
class ClaimedTask:
    """A task pulled from the queue together with its delivery bookkeeping."""

    task: FetchTask
    attempts: int
    state: TaskState = TaskState.ACTIVE
