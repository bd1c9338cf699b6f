"""Job records and their wire shapes."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote

from scrape_engine.config import settings
from scrape_engine.errors import ErrorKind, InvalidJobSpec


class JobState(str, Enum):
    """Job lifecycle states."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def utc_now() -> datetime:
    """Current UTC time truncated to the millisecond precision used on the wire."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def isoformat(value: datetime) -> str:
    """ISO 8601 with millisecond precision and a ``Z`` suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def build_search_url(keyword: str, page: int = 1, base_url: Optional[str] = None) -> str:
    """
    Build the search listing URL for ``keyword``.

    Page 1 carries no ``page`` parameter.
    """
    base_url = base_url or settings.search_base_url
    url = f"{base_url}?q={quote(keyword, safe='')}"
    if page > 1:
        url += f"&page={page}"
    return url


@dataclass
class LastError:
    """
    Most recent failure of a job.

    ``streak`` counts consecutive failures of the same kind, this one included.
    """
    kind: ErrorKind
    message: str
    attempt: int
    timestamp: datetime = field(default_factory=utc_now)
    streak: int = 1

    def to_wire(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind.value,
            "message": self.message,
            "attempt": self.attempt,
            "timestamp": isoformat(self.timestamp),
        }
        if self.streak > 1:
            data["streak"] = self.streak
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "LastError":
        try:
            kind = ErrorKind(data["kind"])
        except ValueError:
            kind = ErrorKind.UNKNOWN
        return cls(
            kind=kind,
            message=data.get("message", ""),
            attempt=int(data.get("attempt", 0)),
            timestamp=parse_iso(data["timestamp"]) if data.get("timestamp") else utc_now(),
            streak=int(data.get("streak", 1)),
        )


@dataclass
class JobSpec:
    """What to scrape. A URL takes precedence over a keyword."""
    keyword: Optional[str] = None
    url: Optional[str] = None
    max_pages: Optional[int] = None

    def validate(self) -> None:
        if not (self.keyword and self.keyword.strip()) and not (self.url and self.url.strip()):
            raise InvalidJobSpec("Job requires a keyword or a url")
        if self.max_pages is not None and self.max_pages < 1:
            raise InvalidJobSpec(f"max_pages must be a positive integer, got {self.max_pages}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobSpec":
        """Accept both wire (``maxPages``) and Python (``max_pages``) keys."""
        if not isinstance(data, dict):
            raise InvalidJobSpec(f"Job spec must be an object, got {type(data).__name__}")
        max_pages = data.get("maxPages", data.get("max_pages"))
        return cls(
            keyword=data.get("keyword"),
            url=data.get("url"),
            max_pages=int(max_pages) if max_pages is not None else None,
        )


@dataclass
class JobOptions:
    """Scheduling options for a new job."""
    priority: int = 0
    delay_ms: int = 0
    attempts: Optional[int] = None

    def validate(self) -> None:
        if self.priority < 0:
            raise InvalidJobSpec(f"priority must be >= 0, got {self.priority}")
        if self.delay_ms < 0:
            raise InvalidJobSpec(f"delay_ms must be >= 0, got {self.delay_ms}")
        if self.attempts is not None and self.attempts < 1:
            raise InvalidJobSpec(f"attempts must be >= 1, got {self.attempts}")


@dataclass
class Job:
    """
    A unit of scrape work as persisted in the queue.

    ``priority`` and ``delay_ms`` are None when not given so the wire shape
    can omit them; ``attempts_made`` and ``state`` are queue bookkeeping and
    are stored next to the payload rather than inside it.
    """
    id: Optional[str] = None
    keyword: Optional[str] = None
    url: Optional[str] = None
    max_pages: int = 1
    created_at: datetime = field(default_factory=utc_now)
    priority: Optional[int] = None
    delay_ms: Optional[int] = None
    max_attempts: Optional[int] = None
    attempts_made: int = 0
    last_error: Optional[LastError] = None
    state: JobState = JobState.WAITING
    result: Optional[Dict[str, Any]] = None
    lock_token: Optional[str] = None
    stalled_count: int = 0

    @classmethod
    def create(cls, spec: JobSpec, options: Optional[JobOptions] = None, default_max_pages: int = 1) -> "Job":
        spec.validate()
        options = options or JobOptions()
        options.validate()
        return cls(
            keyword=spec.keyword,
            url=spec.url,
            max_pages=spec.max_pages or default_max_pages,
            priority=options.priority or None,
            delay_ms=options.delay_ms or None,
            max_attempts=options.attempts,
            state=JobState.DELAYED if options.delay_ms else JobState.WAITING,
        )

    @property
    def resolved_url(self) -> str:
        if self.url:
            return self.url
        return build_search_url(self.keyword)

    @property
    def effective_priority(self) -> int:
        return self.priority or 0

    @property
    def label(self) -> str:
        return self.keyword or self.url or "?"

    def to_wire(self) -> Dict[str, Any]:
        """Serialize the queued payload. Absent optional fields are omitted."""
        data: Dict[str, Any] = {}
        if self.keyword is not None:
            data["keyword"] = self.keyword
        if self.url is not None:
            data["url"] = self.url
        data["maxPages"] = self.max_pages
        data["createdAt"] = isoformat(self.created_at)
        if self.priority is not None:
            data["priority"] = self.priority
        if self.delay_ms is not None:
            data["delay_ms"] = self.delay_ms
        if self.last_error is not None:
            data["lastError"] = self.last_error.to_wire()
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any], job_id: Optional[str] = None) -> "Job":
        last_error = data.get("lastError")
        return cls(
            id=job_id,
            keyword=data.get("keyword"),
            url=data.get("url"),
            max_pages=int(data["maxPages"]),
            created_at=parse_iso(data["createdAt"]),
            priority=data.get("priority"),
            delay_ms=data.get("delay_ms"),
            last_error=LastError.from_wire(last_error) if last_error else None,
        )
