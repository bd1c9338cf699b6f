"""Exception types and the error-kind taxonomy."""

from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    """Failure kinds used for retry and backoff decisions."""

    TIMEOUT = "timeout"
    NETWORK_FAILURE = "network_failure"
    BLOCKED_OR_BANNED = "blocked_or_banned"
    CHALLENGE_PRESENTED = "challenge_presented"
    RATE_LIMITED = "rate_limited"
    CONTENT_SELECTOR_MISSING = "content_selector_missing"
    UNKNOWN = "unknown"


class ScrapeEngineError(Exception):
    """Base class for engine errors."""


class InvalidJobSpec(ScrapeEngineError):
    """Job spec has neither a keyword nor a URL, or carries invalid options."""


class PoolClosedError(ScrapeEngineError):
    """The session pool is not accepting work."""


class PoolCloseError(ScrapeEngineError):
    """Graceful pool shutdown did not complete."""


class LeaseLostError(ScrapeEngineError):
    """The worker no longer owns the job (lease expired or token mismatch)."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Lease lost for job {job_id}")


class ScrapeError(ScrapeEngineError):
    """Scrape failure with a known error kind."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class PageLoadError(ScrapeError):
    """Page failed to load properly."""

    kind = ErrorKind.NETWORK_FAILURE

    def __init__(self, url: str, reason: str):
        self.reason = reason
        super().__init__(f"Failed to load {url}: {reason}", url)


class NavigationTimeoutError(ScrapeError):
    """Navigation did not finish within the configured timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, url: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Navigation timeout after {timeout_ms}ms: {url}", url)


class BlockedError(ScrapeError):
    """Target site refused the client (403, ban page)."""

    kind = ErrorKind.BLOCKED_OR_BANNED


class ChallengeError(ScrapeError):
    """Target site served an interactive verification page."""

    kind = ErrorKind.CHALLENGE_PRESENTED


class RateLimitedError(ScrapeError):
    """Target site answered with a rate-limit response."""

    kind = ErrorKind.RATE_LIMITED


class ContentSelectorMissingError(ScrapeError):
    """None of the item selectors matched on the page."""

    kind = ErrorKind.CONTENT_SELECTOR_MISSING

    def __init__(self, selectors: List[str], url: str, page_title: str = None):
        self.selectors = selectors
        self.page_title = page_title
        super().__init__(
            f"None of {len(selectors)} selectors found on {url}"
            f"{f' (page: {page_title})' if page_title else ''}",
            url,
        )
