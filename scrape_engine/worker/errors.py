"""Failure classification and per-kind retry policy for jobs."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import ErrorKind, ScrapeError
from scrape_engine.utils.retry import apply_jitter, compute_backoff

logger = logging.getLogger(__name__)

NETWORK_PATTERNS = [
    "net::err_",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket hang up",
    "connection reset",
    "connection refused",
    "target closed",
    "protocol error",
]
RATE_LIMIT_PATTERNS = ["429", "too many requests", "rate limit"]
BLOCKED_PATTERNS = ["403", "forbidden", "access denied", "blocked", "banned"]
CHALLENGE_PATTERNS = ["captcha", "verify you are a human", "verify you are human", "robot check"]
TIMEOUT_PATTERNS = ["timeout", "timed out"]

SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"

TERMINAL_ATTEMPTS_EXHAUSTED = "attempts_exhausted"
TERMINAL_KIND_LIMIT = "kind_attempt_limit"


def classify_error(error: BaseException) -> ErrorKind:
    """
    Map an exception to an ErrorKind.

    Typed scrape errors carry their kind; everything else is classified by
    type (timeouts) and then by message.
    """
    if isinstance(error, ScrapeError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, PlaywrightTimeoutError)):
        return ErrorKind.TIMEOUT

    message = str(error).lower()
    if any(p in message for p in CHALLENGE_PATTERNS):
        return ErrorKind.CHALLENGE_PRESENTED
    if any(p in message for p in RATE_LIMIT_PATTERNS):
        return ErrorKind.RATE_LIMITED
    if any(p in message for p in BLOCKED_PATTERNS):
        return ErrorKind.BLOCKED_OR_BANNED
    if any(p in message for p in NETWORK_PATTERNS):
        return ErrorKind.NETWORK_FAILURE
    if any(p in message for p in TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorKind.NETWORK_FAILURE
    return ErrorKind.UNKNOWN


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff parameters for one error kind."""
    initial_ms: int
    factor: float
    max_ms: int
    max_attempts: int = 0  # 0 = use the global ceiling
    severity: str = SEVERITY_WARNING


@dataclass
class RetryDecision:
    """What to do with a job after a failed attempt."""
    retry: bool
    delay_ms: int = 0
    terminal_reason: Optional[str] = None
    severity: str = SEVERITY_WARNING


def policy_for(kind: ErrorKind, settings: Optional[Settings] = None) -> BackoffPolicy:
    """Build the backoff policy for ``kind`` from settings."""
    settings = settings or default_settings
    raw = settings.error_backoff.get(kind.value) or settings.error_backoff.get(ErrorKind.UNKNOWN.value) or {}
    severity = SEVERITY_ERROR if kind == ErrorKind.CONTENT_SELECTOR_MISSING else SEVERITY_WARNING
    return BackoffPolicy(
        initial_ms=int(raw.get("initial_ms", settings.retry_backoff_ms)),
        factor=float(raw.get("factor", 2.0)),
        max_ms=int(raw.get("max_ms", settings.retry_max_backoff_ms)),
        max_attempts=int(raw.get("max_attempts", 0)),
        severity=severity,
    )


def decide_retry(
    kind: ErrorKind,
    attempt: int,
    max_attempts: int,
    previous: Optional[ErrorKind] = None,
    settings: Optional[Settings] = None,
    rng: Optional[random.Random] = None,
    streak: int = 1,
) -> RetryDecision:
    """
    Decide whether a failed attempt is retried and after how long.

    A kind's own attempt limit applies to consecutive failures of that
    kind, so a block after two timeouts still gets its retry.

    Args:
        kind: Kind of the failure that just happened
        attempt: Attempt number that just failed (1-based)
        max_attempts: Global attempt ceiling for the job
        previous: Kind of the job's previous failure, if any
        settings: Settings instance (defaults to module settings)
        rng: Random source for jitter
        streak: Consecutive failures of ``kind``, this one included

    Returns:
        RetryDecision; ``delay_ms`` is never below the policy's base delay
    """
    policy = policy_for(kind, settings)

    severity = policy.severity
    if kind == ErrorKind.UNKNOWN and previous == ErrorKind.UNKNOWN:
        severity = SEVERITY_ERROR

    if policy.max_attempts and streak >= policy.max_attempts and policy.max_attempts < max_attempts:
        return RetryDecision(
            retry=False,
            terminal_reason=TERMINAL_KIND_LIMIT,
            severity=SEVERITY_ERROR,
        )

    if attempt >= max_attempts:
        return RetryDecision(
            retry=False,
            terminal_reason=TERMINAL_ATTEMPTS_EXHAUSTED,
            severity=severity,
        )

    base = compute_backoff(attempt, policy.initial_ms, policy.factor, policy.max_ms)
    return RetryDecision(retry=True, delay_ms=apply_jitter(base, rng=rng), severity=severity)
