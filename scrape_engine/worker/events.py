"""Typed worker lifecycle events and a small in-process bus."""

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

from scrape_engine.queue.models import LastError, utc_now

logger = logging.getLogger(__name__)


@dataclass
class WorkerEvent:
    job_id: Optional[str]
    timestamp: datetime = field(default_factory=utc_now, kw_only=True)


@dataclass
class JobStarted(WorkerEvent):
    attempt: int
    label: str


@dataclass
class JobCompleted(WorkerEvent):
    total_products: int
    duration_ms: int


@dataclass
class JobRetrying(WorkerEvent):
    error: LastError
    delay_ms: int


@dataclass
class JobFailed(WorkerEvent):
    error: LastError
    reason: str


@dataclass
class JobStalled(WorkerEvent):
    pass


@dataclass
class WorkerError(WorkerEvent):
    message: str


Handler = Callable[[WorkerEvent], Union[None, Awaitable[None]]]


class EventBus:
    """
    Publish/subscribe for worker events.

    Handlers may be sync or async. A failing handler is logged and never
    affects the worker or other handlers. Every published event is also
    kept in a buffer that ``drain`` empties.
    """

    def __init__(self, keep_history: bool = True):
        self._handlers: Dict[Type[WorkerEvent], List[Handler]] = defaultdict(list)
        self._history: List[WorkerEvent] = []
        self._keep_history = keep_history

    def subscribe(self, event_type: Type[WorkerEvent], handler: Handler) -> None:
        """Register ``handler`` for ``event_type`` (and its subclasses)."""
        self._handlers[event_type].append(handler)

    async def publish(self, event: WorkerEvent) -> None:
        if self._keep_history:
            self._history.append(event)

        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    outcome: Any = handler(event)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    logger.error(f"Event handler {handler!r} failed for {type(event).__name__}: {e}")

    def drain(self) -> List[WorkerEvent]:
        """Return and clear all events published since the last drain."""
        events, self._history = self._history, []
        return events
