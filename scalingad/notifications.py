"""Post-commit notification outbox.

The engine publishes a :class:`StatusChangeEvent` once a transition has
been committed. Publishing only enqueues; delivery to subscribers happens
later in :meth:`NotificationOutbox.drain`, called by a background worker.
A slow or failing subscriber therefore can't block or fail a transition.

Usage:
    outbox = NotificationOutbox()
    outbox.subscribe(lambda event: print(event), StatusChangeEvent)
    ...
    outbox.drain()
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Type

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Notification:
    """Base class for outbound notifications."""

    job_id: str
    occurred_at: datetime = field(default_factory=_utc_now, kw_only=True)


@dataclass
class StatusChangeEvent(Notification):
    """A job moved from one status to another."""

    old_status: str
    new_status: str
    trigger: str


@dataclass
class PayoutEscalation(Notification):
    """Payout retries were exhausted; an operator has to step in."""

    attempts: int
    last_error: Optional[str] = None


Handler = Callable[[Notification], None]


class NotificationOutbox:
    """In-process queue between the engine and notification consumers."""

    def __init__(self, max_pending: int = 10_000):
        self._pending: Deque[Notification] = deque()
        self._handlers: Dict[Optional[Type[Notification]], List[Handler]] = {}
        self._max_pending = max_pending
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler, event_type: Optional[Type[Notification]] = None) -> None:
        """Register a handler. ``event_type=None`` receives everything."""
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, handler: Handler, event_type: Optional[Type[Notification]] = None) -> bool:
        """Remove a handler. Returns False if it was not registered."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def publish(self, event: Notification) -> None:
        """Enqueue a notification. Never raises."""
        with self._lock:
            if len(self._pending) >= self._max_pending:
                dropped = self._pending.popleft()
                logger.error(f"Outbox full; dropping oldest notification for job {dropped.job_id}")
            self._pending.append(event)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self, limit: Optional[int] = None) -> int:
        """Deliver queued notifications. Returns how many were delivered."""
        delivered = 0
        while limit is None or delivered < limit:
            with self._lock:
                if not self._pending:
                    break
                event = self._pending.popleft()
            self._dispatch(event)
            delivered += 1
        return delivered

    def _dispatch(self, event: Notification) -> None:
        handlers = self._handlers.get(type(event), []) + self._handlers.get(None, [])
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.exception(
                    f"Notification handler failed for {type(event).__name__} "
                    f"job={event.job_id}: {e}"
                )
