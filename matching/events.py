import logging
import threading
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from models import utcnow

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    DONATION_REGISTERED = "donation.registered"
    REQUEST_REGISTERED = "request.registered"
    DONATION_CLAIMED = "donation.claimed"
    MATCH_COMPLETED = "match.completed"
    MATCH_RELEASED = "match.released"
    DONATION_WITHDRAWN = "donation.withdrawn"
    REQUEST_FULFILLED = "request.fulfilled"


class LifecycleEvent(BaseModel):
    kind: EventKind
    donation_id: Optional[str] = None
    request_id: Optional[str] = None
    match_id: Optional[str] = None
    org_id: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


Listener = Callable[[LifecycleEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def emit(self, event: LifecycleEvent) -> None:
        logger.info(
            "%s donation=%s request=%s match=%s",
            event.kind.value,
            event.donation_id,
            event.request_id,
            event.match_id,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # The state change already committed; a broken listener must not undo it.
                logger.exception("Lifecycle listener %r failed", listener)


class RecentEvents:
    """Bounded in-memory feed of the latest events for the presentation layer."""

    def __init__(self, maxlen: int = 500):
        self._events = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __call__(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._events.append(event)

    def latest(self, limit: int = 50) -> List[LifecycleEvent]:
        with self._lock:
            events = list(self._events)
        return list(reversed(events[-limit:])) if limit > 0 else []
