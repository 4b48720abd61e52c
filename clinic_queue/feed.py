from __future__ import annotations

# Event feed.
#
# Append-only, bounded log of committed ticket transitions. Display and
# analytics consumers either pull (`since`, `wait`) or get pushed to
# (`subscribe`). The store appends under its commit lock, so events are in
# strictly increasing revision order.
#
# The buffer is a ring: once `capacity` is reached the oldest events are
# dropped. A reader that asks for a revision older than what is retained gets
# everything that is left plus `truncated=True` and should resync from a full
# snapshot.

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CREATED = "CREATED"
    CALLED = "CALLED"
    RECALLED = "RECALLED"
    STARTED = "STARTED"
    FINISHED = "FINISHED"
    NOSHOW = "NOSHOW"
    TRANSFERRED = "TRANSFERRED"
    UPDATED = "UPDATED"


@dataclass(frozen=True)
class Event:
    revision: int
    ts: datetime
    type: EventType
    ticket_id: str
    ticket_code: str
    service_id: str
    counter_id: str | None
    actor: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "ts": self.ts.isoformat(),
            "type": self.type.value,
            "ticket_id": self.ticket_id,
            "ticket_code": self.ticket_code,
            "service_id": self.service_id,
            "counter_id": self.counter_id,
            "actor": self.actor,
        }


@dataclass(frozen=True)
class FeedPage:
    events: list[Event]
    revision: int
    truncated: bool = False


Subscriber = Callable[[Event], None]


class EventFeed:
    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self._events: deque[Event] = deque(maxlen=capacity)
        self._cond = threading.Condition()
        self._subscribers: list[Subscriber] = []
        self._last_revision = 0
        # Push side. Reentrant so a subscriber that writes back does not deadlock.
        self._publish_lock = threading.RLock()
        self._published = 0

    # -------------------- writer side --------------------

    def append(self, event: Event) -> None:
        with self._cond:
            if event.revision <= self._last_revision:
                raise ValueError(
                    f"event revision {event.revision} not after {self._last_revision}"
                )
            self._events.append(event)
            self._last_revision = event.revision
            self._cond.notify_all()

    def publish(self, event: Event) -> None:
        """Push `event` to subscribers, in revision order. Called outside store locks.

        Writers publish after releasing their locks, so a later revision can
        arrive here first. Whoever gets the publish lock first also pushes any
        retained events between the last pushed revision and its own; a
        revision that was already pushed is skipped.
        """
        with self._publish_lock:
            if event.revision <= self._published:
                return
            with self._cond:
                batch = [e for e in self._events if self._published < e.revision < event.revision]
            batch.append(event)
            self._published = event.revision
            for e in batch:
                self._deliver(e)

    def _deliver(self, event: Event) -> None:
        with self._cond:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            try:
                sub(event)
            except Exception:
                # A broken consumer must not fail the write that produced the event.
                logger.exception("feed subscriber %r failed on revision %d", sub, event.revision)

    # -------------------- reader side --------------------

    @property
    def last_revision(self) -> int:
        with self._cond:
            return self._last_revision

    def tail(self, n: int = 20) -> list[Event]:
        with self._cond:
            if n <= 0:
                return []
            return list(self._events)[-n:]

    def since(self, revision: int) -> FeedPage:
        """Events with revision strictly greater than `revision`."""
        with self._cond:
            return self._page_locked(revision)

    def wait(self, revision: int, timeout: float) -> FeedPage:
        """Long-poll: block up to `timeout` seconds for events after `revision`."""
        with self._cond:
            self._cond.wait_for(lambda: self._last_revision > revision, timeout=timeout)
            return self._page_locked(revision)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._cond:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._cond:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _page_locked(self, revision: int) -> FeedPage:
        events = [e for e in self._events if e.revision > revision]
        # Revisions are contiguous, so a gap before the oldest retained event
        # means the reader missed evicted events.
        truncated = bool(self._events) and self._events[0].revision > revision + 1
        return FeedPage(events=events, revision=self._last_revision, truncated=truncated)
