from __future__ import annotations

# Ticket store: the only owner of Ticket records.
#
# Locking layout:
# - `_index_lock` guards the dictionaries. It is held for dict reads and
#   writes only, never while waiting on another lock.
# - one lock per ticket serializes writes to that ticket (`mutate`).
# - one lock per service serializes `call_next` for that service (taken by
#   the dispatch engine). Order is always service lock -> ticket lock.
# - `_commit_lock` makes "bump revision, store record, append event" one
#   step so the feed stays in revision order. Nothing blocks while holding it.
#
# Every wait on a ticket or service lock is bounded by `lock_timeout` and
# ends in DispatchTimeout instead of hanging.

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime
from typing import Callable, Iterable, Iterator

from .codes import MAX_SEQUENCE, format_code, normalize_code
from .errors import Conflict, DispatchTimeout, NotFound, SequenceExhausted
from .feed import Event, EventFeed, EventType
from .models import ACTIVE_STATUSES, Ticket, TicketStatus, Triage, clip_note
from .registry import ServiceRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


class TicketStore:
    def __init__(
        self,
        services: ServiceRegistry,
        *,
        feed: EventFeed | None = None,
        clock: Clock | None = None,
        lock_timeout: float = 2.0,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.services = services
        self.feed = feed if feed is not None else EventFeed()
        self.lock_timeout = lock_timeout
        self._clock = clock or local_now
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)

        self._index_lock = threading.Lock()
        self._tickets: dict[str, Ticket] = {}  # insertion order == creation order
        self._by_code: dict[str, str] = {}
        self._ticket_locks: dict[str, threading.Lock] = {}
        self._service_locks: dict[str, threading.Lock] = {}
        self._sequences: dict[tuple[str, date], int] = {}

        self._commit_lock = threading.Lock()
        self._revision = 0

    # -------------------- clock & locks --------------------

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _acquire(self, lock: threading.Lock, what: str) -> Iterator[None]:
        if not lock.acquire(timeout=self.lock_timeout):
            logger.warning("lock timeout on %s after %.1fs", what, self.lock_timeout)
            raise DispatchTimeout(f"timed out waiting for {what}")
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def service_lock(self, service_id: str) -> Iterator[None]:
        with self._index_lock:
            lock = self._service_locks.setdefault(service_id, threading.Lock())
        with self._acquire(lock, f"service {service_id}"):
            yield

    # -------------------- writes --------------------

    def create_ticket(
        self,
        service_id: str,
        *,
        triage: Triage | None = None,
        preferente: bool = False,
        note: str | None = None,
        doc_value: str | None = None,
        appointment_id: str | None = None,
        source: str = "kiosk",
        actor: str = "kiosk",
    ) -> Ticket:
        """Issue a new Waiting ticket with the next code of the day."""
        service = self.services.require_active(service_id)

        # Clock read and sequence reservation are one step, so a higher code
        # never gets an earlier enqueue time.
        with self._index_lock:
            now = self.now()
            key = (service.id, now.date())
            seq = self._sequences.get(key, 0) + 1
            if seq > MAX_SEQUENCE:
                raise SequenceExhausted(
                    f"service {service.id!r} issued {MAX_SEQUENCE} tickets on {key[1].isoformat()}"
                )
            self._sequences[key] = seq

        ticket = Ticket(
            id=self._new_id(),
            code=format_code(service.prefix, seq),
            service_id=service.id,
            enqueued_at=now,
            triage=triage,
            preferente=bool(preferente),
            note=clip_note(note),
            doc_value=doc_value.strip().upper() if doc_value else None,
            appointment_id=appointment_id,
            source=source,
        )
        ticket, event = self._commit(ticket, EventType.CREATED, actor, now, created=True)
        self.feed.publish(event)
        logger.info("ticket created code=%s service=%s id=%s", ticket.code, ticket.service_id, ticket.id)
        return ticket

    def mutate(
        self,
        ticket_id: str,
        change: Callable[[Ticket, datetime], Ticket],
        *,
        event_type: EventType,
        actor: str,
        expected_revision: int | None = None,
    ) -> Ticket:
        """Apply `change` to one ticket under its lock and commit the result.

        `change` receives the current record and a timestamp that is never
        earlier than any timestamp already on the record. It returns the new
        record or raises (InvalidState, Conflict, ...) to abort.
        """
        ticket, event = self.apply(
            ticket_id, change, event_type=event_type, actor=actor, expected_revision=expected_revision
        )
        self.feed.publish(event)
        return ticket

    def apply(
        self,
        ticket_id: str,
        change: Callable[[Ticket, datetime], Ticket],
        *,
        event_type: EventType,
        actor: str,
        expected_revision: int | None = None,
    ) -> tuple[Ticket, Event]:
        """Like `mutate`, but leaves pushing the event to the caller.

        Used when the caller still holds a lock (e.g. a service dispatch lock)
        and must not run subscriber callbacks under it.
        """
        with self._index_lock:
            lock = self._ticket_locks.get(ticket_id)
        if lock is None:
            raise NotFound(f"ticket {ticket_id!r} not found")

        with self._acquire(lock, f"ticket {ticket_id}"):
            with self._index_lock:
                current = self._tickets[ticket_id]
            if expected_revision is not None and current.revision != expected_revision:
                raise Conflict(
                    f"ticket {current.code} is at revision {current.revision}, expected {expected_revision}"
                )
            now = self._monotonic_now(current)
            updated = change(current, now)
            # Finishing clears the counter; the event still records who served it.
            counter_id = updated.counter_id or current.counter_id
            return self._commit(updated, event_type, actor, now, counter_id=counter_id)

    def _monotonic_now(self, ticket: Ticket) -> datetime:
        now = self.now()
        stamps = [
            s for s in (ticket.enqueued_at, ticket.called_at, ticket.started_at, ticket.finished_at) if s
        ]
        latest = max(stamps)
        return now if now >= latest else latest

    def _commit(
        self,
        ticket: Ticket,
        event_type: EventType,
        actor: str,
        ts: datetime,
        *,
        created: bool = False,
        counter_id: str | None = None,
    ) -> tuple[Ticket, Event]:
        with self._commit_lock:
            self._revision += 1
            ticket = replace(ticket, revision=self._revision)
            with self._index_lock:
                if created:
                    self._ticket_locks[ticket.id] = threading.Lock()
                    self._by_code[ticket.code] = ticket.id
                self._tickets[ticket.id] = ticket
            event = Event(
                revision=ticket.revision,
                ts=ts,
                type=event_type,
                ticket_id=ticket.id,
                ticket_code=ticket.code,
                service_id=ticket.service_id,
                counter_id=counter_id if counter_id is not None else ticket.counter_id,
                actor=actor,
            )
            self.feed.append(event)
        return ticket, event

    # -------------------- reads --------------------

    @property
    def revision(self) -> int:
        with self._commit_lock:
            return self._revision

    def get_by_id(self, ticket_id: str) -> Ticket:
        with self._index_lock:
            t = self._tickets.get(ticket_id)
        if t is None:
            raise NotFound(f"ticket {ticket_id!r} not found")
        return t

    def get_by_code(self, code: str) -> Ticket:
        """Case and whitespace insensitive lookup; newest ticket wins."""
        normalized = normalize_code(code)
        with self._index_lock:
            ticket_id = self._by_code.get(normalized)
            t = self._tickets.get(ticket_id) if ticket_id else None
        if t is None:
            raise NotFound(f"ticket code {normalized!r} not found")
        return t

    def snapshot(self) -> list[Ticket]:
        with self._index_lock:
            return list(self._tickets.values())

    def list_by_status(
        self,
        service_id: str | None = None,
        statuses: Iterable[TicketStatus] | None = None,
    ) -> list[Ticket]:
        wanted = frozenset(statuses) if statuses is not None else None
        return [
            t
            for t in self.snapshot()
            if (service_id is None or t.service_id == service_id)
            and (wanted is None or t.status in wanted)
        ]

    def find_active_by_doc(self, doc_value: str) -> Ticket:
        """Most recently enqueued active ticket for a patient document."""
        doc = doc_value.strip().upper()
        matches = [t for t in self.list_by_status(statuses=ACTIVE_STATUSES) if t.doc_value == doc]
        if not matches:
            raise NotFound(f"no active ticket for document {doc!r}")
        return max(matches, key=lambda t: t.enqueued_at)
