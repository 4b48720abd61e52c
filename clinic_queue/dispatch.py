from __future__ import annotations

# Dispatch engine: the ticket state machine.
#
#   Waiting -> Called -> Serving -> Finished
#              Called -> NoShow
#              Called -> Finished        (served without a separate start)
#   any non-terminal  -> Waiting         (transfer to another service)
#
# Finished and NoShow are terminal; nothing below writes to a terminal ticket.
#
# The engine holds no ticket state of its own. It validates input against the
# registries, then hands a pure transition function to the store, which runs
# it under the ticket lock.

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from functools import partial
from typing import Any, Iterable

from .analytics import DEFAULT_SERVICE_SECONDS, estimate_wait_seconds, service_seconds
from .errors import Conflict, EmptyQueue, InvalidState, UnknownCounter
from .feed import EventType, FeedPage
from .models import (
    ACTIVE_STATUSES,
    Counter,
    Service,
    Ticket,
    TicketStatus,
    Triage,
    clip_note,
    parse_triage,
)
from .ordering import order_waiting, queue_position
from .registry import CounterRegistry
from .store import TicketStore

logger = logging.getLogger(__name__)


# -------------------- transitions (pure) --------------------


def _require(ticket: Ticket, allowed: Iterable[TicketStatus], op: str) -> None:
    if ticket.status not in allowed:
        raise InvalidState(f"cannot {op} ticket {ticket.code} in status {ticket.status.value}")


def _require_open(ticket: Ticket, op: str) -> None:
    if ticket.is_terminal:
        raise InvalidState(f"cannot {op} ticket {ticket.code}: already {ticket.status.value}")


def _call_from_queue(service_id: str, counter_id: str, ticket: Ticket, now: datetime) -> Ticket:
    # Re-checked under the ticket lock: someone may have called or moved it
    # since the queue was ordered.
    if ticket.status is not TicketStatus.WAITING or ticket.service_id != service_id:
        raise Conflict(f"ticket {ticket.code} was taken concurrently")
    return replace(ticket, status=TicketStatus.CALLED, counter_id=counter_id, served_by=counter_id, called_at=now)


def _call(counter_id: str, ticket: Ticket, now: datetime) -> Ticket:
    _require(ticket, (TicketStatus.WAITING, TicketStatus.CALLED), "call")
    return replace(ticket, status=TicketStatus.CALLED, counter_id=counter_id, served_by=counter_id, called_at=now)


def _start(ticket: Ticket, now: datetime) -> Ticket:
    _require(ticket, (TicketStatus.CALLED,), "start")
    return replace(ticket, status=TicketStatus.SERVING, started_at=now)


def _finish(ticket: Ticket, now: datetime) -> Ticket:
    _require(ticket, (TicketStatus.SERVING, TicketStatus.CALLED), "finish")
    return replace(ticket, status=TicketStatus.FINISHED, finished_at=now, counter_id=None)


def _no_show(ticket: Ticket, now: datetime) -> Ticket:
    _require(ticket, (TicketStatus.CALLED,), "mark no-show")
    return replace(ticket, status=TicketStatus.NO_SHOW, counter_id=None)


def _recall(ticket: Ticket, now: datetime) -> Ticket:
    _require(ticket, (TicketStatus.CALLED,), "recall")
    return replace(ticket, called_at=now)


def _transfer(service_id: str, ticket: Ticket, now: datetime) -> Ticket:
    _require_open(ticket, "transfer")
    # started_at goes too, otherwise the next call would land before it.
    return replace(
        ticket,
        service_id=service_id,
        status=TicketStatus.WAITING,
        counter_id=None,
        served_by=None,
        called_at=None,
        started_at=None,
    )


def _edit(field_name: str, value: Any, ticket: Ticket, now: datetime) -> Ticket:
    _require_open(ticket, f"edit {field_name} of")
    return replace(ticket, **{field_name: value})


# -------------------- projections --------------------


@dataclass(frozen=True)
class DisplayRow:
    code: str
    service_id: str
    service_name: str
    counter_id: str | None
    counter_name: str | None
    status: TicketStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "service_id": self.service_id,
            "service_name": self.service_name,
            "counter_id": self.counter_id,
            "counter_name": self.counter_name,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class DisplayBoard:
    now_serving: list[DisplayRow]
    next: list[DisplayRow]
    revision: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "now_serving": [r.to_dict() for r in self.now_serving],
            "next": [r.to_dict() for r in self.next],
            "revision": self.revision,
        }


@dataclass(frozen=True)
class Lookup:
    ticket: Ticket
    position: int
    # None when the service has no open counter to estimate from.
    estimated_wait_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket": self.ticket.to_dict(),
            "position": self.position,
            "estimated_wait_seconds": self.estimated_wait_seconds,
        }


# -------------------- engine --------------------


class DispatchEngine:
    """Entry point for every client operation (kiosk, operator, display, lookup)."""

    def __init__(self, store: TicketStore, counters: CounterRegistry) -> None:
        self.store = store
        self.services = store.services
        self.counters = counters
        self.feed = store.feed

    # ---- kiosk ----

    def create(
        self,
        service_id: str,
        *,
        triage: Triage | str | None = None,
        preferente: bool = False,
        note: str | None = None,
        doc_value: str | None = None,
        appointment_id: str | None = None,
        source: str = "kiosk",
        actor: str = "kiosk",
    ) -> Ticket:
        return self.store.create_ticket(
            service_id,
            triage=parse_triage(triage),
            preferente=preferente,
            note=note,
            doc_value=doc_value,
            appointment_id=appointment_id,
            source=source,
            actor=actor,
        )

    # ---- operator ----

    def call_next(self, service_id: str, counter_id: str, *, actor: str = "operator") -> Ticket:
        """Call the head of the service queue to `counter_id`.

        Serialized per service, so two consoles calling the same service never
        get the same ticket. Candidates changed by a concurrent call_specific
        or transfer are skipped; if all of them were, Conflict is raised and
        the caller may retry.
        """
        self.services.get(service_id)
        counter = self.counters.require_active(counter_id)
        if counter.service_id != service_id:
            raise UnknownCounter(f"counter {counter_id!r} does not serve {service_id!r}")

        with self.store.service_lock(service_id):
            candidates = order_waiting(
                self.store.list_by_status(service_id, (TicketStatus.WAITING,))
            )
            if not candidates:
                raise EmptyQueue(f"no waiting tickets for service {service_id!r}")

            change = partial(_call_from_queue, service_id, counter_id)
            for cand in candidates:
                try:
                    ticket, event = self.store.apply(
                        cand.id, change, event_type=EventType.CALLED, actor=actor
                    )
                except Conflict:
                    logger.debug("call_next skipped %s, changed concurrently", cand.code)
                    continue
                break
            else:
                raise Conflict(f"every waiting ticket of {service_id!r} was taken concurrently")

        self.feed.publish(event)
        logger.info("called %s to counter %s", ticket.code, counter_id)
        return ticket

    def call_specific(
        self,
        ticket_id: str,
        counter_id: str,
        *,
        actor: str = "operator",
        expected_revision: int | None = None,
    ) -> Ticket:
        """Call one ticket out of priority order (or re-call a Called one)."""
        self.counters.require_active(counter_id)
        ticket = self.store.mutate(
            ticket_id,
            partial(_call, counter_id),
            event_type=EventType.CALLED,
            actor=actor,
            expected_revision=expected_revision,
        )
        logger.info("called %s to counter %s out of order", ticket.code, counter_id)
        return ticket

    def start(self, ticket_id: str, *, actor: str = "operator", expected_revision: int | None = None) -> Ticket:
        return self.store.mutate(
            ticket_id, _start, event_type=EventType.STARTED, actor=actor, expected_revision=expected_revision
        )

    def finish(self, ticket_id: str, *, actor: str = "operator", expected_revision: int | None = None) -> Ticket:
        return self.store.mutate(
            ticket_id, _finish, event_type=EventType.FINISHED, actor=actor, expected_revision=expected_revision
        )

    def no_show(self, ticket_id: str, *, actor: str = "operator", expected_revision: int | None = None) -> Ticket:
        return self.store.mutate(
            ticket_id, _no_show, event_type=EventType.NOSHOW, actor=actor, expected_revision=expected_revision
        )

    def recall(self, ticket_id: str, *, actor: str = "operator", expected_revision: int | None = None) -> Ticket:
        """Re-announce a Called ticket. Status does not change."""
        return self.store.mutate(
            ticket_id, _recall, event_type=EventType.RECALLED, actor=actor, expected_revision=expected_revision
        )

    def transfer(
        self,
        ticket_id: str,
        new_service_id: str,
        *,
        actor: str = "operator",
        expected_revision: int | None = None,
    ) -> Ticket:
        """Move a ticket to another service's queue, keeping its code and enqueue time."""
        self.services.require_active(new_service_id)
        ticket = self.store.mutate(
            ticket_id,
            partial(_transfer, new_service_id),
            event_type=EventType.TRANSFERRED,
            actor=actor,
            expected_revision=expected_revision,
        )
        logger.info("transferred %s to %s", ticket.code, new_service_id)
        return ticket

    def set_triage(
        self,
        ticket_id: str,
        triage: Triage | str | None,
        *,
        actor: str = "operator",
        expected_revision: int | None = None,
    ) -> Ticket:
        return self.store.mutate(
            ticket_id,
            partial(_edit, "triage", parse_triage(triage)),
            event_type=EventType.UPDATED,
            actor=actor,
            expected_revision=expected_revision,
        )

    def set_preferente(
        self,
        ticket_id: str,
        value: bool | None = None,
        *,
        actor: str = "operator",
        expected_revision: int | None = None,
    ) -> Ticket:
        """Set the preferente flag, or toggle it when `value` is None."""

        def change(ticket: Ticket, now: datetime) -> Ticket:
            new_value = (not ticket.preferente) if value is None else bool(value)
            return _edit("preferente", new_value, ticket, now)

        return self.store.mutate(
            ticket_id, change, event_type=EventType.UPDATED, actor=actor, expected_revision=expected_revision
        )

    def set_note(
        self,
        ticket_id: str,
        note: str | None,
        *,
        actor: str = "operator",
        expected_revision: int | None = None,
    ) -> Ticket:
        return self.store.mutate(
            ticket_id,
            partial(_edit, "note", clip_note(note)),
            event_type=EventType.UPDATED,
            actor=actor,
            expected_revision=expected_revision,
        )

    # ---- admin ----

    def update_service(
        self,
        service_id: str,
        *,
        name: str | None = None,
        is_active: bool | None = None,
        actor: str = "operator",
    ) -> Service:
        """Rename and/or open or close a service. Waiting tickets stay queued."""
        service = self.services.get(service_id)
        if name is not None:
            service = self.services.rename(service_id, name)
        if is_active is not None:
            service = self.services.set_active(service_id, is_active)
        logger.info(
            "service %s updated by %s: name=%r active=%s", service.id, actor, service.name, service.is_active
        )
        return service

    def update_counter(
        self,
        counter_id: str,
        *,
        name: str | None = None,
        is_active: bool | None = None,
        actor: str = "operator",
    ) -> Counter:
        counter = self.counters.get(counter_id)
        if name is not None:
            counter = self.counters.rename(counter_id, name)
        if is_active is not None:
            counter = self.counters.set_active(counter_id, is_active)
        logger.info(
            "counter %s updated by %s: name=%r active=%s", counter.id, actor, counter.name, counter.is_active
        )
        return counter

    # ---- reads ----

    @property
    def revision(self) -> int:
        return self.store.revision

    def get(self, ticket_id: str) -> Ticket:
        return self.store.get_by_id(ticket_id)

    def get_by_code(self, code: str) -> Ticket:
        return self.store.get_by_code(code)

    def list_by_status(
        self, service_id: str | None = None, statuses: Iterable[TicketStatus] | None = None
    ) -> list[Ticket]:
        return self.store.list_by_status(service_id, statuses)

    def queue(self, service_id: str) -> list[Ticket]:
        """Waiting tickets of one service in dispatch order."""
        self.services.get(service_id)
        return order_waiting(self.store.list_by_status(service_id, (TicketStatus.WAITING,)))

    def active_queue(self, service_id: str) -> list[Ticket]:
        """What an operator console shows: the queue, then tickets at counters."""
        self.services.get(service_id)
        tickets = self.store.list_by_status(service_id, ACTIVE_STATUSES)
        at_counters = sorted(
            (t for t in tickets if t.status is not TicketStatus.WAITING),
            key=lambda t: t.called_at or t.enqueued_at,
        )
        return order_waiting(tickets) + at_counters

    def queue_position(self, ticket_id: str) -> int:
        ticket = self.store.get_by_id(ticket_id)
        return queue_position(ticket, self.store.list_by_status(ticket.service_id, (TicketStatus.WAITING,)))

    def lookup(self, code: str) -> Lookup:
        return self._lookup(self.store.get_by_code(code))

    def active_by_doc(self, doc_value: str) -> Lookup:
        return self._lookup(self.store.find_active_by_doc(doc_value))

    def estimate_wait(self, service_id: str, position: int) -> float | None:
        """Seconds until a ticket at `position` is likely called.

        Uses the service's average service time so far (a default before the
        first timed ticket) split across its open counters.
        """
        open_counters = sum(1 for c in self.counters.for_service(service_id) if c.is_active)
        if open_counters == 0:
            return None
        finished = self.store.list_by_status(service_id, (TicketStatus.FINISHED,))
        durations = [d for d in map(service_seconds, finished) if d is not None]
        avg = sum(durations) / len(durations) if durations else DEFAULT_SERVICE_SECONDS
        return estimate_wait_seconds(position=position, avg_service_seconds=avg, open_counters=open_counters)

    def _lookup(self, ticket: Ticket) -> Lookup:
        peers = self.store.list_by_status(ticket.service_id, (TicketStatus.WAITING,))
        position = queue_position(ticket, peers)
        return Lookup(
            ticket=ticket,
            position=position,
            estimated_wait_seconds=self.estimate_wait(ticket.service_id, position),
        )

    def display(self, *, now_serving: int = 4, next_count: int = 8) -> DisplayBoard:
        revision = self.store.revision
        tickets = self.store.snapshot()
        at_counters = sorted(
            (t for t in tickets if t.status in (TicketStatus.CALLED, TicketStatus.SERVING)),
            key=lambda t: t.called_at,
            reverse=True,
        )
        return DisplayBoard(
            now_serving=[self._row(t) for t in at_counters[:now_serving]],
            next=[self._row(t) for t in order_waiting(tickets)[:next_count]],
            revision=revision,
        )

    def events_since(self, revision: int) -> FeedPage:
        return self.feed.since(revision)

    def wait_events(self, revision: int, timeout: float) -> FeedPage:
        return self.feed.wait(revision, timeout)

    def _row(self, ticket: Ticket) -> DisplayRow:
        service_name = self.services.get(ticket.service_id).name
        counter_name = None
        if ticket.counter_id is not None:
            counter_name = self.counters.get(ticket.counter_id).name
        return DisplayRow(
            code=ticket.code,
            service_id=ticket.service_id,
            service_name=service_name,
            counter_id=ticket.counter_id,
            counter_name=counter_name,
            status=ticket.status,
        )
