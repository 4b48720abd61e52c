from __future__ import annotations

"""Queue ordering rules.

The dispatch order of waiting tickets, first = next to call:

1. triage rank (RED=0 ... BLUE=4, no triage=5)
2. preferente tickets before the rest
3. enqueue time, earliest first

Everything here is pure and recomputed on demand. `sorted` is stable, so
tickets with equal keys keep the order they were given in (store insertion
order), which keeps on-screen queue positions from jumping around between
refreshes.
"""

from typing import Iterable

from .models import Ticket, TicketStatus, Triage

TRIAGE_RANK: dict[Triage, int] = {
    Triage.RED: 0,
    Triage.ORANGE: 1,
    Triage.YELLOW: 2,
    Triage.GREEN: 3,
    Triage.BLUE: 4,
}
NO_TRIAGE_RANK = 5


def triage_rank(triage: Triage | None) -> int:
    if triage is None:
        return NO_TRIAGE_RANK
    return TRIAGE_RANK[triage]


def sort_key(ticket: Ticket) -> tuple:
    return (triage_rank(ticket.triage), not ticket.preferente, ticket.enqueued_at)


def order_waiting(tickets: Iterable[Ticket]) -> list[Ticket]:
    """Return the Waiting tickets among `tickets` in dispatch order."""
    return sorted((t for t in tickets if t.status is TicketStatus.WAITING), key=sort_key)


def queue_position(ticket: Ticket, tickets: Iterable[Ticket]) -> int:
    """1-based position of `ticket` in its service queue, 0 if not waiting."""
    if ticket.status is not TicketStatus.WAITING:
        return 0
    same_service = (t for t in tickets if t.service_id == ticket.service_id)
    for i, t in enumerate(order_waiting(same_service), start=1):
        if t.id == ticket.id:
            return i
    return 0
