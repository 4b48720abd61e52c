from __future__ import annotations

# Analytics over ticket records.
#
# Wait time    = called_at - enqueued_at   (tickets that were called)
# Service time = finished_at - started_at  (tickets that were started and finished)
#
# Counter attribution uses `served_by`, which a ticket keeps after it leaves
# the counter, so the ranking covers every ticket the store still holds.

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterable

from .models import Ticket, TicketStatus

# Assumed service time before a service has finished any timed ticket.
DEFAULT_SERVICE_SECONDS = 480.0


@dataclass
class Totals:
    created: int = 0
    called: int = 0
    started: int = 0
    finished: int = 0
    no_show: int = 0
    waiting_now: int = 0
    serving_now: int = 0


@dataclass
class Timings:
    avg_wait_seconds: float = 0.0
    p50_wait_seconds: float = 0.0
    p90_wait_seconds: float = 0.0
    avg_service_seconds: float = 0.0
    p50_service_seconds: float = 0.0
    p90_service_seconds: float = 0.0


@dataclass
class ServiceStats:
    service_id: str
    created: int = 0
    finished: int = 0
    avg_wait_seconds: float = 0.0
    avg_service_seconds: float = 0.0


@dataclass
class CounterStats:
    counter_id: str
    served: int = 0
    avg_service_seconds: float = 0.0


@dataclass
class Summary:
    generated_at: datetime
    totals: Totals
    timings: Timings
    by_service: list[ServiceStats] = field(default_factory=list)
    top_counters: list[CounterStats] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["generated_at"] = self.generated_at.isoformat()
        return d


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for no data."""
    if not values:
        return 0.0
    if not 0 < pct <= 100:
        raise ValueError("pct must be in (0, 100]")
    ordered = sorted(values)
    rank = math.ceil(pct / 100.0 * len(ordered))
    return ordered[rank - 1]


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def wait_seconds(ticket: Ticket) -> float | None:
    if ticket.called_at is None:
        return None
    return (ticket.called_at - ticket.enqueued_at).total_seconds()


def service_seconds(ticket: Ticket) -> float | None:
    if ticket.started_at is None or ticket.finished_at is None:
        return None
    return (ticket.finished_at - ticket.started_at).total_seconds()


def summarize(
    tickets: Iterable[Ticket],
    *,
    now: datetime | None = None,
    top: int = 5,
) -> Summary:
    tickets = list(tickets)
    totals = Totals(created=len(tickets))
    waits: list[float] = []
    services: list[float] = []
    per_service: dict[str, tuple[ServiceStats, list[float], list[float]]] = {}

    for t in tickets:
        w = wait_seconds(t)
        s = service_seconds(t)
        if t.called_at is not None:
            totals.called += 1
        if t.started_at is not None:
            totals.started += 1
        if t.status is TicketStatus.FINISHED:
            totals.finished += 1
        elif t.status is TicketStatus.NO_SHOW:
            totals.no_show += 1
        elif t.status is TicketStatus.WAITING:
            totals.waiting_now += 1
        elif t.status is TicketStatus.SERVING:
            totals.serving_now += 1

        stats, s_waits, s_services = per_service.setdefault(
            t.service_id, (ServiceStats(service_id=t.service_id), [], [])
        )
        stats.created += 1
        if t.status is TicketStatus.FINISHED:
            stats.finished += 1
        if w is not None:
            waits.append(w)
            s_waits.append(w)
        if s is not None:
            services.append(s)
            s_services.append(s)

    timings = Timings(
        avg_wait_seconds=_mean(waits),
        p50_wait_seconds=percentile(waits, 50),
        p90_wait_seconds=percentile(waits, 90),
        avg_service_seconds=_mean(services),
        p50_service_seconds=percentile(services, 50),
        p90_service_seconds=percentile(services, 90),
    )

    by_service = []
    for stats, s_waits, s_services in per_service.values():
        stats.avg_wait_seconds = _mean(s_waits)
        stats.avg_service_seconds = _mean(s_services)
        by_service.append(stats)

    return Summary(
        generated_at=now or datetime.now().astimezone(),
        totals=totals,
        timings=timings,
        by_service=by_service,
        top_counters=_top_counters(tickets, top),
    )


def _top_counters(tickets: list[Ticket], top: int) -> list[CounterStats]:
    served: dict[str, list[float | None]] = {}
    for t in tickets:
        if t.status is not TicketStatus.FINISHED or t.served_by is None:
            continue
        # Tickets finished straight from Called have no service time but still count.
        served.setdefault(t.served_by, []).append(service_seconds(t))

    result = []
    for counter_id, durations in served.items():
        timed = [d for d in durations if d is not None]
        result.append(
            CounterStats(counter_id=counter_id, served=len(durations), avg_service_seconds=_mean(timed))
        )
    result.sort(key=lambda c: (-c.served, c.counter_id))
    return result[:top]


def estimate_wait_seconds(*, position: int, avg_service_seconds: float, open_counters: int) -> float:
    """Rough wait for a ticket at `position` (1-based) in its queue.

    Tickets ahead are split across the open counters of the service.
    """
    if position < 0:
        raise ValueError("position must be >= 0")
    if avg_service_seconds < 0:
        raise ValueError("avg_service_seconds must be >= 0")
    if open_counters <= 0:
        raise ValueError("open_counters must be > 0")
    if position == 0:
        return 0.0
    ahead = position - 1
    return float(math.ceil(ahead / open_counters) * avg_service_seconds)
