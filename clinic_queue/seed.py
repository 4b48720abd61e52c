from __future__ import annotations

# Demo data: the services and counters the kiosk and consoles ship with, and
# an optional batch of tickets so a fresh demo has something on screen.

import random

from .dispatch import DispatchEngine
from .feed import EventFeed
from .models import Counter, Service, Triage
from .registry import CounterRegistry, ServiceRegistry
from .store import Clock, TicketStore

DEFAULT_SERVICES = [
    Service(id="admision", name="Admisión", prefix="A"),
    Service(id="extracciones", name="Extracciones", prefix="E"),
    Service(id="consulta", name="Consulta General", prefix="C"),
    Service(id="vacunacion", name="Vacunación", prefix="V"),
]

DEFAULT_COUNTERS = [
    Counter(id="adm-1", name="Ventanilla 1", service_id="admision"),
    Counter(id="adm-2", name="Ventanilla 2", service_id="admision"),
    Counter(id="ext-1", name="Box Extracciones 1", service_id="extracciones"),
    Counter(id="ext-2", name="Box Extracciones 2", service_id="extracciones"),
    Counter(id="con-1", name="Consulta 1", service_id="consulta"),
    Counter(id="con-2", name="Consulta 2", service_id="consulta"),
    Counter(id="con-3", name="Consulta 3", service_id="consulta"),
    Counter(id="vac-1", name="Sala Vacunación", service_id="vacunacion"),
]

TRIAGE_MIX: list[Triage | None] = [
    Triage.RED,
    Triage.ORANGE,
    Triage.YELLOW,
    Triage.GREEN,
    Triage.BLUE,
    None,
]


def build_engine(
    *,
    services: list[Service] | None = None,
    counters: list[Counter] | None = None,
    feed_capacity: int = 1000,
    lock_timeout: float = 2.0,
    clock: Clock | None = None,
) -> DispatchEngine:
    """Wire registries, store, feed and engine. Passing [] gives an empty setup."""
    if services is None:
        services = [Service(s.id, s.name, s.prefix, s.is_active) for s in DEFAULT_SERVICES]
    if counters is None:
        counters = [Counter(c.id, c.name, c.service_id, c.is_active) for c in DEFAULT_COUNTERS]

    service_registry = ServiceRegistry(services)
    counter_registry = CounterRegistry(service_registry, counters)
    store = TicketStore(
        service_registry,
        feed=EventFeed(capacity=feed_capacity),
        clock=clock,
        lock_timeout=lock_timeout,
    )
    return DispatchEngine(store, counter_registry)


def seed_demo_tickets(engine: DispatchEngine, *, count: int = 40, seed: int | None = None) -> None:
    """Issue `count` tickets round-robin over active services.

    The first few are called to a counter of their service (and two of those
    started) so the display board is not empty.
    """
    rng = random.Random(seed)
    services = engine.services.list(active_only=True)
    if not services:
        return

    for i in range(count):
        service = services[i % len(services)]
        ticket = engine.create(
            service.id,
            triage=rng.choice(TRIAGE_MIX),
            preferente=rng.random() < 0.15,
            source="seed",
            actor="seed",
        )
        if i >= 5:
            continue
        counters = [c for c in engine.counters.for_service(service.id) if c.is_active]
        if not counters:
            continue
        engine.call_specific(ticket.id, counters[i % len(counters)].id, actor="seed")
        if i >= 3:
            engine.start(ticket.id, actor="seed")
