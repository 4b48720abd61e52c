import threading

import pytest

from clinic_queue.codes import is_valid_code, normalize_code
from clinic_queue.errors import DispatchTimeout, NotFound, SequenceExhausted, UnknownService
from clinic_queue.feed import EventType
from clinic_queue.models import NOTE_MAX_LENGTH, Service, TicketStatus
from clinic_queue.registry import ServiceRegistry
from clinic_queue.store import TicketStore


@pytest.fixture
def store(clock):
    services = ServiceRegistry(
        [
            Service(id="admision", name="Admisión", prefix="A"),
            Service(id="extracciones", name="Extracciones", prefix="E"),
        ]
    )
    return TicketStore(services, clock=clock)


def test_codes_are_sequential_per_service(store):
    a1 = store.create_ticket("admision")
    a2 = store.create_ticket("admision")
    e1 = store.create_ticket("extracciones")

    assert [a1.code, a2.code, e1.code] == ["A-001", "A-002", "E-001"]
    assert all(is_valid_code(t.code) for t in (a1, a2, e1))
    assert len({a1.id, a2.id, e1.id}) == 3


def test_sequence_restarts_each_day_and_lookup_prefers_newest(store, clock):
    yesterday = store.create_ticket("admision")
    clock.advance(days=1)
    today = store.create_ticket("admision")

    assert today.code == yesterday.code == "A-001"
    assert today.id != yesterday.id
    assert store.get_by_code("A-001").id == today.id
    assert store.get_by_id(yesterday.id).code == "A-001"


@pytest.mark.parametrize("raw", ["A-001", "a-001", " A-001 ", "a - 001\t"])
def test_get_by_code_normalizes_input(store, raw):
    t = store.create_ticket("admision")
    assert store.get_by_code(raw).id == t.id


def test_normalize_code():
    assert normalize_code("  e-0 14 ") == "E-014"


def test_lookups_raise_not_found(store):
    with pytest.raises(NotFound):
        store.get_by_id("nope")
    with pytest.raises(NotFound):
        store.get_by_code("Z-999")


def test_create_rejects_unknown_and_inactive_services(store):
    with pytest.raises(UnknownService):
        store.create_ticket("radiologia")

    store.services.set_active("extracciones", False)
    with pytest.raises(UnknownService):
        store.create_ticket("extracciones")


def test_create_clips_note_and_normalizes_doc(store):
    t = store.create_ticket("admision", note="x" * 500, doc_value=" 12345678a ")
    assert len(t.note) == NOTE_MAX_LENGTH
    assert t.doc_value == "12345678A"


def test_sequence_exhausted_after_999(store):
    for _ in range(999):
        last = store.create_ticket("extracciones")
    assert last.code == "E-999"
    with pytest.raises(SequenceExhausted):
        store.create_ticket("extracciones")
    # Other services are unaffected.
    assert store.create_ticket("admision").code == "A-001"


def test_revision_bumps_on_every_mutation_only(store):
    assert store.revision == 0
    t = store.create_ticket("admision")
    assert store.revision == 1 == t.revision

    def boom(ticket, now):
        raise ValueError("rejected")

    with pytest.raises(ValueError):
        store.mutate(t.id, boom, event_type=EventType.UPDATED, actor="test")
    assert store.revision == 1

    store.mutate(
        t.id,
        lambda ticket, now: ticket,
        event_type=EventType.UPDATED,
        actor="test",
    )
    assert store.revision == 2
    assert store.get_by_id(t.id).revision == 2


def test_list_by_status_keeps_insertion_order(store):
    a1 = store.create_ticket("admision")
    e1 = store.create_ticket("extracciones")
    a2 = store.create_ticket("admision")

    assert [t.id for t in store.list_by_status()] == [a1.id, e1.id, a2.id]
    assert [t.id for t in store.list_by_status("admision", {TicketStatus.WAITING})] == [a1.id, a2.id]
    assert store.list_by_status("admision", {TicketStatus.CALLED}) == []


def test_find_active_by_doc_returns_newest_active(store):
    store.create_ticket("admision", doc_value="87654321B")
    newer = store.create_ticket("extracciones", doc_value="87654321b")

    assert store.find_active_by_doc(" 87654321B").id == newer.id
    with pytest.raises(NotFound):
        store.find_active_by_doc("00000000X")


def test_ticket_lock_wait_is_bounded(clock):
    services = ServiceRegistry([Service(id="admision", name="Admisión", prefix="A")])
    store = TicketStore(services, clock=clock, lock_timeout=0.05)
    t = store.create_ticket("admision")

    held = store._ticket_locks[t.id]
    held.acquire()
    try:
        with pytest.raises(DispatchTimeout) as exc:
            store.mutate(t.id, lambda ticket, now: ticket, event_type=EventType.UPDATED, actor="test")
        assert exc.value.retryable
    finally:
        held.release()


def test_held_ticket_lock_does_not_block_other_tickets(clock):
    services = ServiceRegistry([Service(id="admision", name="Admisión", prefix="A")])
    store = TicketStore(services, clock=clock, lock_timeout=0.05)
    busy = store.create_ticket("admision")
    free = store.create_ticket("admision")

    done = threading.Event()
    held = store._ticket_locks[busy.id]
    held.acquire()
    try:
        store.mutate(free.id, lambda ticket, now: ticket, event_type=EventType.UPDATED, actor="test")
        done.set()
    finally:
        held.release()
    assert done.is_set()
