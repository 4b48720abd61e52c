from datetime import datetime, timedelta, timezone

from clinic_queue.models import Ticket, TicketStatus, Triage
from clinic_queue.ordering import order_waiting, queue_position, triage_rank

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make(code, *, triage=None, preferente=False, minute=0, status=TicketStatus.WAITING, service="admision"):
    return Ticket(
        id=code.lower(),
        code=code,
        service_id=service,
        enqueued_at=T0 + timedelta(minutes=minute),
        status=status,
        triage=triage,
        preferente=preferente,
    )


def codes(tickets):
    return [t.code for t in tickets]


def test_triage_rank_puts_untriaged_last():
    assert [triage_rank(t) for t in Triage] == [0, 1, 2, 3, 4]
    assert triage_rank(None) == 5


def test_higher_triage_jumps_the_fifo():
    tickets = [
        make("A-001", triage=Triage.GREEN, minute=0),
        make("A-002", triage=Triage.GREEN, minute=1),
        make("A-003", triage=Triage.RED, minute=2),
    ]
    assert codes(order_waiting(tickets)) == ["A-003", "A-001", "A-002"]


def test_preferente_only_breaks_ties_within_a_triage_level():
    tickets = [
        make("A-001", minute=0),
        make("A-002", preferente=True, minute=1),
        make("A-003", triage=Triage.BLUE, minute=2),
        make("A-004", triage=Triage.BLUE, preferente=True, minute=3),
    ]
    assert codes(order_waiting(tickets)) == ["A-004", "A-003", "A-002", "A-001"]


def test_equal_keys_keep_input_order():
    tickets = [make(f"A-00{i}", minute=0) for i in (3, 1, 2)]
    assert codes(order_waiting(tickets)) == ["A-003", "A-001", "A-002"]
    # Recomputing does not reshuffle.
    assert codes(order_waiting(order_waiting(tickets))) == ["A-003", "A-001", "A-002"]


def test_order_waiting_skips_non_waiting():
    tickets = [
        make("A-001", triage=Triage.RED, status=TicketStatus.CALLED),
        make("A-002", minute=1),
        make("A-003", status=TicketStatus.FINISHED, minute=2),
    ]
    assert codes(order_waiting(tickets)) == ["A-002"]


def test_queue_position_is_per_service_and_one_based():
    a1 = make("A-001", minute=0)
    a2 = make("A-002", triage=Triage.YELLOW, minute=1)
    e1 = make("E-001", triage=Triage.RED, minute=0, service="extracciones")
    everyone = [a1, a2, e1]

    assert queue_position(a2, everyone) == 1
    assert queue_position(a1, everyone) == 2
    assert queue_position(e1, everyone) == 1


def test_queue_position_zero_when_not_waiting():
    called = make("A-001", status=TicketStatus.CALLED)
    assert queue_position(called, [called]) == 0
