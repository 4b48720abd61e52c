import threading
from datetime import datetime, timezone

import pytest

from clinic_queue.feed import Event, EventFeed, EventType

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def ev(revision, type_=EventType.CREATED):
    return Event(
        revision=revision,
        ts=T0,
        type=type_,
        ticket_id=f"t{revision}",
        ticket_code=f"A-{revision:03d}",
        service_id="admision",
        counter_id=None,
        actor="test",
    )


def test_capacity_evicts_oldest():
    feed = EventFeed(capacity=3)
    for r in range(1, 6):
        feed.append(ev(r))

    assert [e.revision for e in feed.tail(10)] == [3, 4, 5]
    assert [e.revision for e in feed.tail(2)] == [4, 5]
    assert feed.tail(0) == []
    assert feed.last_revision == 5


def test_since_flags_truncation_when_events_were_evicted():
    feed = EventFeed(capacity=3)
    for r in range(1, 6):
        feed.append(ev(r))

    page = feed.since(0)
    assert page.truncated
    assert [e.revision for e in page.events] == [3, 4, 5]

    page = feed.since(2)
    assert not page.truncated
    assert [e.revision for e in page.events] == [3, 4, 5]

    page = feed.since(5)
    assert page.events == []
    assert page.revision == 5
    assert not page.truncated


def test_empty_feed_is_not_truncated():
    page = EventFeed().since(0)
    assert page.events == [] and page.revision == 0 and not page.truncated


def test_append_rejects_non_increasing_revision():
    feed = EventFeed()
    feed.append(ev(1))
    with pytest.raises(ValueError):
        feed.append(ev(1))


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        EventFeed(capacity=0)


def test_wait_returns_once_an_event_arrives():
    feed = EventFeed()
    timer = threading.Timer(0.05, lambda: feed.append(ev(1)))
    timer.start()
    try:
        page = feed.wait(0, timeout=2.0)
    finally:
        timer.cancel()
    assert [e.revision for e in page.events] == [1]


def test_wait_times_out_with_empty_page():
    feed = EventFeed()
    feed.append(ev(1))
    page = feed.wait(1, timeout=0.01)
    assert page.events == []
    assert page.revision == 1


def test_subscribe_and_unsubscribe():
    feed = EventFeed()
    seen = []
    unsubscribe = feed.subscribe(seen.append)

    feed.publish(ev(1))
    unsubscribe()
    feed.publish(ev(2))
    unsubscribe()  # idempotent

    assert [e.revision for e in seen] == [1]


def test_failing_subscriber_does_not_stop_others(caplog):
    feed = EventFeed()
    seen = []

    def broken(event):
        raise RuntimeError("display offline")

    feed.subscribe(broken)
    feed.subscribe(seen.append)
    feed.publish(ev(1))

    assert [e.revision for e in seen] == [1]
    assert "subscriber" in caplog.text


def test_engine_pushes_events_to_subscribers(engine):
    seen = []
    engine.feed.subscribe(seen.append)
    t = engine.create("admision")
    engine.call_next("admision", "adm-1")
    engine.finish(t.id)

    assert [e.type for e in seen] == [EventType.CREATED, EventType.CALLED, EventType.FINISHED]
    assert seen[-1].to_dict()["type"] == "FINISHED"


def test_engine_wait_events_returns_pending_events(engine):
    engine.create("admision")
    page = engine.wait_events(0, timeout=0.01)
    assert [e.type for e in page.events] == [EventType.CREATED]
    assert engine.wait_events(page.revision, timeout=0.01).events == []


def test_publish_delivers_in_revision_order_when_writers_race():
    feed = EventFeed()
    seen = []
    feed.subscribe(seen.append)
    events = [ev(1), ev(2), ev(3)]
    for e in events:
        feed.append(e)

    # The writer of revision 3 gets to publish before the other two.
    feed.publish(events[2])
    feed.publish(events[0])
    feed.publish(events[1])

    assert [e.revision for e in seen] == [1, 2, 3]


def test_engine_subscribers_see_increasing_revisions_under_load(engine):
    seen = []
    engine.feed.subscribe(lambda e: seen.append(e.revision))
    start = threading.Barrier(6)

    def worker(service_id):
        start.wait()
        for _ in range(20):
            engine.create(service_id)

    threads = [
        threading.Thread(target=worker, args=(s,))
        for s in ("admision", "admision", "consulta", "consulta", "extracciones", "vacunacion")
    ]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert seen == list(range(1, 121))
