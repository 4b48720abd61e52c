import pytest

from clinic_queue.client import DispatchClient
from clinic_queue.errors import (
    Conflict,
    DispatchTimeout,
    EmptyQueue,
    InvalidState,
    NotFound,
    QueueError,
    Unauthorized,
    UnknownService,
)
from clinic_queue.mqtt_topics import dispatch_requests, dispatch_responses
from clinic_queue.server import RequestHandler

NS = "test/v0"


class LoopbackTransport:
    """Routes requests straight into a RequestHandler (no broker)."""

    def __init__(self, handler):
        self.handler = handler
        self.subscribed = []
        self.sent = []
        self.stopped = False

    def stop(self):
        self.stopped = True

    def subscribe(self, topic):
        self.subscribed.append(topic)

    def request(self, *, request_topic, response_topic, message, timeout=8.0):
        assert request_topic == dispatch_requests(NS)
        self.sent.append(message)
        return self.handler.handle(dict(message))


class SilentTransport(LoopbackTransport):
    def request(self, *, request_topic, response_topic, message, timeout=8.0):
        raise DispatchTimeout(f"no response to {message['op']} within {timeout:.1f}s")


@pytest.fixture
def transport(engine):
    return LoopbackTransport(RequestHandler(engine, operator_token="tok"))


def make_client(transport, **kw):
    return DispatchClient(transport, client_id="console-1", namespace=NS, **kw)


def test_client_subscribes_to_its_reply_topic(transport):
    make_client(transport)
    assert transport.subscribed == [dispatch_responses("console-1", NS)]


def test_kiosk_and_operator_flow(transport):
    kiosk = make_client(transport)
    console = make_client(transport, token="tok", actor="operator")

    red = kiosk.create("admision", triage="RED", doc_value="22222222J")
    kiosk.create("admision")
    assert red["code"] == "A-001"

    called = console.call_next("admision", "adm-1")
    assert called["id"] == red["id"]
    console.recall(red["id"])
    console.start(red["id"])
    assert console.finish(red["id"])["status"] == "Finished"

    lookup = kiosk.lookup("A-002")
    assert lookup["position"] == 1
    assert lookup["estimated_wait_seconds"] == 0.0
    assert kiosk.position(lookup["ticket"]["id"]) == 1
    assert [t["code"] for t in kiosk.queue("admision")] == ["A-002"]
    assert kiosk.display()["revision"] == 6
    assert len(kiosk.events(since=4)["events"]) == 2
    assert kiosk.summary()["totals"]["finished"] == 1
    assert [s["prefix"] for s in kiosk.services()] == ["A", "E", "C", "V"]
    assert [c["id"] for c in kiosk.counters("vacunacion")] == ["vac-1"]


def test_none_fields_are_not_sent(transport):
    kiosk = make_client(transport)
    kiosk.create("consulta")
    sent = transport.sent[-1]
    assert sent["op"] == "create"
    assert "triage" not in sent
    assert "doc_value" not in sent
    assert "token" not in sent


def test_token_and_actor_travel_with_requests(transport, engine):
    console = make_client(transport, token="tok", actor="con-2")
    t = console.create("consulta")
    console.call_specific(t["id"], "con-2")

    assert transport.sent[-1]["token"] == "tok"
    assert [e.actor for e in engine.events_since(0).events] == ["con-2", "con-2"]


def test_error_replies_raise_typed_exceptions(transport):
    kiosk = make_client(transport)
    console = make_client(transport, token="tok")

    with pytest.raises(EmptyQueue):
        console.call_next("extracciones", "ext-1")
    with pytest.raises(NotFound):
        kiosk.lookup("E-404")
    with pytest.raises(Unauthorized):
        kiosk.call_next("extracciones", "ext-1")

    t = kiosk.create("extracciones")
    with pytest.raises(InvalidState):
        console.start(t["id"])
    with pytest.raises(Conflict) as exc:
        console.call_specific(t["id"], "ext-1", expected_revision=t["revision"] + 5)
    assert exc.value.retryable


def test_timeouts_propagate_as_retryable(engine):
    client = make_client(SilentTransport(RequestHandler(engine)), timeout=0.5)
    with pytest.raises(DispatchTimeout) as exc:
        client.display()
    assert isinstance(exc.value, QueueError)
    assert isinstance(exc.value, TimeoutError)
    assert exc.value.retryable
    assert "0.5s" in exc.value.message


def test_admin_updates(transport, engine):
    kiosk = make_client(transport)
    console = make_client(transport, token="tok")

    with pytest.raises(Unauthorized):
        kiosk.update_service("consulta", is_active=False)

    assert console.update_service("consulta", is_active=False)["is_active"] is False
    with pytest.raises(UnknownService):
        kiosk.create("consulta")
    assert console.update_service("consulta", name="Medicina General", is_active=True)["name"] == "Medicina General"

    counter = console.update_counter("con-3", is_active=False)
    assert counter == {"id": "con-3", "name": "Consulta 3", "service_id": "consulta", "is_active": False}
    assert "name" not in transport.sent[-1]
    assert engine.counters.get("con-3").is_active is False
