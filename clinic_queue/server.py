from __future__ import annotations

# The dispatch server.
#
# This file contains two layers:
# 1) `RequestHandler` maps request messages onto DispatchEngine operations
#    and returns reply messages (pure, tested without a broker)
# 2) `MqttDispatchService` + `main()` wire it to the MQTT broker, push every
#    feed event to `<ns>/events` and publish display snapshots.

import argparse
import logging
import queue
import threading
import time
from typing import Any, Callable, TYPE_CHECKING

from . import mqtt_topics
from .analytics import summarize
from .config import Settings
from .dispatch import DispatchEngine
from .errors import BadRequest, DispatchTimeout, QueueError, Unauthorized
from .feed import Event
from .models import TicketStatus

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

# Operations that change tickets on behalf of staff. Kiosk issuing and all
# reads stay open.
OPERATOR_OPS = frozenset(
    {
        "call_next",
        "call",
        "start",
        "finish",
        "no_show",
        "recall",
        "transfer",
        "set_triage",
        "set_preferente",
        "set_note",
        "update_service",
        "update_counter",
    }
)

# Requests accepted but not yet picked up by a worker. Beyond this the
# server answers "timeout" right away instead of queueing without bound.
MAX_PENDING_REQUESTS = 256


def _str_arg(msg: dict[str, Any], key: str) -> str:
    value = msg.get(key)
    if not isinstance(value, str) or not value.strip():
        raise BadRequest(f"{key} required")
    return value.strip()


def _opt_str(msg: dict[str, Any], key: str) -> str | None:
    value = msg.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise BadRequest(f"{key} must be a string")
    return value


def _opt_int(msg: dict[str, Any], key: str) -> int | None:
    value = msg.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadRequest(f"{key} must be an integer")
    return value


def _opt_bool(msg: dict[str, Any], key: str) -> bool | None:
    value = msg.get(key)
    if value is not None and not isinstance(value, bool):
        raise BadRequest(f"{key} must be a boolean")
    return value


def _statuses(msg: dict[str, Any]) -> list[TicketStatus] | None:
    raw = msg.get("statuses")
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise BadRequest("statuses must be a list")
    try:
        return [TicketStatus(s) for s in raw]
    except ValueError as e:
        raise BadRequest(str(e)) from None


class RequestHandler:
    """Turns one request dict into one reply dict. Never raises QueueError."""

    def __init__(
        self,
        engine: DispatchEngine,
        *,
        operator_token: str = "",
        display_now_serving: int = 4,
        display_next: int = 8,
    ) -> None:
        self.engine = engine
        self.operator_token = operator_token
        self.display_now_serving = display_now_serving
        self.display_next = display_next

        self._ops: dict[str, Callable[[dict[str, Any], str], dict[str, Any]]] = {
            "services": self._services,
            "counters": self._counters,
            "create": self._create,
            "call_next": self._call_next,
            "call": self._call,
            "start": self._simple(engine.start),
            "finish": self._simple(engine.finish),
            "no_show": self._simple(engine.no_show),
            "recall": self._simple(engine.recall),
            "transfer": self._transfer,
            "set_triage": self._set_triage,
            "set_preferente": self._set_preferente,
            "set_note": self._set_note,
            "update_service": self._update_service,
            "update_counter": self._update_counter,
            "get": self._get,
            "lookup": self._lookup,
            "active_by_doc": self._active_by_doc,
            "list": self._list,
            "queue": self._queue,
            "position": self._position,
            "display": self._display,
            "events": self._events,
            "summary": self._summary,
        }

    def handle(self, msg: dict[str, Any]) -> dict[str, Any]:
        op = msg.get("op")
        try:
            if not isinstance(op, str) or op not in self._ops:
                raise BadRequest(f"unknown op {op!r}")
            if op in OPERATOR_OPS:
                self._check_token(msg)
            actor = _opt_str(msg, "actor") or ("kiosk" if op == "create" else "operator")
            body = self._ops[op](msg, actor)
        except QueueError as e:
            logger.info("op=%s failed: %s %s", op, e.code, e.message)
            return e.to_response().to_message()
        reply = {"type": "ok", "op": op, "revision": self.engine.revision}
        reply.update(body)
        return reply

    def _check_token(self, msg: dict[str, Any]) -> None:
        if self.operator_token and msg.get("token") != self.operator_token:
            raise Unauthorized("operator token missing or wrong")

    # -------------------- ops --------------------

    def _services(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        active_only = bool(msg.get("active_only", False))
        return {"services": [s.to_dict() for s in self.engine.services.list(active_only=active_only)]}

    def _counters(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        service_id = _opt_str(msg, "service_id")
        if service_id:
            counters = self.engine.counters.for_service(service_id)
        else:
            counters = self.engine.counters.list()
        return {"counters": [c.to_dict() for c in counters]}

    def _create(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        ticket = self.engine.create(
            _str_arg(msg, "service_id"),
            triage=_opt_str(msg, "triage"),
            preferente=bool(msg.get("preferente", False)),
            note=_opt_str(msg, "note"),
            doc_value=_opt_str(msg, "doc_value"),
            appointment_id=_opt_str(msg, "appointment_id"),
            source=_opt_str(msg, "source") or "kiosk",
            actor=actor,
        )
        return {"ticket": ticket.to_dict()}

    def _call_next(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        ticket = self.engine.call_next(_str_arg(msg, "service_id"), _str_arg(msg, "counter_id"), actor=actor)
        return {"ticket": ticket.to_dict()}

    def _call(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        ticket = self.engine.call_specific(
            _str_arg(msg, "ticket_id"),
            _str_arg(msg, "counter_id"),
            actor=actor,
            expected_revision=_opt_int(msg, "expected_revision"),
        )
        return {"ticket": ticket.to_dict()}

    def _simple(self, operation: Callable[..., Any]) -> Callable[[dict[str, Any], str], dict[str, Any]]:
        def run(msg: dict[str, Any], actor: str) -> dict[str, Any]:
            ticket = operation(
                _str_arg(msg, "ticket_id"),
                actor=actor,
                expected_revision=_opt_int(msg, "expected_revision"),
            )
            return {"ticket": ticket.to_dict()}

        return run

    def _transfer(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        ticket = self.engine.transfer(
            _str_arg(msg, "ticket_id"),
            _str_arg(msg, "service_id"),
            actor=actor,
            expected_revision=_opt_int(msg, "expected_revision"),
        )
        return {"ticket": ticket.to_dict()}

    def _set_triage(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        ticket = self.engine.set_triage(
            _str_arg(msg, "ticket_id"),
            _opt_str(msg, "triage"),
            actor=actor,
            expected_revision=_opt_int(msg, "expected_revision"),
        )
        return {"ticket": ticket.to_dict()}

    def _set_preferente(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        ticket = self.engine.set_preferente(
            _str_arg(msg, "ticket_id"),
            _opt_bool(msg, "value"),
            actor=actor,
            expected_revision=_opt_int(msg, "expected_revision"),
        )
        return {"ticket": ticket.to_dict()}

    def _set_note(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        ticket = self.engine.set_note(
            _str_arg(msg, "ticket_id"),
            _opt_str(msg, "note"),
            actor=actor,
            expected_revision=_opt_int(msg, "expected_revision"),
        )
        return {"ticket": ticket.to_dict()}

    def _update_service(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        service = self.engine.update_service(
            _str_arg(msg, "service_id"),
            name=_opt_str(msg, "name"),
            is_active=_opt_bool(msg, "is_active"),
            actor=actor,
        )
        return {"service": service.to_dict()}

    def _update_counter(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        counter = self.engine.update_counter(
            _str_arg(msg, "counter_id"),
            name=_opt_str(msg, "name"),
            is_active=_opt_bool(msg, "is_active"),
            actor=actor,
        )
        return {"counter": counter.to_dict()}

    def _get(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        return {"ticket": self.engine.get(_str_arg(msg, "ticket_id")).to_dict()}

    def _lookup(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        return self.engine.lookup(_str_arg(msg, "code")).to_dict()

    def _active_by_doc(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        return self.engine.active_by_doc(_str_arg(msg, "doc_value")).to_dict()

    def _list(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        tickets = self.engine.list_by_status(_opt_str(msg, "service_id"), _statuses(msg))
        return {"tickets": [t.to_dict() for t in tickets]}

    def _queue(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        service_id = _str_arg(msg, "service_id")
        if msg.get("include_active"):
            tickets = self.engine.active_queue(service_id)
        else:
            tickets = self.engine.queue(service_id)
        return {"tickets": [t.to_dict() for t in tickets]}

    def _position(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        return {"position": self.engine.queue_position(_str_arg(msg, "ticket_id"))}

    def _display(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        return {"board": self.display_board()}

    def _events(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        page = self.engine.events_since(_opt_int(msg, "since") or 0)
        return {
            "events": [e.to_dict() for e in page.events],
            "truncated": page.truncated,
        }

    def _summary(self, msg: dict[str, Any], actor: str) -> dict[str, Any]:
        return {"summary": summarize(self.engine.store.snapshot()).to_dict()}

    def display_board(self) -> dict[str, Any]:
        board = self.engine.display(now_serving=self.display_now_serving, next_count=self.display_next)
        return board.to_dict()


class MqttDispatchService:
    """MQTT adapter around the DispatchEngine.

    The MQTT network loop only parses and enqueues requests. A pool of worker
    threads runs them, so a request waiting on a busy ticket does not hold up
    requests for other tickets.
    """

    def __init__(
        self,
        *,
        mqtt: MqttClient,
        engine: DispatchEngine,
        namespace: str,
        operator_token: str = "",
        display_now_serving: int = 4,
        display_next: int = 8,
        workers: int = 8,
    ) -> None:
        if workers <= 0:
            raise ValueError("workers must be > 0")
        self._topics = mqtt_topics
        self.mqtt = mqtt
        self.engine = engine
        self.namespace = namespace
        self.workers = workers
        self.handler = RequestHandler(
            engine,
            operator_token=operator_token,
            display_now_serving=display_now_serving,
            display_next=display_next,
        )

        self._stop_event = threading.Event()
        self._display_thread: threading.Thread | None = None
        self._worker_threads: list[threading.Thread] = []
        # None is the shutdown sentinel for one worker.
        self._requests: queue.Queue[dict[str, Any] | None] = queue.Queue(maxsize=MAX_PENDING_REQUESTS)
        self._unsubscribe: Callable[[], None] | None = None

    def start(self, *, display_every: float = 2.0) -> None:
        for i in range(self.workers):
            t = threading.Thread(target=self._request_worker_loop, name=f"dispatch-worker-{i}", daemon=True)
            t.start()
            self._worker_threads.append(t)

        self.mqtt.subscribe(self._topics.dispatch_requests(self.namespace))
        self.mqtt.add_handler(self._handle_message)
        self._unsubscribe = self.engine.feed.subscribe(self._push_event)

        self._display_thread = threading.Thread(
            target=self._display_publisher_loop,
            args=(display_every,),
            daemon=True,
        )
        self._display_thread.start()

    def stop(self) -> None:
        """Stop background work. Call before disconnecting MQTT.

        Requests already queued are still answered.
        """
        self._stop_event.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for _ in self._worker_threads:
            self._requests.put(None)
        for t in self._worker_threads:
            t.join(timeout=5.0)
        self._worker_threads = []
        t = self._display_thread
        if t and t.is_alive():
            t.join(timeout=1.0)

    def _push_event(self, event: Event) -> None:
        self.mqtt.publish(self._topics.events(self.namespace), event.to_dict())

    def _display_publisher_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            self.publish_display()
            self._stop_event.wait(interval)

    def publish_display(self) -> None:
        # Retained so a screen that connects later gets the board immediately.
        self.mqtt.publish(self._topics.display(self.namespace), self.handler.display_board(), retain=True)
        self.mqtt.publish(
            self._topics.server_status(self.namespace),
            {"type": "server_status", "revision": self.engine.revision, "ts": time.time()},
        )

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        # Runs on the MQTT network thread: validate and enqueue only.
        if topic != self._topics.dispatch_requests(self.namespace):
            return
        reply_to = msg.get("reply_to")
        if not isinstance(reply_to, str) or not reply_to:
            logger.warning("dropping request without reply_to: op=%s", msg.get("op"))
            return
        if self._stop_event.is_set():
            logger.warning("server stopping, dropping op=%s", msg.get("op"))
            return
        try:
            self._requests.put_nowait(msg)
        except queue.Full:
            logger.warning("request queue full, rejecting op=%s", msg.get("op"))
            busy = DispatchTimeout("server busy, try again")
            self.mqtt.publish(reply_to, busy.to_response().to_message(corr_id=_corr_id(msg)))

    def _request_worker_loop(self) -> None:
        while True:
            msg = self._requests.get()
            if msg is None:
                return
            try:
                self._serve(msg)
            except Exception:
                # Keep the worker alive; the requester sees a timeout.
                logger.exception("request op=%s failed", msg.get("op"))

    def _serve(self, msg: dict[str, Any]) -> None:
        reply = self.handler.handle(msg)
        corr_id = _corr_id(msg)
        if corr_id is not None:
            reply["corr_id"] = corr_id
        self.mqtt.publish(msg["reply_to"], reply)


def _corr_id(msg: dict[str, Any]) -> str | None:
    corr_id = msg.get("corr_id")
    return corr_id if isinstance(corr_id, str) else None


def main(argv: list[str] | None = None) -> None:
    from .mqtt_client import MqttClient
    from .seed import build_engine, seed_demo_tickets

    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Clinic queue dispatch server (MQTT)")
    parser.add_argument("--mqtt-host", default=settings.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=settings.mqtt_port)
    parser.add_argument("--namespace", default=settings.namespace)
    parser.add_argument("--lock-timeout", type=float, default=settings.lock_timeout)
    parser.add_argument("--feed-capacity", type=int, default=settings.feed_capacity)
    parser.add_argument(
        "--display-every",
        type=float,
        default=settings.display_every,
        help="seconds between display board publications",
    )
    parser.add_argument("--token", default=settings.operator_token, help="operator token (empty: no check)")
    parser.add_argument("--log-level", default=settings.log_level)
    parser.add_argument(
        "--workers", type=int, default=settings.request_workers, help="threads serving requests concurrently"
    )
    parser.add_argument("--no-seed", action="store_true", help="start with an empty queue")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    engine = build_engine(feed_capacity=args.feed_capacity, lock_timeout=args.lock_timeout)
    if settings.seed_demo and not args.no_seed:
        seed_demo_tickets(engine)

    mqtt_client = MqttClient(client_id="dispatch-server", host=args.mqtt_host, port=args.mqtt_port)
    mqtt_client.start()

    service = MqttDispatchService(
        mqtt=mqtt_client,
        engine=engine,
        namespace=args.namespace,
        operator_token=args.token,
        display_now_serving=settings.display_now_serving,
        display_next=settings.display_next,
        workers=args.workers,
    )
    service.start(display_every=args.display_every)

    logger.info(
        "dispatch server on MQTT %s:%d namespace=%s revision=%d",
        args.mqtt_host,
        args.mqtt_port,
        args.namespace,
        engine.revision,
    )

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()
        mqtt_client.stop()


if __name__ == "__main__":
    main()
