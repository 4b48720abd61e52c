from __future__ import annotations

# Dispatch client.
#
# Used by the kiosk, operator and lookup commands. Each method sends one
# request to the dispatch server and either returns the reply payload or
# raises the same QueueError subclass the server raised. The client does not
# retry; callers decide what to do with retryable errors (Conflict,
# DispatchTimeout).

import time
from typing import Any, Protocol

from .errors import ErrorResponse
from .mqtt_topics import dispatch_requests, dispatch_responses


class RequestTransport(Protocol):
    def stop(self) -> None: ...

    def subscribe(self, topic: str) -> None: ...

    def request(
        self,
        *,
        request_topic: str,
        response_topic: str,
        message: dict[str, Any],
        timeout: float = ...,
    ) -> dict[str, Any]: ...


class DispatchClient:
    def __init__(
        self,
        transport: RequestTransport,
        *,
        client_id: str,
        namespace: str,
        timeout: float = 8.0,
        token: str = "",
        actor: str | None = None,
    ) -> None:
        self.transport = transport
        self.namespace = namespace
        self.timeout = timeout
        self.token = token
        self.actor = actor
        self._request_topic = dispatch_requests(namespace)
        self._reply_topic = dispatch_responses(client_id, namespace)
        transport.subscribe(self._reply_topic)

    def call(self, op: str, **fields: Any) -> dict[str, Any]:
        message: dict[str, Any] = {"op": op}
        message.update({k: v for k, v in fields.items() if v is not None})
        if self.token:
            message["token"] = self.token
        if self.actor:
            message.setdefault("actor", self.actor)
        resp = self.transport.request(
            request_topic=self._request_topic,
            response_topic=self._reply_topic,
            message=message,
            timeout=self.timeout,
        )
        if resp.get("type") == "error":
            raise ErrorResponse.from_message(resp).to_exception()
        return resp

    # ---- kiosk ----

    def create(
        self,
        service_id: str,
        *,
        triage: str | None = None,
        preferente: bool = False,
        doc_value: str | None = None,
        appointment_id: str | None = None,
        source: str = "kiosk",
    ) -> dict[str, Any]:
        return self.call(
            "create",
            service_id=service_id,
            triage=triage,
            preferente=preferente,
            doc_value=doc_value,
            appointment_id=appointment_id,
            source=source,
        )["ticket"]

    # ---- operator ----

    def call_next(self, service_id: str, counter_id: str) -> dict[str, Any]:
        return self.call("call_next", service_id=service_id, counter_id=counter_id)["ticket"]

    def call_specific(self, ticket_id: str, counter_id: str, *, expected_revision: int | None = None) -> dict[str, Any]:
        return self.call(
            "call", ticket_id=ticket_id, counter_id=counter_id, expected_revision=expected_revision
        )["ticket"]

    def start(self, ticket_id: str, *, expected_revision: int | None = None) -> dict[str, Any]:
        return self.call("start", ticket_id=ticket_id, expected_revision=expected_revision)["ticket"]

    def finish(self, ticket_id: str, *, expected_revision: int | None = None) -> dict[str, Any]:
        return self.call("finish", ticket_id=ticket_id, expected_revision=expected_revision)["ticket"]

    def no_show(self, ticket_id: str, *, expected_revision: int | None = None) -> dict[str, Any]:
        return self.call("no_show", ticket_id=ticket_id, expected_revision=expected_revision)["ticket"]

    def recall(self, ticket_id: str, *, expected_revision: int | None = None) -> dict[str, Any]:
        return self.call("recall", ticket_id=ticket_id, expected_revision=expected_revision)["ticket"]

    def transfer(self, ticket_id: str, service_id: str) -> dict[str, Any]:
        return self.call("transfer", ticket_id=ticket_id, service_id=service_id)["ticket"]

    def set_triage(self, ticket_id: str, triage: str | None) -> dict[str, Any]:
        # A missing triage clears the level on the server.
        return self.call("set_triage", ticket_id=ticket_id, triage=triage)["ticket"]

    def set_preferente(self, ticket_id: str, value: bool | None = None) -> dict[str, Any]:
        return self.call("set_preferente", ticket_id=ticket_id, value=value)["ticket"]

    def set_note(self, ticket_id: str, note: str) -> dict[str, Any]:
        return self.call("set_note", ticket_id=ticket_id, note=note)["ticket"]

    # ---- admin ----

    def update_service(
        self, service_id: str, *, name: str | None = None, is_active: bool | None = None
    ) -> dict[str, Any]:
        return self.call("update_service", service_id=service_id, name=name, is_active=is_active)["service"]

    def update_counter(
        self, counter_id: str, *, name: str | None = None, is_active: bool | None = None
    ) -> dict[str, Any]:
        return self.call("update_counter", counter_id=counter_id, name=name, is_active=is_active)["counter"]

    # ---- reads ----

    def get(self, ticket_id: str) -> dict[str, Any]:
        return self.call("get", ticket_id=ticket_id)["ticket"]

    def lookup(self, code: str) -> dict[str, Any]:
        return _lookup_result(self.call("lookup", code=code))

    def active_by_doc(self, doc_value: str) -> dict[str, Any]:
        return _lookup_result(self.call("active_by_doc", doc_value=doc_value))

    def queue(self, service_id: str, *, include_active: bool = False) -> list[dict[str, Any]]:
        return self.call("queue", service_id=service_id, include_active=include_active or None)["tickets"]

    def list_by_status(self, service_id: str | None = None, statuses: list[str] | None = None) -> list[dict[str, Any]]:
        return self.call("list", service_id=service_id, statuses=statuses)["tickets"]

    def position(self, ticket_id: str) -> int:
        return int(self.call("position", ticket_id=ticket_id)["position"])

    def display(self) -> dict[str, Any]:
        return self.call("display")["board"]

    def events(self, since: int = 0) -> dict[str, Any]:
        return self.call("events", since=since)

    def summary(self) -> dict[str, Any]:
        return self.call("summary")["summary"]

    def services(self) -> list[dict[str, Any]]:
        return self.call("services")["services"]

    def counters(self, service_id: str | None = None) -> list[dict[str, Any]]:
        return self.call("counters", service_id=service_id)["counters"]


def _lookup_result(resp: dict[str, Any]) -> dict[str, Any]:
    return {
        "ticket": resp["ticket"],
        "position": resp["position"],
        "estimated_wait_seconds": resp.get("estimated_wait_seconds"),
    }


def connect(
    *,
    role: str,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    timeout: float = 8.0,
    token: str = "",
) -> DispatchClient:
    """Start an MqttClient and wrap it. Caller stops `client.transport`."""
    from .mqtt_client import MqttClient

    # Unique id so several kiosks/consoles can run at once.
    client_id = f"{role}-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()
    return DispatchClient(
        mqtt,
        client_id=client_id,
        namespace=namespace,
        timeout=timeout,
        token=token,
        actor=role,
    )
