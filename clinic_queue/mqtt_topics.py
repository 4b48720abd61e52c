"""MQTT topic helpers.

Topic construction lives in one place so the server and every client agree
on naming.

Topic layout (v0) under a configurable namespace (default: `clinic/v0`):

Request/response:
- `<ns>/dispatch/requests`
    Kiosks, operator consoles and lookups publish operations here.
- `<ns>/dispatch/responses/<client_id>`
    The server answers each request on the `reply_to` topic it names.

Streaming/broadcast:
- `<ns>/events`
    Every committed ticket transition, in revision order (push feed).
- `<ns>/display`
    Periodic display board snapshots for waiting-room screens.
- `<ns>/status`
    Server heartbeat with the current store revision.

Several independent demos can share one broker by changing `--namespace`.
"""

from __future__ import annotations

from .config import DEFAULT_NAMESPACE


def dispatch_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/dispatch/requests"


def dispatch_responses(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/dispatch/responses/{client_id}"


def events(namespace: str = DEFAULT_NAMESPACE) -> str:
    """Push stream of feed events; display chimes and analytics subscribe here."""
    return f"{namespace}/events"


def display(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/display"


def server_status(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/status"
