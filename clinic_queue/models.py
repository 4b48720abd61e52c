from __future__ import annotations

# Canonical records of the dispatch core.
#
# Tickets are frozen: the store replaces a record on every write, so a
# reader holding a Ticket always sees one consistent version of it.

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import BadRequest

NOTE_MAX_LENGTH = 120

PREFIX_RE = re.compile(r"^[A-Z]$")


class TicketStatus(str, Enum):
    WAITING = "Waiting"
    CALLED = "Called"
    SERVING = "Serving"
    FINISHED = "Finished"
    NO_SHOW = "NoShow"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TicketStatus.FINISHED, TicketStatus.NO_SHOW})
ACTIVE_STATUSES = frozenset({TicketStatus.WAITING, TicketStatus.CALLED, TicketStatus.SERVING})


class Triage(str, Enum):
    """Clinical priority, most urgent first."""

    RED = "RED"
    ORANGE = "ORANGE"
    YELLOW = "YELLOW"
    GREEN = "GREEN"
    BLUE = "BLUE"


@dataclass
class Service:
    id: str
    name: str
    prefix: str
    is_active: bool = True

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("service id required")
        if not PREFIX_RE.match(self.prefix):
            raise ValueError(f"service prefix must be one uppercase letter, got {self.prefix!r}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Counter:
    id: str
    name: str
    service_id: str
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Ticket:
    id: str
    code: str
    service_id: str
    enqueued_at: datetime
    status: TicketStatus = TicketStatus.WAITING
    triage: Triage | None = None
    preferente: bool = False
    counter_id: str | None = None
    # Last counter the ticket was called to. Unlike counter_id it survives
    # Finished and NoShow, so analytics can attribute served tickets.
    served_by: str | None = None
    called_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    note: str | None = None
    doc_value: str | None = None
    appointment_id: str | None = None
    source: str = "kiosk"
    revision: int = field(default=0, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view used on the wire."""

        def ts(value: datetime | None) -> str | None:
            return value.isoformat() if value is not None else None

        return {
            "id": self.id,
            "code": self.code,
            "service_id": self.service_id,
            "status": self.status.value,
            "triage": self.triage.value if self.triage else None,
            "preferente": self.preferente,
            "counter_id": self.counter_id,
            "served_by": self.served_by,
            "enqueued_at": ts(self.enqueued_at),
            "called_at": ts(self.called_at),
            "started_at": ts(self.started_at),
            "finished_at": ts(self.finished_at),
            "note": self.note,
            "doc_value": self.doc_value,
            "appointment_id": self.appointment_id,
            "source": self.source,
            "revision": self.revision,
        }


def parse_triage(value: Triage | str | None) -> Triage | None:
    """Accept an enum member, its name in any case, or None/empty."""
    if value is None or isinstance(value, Triage):
        return value
    text = str(value).strip().upper()
    if not text:
        return None
    try:
        return Triage(text)
    except ValueError:
        raise BadRequest(f"unknown triage level {value!r}") from None


def clip_note(note: str | None) -> str | None:
    if note is None:
        return None
    return note[:NOTE_MAX_LENGTH]
