"""Shared error types and the error envelope.

Every failure inside the dispatch core is raised as a `QueueError`
subclass. The transport layer turns them into an `ErrorResponse` envelope
and the client turns envelopes back into the same exception classes, so
callers on both sides of the bus branch on the same types.

`retryable` marks errors a client may simply try again (lost races and
timeouts). Everything else is a user error to surface directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class QueueError(Exception):
    code = "queue_error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, self.message, retryable=self.retryable)


class NotFound(QueueError):
    code = "not_found"


class UnknownService(QueueError):
    code = "unknown_service"


class UnknownCounter(QueueError):
    code = "unknown_counter"


class InvalidState(QueueError):
    code = "invalid_state"


class EmptyQueue(QueueError):
    code = "empty_queue"


class SequenceExhausted(QueueError):
    """A service ran out of 3-digit codes for the day."""

    code = "sequence_exhausted"


class Conflict(QueueError):
    """A concurrent writer won the race for the same ticket."""

    code = "conflict"
    retryable = True


class DispatchTimeout(QueueError, TimeoutError):
    code = "timeout"
    retryable = True


class BadRequest(QueueError):
    code = "bad_request"


class Unauthorized(QueueError):
    code = "unauthorized"


ERRORS_BY_CODE: dict[str, type[QueueError]] = {
    cls.code: cls
    for cls in (
        NotFound,
        UnknownService,
        UnknownCounter,
        InvalidState,
        EmptyQueue,
        SequenceExhausted,
        Conflict,
        DispatchTimeout,
        BadRequest,
        Unauthorized,
    )
}


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str
    retryable: bool = False

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> ErrorResponse:
        return cls(
            code=str(msg.get("code", "queue_error")),
            message=str(msg.get("message", "")),
            retryable=bool(msg.get("retryable", False)),
        )

    def to_exception(self) -> QueueError:
        exc_cls = ERRORS_BY_CODE.get(self.code, QueueError)
        return exc_cls(self.message)
