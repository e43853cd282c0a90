"""
LiveGate — Errors

Exceptions raised across the engine. Transport drops are not errors here:
the event stream swallows them and reconnects.
"""

from __future__ import annotations

from typing import Any, Optional

# Statuses meaning "this server has no push channel at all"
UNSUPPORTED_STREAM_STATUSES = frozenset({404, 405, 501})


class LiveGateError(Exception):
    """Base class for all engine errors."""


class ApiHttpError(LiveGateError):
    """Non-2xx response from a REST endpoint."""

    def __init__(self, status: int, message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.payload = payload


class StreamHttpError(LiveGateError):
    """Non-2xx response when opening an event stream."""

    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"Stream request failed ({status})")
        self.status = status
        self.body = body


class StreamUnsupportedError(StreamHttpError):
    """The server does not support streaming for this endpoint. Never retried."""

    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(status, body)
        self.args = (f"Server does not support streaming ({status})",)


class AssistantNotConnectedError(LiveGateError):
    """A turn or event was sent while the assistant socket is not open."""


class AssistantDisabledError(AssistantNotConnectedError):
    """The assistant is disabled for this session (quota or server error)."""

    def __init__(self, reason: Optional[str]) -> None:
        super().__init__(reason or "Assistant is disabled")
        self.reason = reason


def stream_error_for(status: int, body: str = "") -> StreamHttpError:
    if status in UNSUPPORTED_STREAM_STATUSES:
        return StreamUnsupportedError(status, body)
    return StreamHttpError(status, body)
