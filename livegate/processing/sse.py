"""
LiveGate — Event Stream Parser

Incremental line parser for text/event-stream bodies:

  event: <name>      sets the event name (default "message")
  data: <chunk>      appended to the data buffer, newline-joined
  : <anything>       comment / keepalive
  <blank line>       dispatches the pending event (if it has data)

Fields other than event/data (id, retry) are ignored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

DEFAULT_EVENT = "message"


@dataclass(frozen=True)
class ServerEvent:
    event: str
    data: str

    def json(self) -> Optional[Any]:
        """Decoded data, or None when it is not valid JSON."""
        try:
            return json.loads(self.data)
        except ValueError:
            return None


class EventStreamParser:
    def __init__(self) -> None:
        self._event = DEFAULT_EVENT
        self._data: List[str] = []

    def feed_line(self, line: str) -> Optional[ServerEvent]:
        """Consume one line (without its terminator); returns a completed event."""
        line = line.rstrip("\r")
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if not sep:
            value = ""
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value.strip() or DEFAULT_EVENT
        elif field == "data":
            self._data.append(value)
        return None

    def feed(self, lines: Iterable[str]) -> List[ServerEvent]:
        events = []
        for line in lines:
            evt = self.feed_line(line)
            if evt is not None:
                events.append(evt)
        return events

    def finish(self) -> Optional[ServerEvent]:
        """Flush an event left pending when the body ends without a blank line."""
        return self._dispatch()

    def _dispatch(self) -> Optional[ServerEvent]:
        event, data = self._event, self._data
        self._event = DEFAULT_EVENT
        self._data = []
        if not data:
            return None
        return ServerEvent(event=event, data="\n".join(data))
