"""
LiveGate — Assistant Event Classification

Maps raw inbound assistant-stream payloads onto the handful of kinds the
session acts on. Unknown shapes classify as OTHER and are ignored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..core.models import UsageSnapshot


class EventKind(str, Enum):
    SCOPE_VIOLATION = "scope_violation"
    LIMIT_REACHED = "limit_reached"
    ERROR = "error"
    DELTA = "delta"                  # streamed text fragment
    TEXT_DONE = "text_done"          # complete text of one output part
    RESPONSE_DONE = "response_done"  # end of one response
    OTHER = "other"


@dataclass(frozen=True)
class AssistantEvent:
    kind: EventKind
    type: str = ""
    text: str = ""
    message: Optional[str] = None
    usage: UsageSnapshot = field(default_factory=UsageSnapshot)
    mentions_audio: bool = False


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _error_message(payload: Dict[str, Any]) -> Optional[str]:
    err = payload.get("error")
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    if isinstance(err, str) and err:
        return err
    msg = payload.get("message")
    return msg if isinstance(msg, str) and msg else None


def extract_response_text(response: Any) -> str:
    """Concatenate output_text/text parts of a `response.done` payload."""
    if not isinstance(response, dict):
        return ""
    output = response.get("output")
    if not isinstance(output, list):
        return ""
    chunks = []
    for item in output:
        content = item.get("content") if isinstance(item, dict) else None
        if not isinstance(content, list):
            continue
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") in ("output_text", "text") and isinstance(part.get("text"), str):
                chunks.append(part["text"])
    return "".join(chunks)


def decode(raw: Any) -> Optional[Dict[str, Any]]:
    """Socket frame → dict, or None for binary / malformed / non-object frames."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def classify(payload: Dict[str, Any]) -> AssistantEvent:
    etype = _str(payload.get("type"))
    usage = UsageSnapshot.from_payload(payload)
    audio = "audio" in etype

    if etype == "scope.violation":
        return AssistantEvent(EventKind.SCOPE_VIOLATION, etype, message=_error_message(payload), usage=usage)
    if etype == "limit.reached":
        return AssistantEvent(EventKind.LIMIT_REACHED, etype, message=_error_message(payload), usage=usage)
    if etype == "error":
        return AssistantEvent(EventKind.ERROR, etype, message=_error_message(payload), usage=usage)

    if etype.endswith(".delta") and not audio:
        text = _str(payload.get("delta")) or _str(payload.get("text")) or _str(payload.get("chunk"))
        return AssistantEvent(EventKind.DELTA, etype, text=text, usage=usage)

    if etype == "response.done":
        text = extract_response_text(payload.get("response"))
        return AssistantEvent(EventKind.RESPONSE_DONE, etype, text=text, usage=usage)

    if etype.endswith(".done") and "output_text" in etype:
        text = _str(payload.get("text")) or _str(payload.get("output_text"))
        return AssistantEvent(EventKind.TEXT_DONE, etype, text=text, usage=usage)

    return AssistantEvent(EventKind.OTHER, etype, usage=usage, mentions_audio=audio)
