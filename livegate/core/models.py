"""
LiveGate — Data Models

Dataclasses for every piece of data flowing through the engine.
Wire payloads use camelCase and epoch milliseconds; models use snake_case
and epoch seconds. Parsing lives next to each model.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_int(value: Any) -> Optional[int]:
    # bool is an int subclass; a flag is not a counter
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def ms_to_seconds(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) / 1000.0


def seconds_to_ms(value: Optional[float]) -> Optional[int]:
    return None if value is None else int(round(value * 1000))


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

class Role(str, Enum):
    HOST = "host"
    PARTICIPANT = "participant"
    OBSERVER = "observer"

    @classmethod
    def parse(cls, value: Any, default: Optional["Role"] = None) -> Optional["Role"]:
        try:
            return cls(value)
        except ValueError:
            return default


class JoinStatus(str, Enum):
    PENDING = "pending"
    DENIED = "denied"
    ADMITTED = "admitted"


class EndVariant(str, Enum):
    """Why a session view is over."""
    ENDED = "ended"        # server ended it, or it expired
    LEFT = "left"          # the viewer left voluntarily
    MISSING = "missing"    # never existed / unknown id


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Session:
    """Read-only projection of a remote session."""
    id: str
    kind: str = "normal"               # "normal" | "verdict"
    scope: Optional[str] = None
    context: Optional[str] = None
    expires_at: Optional[float] = None  # epoch seconds

    @property
    def is_verdict(self) -> bool:
        return self.kind == "verdict"

    @classmethod
    def from_payload(cls, payload: Any, fallback_id: str = "") -> Optional["Session"]:
        if not isinstance(payload, dict):
            return None
        sid = _as_str(payload.get("id")) or _as_str(payload.get("sessionId")) or _as_str(fallback_id)
        if not sid:
            return None
        kind = "verdict" if payload.get("type") == "verdict" else "normal"
        return cls(
            id=sid,
            kind=kind,
            scope=_as_str(payload.get("scope")),
            context=_as_str(payload.get("context")),
            expires_at=ms_to_seconds(payload.get("expiresAt")),
        )


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallCredentials:
    """Everything needed to join the call once admitted."""
    assigned_role: Role
    room_address: str
    access_token: str
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignedRole": self.assigned_role.value,
            "roomAddress": self.room_address,
            "streamToken": self.access_token,
            "requestId": self.request_id,
        }

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        default_role: Role = Role.PARTICIPANT,
        request_id: Optional[str] = None,
    ) -> Optional["CallCredentials"]:
        if not isinstance(payload, dict):
            return None
        room = _as_str(payload.get("roomAddress"))
        token = _as_str(payload.get("streamToken"))
        if not room or not token:
            return None
        role = Role.parse(payload.get("assignedRole") or payload.get("role"), default_role)
        return cls(
            assigned_role=role,
            room_address=room,
            access_token=token,
            request_id=_as_str(payload.get("requestId")) or request_id,
        )


@dataclass
class JoinRequest:
    request_id: str
    requested_role: Role = Role.PARTICIPANT
    status: JoinStatus = JoinStatus.PENDING
    credentials: Optional[CallCredentials] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "requestedRole": self.requested_role.value,
            "status": self.status.value,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["JoinRequest"]:
        if not isinstance(payload, dict):
            return None
        rid = _as_str(payload.get("requestId"))
        if not rid:
            return None
        try:
            status = JoinStatus(payload.get("status", "pending"))
        except ValueError:
            status = JoinStatus.PENDING
        role = Role.parse(payload.get("requestedRole") or payload.get("role"), Role.PARTICIPANT)
        if role == Role.HOST:
            role = Role.PARTICIPANT
        return cls(request_id=rid, requested_role=role, status=status)


@dataclass(frozen=True)
class PendingRequest:
    """One entry of the host's pending queue."""
    request_id: str
    role: Role = Role.PARTICIPANT
    display_name: Optional[str] = None
    created_at: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["PendingRequest"]:
        if not isinstance(payload, dict):
            return None
        rid = _as_str(payload.get("requestId")) or _as_str(payload.get("id"))
        if not rid:
            return None
        role = Role.parse(payload.get("role") or payload.get("requestedRole"), Role.PARTICIPANT)
        return cls(
            request_id=rid,
            role=Role.OBSERVER if role == Role.OBSERVER else Role.PARTICIPANT,
            display_name=_as_str(payload.get("displayName")),
            created_at=ms_to_seconds(payload.get("createdAt")),
        )


# ---------------------------------------------------------------------------
# Assistant
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PreflightResult:
    """Response of the assistant connect preflight."""
    stream_endpoint: str
    stream_token: Optional[str] = None
    usage_count: Optional[int] = None
    usage_limit: Optional[int] = None
    remaining: Optional[int] = None
    expires_at: Optional[float] = None

    @property
    def exhausted(self) -> bool:
        return self.remaining is not None and self.remaining <= 0


@dataclass(frozen=True)
class UsageSnapshot:
    """Server-reported quota counters carried by any assistant payload."""
    remaining: Optional[int] = None
    used: Optional[int] = None
    limit: Optional[int] = None

    @property
    def empty(self) -> bool:
        return self.remaining is None and self.used is None and self.limit is None

    @classmethod
    def from_payload(cls, payload: Any) -> "UsageSnapshot":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            remaining=_as_int(payload.get("remaining")),
            used=_as_int(payload.get("usageCount")),
            limit=_as_int(payload.get("usageLimit")),
        )


@dataclass
class QuotaState:
    remaining: Optional[int] = None
    used: Optional[int] = None
    limit: Optional[int] = None
    disabled_reason: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remaining": self.remaining,
            "used": self.used,
            "limit": self.limit,
            "disabledReason": self.disabled_reason,
            "updatedAt": seconds_to_ms(self.updated_at),
        }

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["QuotaState"]:
        if not isinstance(payload, dict):
            return None
        reason = payload.get("disabledReason")
        updated = ms_to_seconds(payload.get("updatedAt"))
        return cls(
            remaining=_as_int(payload.get("remaining")),
            used=_as_int(payload.get("used")),
            limit=_as_int(payload.get("limit")),
            disabled_reason=reason if isinstance(reason, str) and reason else None,
            updated_at=updated if updated is not None else 0.0,
        )


@dataclass
class AssistantMessage:
    """A single message in the assistant conversation."""
    role: str = "assistant"      # "user" | "assistant" | "system"
    content: str = ""
    kind: Optional[str] = None   # system notices: "scope_violation" | "error" | "warning"
    complete: bool = True        # False while a response is still streaming
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AssistantTelemetry:
    """Per-connection counters — debugging aid, never affects behaviour."""
    sent: int = 0
    received: int = 0
    last_sent_type: Optional[str] = None
    last_received_type: Optional[str] = None
    last_send_error: Optional[str] = None
    last_close_code: Optional[int] = None
    last_close_reason: Optional[str] = None
    token_expires_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Call roster
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Participant:
    id: str
    name: str
    role: Role = Role.PARTICIPANT
    is_local: bool = False
    audio_on: bool = False


@dataclass(frozen=True)
class Notice:
    """A recoverable, user-visible notice."""
    kind: str            # "error" | "warning" | "info" | "audio"
    message: str
    timestamp: float = field(default_factory=time.time)


def parse_requests(items: Any) -> List[PendingRequest]:
    if not isinstance(items, list):
        return []
    parsed = (PendingRequest.from_payload(item) for item in items)
    return [p for p in parsed if p is not None]
