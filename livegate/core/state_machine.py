"""
LiveGate — State Machines

Two explicit lifecycles, one enforcement mechanism:

  Admission:  LOADING → HOST_READY | GUEST_PREVIEW → REQUEST_PENDING
              → ADMITTED → LIVE → ENDED
  Assistant:  IDLE → PREFLIGHTING → CONNECTING → CONNECTED
              (↘ DISABLED | ERROR)

All state transitions go through this module so illegitimate states
are impossible and every transition is logged.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, Generic, List, Optional, Set, TypeVar

logger = logging.getLogger("livegate.state")


class AdmissionState(str, Enum):
    """Where this viewer stands with respect to the session."""
    LOADING = "loading"                  # Fetching the session
    HOST_READY = "host_ready"            # Host token present, fast path
    GUEST_PREVIEW = "guest_preview"      # May submit a join request
    REQUEST_PENDING = "request_pending"  # Waiting on the host
    REQUEST_DENIED = "request_denied"    # Terminal for that request
    ADMITTED = "admitted"                # Credentials captured
    LIVE = "live"                        # In the call
    ENDED = "ended"                      # See EndVariant
    ERROR = "error"                      # Unrecoverable data-load failure


class AssistantState(str, Enum):
    IDLE = "idle"
    PREFLIGHTING = "preflighting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISABLED = "disabled"    # Sticky: quota exhausted or server error
    ERROR = "error"          # Reconnects exhausted or preflight failed


_A = AdmissionState

ADMISSION_TRANSITIONS: Dict[AdmissionState, Set[AdmissionState]] = {
    _A.LOADING:         {_A.HOST_READY, _A.GUEST_PREVIEW, _A.REQUEST_PENDING, _A.REQUEST_DENIED,
                         _A.ADMITTED, _A.ENDED, _A.ERROR},
    _A.HOST_READY:      {_A.ADMITTED, _A.ENDED, _A.ERROR},
    _A.GUEST_PREVIEW:   {_A.REQUEST_PENDING, _A.HOST_READY, _A.ENDED, _A.ERROR},
    _A.REQUEST_PENDING: {_A.REQUEST_DENIED, _A.ADMITTED, _A.GUEST_PREVIEW, _A.ENDED, _A.ERROR},
    _A.REQUEST_DENIED:  {_A.GUEST_PREVIEW, _A.ENDED},
    _A.ADMITTED:        {_A.LIVE, _A.ENDED, _A.ERROR},
    _A.LIVE:            {_A.ENDED, _A.ERROR},
    # A voluntary leave may be followed by a fresh join attempt
    _A.ENDED:           {_A.GUEST_PREVIEW, _A.HOST_READY},
    _A.ERROR:           {_A.LOADING, _A.ENDED},
}

_S = AssistantState

ASSISTANT_TRANSITIONS: Dict[AssistantState, Set[AssistantState]] = {
    _S.IDLE:         {_S.PREFLIGHTING, _S.DISABLED},
    _S.PREFLIGHTING: {_S.CONNECTING, _S.DISABLED, _S.ERROR, _S.IDLE},
    _S.CONNECTING:   {_S.CONNECTED, _S.PREFLIGHTING, _S.DISABLED, _S.ERROR, _S.IDLE},
    _S.CONNECTED:    {_S.CONNECTING, _S.PREFLIGHTING, _S.DISABLED, _S.ERROR, _S.IDLE},
    _S.DISABLED:     {_S.PREFLIGHTING, _S.IDLE},
    _S.ERROR:        {_S.PREFLIGHTING, _S.DISABLED, _S.IDLE},
}

StateT = TypeVar("StateT", bound=Enum)


class StateMachine(Generic[StateT]):
    """
    Enforces legal state transitions and notifies listeners.

    Usage:
        sm = StateMachine("assistant", AssistantState.IDLE, ASSISTANT_TRANSITIONS)
        sm.transition(AssistantState.PREFLIGHTING)   # OK
        sm.transition(AssistantState.CONNECTED)      # illegal → raises
    """

    def __init__(
        self,
        name: str,
        initial: StateT,
        transitions: Dict[StateT, Set[StateT]],
        on_transition: Optional[Callable[[StateT, StateT, str], None]] = None,
    ) -> None:
        self._name = name
        self._state = initial
        self._transitions = transitions
        self._on_transition = on_transition
        self._history: List[Dict] = []
        self._entered_at = time.time()

    @property
    def state(self) -> StateT:
        return self._state

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    def can_transition(self, target: StateT) -> bool:
        return target == self._state or target in self._transitions.get(self._state, set())

    def transition(self, target: StateT, reason: str = "") -> None:
        """
        Attempt a state transition. Raises ValueError on illegal transitions.
        """
        if target == self._state:
            return  # same state, no-op

        allowed = self._transitions.get(self._state, set())
        if target not in allowed:
            raise ValueError(
                f"Illegal {self._name} transition: {self._state.value} → {target.value}. "
                f"Allowed from {self._state.value}: {sorted(s.value for s in allowed)}. "
                f"Reason: {reason}"
            )

        prev = self._state
        now = time.time()
        self._history.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._entered_at) * 1000, 1),
        })
        self._state = target
        self._entered_at = now

        logger.info(
            f"{self._name.upper()}: {prev.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )

        if self._on_transition:
            try:
                self._on_transition(prev, target, reason)
            except Exception as e:
                logger.error(f"State transition callback error: {e}")
