"""
LiveGate — Assistant Transcript

================================================================================
OUTPUT RECONSTRUCTION + CHARGE LEDGER
================================================================================

Rebuilds the conversation from the assistant's streamed events and decides
when a submitted turn is actually charged:

  1. Every outbound user turn adds one pending charge.
  2. The first content of a response (fragment, final text, or the text of
     `response.done`) converts one pending charge into a confirmed charge.
     At most one charge per response.
  3. A scope violation discards one pending charge — zero quota impact.
  4. Fragments of one response concatenate into one message; a final text
     event replaces the streamed content instead of appending a duplicate.

The ledger never touches storage itself — confirmed charges are reported
through `on_charge` and the session persists them.
================================================================================
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Deque, List, Optional

from ..core.models import AssistantMessage

logger = logging.getLogger("livegate.transcript")


class AssistantTranscript:
    def __init__(
        self,
        session_id: str,
        on_charge: Optional[Callable[[], Any]] = None,
        max_messages: int = 200,
    ) -> None:
        self.session_id = session_id
        self._on_charge = on_charge
        self._messages: Deque[AssistantMessage] = deque(maxlen=max_messages)

        # Charge ledger
        self._pending = 0
        self._charged = False
        self.confirmed = 0

        # Message being built for the current response
        self._current: Optional[AssistantMessage] = None

    @property
    def messages(self) -> List[AssistantMessage]:
        return list(self._messages)

    @property
    def pending_charges(self) -> int:
        return self._pending

    @property
    def streaming(self) -> Optional[AssistantMessage]:
        return self._current

    # ── Outbound ─────────────────────────────────────────────────────────

    def add_user(self, text: str) -> AssistantMessage:
        msg = AssistantMessage(role="user", content=text)
        self._messages.append(msg)
        return msg

    def submit_turn(self) -> None:
        self._pending += 1

    def add_notice(self, text: str, kind: str) -> AssistantMessage:
        msg = AssistantMessage(role="system", content=text, kind=kind)
        self._messages.append(msg)
        return msg

    # ── Inbound ──────────────────────────────────────────────────────────

    def on_fragment(self, text: str) -> Optional[AssistantMessage]:
        if not text:
            return None
        self._charge_once()
        if self._current is None:
            self._current = AssistantMessage(role="assistant", content=text, complete=False)
            self._messages.append(self._current)
        else:
            self._current.content += text
        return self._current

    def on_text_done(self, text: str) -> Optional[AssistantMessage]:
        if not text:
            return self._current
        self._charge_once()
        if self._current is None:
            self._current = AssistantMessage(role="assistant", content=text, complete=False)
            self._messages.append(self._current)
        else:
            self._current.content = text
        return self._current

    def on_response_done(self, text: str) -> Optional[AssistantMessage]:
        """Finalises the streamed message, or builds one from the response text."""
        msg = self._current
        if msg is not None:
            msg.complete = True
        elif text:
            self._charge_once()
            msg = AssistantMessage(role="assistant", content=text)
            self._messages.append(msg)
        self.end_response()
        return msg

    def on_scope_violation(self, notice: str) -> AssistantMessage:
        if self._pending > 0:
            self._pending -= 1
        logger.info(f"[{self.session_id}] Scope violation, turn not charged")
        self.end_response()
        return self.add_notice(notice, kind="scope_violation")

    def end_response(self) -> None:
        self._current = None
        self._charged = False

    def drop_pending(self) -> None:
        """Forget uncharged turns (socket gone or assistant disabled)."""
        self._pending = 0
        self.end_response()

    def _charge_once(self) -> None:
        if self._charged or self._pending <= 0:
            return
        self._pending -= 1
        self._charged = True
        self.confirmed += 1
        if self._on_charge:
            self._on_charge()
