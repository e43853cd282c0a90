"""
LiveGate — Call Backend Adapter

Wraps one opaque call-client handle (see core/interfaces.CallBackend).
The backend owns media transport and its own reconnection; this adapter
only:
  • joins once per admission (single in-flight guard, muted by default),
  • maps the backend roster onto Participant records,
  • turns backend errors into recoverable notices,
  • reports "session ended" signals back to the admission machine,
  • tears down idempotently.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.interfaces import CallBackend
from ..core.models import CallCredentials, Notice, Participant, Role

logger = logging.getLogger("livegate.call")

CallFactory = Callable[[], CallBackend]

_PLACEHOLDER_NAMES = {"you", "guest"}
_ENDED_MESSAGES = {"session-ended", "session-ending"}
_ROSTER_EVENTS = ("participant-joined", "participant-updated", "participant-left")

RECONNECT_AUDIO_NOTICE = "Audio playback was interrupted. Reconnect audio to hear the call."


class CallConnection:
    def __init__(
        self,
        session_id: str,
        factory: CallFactory,
        on_session_ended: Optional[Callable[[str], Any]] = None,
        on_notice: Optional[Callable[[Notice], Any]] = None,
        on_roster: Optional[Callable[[List[Participant]], Any]] = None,
    ) -> None:
        self.session_id = session_id
        self._factory = factory
        self._on_session_ended = on_session_ended
        self._on_notice = on_notice
        self._on_roster = on_roster

        self._handle: Optional[CallBackend] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {}
        self._credentials: Optional[CallCredentials] = None
        self._joining = False
        self._leaving = False
        self._tasks: Set[asyncio.Task] = set()

        self.joined = False
        self.muted = True
        self.roster: List[Participant] = []
        self.notices: List[Notice] = []
        self._labels: Dict[str, str] = {}
        self._label_counters: Dict[Role, int] = {Role.PARTICIPANT: 0, Role.OBSERVER: 0}

    @property
    def role(self) -> Optional[Role]:
        return self._credentials.assigned_role if self._credentials else None

    # ── Join / leave ─────────────────────────────────────────────────────

    async def join(self, credentials: CallCredentials) -> bool:
        if self._joining or self._handle is not None:
            logger.info(f"[{self.session_id}] Call join already in progress or joined")
            return False
        self._joining = True
        self._leaving = False
        self._credentials = credentials
        handle = self._factory()
        self._handle = handle
        self._subscribe(handle)
        try:
            # Mic stays off until the viewer unmutes
            handle.set_local_audio(False)
            await handle.join(credentials.room_address, credentials.access_token)
            handle.set_local_audio(False)
            self.muted = True
            self.joined = True
            logger.info(f"[{self.session_id}] Joined call as {credentials.assigned_role.value}")
            self._refresh_roster()
            return True
        except Exception as e:
            logger.warning(f"[{self.session_id}] Call join failed: {e}")
            self._notify("error", f"Could not join the call: {e}")
            await self._discard_handle()
            return False
        finally:
            self._joining = False

    async def leave(self) -> None:
        self._leaving = True
        await self.teardown()

    async def teardown(self) -> None:
        """Idempotent — safe to call from every exit path."""
        await self._discard_handle()
        for task in list(self._tasks):
            if task is not asyncio.current_task() and not task.done():
                task.cancel()

    async def reconnect_audio(self) -> bool:
        """Leave and rejoin with the same credentials (recovers blocked playback)."""
        creds = self._credentials
        if creds is None:
            return False
        self._leaving = True
        await self._discard_handle()
        return await self.join(creds)

    async def _discard_handle(self) -> None:
        handle, self._handle = self._handle, None
        self.joined = False
        if handle is None:
            return
        for event, handler in self._handlers.items():
            try:
                handle.off(event, handler)
            except Exception as e:
                logger.debug(f"[{self.session_id}] off({event}) ignored: {e}")
        self._handlers = {}
        try:
            await handle.leave()
        except Exception as e:
            logger.debug(f"[{self.session_id}] leave() ignored: {e}")
        try:
            await handle.destroy()
        except Exception as e:
            logger.debug(f"[{self.session_id}] destroy() ignored: {e}")

    # ── Audio ────────────────────────────────────────────────────────────

    def set_muted(self, muted: bool) -> bool:
        """Returns the effective mute state. Observers are always muted."""
        if not muted and self.role == Role.OBSERVER:
            self._notify("info", "Observers cannot unmute.")
            return self.muted
        if self._handle is None or not self.joined:
            return self.muted
        self._handle.set_local_audio(not muted)
        self.muted = muted
        return self.muted

    def broadcast(self, message_type: str) -> None:
        if self._handle is None or not self.joined:
            return
        try:
            self._handle.send_app_message({"type": message_type})
        except Exception as e:
            logger.warning(f"[{self.session_id}] App message '{message_type}' failed: {e}")

    # ── Backend events ───────────────────────────────────────────────────

    def _subscribe(self, handle: CallBackend) -> None:
        self._handlers = {event: self._on_roster_event for event in _ROSTER_EVENTS}
        self._handlers["app-message"] = self._on_app_message
        self._handlers["left-meeting"] = self._on_left_meeting
        self._handlers["error"] = self._on_error
        self._handlers["playback-error"] = self._on_playback_error
        for event, handler in self._handlers.items():
            handle.on(event, handler)

    def _on_roster_event(self, _event: Dict[str, Any]) -> None:
        self._refresh_roster()

    def _on_app_message(self, event: Dict[str, Any]) -> None:
        data = event.get("data") if isinstance(event, dict) else None
        if isinstance(data, dict) and data.get("type") in _ENDED_MESSAGES:
            self._signal_ended(data["type"])

    def _on_left_meeting(self, _event: Dict[str, Any]) -> None:
        self.joined = False
        if not self._leaving:
            # Removed without asking: the host ended the call
            self._signal_ended("left-meeting")

    def _on_error(self, event: Dict[str, Any]) -> None:
        message = event.get("errorMsg") or event.get("message") or "Call error"
        self._notify("error", str(message))

    def _on_playback_error(self, _event: Dict[str, Any]) -> None:
        self._notify("audio", RECONNECT_AUDIO_NOTICE)

    def _signal_ended(self, reason: str) -> None:
        logger.info(f"[{self.session_id}] Call reports session over ({reason})")
        self._call(self._on_session_ended, reason)

    # ── Roster ───────────────────────────────────────────────────────────

    def _refresh_roster(self) -> None:
        if self._handle is None:
            return
        try:
            raw = self._handle.participants()
        except Exception as e:
            logger.debug(f"[{self.session_id}] participants() failed: {e}")
            return
        self.roster = self._map_roster(raw)
        self._call(self._on_roster, list(self.roster))

    def _map_roster(self, raw: Dict[str, Dict[str, Any]]) -> List[Participant]:
        people = []
        for pid, info in raw.items():
            if not isinstance(info, dict):
                continue
            local = bool(info.get("local"))
            user_data = info.get("userData") if isinstance(info.get("userData"), dict) else {}
            if info.get("owner"):
                role = Role.HOST
            else:
                role = Role.parse(user_data.get("role"), Role.PARTICIPANT)
            name = str(info.get("userName") or "").strip()
            if local:
                name = "You"
            elif not name or name.lower() in _PLACEHOLDER_NAMES:
                name = self._anonymous_label(pid, role)
            people.append(Participant(
                id=str(info.get("sessionId") or pid),
                name=name,
                role=role,
                is_local=local,
                audio_on=bool(info.get("audio")),
            ))
        people.sort(key=lambda p: (not p.is_local, p.role != Role.HOST))
        return people

    def _anonymous_label(self, pid: str, role: Role) -> str:
        if role == Role.HOST:
            return "Host"
        label = self._labels.get(pid)
        if label is None:
            self._label_counters[role] += 1
            label = f"{role.value.capitalize()} {self._label_counters[role]}"
            self._labels[pid] = label
        return label

    # ── Helpers ──────────────────────────────────────────────────────────

    def _notify(self, kind: str, message: str) -> None:
        notice = Notice(kind=kind, message=message)
        self.notices.append(notice)
        self._call(self._on_notice, notice)

    def _call(self, callback: Optional[Callable], *args: Any) -> None:
        """Backend events arrive synchronously; async callbacks run as tasks."""
        if callback is None:
            return
        try:
            cb = callback(*args)
        except Exception as e:
            logger.error(f"[{self.session_id}] Call callback error: {e}")
            return
        if asyncio.iscoroutine(cb):
            self._spawn(cb)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
