"""
LiveGate — Join Admission

================================================================================
ONE-SHOT JOIN REQUEST → LIVE SESSION, WITHOUT POLLING
================================================================================

  load()         fetch the session and decide the starting state:
                   410 → ENDED(ended), 404 → ENDED(missing)
                   host token            → HOST_READY
                   exit record "left"    → GUEST_PREVIEW (stale cache dropped)
                   cached credentials    → LIVE
                   cached pending request→ REQUEST_PENDING (stream reopened)
                   otherwise             → GUEST_PREVIEW
  submit_join()  host: authenticated join, credentials at once
                 guest: create a JoinRequest and follow its status stream
  try_again()    REQUEST_DENIED → GUEST_PREVIEW, request cache dropped
  leave()        exit record first, then ENDED(left)

The session's expiry instant is enforced locally with a scheduled callback;
it ends the session even if the server never says so.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from ..core.errors import ApiHttpError, StreamUnsupportedError
from ..core.models import (
    CallCredentials,
    EndVariant,
    JoinRequest,
    JoinStatus,
    Notice,
    Role,
    Session,
)
from ..core.state_machine import ADMISSION_TRANSITIONS, AdmissionState, StateMachine
from ..processing.sse import ServerEvent
from .api_client import SessionApi
from .event_stream import ResilientEventStream
from .viewer_cache import ViewerCache

logger = logging.getLogger("livegate.admission")

STREAM_UNSUPPORTED_MESSAGE = (
    "Live updates unavailable. The server does not support streaming join requests."
)
LEFT_NOTICE = "You left this session. Request to join again to return."


class JoinAdmissionMachine:
    """
    Drives one viewer from "opened a session link" to "in the call".

    Callbacks (sync or async):
      on_live(credentials)  — entered LIVE; join the call with these
      on_ended(variant)     — entered ENDED; tear everything down
      on_notice(notice)     — recoverable, user-visible message
    """

    def __init__(
        self,
        session_id: str,
        api: SessionApi,
        cache: ViewerCache,
        stream: ResilientEventStream,
        on_live: Optional[Callable[[CallCredentials], Any]] = None,
        on_ended: Optional[Callable[[EndVariant], Any]] = None,
        on_notice: Optional[Callable[[Notice], Any]] = None,
        on_state: Optional[Callable[[AdmissionState, AdmissionState, str], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_id = session_id
        self._api = api
        self._cache = cache
        self._stream = stream
        self._on_live = on_live
        self._on_ended = on_ended
        self._on_notice = on_notice
        self._clock = clock

        self._sm = StateMachine("admission", AdmissionState.LOADING, ADMISSION_TRANSITIONS, on_transition=on_state)

        self.session: Optional[Session] = None
        self.role: Optional[Role] = None
        self.join_request: Optional[JoinRequest] = None
        self.credentials: Optional[CallCredentials] = None
        self.end_variant: Optional[EndVariant] = None
        self.error: Optional[str] = None
        self.notices: List[Notice] = []

        self._join_in_flight = False
        self._stream_task: Optional[asyncio.Task] = None
        self._stream_stop = asyncio.Event()
        self._expires_at: Optional[float] = None
        self._expiry_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    # ── Read-only views ──────────────────────────────────────────────────

    @property
    def state(self) -> AdmissionState:
        return self._sm.state

    @property
    def history(self) -> List[Dict]:
        return self._sm.history

    @property
    def is_host(self) -> bool:
        return self.role == Role.HOST

    @property
    def expires_at(self) -> Optional[float]:
        return self._expires_at

    @property
    def streaming(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    def share_location(self, base_url: str) -> str:
        """Link that lets this viewer rediscover an outstanding request after a restart."""
        location = f"{base_url.rstrip('/')}/session/{self.session_id}"
        if self.join_request is not None and not self.is_host:
            location += f"?request={self.join_request.request_id}"
        return location

    # ── Load ─────────────────────────────────────────────────────────────

    async def load(self, request_id: Optional[str] = None) -> AdmissionState:
        self._sm.transition(AdmissionState.LOADING, reason="load")
        self.error = None

        if not self.session_id:
            await self._end(EndVariant.MISSING, "no session id")
            return self.state

        persisted = self._cache.expires_at
        if persisted is not None and self._arm_expiry(persisted):
            await self._end(EndVariant.ENDED, "expired")
            return self.state

        try:
            session = await self._api.fetch_session(self.session_id)
        except ApiHttpError as e:
            if e.status == 410:
                await self._end(EndVariant.ENDED, "session ended")
            elif e.status == 404:
                await self._end(EndVariant.MISSING, "session not found")
            else:
                self._fail(e.message)
            return self.state
        except httpx.HTTPError as e:
            self._fail(f"Could not load session: {e}")
            return self.state

        self.session = session
        if session.expires_at is not None and self._arm_expiry(session.expires_at):
            await self._end(EndVariant.ENDED, "expired")
            return self.state

        if self._cache.host_token:
            self.role = Role.HOST
            self._cache.forget_request_state()
            self._sm.transition(AdmissionState.HOST_READY, reason="host token")
            return self.state

        if self._cache.exit_variant == EndVariant.LEFT:
            self._cache.forget_request_state()
            await self._notify("info", LEFT_NOTICE)
            self._sm.transition(AdmissionState.GUEST_PREVIEW, reason="left earlier")
            return self.state

        creds = self._cache.credentials
        if creds is not None:
            await self._admit(creds, reason="resumed")
            return self.state

        request = self._cache.join_request
        if request is None and request_id:
            request = JoinRequest(request_id=request_id)
            self._cache.remember_join_request(request)
        if request is not None:
            self.join_request = request
            self.role = request.requested_role
            if request.status == JoinStatus.DENIED:
                self._sm.transition(AdmissionState.REQUEST_DENIED, reason="resumed")
            else:
                self._sm.transition(AdmissionState.REQUEST_PENDING, reason="resumed")
                self._start_status_stream(request.request_id)
            return self.state

        self._sm.transition(AdmissionState.GUEST_PREVIEW)
        return self.state

    # ── Join ─────────────────────────────────────────────────────────────

    async def submit_join(self, role: Role = Role.PARTICIPANT, display_name: Optional[str] = None) -> AdmissionState:
        if self._join_in_flight:
            logger.info(f"[{self.session_id}] Join already in flight, ignoring")
            return self.state
        if self.state == AdmissionState.REQUEST_PENDING:
            logger.info(f"[{self.session_id}] Request {self.join_request.request_id} still pending")
            return self.state
        if self.state == AdmissionState.ENDED:
            if self.end_variant != EndVariant.LEFT:
                raise ValueError(f"Session is over ({self.end_variant.value})")
            target = AdmissionState.HOST_READY if self._cache.host_token else AdmissionState.GUEST_PREVIEW
            self.end_variant = None
            self._sm.transition(target, reason="rejoin")
        if self.state not in (AdmissionState.HOST_READY, AdmissionState.GUEST_PREVIEW):
            raise ValueError(f"Cannot join from {self.state.value}")

        self._join_in_flight = True
        try:
            self._cache.forget_exit()
            host_token = self._cache.host_token
            if host_token:
                self.role = Role.HOST
                self._sm.transition(AdmissionState.HOST_READY)
                creds = await self._api.join_as_host(self.session_id, host_token)
                if self._ended_meanwhile("host join"):
                    return self.state
                await self._admit(creds, reason="host")
            else:
                if role == Role.HOST:
                    role = Role.PARTICIPANT
                request = await self._api.create_join_request(self.session_id, role, display_name)
                if self._ended_meanwhile(f"request {request.request_id}"):
                    return self.state
                self.join_request = request
                self.role = request.requested_role
                self._cache.remember_join_request(request)
                self._sm.transition(AdmissionState.REQUEST_PENDING, reason=request.request_id)
                self._start_status_stream(request.request_id)
        except ApiHttpError as e:
            if e.status == 410:
                await self._end(EndVariant.ENDED, "session ended")
            elif e.status == 404:
                await self._end(EndVariant.MISSING, "session not found")
            else:
                await self._notify("error", e.message)
        except httpx.HTTPError as e:
            await self._notify("error", f"Could not join: {e}")
        finally:
            self._join_in_flight = False
        return self.state

    def _ended_meanwhile(self, what: str) -> bool:
        if self.state != AdmissionState.ENDED:
            return False
        logger.info(f"[{self.session_id}] Session ended while {what} was in flight, dropping it")
        return True

    def try_again(self) -> None:
        """Discard a denied request so a fresh one can be submitted."""
        if self.state != AdmissionState.REQUEST_DENIED:
            raise ValueError(f"Nothing to retry from {self.state.value}")
        self._cache.forget_request_state()
        self.join_request = None
        self._sm.transition(AdmissionState.GUEST_PREVIEW, reason="try again")

    async def leave(self) -> None:
        await self._end(EndVariant.LEFT, "left")

    async def mark_ended(self, reason: str = "session ended") -> None:
        """Terminal push from anywhere (call backend, host queue, app message)."""
        await self._end(EndVariant.ENDED, reason)

    async def close(self) -> None:
        """Idempotent teardown of timers and streams. State is left as is."""
        self._cancel_expiry()
        self._stream_stop.set()
        task, self._stream_task = self._stream_task, None
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        for t in list(self._tasks):
            if t is not asyncio.current_task() and not t.done():
                t.cancel()

    # ── Status stream ────────────────────────────────────────────────────

    def _start_status_stream(self, request_id: str) -> None:
        if self.streaming and not self._stream_stop.is_set():
            return
        self._stream_stop = asyncio.Event()
        url = self._api.request_stream_url(self.session_id, request_id)
        self._stream_task = asyncio.ensure_future(self._watch(url, self._stream_stop))

    def _stop_status_stream(self) -> None:
        self._stream_stop.set()

    async def _watch(self, url: str, stop: asyncio.Event) -> None:
        try:
            await self._stream.run(url, self._on_status_event, stop)
        except StreamUnsupportedError:
            self.error = STREAM_UNSUPPORTED_MESSAGE
            await self._notify("error", STREAM_UNSUPPORTED_MESSAGE)

    async def _on_status_event(self, event: ServerEvent) -> None:
        if event.event == "ended":
            await self._end(EndVariant.ENDED, "session ended")
            return
        if event.event != "status":
            return

        payload = event.json()
        request = self.join_request
        if not isinstance(payload, dict) or request is None:
            return
        rid = payload.get("requestId")
        if rid and rid != request.request_id:
            return

        status = payload.get("status")
        if status == JoinStatus.DENIED.value:
            request.status = JoinStatus.DENIED
            self._cache.remember_join_request(request)
            self._stop_status_stream()
            self._sm.transition(AdmissionState.REQUEST_DENIED, reason=request.request_id)
        elif status == JoinStatus.ADMITTED.value:
            creds = CallCredentials.from_payload(
                payload,
                default_role=request.requested_role,
                request_id=request.request_id,
            )
            if creds is None:
                logger.warning(f"[{self.session_id}] Admission without credentials ignored")
                return
            request.status = JoinStatus.ADMITTED
            request.credentials = creds
            self._stop_status_stream()
            await self._admit(creds, reason=request.request_id)
        elif status == "ended":
            await self._end(EndVariant.ENDED, "session ended")

    # ── Transitions with side effects ────────────────────────────────────

    async def _admit(self, creds: CallCredentials, reason: str) -> None:
        self.credentials = creds
        self.role = creds.assigned_role
        self._cache.remember_credentials(creds)
        self._cache.forget_exit()
        self._sm.transition(AdmissionState.ADMITTED, reason=reason)
        self._sm.transition(AdmissionState.LIVE)
        await self._invoke(self._on_live, creds)

    async def _end(self, variant: EndVariant, reason: str) -> None:
        if self.state == AdmissionState.ENDED:
            return
        self._cancel_expiry()
        self._stop_status_stream()

        if variant == EndVariant.LEFT:
            self._cache.remember_exit(EndVariant.LEFT)
            self._cache.forget_request_state()
        else:
            self._cache.forget_session(include_host_token=self.is_host)

        self.end_variant = variant
        self.credentials = None
        self._sm.transition(AdmissionState.ENDED, reason=f"{variant.value}: {reason}")
        await self._invoke(self._on_ended, variant)

    def _fail(self, message: str) -> None:
        self.error = message
        logger.error(f"[{self.session_id}] Session load failed: {message}")
        self._sm.transition(AdmissionState.ERROR, reason=message)

    # ── Expiry ───────────────────────────────────────────────────────────

    def _arm_expiry(self, expires_at: float) -> bool:
        """(Re)schedule the local expiry; True when the instant has already passed."""
        self._cancel_expiry()
        self._expires_at = expires_at
        self._cache.remember_expires_at(expires_at)
        delay = expires_at - self._clock()
        if delay <= 0:
            return True
        loop = asyncio.get_running_loop()
        self._expiry_handle = loop.call_later(delay, self._on_expired)
        logger.debug(f"[{self.session_id}] Expiry armed in {delay:.1f}s")
        return False

    def _cancel_expiry(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _on_expired(self) -> None:
        self._expiry_handle = None
        logger.info(f"[{self.session_id}] Session expired")
        self._spawn(self._end(EndVariant.ENDED, "expired"))

    # ── Helpers ──────────────────────────────────────────────────────────

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _notify(self, kind: str, message: str) -> None:
        notice = Notice(kind=kind, message=message)
        self.notices.append(notice)
        await self._invoke(self._on_notice, notice)

    async def _invoke(self, callback: Optional[Callable], arg: Any) -> None:
        if callback is None:
            return
        try:
            cb = callback(arg)
            if asyncio.iscoroutine(cb):
                await cb
        except Exception as e:
            logger.error(f"[{self.session_id}] Admission callback error: {e}")
