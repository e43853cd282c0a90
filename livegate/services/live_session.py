"""
LiveGate — Live Session

Per-viewer, per-session composition root. Owns:
  • One JoinAdmissionMachine (+ its status stream and expiry timer)
  • One HostQueue while the viewer is the host
  • One CallConnection once admitted (if a call backend is configured)
  • One AssistantSession once admitted

Admission drives everything else: LIVE joins the call and prepares the
assistant; ENDED tears every owned resource down, exactly once.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from ..core.interfaces import KeyValueStore
from ..core.models import AssistantMessage, CallCredentials, EndVariant, Notice, PendingRequest, Role
from ..core.state_machine import AdmissionState
from ..core.visibility import Visibility
from .admission_service import JoinAdmissionMachine
from .api_client import SessionApi
from .assistant_service import AssistantSession, Connector, scope_context_text
from .call_backend import CallConnection, CallFactory
from .event_stream import ResilientEventStream
from .host_queue import HostQueue
from .quota_store import QuotaStore
from .viewer_cache import ViewerCache

logger = logging.getLogger("livegate.session")


class LiveSession:
    def __init__(
        self,
        session_id: str,
        api: SessionApi,
        store: KeyValueStore,
        visibility: Optional[Visibility] = None,
        call_factory: Optional[CallFactory] = None,
        connector: Optional[Connector] = None,
        on_notice: Optional[Callable[[Notice], Any]] = None,
        on_queue: Optional[Callable[[List[PendingRequest]], Any]] = None,
        on_assistant_message: Optional[Callable[[AssistantMessage], Any]] = None,
        on_state: Optional[Callable[[AdmissionState, AdmissionState, str], None]] = None,
    ) -> None:
        self.session_id = session_id
        self._api = api
        self._visibility = visibility or Visibility()
        self._connector = connector
        self._on_queue = on_queue
        self._on_assistant_message = on_assistant_message

        self.cache = ViewerCache(store, session_id)
        self.quota = QuotaStore(store, session_id)
        self.stream = ResilientEventStream(api.client, self._visibility, name=f"stream:{session_id}")
        self.admission = JoinAdmissionMachine(
            session_id,
            api,
            self.cache,
            self.stream,
            on_live=self._on_live,
            on_ended=self._on_ended,
            on_notice=on_notice,
            on_state=on_state,
        )
        self.call: Optional[CallConnection] = None
        if call_factory is not None:
            self.call = CallConnection(
                session_id,
                call_factory,
                on_session_ended=self.admission.mark_ended,
                on_notice=on_notice,
            )
        self.queue: Optional[HostQueue] = None
        self.assistant: Optional[AssistantSession] = None
        self._torn_down = False

    @property
    def state(self) -> AdmissionState:
        return self.admission.state

    # ── Viewer actions ───────────────────────────────────────────────────

    async def start(self, request_id: Optional[str] = None) -> AdmissionState:
        state = await self.admission.load(request_id)
        if state == AdmissionState.HOST_READY:
            self._start_queue()
        return state

    async def join(self, role: Role = Role.PARTICIPANT, display_name: Optional[str] = None) -> AdmissionState:
        return await self.admission.submit_join(role, display_name)

    async def leave(self) -> None:
        if self.call is not None:
            await self.call.leave()
        await self.admission.leave()

    async def end_session(self) -> None:
        """Host only: warn the room, end server-side, then end locally."""
        token = self.cache.host_token
        if not token:
            raise ValueError("Only the host can end the session")
        if self.call is not None:
            self.call.broadcast("session-ending")
        await self._api.end_session(self.session_id, token)
        if self.call is not None:
            self.call.broadcast("session-ended")
        await self.admission.mark_ended("ended by host")

    async def connect_assistant(self) -> AssistantSession:
        if self.assistant is None:
            raise ValueError("The assistant is available once admitted")
        session = self.admission.session
        context = scope_context_text(session.scope, session.context) if session else None
        await self.assistant.connect(context=context)
        return self.assistant

    async def close(self) -> None:
        await self._teardown()
        await self.admission.close()

    # ── Admission hooks ──────────────────────────────────────────────────

    async def _on_live(self, creds: CallCredentials) -> None:
        self._torn_down = False
        if creds.assigned_role == Role.HOST:
            self._start_queue()
        self.assistant = AssistantSession(
            self.session_id,
            self._api,
            self.quota,
            creds.assigned_role,
            host_token=self.cache.host_token if creds.assigned_role == Role.HOST else None,
            request_id=creds.request_id,
            visibility=self._visibility,
            connector=self._connector,
            on_message=self._on_assistant_message,
        )
        self.assistant.restore()
        if self.call is not None:
            await self.call.join(creds)

    async def _on_ended(self, variant: EndVariant) -> None:
        logger.info(f"[{self.session_id}] Session over ({variant.value}), tearing down")
        await self._teardown()

    def _start_queue(self) -> None:
        token = self.cache.host_token
        if not token:
            return
        if self.queue is None:
            self.queue = HostQueue(
                self.session_id,
                token,
                self._api,
                ResilientEventStream(self._api.client, self._visibility, name=f"queue:{self.session_id}"),
                on_change=self._on_queue,
                on_ended=self.admission.mark_ended,
            )
        self.queue.start()

    async def _teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        if self.assistant is not None:
            await self.assistant.close()
        if self.queue is not None:
            await self.queue.close()
        if self.call is not None:
            await self.call.teardown()
