"""
LiveGate — Host Pending Queue

The host's live view of who is waiting. The server pushes the full
pending list on every change (`event: requests`), so the local list is
replaced, never patched. Admit/deny are idempotent server calls; on
success the request is dropped locally without waiting for the next push.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.errors import StreamUnsupportedError
from ..core.models import PendingRequest, Role, parse_requests
from ..processing.sse import ServerEvent
from .admission_service import STREAM_UNSUPPORTED_MESSAGE
from .api_client import SessionApi
from .event_stream import ResilientEventStream

logger = logging.getLogger("livegate.queue")


class HostQueue:
    def __init__(
        self,
        session_id: str,
        host_token: str,
        api: SessionApi,
        stream: ResilientEventStream,
        on_change: Optional[Callable[[List[PendingRequest]], Any]] = None,
        on_ended: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.session_id = session_id
        self._host_token = host_token
        self._api = api
        self._stream = stream
        self._on_change = on_change
        self._on_ended = on_ended

        self._pending: List[PendingRequest] = []
        self._labels: Dict[str, str] = {}
        self._label_counters: Dict[Role, int] = {Role.PARTICIPANT: 0, Role.OBSERVER: 0}
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.error: Optional[str] = None

    @property
    def pending(self) -> List[PendingRequest]:
        return list(self._pending)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def display_name(self, request: PendingRequest) -> str:
        """Explicit display name, else a stable anonymous label per role."""
        if request.display_name:
            return request.display_name
        label = self._labels.get(request.request_id)
        if label is None:
            role = Role.OBSERVER if request.role == Role.OBSERVER else Role.PARTICIPANT
            self._label_counters[role] += 1
            label = f"{role.value.capitalize()} {self._label_counters[role]}"
            self._labels[request.request_id] = label
        return label

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.ensure_future(self._watch(self._stop))
        logger.info(f"[{self.session_id}] Watching join requests")

    async def close(self) -> None:
        self._stop.set()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _watch(self, stop: asyncio.Event) -> None:
        url = self._api.queue_stream_url(self.session_id)
        headers = SessionApi.auth_headers(self._host_token)
        try:
            await self._stream.run(url, self._on_event, stop, headers=headers)
        except StreamUnsupportedError:
            self.error = STREAM_UNSUPPORTED_MESSAGE
            logger.warning(f"[{self.session_id}] {STREAM_UNSUPPORTED_MESSAGE}")

    async def _on_event(self, event: ServerEvent) -> None:
        if event.event == "ended":
            self._stop.set()
            await self._invoke(self._on_ended)
            return
        if event.event != "requests":
            return
        payload = event.json()
        if not isinstance(payload, dict):
            return
        self._replace(parse_requests(payload.get("requests")))

        await self._invoke(self._on_change, self.pending)

    # ── Decisions ────────────────────────────────────────────────────────

    async def admit(self, request_id: str) -> None:
        await self._api.admit(self.session_id, request_id, self._host_token)
        logger.info(f"[{self.session_id}] Admitted {request_id}")
        await self._remove(request_id)

    async def deny(self, request_id: str) -> None:
        await self._api.deny(self.session_id, request_id, self._host_token)
        logger.info(f"[{self.session_id}] Denied {request_id}")
        await self._remove(request_id)

    async def _remove(self, request_id: str) -> None:
        remaining = [r for r in self._pending if r.request_id != request_id]
        if len(remaining) == len(self._pending):
            return
        self._replace(remaining)
        await self._invoke(self._on_change, self.pending)

    def _replace(self, requests: List[PendingRequest]) -> None:
        self._pending = requests
        live = {r.request_id for r in requests}
        for rid in list(self._labels):
            if rid not in live:
                del self._labels[rid]

    async def _invoke(self, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            cb = callback(*args)
            if asyncio.iscoroutine(cb):
                await cb
        except Exception as e:
            logger.error(f"[{self.session_id}] Queue callback error: {e}")
