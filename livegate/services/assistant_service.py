"""
LiveGate — Assistant Stream Session

================================================================================
QUOTA-GATED, SCOPE-AWARE ASSISTANT CONVERSATION
================================================================================

Lifecycle (see core/state_machine.py):

  IDLE → PREFLIGHTING → CONNECTING → CONNECTED
                 ↘ DISABLED (quota exhausted, limit.reached, server error)
                 ↘ ERROR    (preflight rejected, reconnects exhausted)

  1. Preflight asks the server for a short-lived stream token and the
     current usage snapshot. Exhausted quota never opens a socket.
  2. The socket carries outbound turns (conversation.item.create +
     response.create) and inbound model events.
  3. Charging follows observed output, not attempts — see
     processing/transcript.py.
  4. A dropped socket reconnects with backoff (re-running the preflight),
     at most `max_reconnect_attempts` times per user-initiated connect.
  5. DISABLED is sticky: only a user-initiated connect whose preflight no
     longer reports exhaustion clears it.

The session never sends `session.update`; the server owns the model
configuration. Scope/context reaches the model as a regular conversation
item injected once per user-initiated connect.
================================================================================
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.backoff import ReconnectBackoff, WakeReason
from ..core.config import AssistantConfig, StreamConfig, assistant_cfg, stream_cfg
from ..core.errors import ApiHttpError, AssistantDisabledError, AssistantNotConnectedError
from ..core.interfaces import AssistantSocket
from ..core.models import (
    AssistantMessage,
    AssistantTelemetry,
    PreflightResult,
    QuotaState,
    Role,
    UsageSnapshot,
)
from ..core.state_machine import ASSISTANT_TRANSITIONS, AssistantState, StateMachine
from ..core.visibility import Visibility
from ..processing.assistant_events import EventKind, classify, decode
from ..processing.transcript import AssistantTranscript
from .api_client import SessionApi
from .quota_store import QuotaStore

logger = logging.getLogger("livegate.assistant")

Connector = Callable[[str], Awaitable[AssistantSocket]]

# Abnormal closure: no close frame received
_ABNORMAL_CLOSE = 1006


async def websocket_connector(url: str) -> AssistantSocket:
    return await websocket_connect(url)


def scope_context_text(scope: Optional[str], context: Optional[str]) -> Optional[str]:
    """System text carrying the session's scope and context, or None if neither is set."""
    lines = []
    if scope:
        lines.append(f"Scope: {scope}")
    if context:
        lines.append(f"Context: {context}")
    if not lines:
        return None
    return "Session context:\n" + "\n".join(lines)


def _message_item(role: str, text: str) -> Dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": role,
            "content": [{"type": "input_text", "text": text}],
        },
    }


class AssistantSession:
    """
    One viewer's assistant conversation for one session.

    Usage:
        assistant = AssistantSession(session_id, api, quota, Role.HOST, host_token=token)
        assistant.restore()
        await assistant.connect(context=scope_context_text(scope, context))
        await assistant.send_user_message("Summarise the main claim")
        ...
        await assistant.close()
    """

    def __init__(
        self,
        session_id: str,
        api: SessionApi,
        quota: QuotaStore,
        role: Role,
        host_token: Optional[str] = None,
        request_id: Optional[str] = None,
        visibility: Optional[Visibility] = None,
        connector: Optional[Connector] = None,
        on_message: Optional[Callable[[AssistantMessage], Any]] = None,
        on_state: Optional[Callable[[AssistantState, AssistantState, str], None]] = None,
        cfg: AssistantConfig = assistant_cfg,
        backoff_cfg: StreamConfig = stream_cfg,
        rng: Optional[Callable[[], float]] = None,
    ) -> None:
        self.session_id = session_id
        self.role = role
        self._api = api
        self._quota = quota
        self._host_token = host_token
        self._request_id = request_id
        self._connector = connector or websocket_connector
        self._on_message = on_message
        self._cfg = cfg

        self._sm = StateMachine("assistant", AssistantState.IDLE, ASSISTANT_TRANSITIONS, on_transition=on_state)
        self._transcript = AssistantTranscript(session_id, on_charge=self._persist_charge, max_messages=cfg.max_messages)
        self._backoff = ReconnectBackoff.from_config(
            backoff_cfg,
            visibility=visibility,
            max_attempts=cfg.max_reconnect_attempts,
            rng=rng,
        )

        # Connection
        self._socket: Optional[AssistantSocket] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._connect_lock = asyncio.Lock()
        self._manual_close = False
        self._closed = False
        self._pending_context: Optional[str] = None
        self._audio_warned = False
        self._server_counted = False

        self.error: Optional[str] = None
        self.quota_state: Optional[QuotaState] = None
        self.telemetry = AssistantTelemetry()

    # ── Read-only views ──────────────────────────────────────────────────

    @property
    def state(self) -> AssistantState:
        return self._sm.state

    @property
    def history(self) -> List[Dict]:
        return self._sm.history

    @property
    def messages(self) -> List[AssistantMessage]:
        return self._transcript.messages

    @property
    def transcript(self) -> AssistantTranscript:
        return self._transcript

    @property
    def can_send(self) -> bool:
        return self.state == AssistantState.CONNECTED and self._socket is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._backoff.attempts

    @property
    def disabled_reason(self) -> Optional[str]:
        return self.quota_state.disabled_reason if self.quota_state else None

    # ── Lifecycle ────────────────────────────────────────────────────────

    def restore(self) -> Optional[QuotaState]:
        """Load persisted quota; a persisted disable reason starts DISABLED."""
        state = self._quota.read()
        self.quota_state = state
        if state and state.disabled_reason and self.state == AssistantState.IDLE:
            self.error = state.disabled_reason
            self._sm.transition(AssistantState.DISABLED, reason="restored")
        return state

    async def connect(self, reset_attempts: bool = True, context: Optional[str] = None) -> None:
        """User-initiated (re)connect. Resets the reconnect attempt count by default."""
        if self._closed:
            logger.warning(f"[{self.session_id}] connect() after close, ignored")
            return
        self._manual_close = False
        self._stop = asyncio.Event()
        self._cancel_reconnect()
        if reset_attempts:
            self._backoff.reset()
        if context is not None:
            self._pending_context = context
        await self._open()

    async def disconnect(self) -> None:
        """User-initiated close. No automatic reconnect follows."""
        self._manual_close = True
        self._stop.set()
        self._cancel_reconnect()
        await self._drop_socket()
        self._transcript.drop_pending()
        if self.state not in (AssistantState.IDLE, AssistantState.DISABLED):
            self._sm.transition(AssistantState.IDLE, reason="disconnect")

    async def close(self) -> None:
        """Idempotent teardown (session ended or viewer gone)."""
        if self._closed:
            return
        await self.disconnect()
        self._closed = True
        logger.info(f"[{self.session_id}] Assistant closed")

    # ── Outbound ─────────────────────────────────────────────────────────

    async def send_user_message(self, text: str) -> Optional[AssistantMessage]:
        text = text.strip()
        if not text:
            return None
        self._ensure_sendable()

        msg = self._transcript.add_user(text)
        await self._emit(msg)
        await self._send(_message_item("user", text))
        self._transcript.submit_turn()
        try:
            await self._send({"type": "response.create", "response": {"modalities": list(self._cfg.modalities)}})
        except AssistantNotConnectedError:
            self._transcript.drop_pending()
            raise
        return msg

    async def send_event(self, event: Dict[str, Any]) -> None:
        if event.get("type") == "session.update":
            raise ValueError("session.update is controlled by the server and cannot be sent")
        self._ensure_sendable()
        await self._send(event)

    def _ensure_sendable(self) -> None:
        if self.state == AssistantState.DISABLED:
            raise AssistantDisabledError(self.error)
        if not self.can_send:
            raise AssistantNotConnectedError("Assistant is not connected")

    async def _send(self, event: Dict[str, Any]) -> None:
        socket = self._socket
        if socket is None:
            raise AssistantNotConnectedError("Assistant is not connected")
        try:
            await socket.send(json.dumps(event))
        except (ConnectionClosed, OSError) as e:
            self.telemetry.last_send_error = str(e)
            raise AssistantNotConnectedError(f"Send failed: {e}") from e
        self.telemetry.sent += 1
        self.telemetry.last_sent_type = event.get("type")

    # ── Connect / reconnect ──────────────────────────────────────────────

    async def _open(self) -> None:
        async with self._connect_lock:
            if self._torn_down:
                return
            await self._drop_socket()
            self._sm.transition(AssistantState.PREFLIGHTING)

            try:
                result = await self._api.assistant_preflight(
                    self.session_id,
                    self.role,
                    host_token=self._host_token,
                    request_id=self._request_id,
                )
            except (ApiHttpError, ValueError, httpx.TransportError) as e:
                if not self._torn_down:
                    await self._preflight_failed(e)
                return

            if self._torn_down:
                logger.info(f"[{self.session_id}] Closed during preflight, not opening socket")
                return
            if not await self._apply_preflight(result):
                return

            self._sm.transition(AssistantState.CONNECTING)
            url = self._api.websocket_url(result.stream_endpoint, self.role, result.stream_token)
            try:
                socket = await self._connector(url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning(f"[{self.session_id}] Assistant socket failed to open: {e}")
                self._on_socket_closed(_ABNORMAL_CLOSE, str(e))
                return

            if self._torn_down:
                await socket.close()
                return

            self._socket = socket
            self._audio_warned = False
            self.error = None
            self._sm.transition(AssistantState.CONNECTED)
            logger.info(f"[{self.session_id}] Assistant connected as {self.role.value}")

            if self._pending_context:
                try:
                    await self._send(_message_item("system", self._pending_context))
                    self._pending_context = None
                except AssistantNotConnectedError as e:
                    logger.warning(f"[{self.session_id}] Context injection failed: {e}")

            self._reader_task = asyncio.ensure_future(self._read(socket))

    @property
    def _torn_down(self) -> bool:
        return self._manual_close or self._closed

    async def _preflight_failed(self, e: Exception) -> None:
        if isinstance(e, ApiHttpError):
            if e.status == 429:
                await self._disable(self._cfg.limit_message)
            else:
                self._fail(e.message)
        elif isinstance(e, httpx.TransportError):
            logger.warning(f"[{self.session_id}] Preflight transport error: {e}")
            self._on_socket_closed(_ABNORMAL_CLOSE, str(e))
        else:
            self._fail(str(e))

    async def _apply_preflight(self, result: PreflightResult) -> bool:
        self.telemetry.token_expires_at = result.expires_at
        snapshot = UsageSnapshot(
            remaining=result.remaining,
            used=result.usage_count,
            limit=result.usage_limit,
        )
        if result.exhausted:
            self.quota_state = self._quota.apply_snapshot(snapshot)
            await self._disable(self._cfg.limit_message)
            return False
        self.quota_state = self._quota.apply_snapshot(snapshot, clear_disabled=True)
        return True

    def _on_socket_closed(self, code: int, reason: str) -> None:
        self._socket = None
        self.telemetry.last_close_code = code
        self.telemetry.last_close_reason = reason
        self._transcript.drop_pending()

        if self._torn_down or self.state == AssistantState.DISABLED:
            return
        if self._backoff.exhausted:
            self._fail(self._cfg.lost_message.format(code=code))
            return

        delay = self._backoff.next_delay(self._backoff.error_multiplier)
        logger.info(
            f"[{self.session_id}] Assistant socket closed ({code}), reconnect "
            f"{self._backoff.attempts}/{self._backoff.max_attempts} in {delay:.2f}s"
        )
        self._sm.transition(AssistantState.CONNECTING, reason=f"closed {code}")
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        if await self._backoff.pause(delay, self._stop) == WakeReason.STOPPED:
            return
        await self._open()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _drop_socket(self) -> None:
        socket, self._socket = self._socket, None
        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if socket is not None:
            try:
                await socket.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"[{self.session_id}] Socket close error ignored: {e}")

    def _fail(self, message: str) -> None:
        self.error = message
        logger.warning(f"[{self.session_id}] Assistant error: {message}")
        self._sm.transition(AssistantState.ERROR, reason=message)

    async def _disable(self, reason: str) -> None:
        self.error = reason
        self._manual_close = True
        self._stop.set()
        self._cancel_reconnect()
        self._transcript.drop_pending()
        self.quota_state = self._quota.set_disabled(reason)
        await self._emit(self._transcript.add_notice(reason, kind="error"))
        self._sm.transition(AssistantState.DISABLED, reason=reason)
        await self._drop_socket()

    # ── Inbound ──────────────────────────────────────────────────────────

    async def _read(self, socket: AssistantSocket) -> None:
        code, reason = _ABNORMAL_CLOSE, ""
        try:
            async for raw in socket:
                await self._handle_frame(raw)
            code = getattr(socket, "close_code", None) or 1000
            reason = getattr(socket, "close_reason", None) or ""
        except ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
        if self._socket is socket:
            self._reader_task = None
            self._on_socket_closed(code, reason)

    async def _handle_frame(self, raw: Any) -> None:
        payload = decode(raw)
        if payload is None:
            return
        evt = classify(payload)
        self.telemetry.received += 1
        self.telemetry.last_received_type = evt.type or None

        # Counters on the same frame already include this turn
        self._server_counted = evt.usage.remaining is not None or evt.usage.used is not None
        if not evt.usage.empty:
            self.quota_state = self._quota.apply_snapshot(evt.usage)

        if evt.kind == EventKind.SCOPE_VIOLATION:
            notice = f"Out of scope: {evt.message}" if evt.message else self._cfg.scope_default_message
            await self._emit(self._transcript.on_scope_violation(notice))
        elif evt.kind == EventKind.LIMIT_REACHED:
            await self._disable(self._cfg.limit_message)
        elif evt.kind == EventKind.ERROR:
            await self._disable(evt.message or self._cfg.error_message)
        elif evt.kind == EventKind.DELTA:
            await self._emit(self._transcript.on_fragment(evt.text))
        elif evt.kind == EventKind.TEXT_DONE:
            await self._emit(self._transcript.on_text_done(evt.text))
        elif evt.kind == EventKind.RESPONSE_DONE:
            await self._emit(self._transcript.on_response_done(evt.text))
        elif evt.mentions_audio and not self._audio_warned:
            self._audio_warned = True
            await self._emit(self._transcript.add_notice(self._cfg.audio_warning, kind="warning"))

    def _persist_charge(self) -> None:
        if self._server_counted:
            logger.debug(f"[{self.session_id}] Charge already reflected in server counters")
            return
        self.quota_state = self._quota.apply_charge()

    async def _emit(self, msg: Optional[AssistantMessage]) -> None:
        if msg is None or not self._on_message:
            return
        try:
            cb = self._on_message(msg)
            if asyncio.iscoroutine(cb):
                await cb
        except Exception as e:
            logger.error(f"[{self.session_id}] on_message callback error: {e}")
