"""
LiveGate — Layer Interfaces

Protocol definitions for the seams the engine does not own:
  1. Storage    — local per-session key/value cache
  2. Socket     — the assistant's bidirectional message channel
  3. Call       — the opaque audio/video call backend

Each collaborator is injected through these protocols — never by reaching
into a concrete client's internals.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol, runtime_checkable


# ═══════════════════════════════════════════════════════════════════════════
# Storage: namespaced string cache
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class KeyValueStore(Protocol):
    """String values under string keys. `update` is an atomic read-merge-write."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def update(self, key: str, fn: Callable[[Optional[str]], Optional[str]]) -> Optional[str]:
        """Apply fn to the current value and store the result (None deletes)."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Socket: assistant stream
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class AssistantSocket(Protocol):
    """The subset of a websocket client connection the assistant uses."""

    async def send(self, message: str) -> None:
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...

    def __aiter__(self) -> AsyncIterator[Any]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Call backend: opaque media transport
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class CallBackend(Protocol):
    """
    One call-client handle. Events delivered through `on`:
      joined-meeting, left-meeting, participant-joined, participant-updated,
      participant-left, app-message, track-started, error
    """

    async def join(self, room_address: str, token: str) -> None:
        ...

    async def leave(self) -> None:
        ...

    async def destroy(self) -> None:
        ...

    def set_local_audio(self, enabled: bool) -> None:
        ...

    def participants(self) -> Dict[str, Dict[str, Any]]:
        ...

    def on(self, event: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        ...

    def off(self, event: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        ...

    def send_app_message(self, data: Dict[str, Any]) -> None:
        ...
