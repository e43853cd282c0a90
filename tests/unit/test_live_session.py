import asyncio
import json

import httpx
import pytest

from livegate.core.models import Role
from livegate.core.state_machine import AdmissionState
from livegate.services.api_client import SessionApi
from livegate.services.live_session import LiveSession
from livegate.services.storage import MemoryStore

ADMITTED = {
    "requestId": "r1",
    "status": "admitted",
    "roomAddress": "room-1",
    "streamToken": "call-token",
    "assignedRole": "observer",
}


class FakeCall:
    def __init__(self) -> None:
        self.handlers = {}
        self.sent = []
        self.joined_with = None
        self.destroyed = False

    async def join(self, room_address, token) -> None:
        self.joined_with = (room_address, token)

    async def leave(self) -> None:
        pass

    async def destroy(self) -> None:
        self.destroyed = True

    def set_local_audio(self, enabled) -> None:
        pass

    def participants(self):
        return {}

    def on(self, event, handler) -> None:
        self.handlers[event] = handler

    def off(self, event, handler) -> None:
        self.handlers.pop(event, None)

    def send_app_message(self, data) -> None:
        self.sent.append(data["type"])


class Server:
    def __init__(self) -> None:
        self.ended = False
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.paths.append((request.method, path))
        if path == "/api/session/s1" and request.method == "GET":
            return httpx.Response(200, json={"id": "s1", "scope": "Biology", "context": "Cell division"})
        if path == "/api/session/s1/join":
            return httpx.Response(200, json={"roomAddress": "room-1", "streamToken": "host-call", "assignedRole": "host"})
        if path == "/api/session/s1/join-requests" and request.method == "POST":
            return httpx.Response(200, json={"requestId": "r1", "status": "pending"})
        if path == "/api/session/s1/join-requests/r1/stream":
            body = f"event: status\ndata: {json.dumps(ADMITTED)}\n\n"
            return httpx.Response(200, content=body.encode("utf-8"))
        if path == "/api/session/s1/join-requests/stream":
            body = 'event: requests\ndata: {"requests": [{"requestId": "r7", "role": "participant"}]}\n\n'
            return httpx.Response(200, content=body.encode("utf-8"))
        if path == "/api/session/s1/end":
            self.ended = True
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404, json={"error": "Not found"})


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _session(server: Server, store: MemoryStore, calls: list, queues: list) -> LiveSession:
    api = SessionApi("http://api.test", client=httpx.AsyncClient(transport=httpx.MockTransport(server)))

    def factory() -> FakeCall:
        call = FakeCall()
        calls.append(call)
        return call

    return LiveSession("s1", api, store, call_factory=factory, on_queue=queues.append)


@pytest.mark.asyncio
async def test_host_runs_queue_joins_and_ends_for_everyone() -> None:
    server, store, calls, queues = Server(), MemoryStore(), [], []
    session = _session(server, store, calls, queues)
    session.cache.remember_host_token("host-1")

    assert await session.start() == AdmissionState.HOST_READY
    await _until(lambda: queues)
    assert [r.request_id for r in queues[0]] == ["r7"]

    assert await session.join() == AdmissionState.LIVE
    assert calls[0].joined_with == ("room-1", "host-call")
    assert session.assistant.role == Role.HOST

    await session.end_session()
    assert server.ended
    assert calls[0].sent == ["session-ending", "session-ended"]
    assert session.state == AdmissionState.ENDED
    assert calls[0].destroyed
    assert not session.queue.running
    assert session.cache.host_token is None
    await session.close()


@pytest.mark.asyncio
async def test_guest_is_admitted_and_gets_an_assistant() -> None:
    server, store, calls, queues = Server(), MemoryStore(), [], []
    session = _session(server, store, calls, queues)

    assert await session.start() == AdmissionState.GUEST_PREVIEW
    await session.join(Role.OBSERVER, "Ada")
    await _until(lambda: session.state == AdmissionState.LIVE)

    assert session.queue is None
    assert calls[0].joined_with == ("room-1", "call-token")
    assert session.assistant.role == Role.OBSERVER

    await session.leave()
    assert session.state == AdmissionState.ENDED
    assert calls[0].destroyed
    await session.close()


@pytest.mark.asyncio
async def test_guest_cannot_end_the_session() -> None:
    server, store, calls, queues = Server(), MemoryStore(), [], []
    session = _session(server, store, calls, queues)
    await session.start()

    with pytest.raises(ValueError):
        await session.end_session()
    assert not server.ended
    await session.close()


@pytest.mark.asyncio
async def test_call_signal_ends_the_session() -> None:
    server, store, calls, queues = Server(), MemoryStore(), [], []
    session = _session(server, store, calls, queues)
    session.cache.remember_host_token("host-1")
    await session.start()
    await session.join()

    calls[0].handlers["app-message"]({"data": {"type": "session-ended"}})
    await _until(lambda: session.state == AdmissionState.ENDED)
    assert calls[0].destroyed
    await session.close()
