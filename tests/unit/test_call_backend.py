import asyncio

import pytest

from livegate.core.models import CallCredentials, Role
from livegate.services.call_backend import RECONNECT_AUDIO_NOTICE, CallConnection


class FakeCall:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.handlers = {}
        self.audio = []
        self.joined_with = None
        self.left = False
        self.destroyed = False
        self.sent = []
        self.people = {}

    async def join(self, room_address, token) -> None:
        if self.fail:
            raise RuntimeError("room is full")
        self.joined_with = (room_address, token)

    async def leave(self) -> None:
        self.left = True

    async def destroy(self) -> None:
        self.destroyed = True

    def set_local_audio(self, enabled) -> None:
        self.audio.append(enabled)

    def participants(self):
        return self.people

    def on(self, event, handler) -> None:
        self.handlers[event] = handler

    def off(self, event, handler) -> None:
        self.handlers.pop(event, None)

    def send_app_message(self, data) -> None:
        self.sent.append(data)

    def fire(self, event, payload=None) -> None:
        self.handlers[event](payload or {})


def _creds(role: Role = Role.PARTICIPANT) -> CallCredentials:
    return CallCredentials(assigned_role=role, room_address="room-1", access_token="call-token")


class Harness:
    def __init__(self, fail: bool = False) -> None:
        self.handles = []
        self.fail = fail
        self.ended = []
        self.rosters = []
        self.conn = CallConnection(
            "s1",
            self.factory,
            on_session_ended=self.ended.append,
            on_roster=self.rosters.append,
        )

    def factory(self) -> FakeCall:
        handle = FakeCall(fail=self.fail)
        self.handles.append(handle)
        return handle

    @property
    def handle(self) -> FakeCall:
        return self.handles[-1]


@pytest.mark.asyncio
async def test_join_is_muted_and_guarded() -> None:
    h = Harness()
    assert await h.conn.join(_creds()) is True
    assert h.handle.joined_with == ("room-1", "call-token")
    assert h.handle.audio == [False, False]
    assert h.conn.muted

    assert await h.conn.join(_creds()) is False
    assert len(h.handles) == 1


@pytest.mark.asyncio
async def test_concurrent_joins_create_one_handle() -> None:
    h = Harness()
    results = await asyncio.gather(h.conn.join(_creds()), h.conn.join(_creds()))
    assert sorted(results) == [False, True]
    assert len(h.handles) == 1


@pytest.mark.asyncio
async def test_failed_join_becomes_notice_and_releases_handle() -> None:
    h = Harness(fail=True)
    assert await h.conn.join(_creds()) is False

    assert "room is full" in h.conn.notices[0].message
    assert h.handle.destroyed
    assert not h.conn.joined


@pytest.mark.asyncio
async def test_ended_signals_reach_admission() -> None:
    h = Harness()
    await h.conn.join(_creds())

    h.handle.fire("app-message", {"data": {"type": "chat", "text": "hi"}})
    h.handle.fire("app-message", {"data": {"type": "session-ended"}})
    assert h.ended == ["session-ended"]

    h.handle.fire("left-meeting")
    assert h.ended == ["session-ended", "left-meeting"]


@pytest.mark.asyncio
async def test_voluntary_leave_is_not_reported_as_ended() -> None:
    h = Harness()
    await h.conn.join(_creds())
    handle = h.handle

    await h.conn.leave()
    assert handle.left and handle.destroyed
    assert handle.handlers == {}
    assert h.ended == []

    await h.conn.teardown()


@pytest.mark.asyncio
async def test_observer_cannot_unmute() -> None:
    h = Harness()
    await h.conn.join(_creds(Role.OBSERVER))

    assert h.conn.set_muted(False) is True
    assert h.conn.notices[-1].kind == "info"
    assert h.handle.audio == [False, False]


@pytest.mark.asyncio
async def test_participant_can_unmute() -> None:
    h = Harness()
    await h.conn.join(_creds())

    assert h.conn.set_muted(False) is False
    assert h.handle.audio[-1] is True


@pytest.mark.asyncio
async def test_playback_error_offers_audio_reconnect() -> None:
    h = Harness()
    await h.conn.join(_creds())
    h.handle.fire("playback-error")
    assert h.conn.notices[-1].message == RECONNECT_AUDIO_NOTICE

    first = h.handle
    assert await h.conn.reconnect_audio() is True
    assert first.destroyed
    assert len(h.handles) == 2
    assert h.ended == []


@pytest.mark.asyncio
async def test_roster_mapping() -> None:
    h = Harness()
    await h.conn.join(_creds())
    h.handle.people = {
        "p2": {"userName": "guest", "userData": {"role": "observer"}},
        "p1": {"userName": "Sam", "owner": True, "audio": True},
        "me": {"userName": "Alex", "local": True},
        "p3": {"userName": ""},
    }
    h.handle.fire("participant-joined")

    roster = h.rosters[-1]
    assert [p.name for p in roster] == ["You", "Sam", "Observer 1", "Participant 1"]
    assert roster[1].role == Role.HOST
    assert roster[1].audio_on


@pytest.mark.asyncio
async def test_broadcast_only_when_joined() -> None:
    h = Harness()
    h.conn.broadcast("session-ending")
    assert h.handles == []

    await h.conn.join(_creds(Role.HOST))
    h.conn.broadcast("session-ending")
    assert h.handle.sent == [{"type": "session-ending"}]
