import asyncio

import httpx
import pytest

from livegate.core.config import StreamConfig
from livegate.core.errors import StreamHttpError, StreamUnsupportedError
from livegate.core.visibility import Visibility
from livegate.services.event_stream import ResilientEventStream

URL = "http://api.test/api/session/s1/join-requests/r1/stream"

FAST = StreamConfig(backoff_base=0.001, backoff_cap=0.002, jitter_max=0.0, hidden_interval=0.3)


def _sse(*events: str) -> bytes:
    return "".join(events).encode("utf-8")


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_subscribe_delivers_events_in_order_and_reports_clean_close() -> None:
    body = _sse(
        'event: status\ndata: {"status":"pending"}\n\n',
        ": keepalive\n\n",
        'event: status\ndata: {"status":"admitted"}\n\n',
    )
    async with _client(lambda request: httpx.Response(200, content=body)) as client:
        got = []
        clean = await ResilientEventStream(client).subscribe(URL, got.append, asyncio.Event())

    assert clean is True
    assert [e.json()["status"] for e in got] == ["pending", "admitted"]


@pytest.mark.asyncio
async def test_subscribe_sends_auth_and_accept_headers() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.headers)
        return httpx.Response(200, content=b"")

    async with _client(handler) as client:
        await ResilientEventStream(client).subscribe(
            URL, lambda e: None, asyncio.Event(), headers={"Authorization": "Bearer host-1"}
        )

    assert seen["authorization"] == "Bearer host-1"
    assert seen["accept"] == "text/event-stream"


@pytest.mark.asyncio
async def test_async_handlers_are_awaited() -> None:
    got = []

    async def on_event(evt) -> None:
        await asyncio.sleep(0)
        got.append(evt.data)

    body = _sse("data: a\n\n", "data: b")
    async with _client(lambda request: httpx.Response(200, content=body)) as client:
        await ResilientEventStream(client).subscribe(URL, on_event, asyncio.Event())

    # "b" has no trailing blank line and is flushed at end of stream
    assert got == ["a", "b"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 405, 501])
async def test_unsupported_statuses_raise_permanent_error(status: int) -> None:
    async with _client(lambda request: httpx.Response(status, text="nope")) as client:
        with pytest.raises(StreamUnsupportedError) as exc:
            await ResilientEventStream(client).subscribe(URL, lambda e: None, asyncio.Event())
    assert exc.value.status == status


@pytest.mark.asyncio
async def test_other_http_errors_raise_retryable_error() -> None:
    async with _client(lambda request: httpx.Response(503)) as client:
        with pytest.raises(StreamHttpError) as exc:
            await ResilientEventStream(client).subscribe(URL, lambda e: None, asyncio.Event())
    assert not isinstance(exc.value, StreamUnsupportedError)


@pytest.mark.asyncio
async def test_network_drop_does_not_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        clean = await ResilientEventStream(client).subscribe(URL, lambda e: None, asyncio.Event())
    assert clean is False


@pytest.mark.asyncio
async def test_stop_ends_a_blocked_read() -> None:
    stop = asyncio.Event()

    async def body():
        yield b"data: first\n\n"
        await asyncio.Event().wait()

    got = []

    def on_event(evt) -> None:
        got.append(evt.data)
        stop.set()

    async with _client(lambda request: httpx.Response(200, content=body())) as client:
        clean = await asyncio.wait_for(
            ResilientEventStream(client).subscribe(URL, on_event, stop), timeout=2.0
        )

    assert got == ["first"]
    assert clean is False


@pytest.mark.asyncio
async def test_run_reconnects_until_stopped() -> None:
    stop = asyncio.Event()
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(200, content=_sse(f"data: {len(calls)}\n\n"))

    def on_event(evt) -> None:
        if evt.data == "3":
            stop.set()

    async with _client(handler) as client:
        await asyncio.wait_for(ResilientEventStream(client, cfg=FAST).run(URL, on_event, stop), timeout=2.0)

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_run_retries_server_errors() -> None:
    stop = asyncio.Event()
    statuses = [500, 502]

    def handler(request: httpx.Request) -> httpx.Response:
        if statuses:
            return httpx.Response(statuses.pop(0))
        return httpx.Response(200, content=_sse("event: status\ndata: {}\n\n"))

    async with _client(handler) as client:
        stream = ResilientEventStream(client, cfg=FAST)
        await asyncio.wait_for(stream.run(URL, lambda e: stop.set(), stop), timeout=2.0)

    assert stream.connections == 3


@pytest.mark.asyncio
async def test_run_gives_up_on_unsupported() -> None:
    async with _client(lambda request: httpx.Response(404)) as client:
        stream = ResilientEventStream(client, cfg=FAST)
        with pytest.raises(StreamUnsupportedError):
            await stream.run(URL, lambda e: None, asyncio.Event())

    assert stream.connections == 1


@pytest.mark.asyncio
async def test_hidden_context_reconnects_at_most_once_per_interval() -> None:
    stop = asyncio.Event()
    vis = Visibility(hidden=True)

    async with _client(lambda request: httpx.Response(200, content=b"")) as client:
        stream = ResilientEventStream(client, visibility=vis, cfg=FAST)
        task = asyncio.ensure_future(stream.run(URL, lambda e: None, stop))
        await asyncio.sleep(0.45)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

    # One connection at t=0, one after the pinned 0.3 s interval
    assert 1 <= stream.connections <= 2


@pytest.mark.asyncio
async def test_becoming_visible_reconnects_immediately() -> None:
    stop = asyncio.Event()
    vis = Visibility(hidden=True)
    slow = StreamConfig(backoff_base=0.001, backoff_cap=0.002, jitter_max=0.0, hidden_interval=30.0)

    async with _client(lambda request: httpx.Response(200, content=b"")) as client:
        stream = ResilientEventStream(client, visibility=vis, cfg=slow)
        task = asyncio.ensure_future(stream.run(URL, lambda e: None, stop))
        await asyncio.sleep(0.05)
        assert stream.connections == 1

        vis.set_hidden(False)
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

    assert stream.connections >= 2
