"""
LiveGate — Resilient Event Stream

Long-lived server push subscription over HTTP (text/event-stream):

  subscribe()  — one connection; returns when the channel closes, cleanly
                 or not. Network drops never raise. HTTP errors raise
                 StreamHttpError (StreamUnsupportedError for 404/405/501).
  run()        — subscribe() in a loop with exponential backoff + jitter,
                 pinned to a long interval while backgrounded, until the
                 stop signal is set or the server reports the capability
                 as unsupported.

Cancellation is cooperative: setting `stop` ends in-flight reads and any
pending reconnect wait; nothing is scheduled after it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

import httpx

from ..core.backoff import ReconnectBackoff, WakeReason
from ..core.config import StreamConfig, stream_cfg
from ..core.errors import StreamHttpError, StreamUnsupportedError, stream_error_for
from ..core.visibility import Visibility
from ..processing.sse import EventStreamParser, ServerEvent

logger = logging.getLogger("livegate.stream")

EventHandler = Callable[[ServerEvent], Union[None, Awaitable[None]]]


class ResilientEventStream:
    def __init__(
        self,
        client: httpx.AsyncClient,
        visibility: Optional[Visibility] = None,
        cfg: StreamConfig = stream_cfg,
        rng: Optional[Callable[[], float]] = None,
        name: str = "stream",
    ) -> None:
        self._client = client
        self._visibility = visibility or Visibility()
        self._cfg = cfg
        self._rng = rng
        self._name = name
        self.connections = 0

    async def subscribe(
        self,
        url: str,
        on_event: EventHandler,
        stop: asyncio.Event,
        headers: Optional[Dict[str, str]] = None,
    ) -> bool:
        """
        Open one connection and dispatch its events in arrival order.
        Returns True when the server closed the channel cleanly, False
        after a network drop or a stop signal.
        """
        if stop.is_set():
            return False

        reader = asyncio.ensure_future(self._read(url, on_event, stop, headers or {}))
        stopper = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({reader, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, stopper):
                if not task.done():
                    task.cancel()

        if reader in done:
            return reader.result()

        # Stopped mid-read: let the reader unwind its response context
        try:
            await reader
        except asyncio.CancelledError:
            pass
        logger.debug(f"{self._name}: stopped")
        return False

    async def _read(
        self,
        url: str,
        on_event: EventHandler,
        stop: asyncio.Event,
        headers: Dict[str, str],
    ) -> bool:
        request_headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **headers}
        timeout = httpx.Timeout(self._cfg.connect_timeout, read=None)
        self.connections += 1
        try:
            async with self._client.stream("GET", url, headers=request_headers, timeout=timeout) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise stream_error_for(response.status_code, body)

                parser = EventStreamParser()
                async for line in response.aiter_lines():
                    if stop.is_set():
                        return False
                    event = parser.feed_line(line)
                    if event is not None:
                        # A stop raised by the handler itself must not cut the handler short
                        await asyncio.shield(self._dispatch(on_event, event))

                event = parser.finish()
                if event is not None and not stop.is_set():
                    await self._dispatch(on_event, event)
        except httpx.TransportError as e:
            logger.info(f"{self._name}: connection dropped ({type(e).__name__}: {e})")
            return False
        return True

    async def _dispatch(self, on_event: EventHandler, event: ServerEvent) -> None:
        try:
            result = on_event(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"{self._name}: event handler error on '{event.event}': {e}")

    async def run(
        self,
        url: str,
        on_event: EventHandler,
        stop: asyncio.Event,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Keep the subscription alive until `stop` is set.
        Raises StreamUnsupportedError once; never retries it.
        """
        backoff = ReconnectBackoff.from_config(self._cfg, visibility=self._visibility, rng=self._rng)
        while not stop.is_set():
            try:
                clean = await self.subscribe(url, on_event, stop, headers)
            except StreamUnsupportedError as e:
                logger.warning(f"{self._name}: server does not support streaming (HTTP {e.status})")
                raise
            except StreamHttpError as e:
                logger.warning(f"{self._name}: HTTP {e.status}, will retry")
                clean = False

            if stop.is_set():
                break

            multiplier = backoff.multiplier if clean else backoff.error_multiplier
            delay = backoff.next_delay(multiplier)
            logger.info(
                f"{self._name}: {'closed' if clean else 'dropped'}, reconnecting in {delay:.2f}s"
                + (" (background)" if self._visibility.hidden else "")
            )
            if await backoff.pause(delay, stop) == WakeReason.STOPPED:
                break

