"""
LiveGate — Reconnect Backoff

Exponential backoff with jitter, shared by the event streams and the
assistant socket:

  delay = current + U[0, jitter)        (visible)
  delay = hidden_interval + U[0, jitter) (backgrounded)
  current = min(cap, current * multiplier) after every attempt

Growth depends on why the previous connection ended (clean close vs.
error). A foreground regain resets the sequence to the base.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Callable, Optional

from .config import StreamConfig, stream_cfg
from .visibility import Visibility

logger = logging.getLogger("livegate.backoff")


class WakeReason(str, Enum):
    ELAPSED = "elapsed"
    VISIBLE = "visible"
    STOPPED = "stopped"


class ReconnectBackoff:
    """
    Usage:
        backoff = ReconnectBackoff.from_config(visibility=vis)
        delay = backoff.next_delay(backoff.error_multiplier)
        reason = await backoff.pause(delay, stop)
    """

    def __init__(
        self,
        base: float,
        multiplier: float,
        cap: float,
        jitter: float,
        hidden_interval: float,
        error_multiplier: Optional[float] = None,
        max_attempts: Optional[int] = None,
        visibility: Optional[Visibility] = None,
        rng: Optional[Callable[[], float]] = None,
    ) -> None:
        self.base = base
        self.multiplier = multiplier
        self.error_multiplier = error_multiplier if error_multiplier is not None else multiplier
        self.cap = cap
        self.jitter = jitter
        self.hidden_interval = hidden_interval
        self.max_attempts = max_attempts
        self.visibility = visibility or Visibility()
        self._rng = rng or random.random
        self._current = base
        self._attempts = 0

    @classmethod
    def from_config(
        cls,
        cfg: StreamConfig = stream_cfg,
        visibility: Optional[Visibility] = None,
        max_attempts: Optional[int] = None,
        rng: Optional[Callable[[], float]] = None,
    ) -> "ReconnectBackoff":
        return cls(
            base=cfg.backoff_base,
            multiplier=cfg.clean_close_multiplier,
            error_multiplier=cfg.error_multiplier,
            cap=cfg.backoff_cap,
            jitter=cfg.jitter_max,
            hidden_interval=cfg.hidden_interval,
            max_attempts=max_attempts,
            visibility=visibility,
            rng=rng,
        )

    @property
    def current(self) -> float:
        """Base delay (no jitter) the next attempt will use while visible."""
        return self._current

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self._attempts >= self.max_attempts

    def reset(self) -> None:
        self._current = self.base
        self._attempts = 0

    def reset_delay(self) -> None:
        """Back to the base delay; attempt count untouched."""
        self._current = self.base

    def next_delay(self, multiplier: Optional[float] = None) -> float:
        """Delay for the next attempt; grows the base for the one after."""
        if self.visibility.hidden:
            base = self.hidden_interval
        else:
            base = self._current
        delay = base + self._rng() * self.jitter
        growth = self.multiplier if multiplier is None else multiplier
        self._current = min(self.cap, self._current * growth)
        self._attempts += 1
        return delay

    async def pause(self, delay: float, stop: Optional[asyncio.Event] = None) -> WakeReason:
        """
        Wait out `delay`, cut short by the stop signal or by the context
        becoming visible (which also resets the delay to the base).
        """
        waits = {asyncio.ensure_future(asyncio.sleep(delay)): WakeReason.ELAPSED}
        if stop is not None:
            waits[asyncio.ensure_future(stop.wait())] = WakeReason.STOPPED
        if self.visibility.hidden:
            waits[asyncio.ensure_future(self.visibility.wait_visible())] = WakeReason.VISIBLE
        try:
            done, _ = await asyncio.wait(waits.keys(), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waits:
                if not task.done():
                    task.cancel()
        reasons = {waits[t] for t in done}
        if WakeReason.STOPPED in reasons:
            return WakeReason.STOPPED
        if WakeReason.VISIBLE in reasons:
            logger.debug("Backoff: visible again, reconnecting now")
            self.reset_delay()
            return WakeReason.VISIBLE
        return WakeReason.ELAPSED
