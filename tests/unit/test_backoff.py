import asyncio
import random
import time

import pytest

from livegate.core.backoff import ReconnectBackoff, WakeReason
from livegate.core.config import StreamConfig
from livegate.core.visibility import Visibility


def _backoff(visibility: Visibility = None, rng=None, **kwargs) -> ReconnectBackoff:
    return ReconnectBackoff.from_config(StreamConfig(), visibility=visibility, rng=rng, **kwargs)


def test_base_delay_is_non_decreasing_up_to_cap() -> None:
    backoff = _backoff(rng=lambda: 0.0)
    rnd = random.Random(7)
    bases = []
    for _ in range(30):
        bases.append(backoff.current)
        backoff.next_delay(rnd.choice([backoff.multiplier, backoff.error_multiplier]))

    assert bases[0] == 0.75
    assert all(a <= b for a, b in zip(bases, bases[1:]))
    assert max(bases) == 8.0


def test_jitter_stays_below_quarter_second() -> None:
    rnd = random.Random(42)
    backoff = _backoff(rng=rnd.random)
    for _ in range(200):
        base = backoff.current
        delay = backoff.next_delay()
        assert base <= delay < base + 0.25


def test_growth_factor_depends_on_close_kind() -> None:
    backoff = _backoff(rng=lambda: 0.0)
    assert backoff.next_delay(backoff.multiplier) == pytest.approx(0.75)
    assert backoff.current == pytest.approx(1.125)
    backoff.reset()
    backoff.next_delay(backoff.error_multiplier)
    assert backoff.current == pytest.approx(1.2)


def test_hidden_context_pins_delay() -> None:
    vis = Visibility(hidden=True)
    backoff = _backoff(visibility=vis, rng=lambda: 0.0)
    assert backoff.next_delay() == 15.0
    assert backoff.next_delay() == 15.0
    vis.set_hidden(False)
    assert backoff.next_delay() < 8.0


def test_attempt_cap() -> None:
    backoff = _backoff(rng=lambda: 0.0, max_attempts=5)
    for _ in range(5):
        assert not backoff.exhausted
        backoff.next_delay()
    assert backoff.exhausted
    backoff.reset()
    assert backoff.attempts == 0
    assert backoff.current == 0.75


@pytest.mark.asyncio
async def test_pause_is_cut_short_by_stop() -> None:
    backoff = _backoff()
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.02, stop.set)

    started = time.monotonic()
    reason = await backoff.pause(5.0, stop)

    assert reason == WakeReason.STOPPED
    assert time.monotonic() - started < 1.0


@pytest.mark.asyncio
async def test_pause_wakes_and_resets_when_visible_again() -> None:
    vis = Visibility(hidden=True)
    backoff = _backoff(visibility=vis, rng=lambda: 0.0)
    for _ in range(4):
        backoff.next_delay()
    assert backoff.current > backoff.base

    asyncio.get_running_loop().call_later(0.02, vis.set_hidden, False)
    reason = await backoff.pause(15.0, asyncio.Event())

    assert reason == WakeReason.VISIBLE
    assert backoff.current == backoff.base


@pytest.mark.asyncio
async def test_pause_elapses() -> None:
    backoff = _backoff()
    assert await backoff.pause(0.01) == WakeReason.ELAPSED
