"""
LiveGate — Visibility Signal

Foreground/background flag for the hosting context. While hidden,
reconnect delays are pinned to a long interval; becoming visible again
wakes any pending reconnect wait.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

logger = logging.getLogger("livegate.visibility")


class Visibility:
    def __init__(self, hidden: bool = False) -> None:
        self._hidden = hidden
        self._waiters: List[asyncio.Future] = []

    @property
    def hidden(self) -> bool:
        return self._hidden

    def set_hidden(self, hidden: bool) -> None:
        if hidden == self._hidden:
            return
        self._hidden = hidden
        logger.debug(f"Visibility: {'hidden' if hidden else 'visible'}")
        if not hidden:
            waiters, self._waiters = self._waiters, []
            for fut in waiters:
                if not fut.done():
                    fut.set_result(None)

    async def wait_visible(self) -> None:
        """Resolve on the next hidden → visible change (immediately if visible)."""
        if not self._hidden:
            return
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)
