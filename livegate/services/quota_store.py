"""
LiveGate — Persisted Quota Store

Per-session assistant quota, persisted so a restart starts from the last
known-accurate value instead of a blank slate.

Every write is a read-merge-write against storage: fields not named in the
patch keep their stored value, so two writers touching different fields
never clobber each other. `updated_at` is stamped on every write.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import replace
from typing import Callable, Optional

from ..core.interfaces import KeyValueStore
from ..core.models import QuotaState, UsageSnapshot
from .storage import storage_key

logger = logging.getLogger("livegate.quota")

_FIELDS = frozenset({"remaining", "used", "limit", "disabled_reason"})


def _parse(raw: Optional[str]) -> Optional[QuotaState]:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    return QuotaState.from_payload(payload)


class QuotaStore:
    def __init__(
        self,
        store: KeyValueStore,
        session_id: str,
        prefix: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_id = session_id
        self.key = storage_key("quota", session_id, prefix)
        self._store = store
        self._clock = clock
        self._last: Optional[QuotaState] = None

    def read(self) -> Optional[QuotaState]:
        state = _parse(self._store.get(self.key))
        if state is not None:
            self._last = state
        return state

    def write(self, **patch) -> QuotaState:
        unknown = set(patch) - _FIELDS
        if unknown:
            raise TypeError(f"Unknown quota fields: {sorted(unknown)}")
        return self._mutate(lambda state: replace(state, **patch))

    # ── Convenience writers ──────────────────────────────────────────────

    def apply_snapshot(self, snapshot: UsageSnapshot, clear_disabled: bool = False) -> Optional[QuotaState]:
        """Fresh server values overwrite local ones, including lowering `used`."""
        patch = {}
        if snapshot.remaining is not None:
            patch["remaining"] = snapshot.remaining
        if snapshot.used is not None:
            patch["used"] = snapshot.used
        if snapshot.limit is not None:
            patch["limit"] = snapshot.limit
        if clear_disabled:
            patch["disabled_reason"] = None
        if not patch:
            return self._last
        return self.write(**patch)

    def apply_charge(self) -> QuotaState:
        """One confirmed assistant response: remaining −1 (floored at 0), used +1."""
        def charge(state: QuotaState) -> QuotaState:
            return replace(
                state,
                remaining=max(0, state.remaining - 1) if state.remaining is not None else None,
                used=state.used + 1 if state.used is not None else None,
            )

        state = self._mutate(charge)
        logger.info(
            f"[{self.session_id}] Quota charged: remaining={state.remaining} "
            f"used={state.used} limit={state.limit}"
        )
        return state

    def set_disabled(self, reason: str) -> QuotaState:
        logger.info(f"[{self.session_id}] Assistant disabled: {reason}")
        return self.write(disabled_reason=reason)

    def _mutate(self, fn: Callable[[QuotaState], QuotaState]) -> QuotaState:
        result = {}

        def merge(raw: Optional[str]) -> str:
            base = _parse(raw) or self._last or QuotaState(updated_at=0.0)
            state = replace(fn(base), updated_at=self._clock())
            result["state"] = state
            return json.dumps(state.to_dict())

        self._store.update(self.key, merge)
        self._last = result["state"]
        return self._last
