"""
LiveGate — Viewer Cache

Typed access to what one viewer remembers about one session across
restarts: host token, outstanding join request, admitted credentials,
expiry instant and the exit record. Malformed entries read as absent.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from ..core.interfaces import KeyValueStore
from ..core.models import (
    CallCredentials,
    EndVariant,
    JoinRequest,
    ms_to_seconds,
    seconds_to_ms,
)
from .storage import storage_key

logger = logging.getLogger("livegate.cache")


class ViewerCache:
    def __init__(self, store: KeyValueStore, session_id: str, prefix: Optional[str] = None) -> None:
        self.session_id = session_id
        self._store = store
        self._prefix = prefix

    def _key(self, kind: str) -> str:
        return storage_key(kind, self.session_id, self._prefix)

    def _get_json(self, kind: str) -> Any:
        raw = self._store.get(self._key(kind))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.debug(f"[{self.session_id}] Ignoring malformed cache entry '{kind}'")
            return None

    def _set_json(self, kind: str, value: Any) -> None:
        self._store.set(self._key(kind), json.dumps(value))

    def _delete(self, kind: str) -> None:
        self._store.delete(self._key(kind))

    # ── Host token ───────────────────────────────────────────────────────

    @property
    def host_token(self) -> Optional[str]:
        token = self._store.get(self._key("hostToken"))
        return token or None

    def remember_host_token(self, token: str) -> None:
        self._store.set(self._key("hostToken"), token)

    def forget_host_token(self) -> None:
        self._delete("hostToken")

    # ── Join request ─────────────────────────────────────────────────────

    @property
    def join_request(self) -> Optional[JoinRequest]:
        return JoinRequest.from_payload(self._get_json("joinRequest"))

    def remember_join_request(self, request: JoinRequest) -> None:
        self._set_json("joinRequest", request.to_dict())

    # ── Admitted credentials ─────────────────────────────────────────────

    @property
    def credentials(self) -> Optional[CallCredentials]:
        return CallCredentials.from_payload(self._get_json("join"))

    def remember_credentials(self, credentials: CallCredentials) -> None:
        self._set_json("join", credentials.to_dict())

    # ── Expiry ───────────────────────────────────────────────────────────

    @property
    def expires_at(self) -> Optional[float]:
        return ms_to_seconds(self._get_json("expiresAt"))

    def remember_expires_at(self, expires_at: float) -> None:
        self._set_json("expiresAt", seconds_to_ms(expires_at))

    # ── Exit record ──────────────────────────────────────────────────────

    @property
    def exit_variant(self) -> Optional[EndVariant]:
        payload = self._get_json("exit")
        if not isinstance(payload, dict):
            return None
        try:
            return EndVariant(payload.get("variant"))
        except ValueError:
            return None

    def remember_exit(self, variant: EndVariant) -> None:
        self._set_json("exit", {"variant": variant.value})

    def forget_exit(self) -> None:
        self._delete("exit")

    # ── Bulk ─────────────────────────────────────────────────────────────

    def forget_request_state(self) -> None:
        """Drop any outstanding request and credentials."""
        self._delete("joinRequest")
        self._delete("join")

    def forget_session(self, include_host_token: bool = False) -> None:
        self.forget_request_state()
        self._delete("expiresAt")
        self._delete("exit")
        if include_host_token:
            self.forget_host_token()

