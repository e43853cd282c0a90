"""
LiveGate — Session API Client

Thin async wrapper over the remote session REST endpoints. Every non-2xx
response becomes an ApiHttpError carrying the status and the server's
`error` message when it sent one; callers branch on the status (410 ended,
404 missing, 429 quota exhausted).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import httpx
import jwt

from ..core.config import ApiConfig, api_cfg
from ..core.errors import ApiHttpError
from ..core.models import (
    CallCredentials,
    JoinRequest,
    JoinStatus,
    PreflightResult,
    Role,
    Session,
    UsageSnapshot,
    ms_to_seconds,
)

logger = logging.getLogger("livegate.api")

_WS_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


def token_expiry(token: Optional[str]) -> Optional[float]:
    """`exp` claim of a stream token, read without verifying the signature."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return float(exp)
    return None


class SessionApi:
    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        cfg: ApiConfig = api_cfg,
    ) -> None:
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=cfg.request_timeout)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def auth_headers(token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Any:
        response = await self._client.request(
            method,
            self.url(path),
            json=body,
            headers=self.auth_headers(token),
        )
        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = None
        if response.is_error:
            message = None
            if isinstance(payload, dict) and isinstance(payload.get("error"), str):
                message = payload["error"]
            logger.debug(f"{method} {path} → {response.status_code}")
            raise ApiHttpError(
                response.status_code,
                message or f"Request failed ({response.status_code})",
                payload,
            )
        return payload

    # ── Session ──────────────────────────────────────────────────────────

    async def fetch_session(self, session_id: str) -> Session:
        payload = await self._request("GET", f"/api/session/{session_id}")
        session = Session.from_payload(payload, fallback_id=session_id)
        if session is None:
            raise ApiHttpError(200, "Invalid session response", payload)
        return session

    async def end_session(self, session_id: str, host_token: str) -> None:
        await self._request("POST", f"/api/session/{session_id}/end", token=host_token)

    # ── Admission ────────────────────────────────────────────────────────

    async def join_as_host(self, session_id: str, host_token: str) -> CallCredentials:
        payload = await self._request("POST", f"/api/session/{session_id}/join", token=host_token)
        creds = CallCredentials.from_payload(payload, default_role=Role.HOST)
        if creds is None:
            raise ApiHttpError(200, "Invalid join response", payload)
        # The host fast path always lands as host, whatever the server echoes
        if creds.assigned_role != Role.HOST:
            creds = CallCredentials(Role.HOST, creds.room_address, creds.access_token)
        return creds

    async def create_join_request(
        self,
        session_id: str,
        role: Role,
        display_name: Optional[str] = None,
    ) -> JoinRequest:
        body: Dict[str, Any] = {"role": role.value}
        if display_name:
            body["displayName"] = display_name
        payload = await self._request("POST", f"/api/session/{session_id}/join-requests", body)
        request = JoinRequest.from_payload(payload)
        if request is None:
            raise ApiHttpError(200, "Invalid join request response", payload)
        request.requested_role = role
        request.status = JoinStatus.PENDING
        return request

    async def admit(self, session_id: str, request_id: str, host_token: str) -> None:
        await self._request(
            "POST", f"/api/session/{session_id}/join-requests/{request_id}/admit", token=host_token
        )

    async def deny(self, session_id: str, request_id: str, host_token: str) -> None:
        await self._request(
            "POST", f"/api/session/{session_id}/join-requests/{request_id}/deny", token=host_token
        )

    def request_stream_url(self, session_id: str, request_id: str) -> str:
        return self.url(f"/api/session/{session_id}/join-requests/{request_id}/stream")

    def queue_stream_url(self, session_id: str) -> str:
        return self.url(f"/api/session/{session_id}/join-requests/stream")

    # ── Assistant ────────────────────────────────────────────────────────

    async def assistant_preflight(
        self,
        session_id: str,
        role: Role,
        host_token: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> PreflightResult:
        if role == Role.HOST:
            if not host_token:
                raise ValueError("Missing host token for assistant connect")
            body: Dict[str, Any] = {"role": role.value}
        else:
            if not request_id:
                raise ValueError("Missing join request id for assistant connect")
            body = {"role": role.value, "requestId": request_id}

        payload = await self._request(
            "POST",
            f"/api/session/{session_id}/ai/connect",
            body,
            token=host_token if role == Role.HOST else None,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("streamEndpoint"), str):
            raise ApiHttpError(200, "Invalid AI connect response", payload)

        usage = UsageSnapshot.from_payload(payload)
        token = payload.get("streamToken") if isinstance(payload.get("streamToken"), str) else None
        expires_at = ms_to_seconds(payload.get("expiresAt")) or token_expiry(token)
        return PreflightResult(
            stream_endpoint=payload["streamEndpoint"],
            stream_token=token or None,
            usage_count=usage.used,
            usage_limit=usage.limit,
            remaining=usage.remaining,
            expires_at=expires_at,
        )

    def websocket_url(self, endpoint: str, role: Role, token: Optional[str] = None) -> str:
        """Absolute ws(s) URL for a stream endpoint, with role and token attached."""
        absolute = urljoin(self.base_url + "/", endpoint)
        parts = urlsplit(absolute)
        scheme = _WS_SCHEMES.get(parts.scheme, parts.scheme)
        query = dict(parse_qsl(parts.query))
        query["role"] = role.value
        if token:
            query["token"] = token
        return urlunsplit((scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
