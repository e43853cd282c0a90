"""
LiveGate — Command Line

  livegate join SESSION [--role participant|observer] [--name NAME] [--request-id RID]
  livegate queue SESSION --host-token TOKEN
  livegate admit SESSION REQUEST_ID --host-token TOKEN
  livegate deny SESSION REQUEST_ID --host-token TOKEN
  livegate end SESSION --host-token TOKEN
  livegate ask SESSION "question" [--host-token TOKEN]

Every command drives the same engine a UI would; state lives in the local
cache file so `join` followed by `ask` resumes the admitted session.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import httpx

from .core.config import api_cfg, storage_cfg
from .core.errors import ApiHttpError, LiveGateError
from .core.models import AssistantMessage, Notice, PendingRequest, Role
from .core.state_machine import AdmissionState, AssistantState
from .services.api_client import SessionApi
from .services.live_session import LiveSession
from .services.storage import JsonFileStore

logger = logging.getLogger("livegate.cli")

# States after which `join` has nothing left to wait for
_SETTLED = {
    AdmissionState.LIVE,
    AdmissionState.REQUEST_DENIED,
    AdmissionState.ENDED,
    AdmissionState.ERROR,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="livegate", description="Live session admission and assistant client")
    parser.add_argument("--api", default=api_cfg.base_url, help="API base URL")
    parser.add_argument("--cache", default=storage_cfg.cache_path, help="Local cache file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    join = sub.add_parser("join", help="Join a session (host fast path or guest request)")
    join.add_argument("session_id")
    join.add_argument("--role", choices=[Role.PARTICIPANT.value, Role.OBSERVER.value], default=Role.PARTICIPANT.value)
    join.add_argument("--name", help="Display name shown to the host")
    join.add_argument("--host-token", help="Host credential for this session")
    join.add_argument("--request-id", help="Resume an outstanding join request")

    queue = sub.add_parser("queue", help="Watch the pending join requests (host)")
    queue.add_argument("session_id")
    queue.add_argument("--host-token", required=True)

    for name in ("admit", "deny"):
        decide = sub.add_parser(name, help=f"{name.capitalize()} a join request (host)")
        decide.add_argument("session_id")
        decide.add_argument("request_id")
        decide.add_argument("--host-token", required=True)

    end = sub.add_parser("end", help="End the session for everyone (host)")
    end.add_argument("session_id")
    end.add_argument("--host-token", required=True)

    ask = sub.add_parser("ask", help="Ask the session assistant one question")
    ask.add_argument("session_id")
    ask.add_argument("question")
    ask.add_argument("--host-token")
    ask.add_argument("--timeout", type=float, default=60.0, help="Seconds to wait for the answer")

    return parser


def _print_notice(notice: Notice) -> None:
    print(f"[{notice.kind}] {notice.message}")


def _print_queue(requests: List[PendingRequest], session: LiveSession) -> None:
    print(f"{len(requests)} pending")
    for req in requests:
        label = session.queue.display_name(req) if session.queue else req.request_id
        print(f"  {req.request_id}  {req.role.value:<11}  {label}")


async def _wait_for(changed: asyncio.Event, predicate, timeout: Optional[float] = None) -> bool:
    async def _loop() -> None:
        while True:
            changed.clear()
            if predicate():
                return
            await changed.wait()

    try:
        await asyncio.wait_for(_loop(), timeout)
        return True
    except asyncio.TimeoutError:
        return False


def _open_session(args: argparse.Namespace, api: SessionApi, **callbacks) -> LiveSession:
    store = JsonFileStore(args.cache)
    session = LiveSession(args.session_id, api, store, on_notice=_print_notice, **callbacks)
    token = getattr(args, "host_token", None)
    if token:
        session.cache.remember_host_token(token)
    return session


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _cmd_join(args: argparse.Namespace, api: SessionApi) -> int:
    changed = asyncio.Event()
    session = _open_session(args, api, on_state=lambda *_: changed.set())
    try:
        state = await session.start(request_id=args.request_id)
        if state in (AdmissionState.HOST_READY, AdmissionState.GUEST_PREVIEW):
            await session.join(Role(args.role), args.name)
        if session.state == AdmissionState.REQUEST_PENDING:
            print(f"Waiting for the host: {session.admission.share_location(api.base_url)}")

        await _wait_for(changed, lambda: session.state in _SETTLED)
        admission = session.admission
        if session.state == AdmissionState.LIVE:
            creds = admission.credentials
            print(f"Admitted as {creds.assigned_role.value}: room {creds.room_address}")
            print("In session. Ctrl-C to leave.")
            try:
                await _wait_for(changed, lambda: session.state == AdmissionState.ENDED)
            except asyncio.CancelledError:
                await session.leave()
                raise
            print(f"Session {admission.end_variant.value}")
            return 0
        if session.state == AdmissionState.REQUEST_DENIED:
            print("The host denied this request.")
            return 3
        if session.state == AdmissionState.ENDED:
            print(f"Session {admission.end_variant.value}")
            return 2
        print(f"Error: {admission.error}")
        return 1
    finally:
        await session.close()


async def _cmd_queue(args: argparse.Namespace, api: SessionApi) -> int:
    holder: List[LiveSession] = []
    changed = asyncio.Event()
    session = _open_session(
        args,
        api,
        on_queue=lambda reqs: _print_queue(reqs, holder[0]),
        on_state=lambda *_: changed.set(),
    )
    holder.append(session)
    try:
        state = await session.start()
        if state != AdmissionState.HOST_READY:
            print(f"Cannot watch the queue ({state.value})")
            return 1
        print("Watching join requests. Ctrl-C to stop.")
        await _wait_for(changed, lambda: session.state == AdmissionState.ENDED)
        print("Session ended")
        return 0
    finally:
        await session.close()


async def _cmd_decide(args: argparse.Namespace, api: SessionApi) -> int:
    if args.command == "admit":
        await api.admit(args.session_id, args.request_id, args.host_token)
    else:
        await api.deny(args.session_id, args.request_id, args.host_token)
    print(f"{args.command}: {args.request_id}")
    return 0


async def _cmd_end(args: argparse.Namespace, api: SessionApi) -> int:
    session = _open_session(args, api)
    try:
        state = await session.start()
        if state == AdmissionState.ENDED:
            print(f"Session already {session.admission.end_variant.value}")
            return 0
        await session.end_session()
        print("Session ended")
        return 0
    finally:
        await session.close()


async def _cmd_ask(args: argparse.Namespace, api: SessionApi) -> int:
    changed = asyncio.Event()

    def on_message(msg: AssistantMessage) -> None:
        if msg.role == "system":
            print(f"[{msg.kind}] {msg.content}")
        changed.set()

    session = _open_session(args, api, on_assistant_message=on_message)
    try:
        state = await session.start()
        if state == AdmissionState.HOST_READY:
            state = await session.join(Role.HOST)
        if state != AdmissionState.LIVE:
            print(f"Not admitted to this session ({state.value}); run `livegate join` first")
            return 1

        assistant = session.assistant
        await session.connect_assistant()
        if assistant.state != AssistantState.CONNECTED:
            print(f"Assistant unavailable: {assistant.error or assistant.state.value}")
            return 1

        question = await assistant.send_user_message(args.question)

        def answered() -> bool:
            if assistant.state != AssistantState.CONNECTED:
                return True
            for msg in reversed(assistant.messages):
                if msg is question:
                    return False
                if msg.role != "user" and msg.complete:
                    return True
            return False

        if not await _wait_for(changed, answered, args.timeout):
            print("Timed out waiting for the assistant")
            return 1
        for msg in assistant.messages:
            if msg.role == "assistant" and msg.timestamp >= question.timestamp:
                print(msg.content)
        quota = assistant.quota_state
        if quota is not None:
            print(f"remaining={quota.remaining} used={quota.used} limit={quota.limit}")
        return 0
    finally:
        await session.close()


_COMMANDS = {
    "join": _cmd_join,
    "queue": _cmd_queue,
    "admit": _cmd_decide,
    "deny": _cmd_decide,
    "end": _cmd_end,
    "ask": _cmd_ask,
}


async def _run(args: argparse.Namespace) -> int:
    api = SessionApi(base_url=args.api)
    try:
        return await _COMMANDS[args.command](args, api)
    except ApiHttpError as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        print(f"Request failed ({e.status}): {e.message}", file=sys.stderr)
        return 1
    except httpx.HTTPError as e:
        logger.error(f"{args.command}: cannot reach {api.base_url}: {e}")
        return 1
    except (LiveGateError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await api.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130
