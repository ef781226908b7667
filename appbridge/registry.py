"""Directory of live app sessions and routing of commands to them.

Several apps can be connected at once, one per ``host:port``. Commands that
do not name a target go to the only session, or to the default session when
there are several: the most recently created one still alive.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from appbridge.client import EndpointClient
from appbridge.config import BridgeSettings
from appbridge.discovery import Discovery
from appbridge.errors import (
    AmbiguousTargetError,
    EndpointConnectionError,
    HandshakeError,
    NoActiveSessionError,
)
from appbridge.protocol import EndpointKey
from appbridge.retry import DEFAULT_RETRY_POLICY, RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)

Target = Union[EndpointKey, int, str]


class SessionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STALE = "stale"
    REMOVED = "removed"


class StartOutcome(str, Enum):
    CONNECTED = "connected"
    NOT_FOUND = "not_found"


def parse_target(identifier: int | str | None) -> Target | None:
    """Classify an identifier as a port, a ``host:port`` pair, or an app identifier."""
    if identifier is None:
        return None
    if isinstance(identifier, int) and not isinstance(identifier, bool):
        return identifier
    text = str(identifier).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)
    host, sep, port = text.rpartition(":")
    if sep and host and port.isdigit():
        return EndpointKey.of(host.strip("[]"), int(port))
    return text


@dataclass(eq=False)
class Session:
    client: EndpointClient
    identifier: str | None = None
    seq: int = 0
    state: SessionState = SessionState.CONNECTING
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    @property
    def key(self) -> EndpointKey:
        return self.client.key

    @property
    def host(self) -> str:
        return self.client.host

    @property
    def port(self) -> int:
        return self.client.port

    @property
    def connected(self) -> bool:
        return self.state is SessionState.CONNECTED and self.client.connected

    @property
    def label(self) -> str:
        return f"{self.identifier} ({self.key})" if self.identifier else str(self.key)

    async def execute(
        self,
        command: str,
        args: dict[str, Any] | None = None,
        timeout: float | None = None,
        *,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> Any:
        result = await execute_with_retry(
            self.client, command, args, timeout, policy=policy, sleep=sleep
        )
        self.last_activity = time.time()
        return result

    def status(self, is_default: bool | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "connected": self.connected,
            "identifier": self.identifier,
            "host": self.host,
            "port": self.port,
        }
        if is_default is not None:
            data["isDefault"] = is_default
        return data


@dataclass
class StartResult:
    outcome: StartOutcome
    sessions: list[Session] = field(default_factory=list)
    message: str = ""

    @property
    def connected(self) -> bool:
        return self.outcome is StartOutcome.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "message": self.message,
            "sessions": [s.status() for s in self.sessions],
        }


class SessionRegistry:
    """Owns every session; the only shared mutable state in the bridge."""

    def __init__(
        self,
        settings: BridgeSettings | None = None,
        *,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self.settings = settings or BridgeSettings.from_env()
        self.retry_policy = retry_policy
        self.discovery = Discovery(self.settings, probe=self._probe)
        self._sessions: dict[EndpointKey, Session] = {}
        self._inflight: dict[EndpointKey, asyncio.Task[Session]] = {}
        self._seq = itertools.count(1)

    async def __aenter__(self) -> SessionRegistry:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def sessions(self) -> list[Session]:
        """Live sessions, oldest first."""
        return sorted(self._sessions.values(), key=lambda s: s.seq)

    @property
    def default(self) -> Session | None:
        sessions = self.sessions
        return sessions[-1] if sessions else None

    # ── Opening sessions ────────────────────────────────────────

    async def open(self, key: EndpointKey, timeout: float | None = None) -> Session:
        """Connect and handshake one endpoint, sharing any attempt already running."""
        live = self._sessions.get(key)
        if live is not None and live.connected:
            return live
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._open(key, timeout if timeout is not None else self.settings.connect_timeout)
            )
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget_inflight(key, t))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            raise EndpointConnectionError(f"Connecting to {key} was cancelled by stop()") from None

    def _forget_inflight(self, key: EndpointKey, task: asyncio.Task[Session]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _probe(self, key: EndpointKey, timeout: float) -> EndpointClient:
        session = await self.open(key, timeout)
        return session.client

    async def _open(self, key: EndpointKey, timeout: float) -> Session:
        client = EndpointClient(key.host, key.port, connect_timeout=timeout)
        try:
            await client.connect()
            identifier = await client.handshake(timeout)
        except BaseException:
            await client.disconnect()
            raise
        return await self._register(client, identifier)

    async def _register(self, client: EndpointClient, identifier: str | None) -> Session:
        previous = self._sessions.pop(client.key, None)
        if previous is not None and previous.client is not client:
            logger.info("Replacing stale session for %s", client.key)
            previous.state = SessionState.REMOVED
            await previous.client.disconnect()

        session = Session(client, identifier, seq=next(self._seq), state=SessionState.CONNECTED)
        self._sessions[client.key] = session
        client.add_close_listener(lambda _client: self._on_closed(session))
        logger.info("Session started: %s", session.label)
        return session

    def _on_closed(self, session: Session) -> None:
        if self._sessions.get(session.key) is not session:
            return
        session.state = SessionState.STALE
        del self._sessions[session.key]
        session.state = SessionState.REMOVED
        logger.warning("Lost connection to %s; session removed", session.label)

    # ── Public operations ───────────────────────────────────────

    async def start(
        self,
        identifier: int | str | None = None,
        host: str | None = None,
        port: int | None = None,
    ) -> StartResult:
        """Connect to a running app, reusing a live session when there is one.

        An explicit port or ``host:port`` is the only endpoint tried; otherwise
        discovery runs. Returns NOT_FOUND rather than raising when no app
        answers. Raises HandshakeError when an app answered but the handshake
        failed.
        """
        target = parse_target(identifier)
        app_id = target if isinstance(target, str) else None
        if isinstance(target, EndpointKey):
            host, port = target.host, target.port
        elif isinstance(target, int):
            port = target

        if app_id is not None:
            existing = [s for s in self.sessions if s.identifier == app_id]
            if existing:
                return StartResult(
                    StartOutcome.CONNECTED, existing[-1:], f"Already connected to {existing[-1].label}"
                )
        if port is not None and app_id is None:
            return await self._start_endpoint(EndpointKey.of(host or self.settings.host, port))

        known = set(self._sessions)
        result = await self.discovery.discover(host, port, want_all=app_id is not None)
        sessions = [self._sessions[c.key] for c in result.clients if c.key in self._sessions]
        if app_id is not None:
            strays = [s for s in sessions if s.identifier != app_id and s.key not in known]
            sessions = [s for s in sessions if s.identifier == app_id]
            for session in strays:
                del self._sessions[session.key]
            await self._retire(strays)
        if sessions:
            names = ", ".join(s.label for s in sessions)
            return StartResult(StartOutcome.CONNECTED, sessions, f"Connected to {names}")
        if result.handshake_failures:
            raise result.handshake_failures[0]

        wanted = f" matching {app_id!r}" if app_id else ""
        return StartResult(
            StartOutcome.NOT_FOUND,
            message=(
                f"No running app{wanted} found on {self.settings.host}:{self.settings.port} "
                f"or ports {self.settings.port}-{self.settings.port + self.settings.scan_size - 1}. "
                "Make sure the app is running with the MCP bridge plugin enabled."
            ),
        )

    async def stop(self, identifier: int | str | None = None) -> list[Session]:
        """Disconnect one session, or every session when no identifier is given.

        A connect still in flight for the target is cancelled as well. An
        identifier that matches nothing is a no-op.
        """
        if identifier is None:
            self._cancel_inflight(None)
            stopped = self.sessions
            self._sessions.clear()
        else:
            target = parse_target(identifier)
            if target is not None:
                self._cancel_inflight(target)
            matches = self._match(target)
            if not matches:
                logger.debug("stop(%r): no matching session", identifier)
                return []
            if isinstance(target, str) and len(matches) > 1:
                raise self._ambiguous(identifier, matches)
            stopped = matches[-1:]
            for session in stopped:
                del self._sessions[session.key]

        await self._retire(stopped)
        for session in stopped:
            logger.info("Session stopped: %s", session.label)
        return stopped

    async def _start_endpoint(self, key: EndpointKey) -> StartResult:
        live = self._sessions.get(key)
        if live is not None and live.connected:
            return StartResult(StartOutcome.CONNECTED, [live], f"Already connected to {live.label}")
        try:
            session = await self.open(key)
        except HandshakeError:
            raise
        except EndpointConnectionError as exc:
            logger.info("No app answered at %s: %s", key, exc)
            return StartResult(
                StartOutcome.NOT_FOUND,
                message=(
                    f"No running app found at {key}. "
                    "Make sure the app is running with the MCP bridge plugin enabled."
                ),
            )
        return StartResult(StartOutcome.CONNECTED, [session], f"Connected to {session.label}")

    def status(self, identifier: int | str | None = None) -> dict[str, Any] | list[dict[str, Any]]:
        if identifier is not None:
            matches = self._match(parse_target(identifier))
            if not matches:
                return {
                    "connected": False,
                    "identifier": None,
                    "host": None,
                    "port": None,
                    "found": False,
                    "target": str(identifier),
                }
            if len(matches) == 1:
                return matches[0].status()
            default = self.default
            return [s.status(is_default=s is default) for s in matches]

        sessions = self.sessions
        if not sessions:
            return {
                "connected": False,
                "identifier": None,
                "host": self.settings.host,
                "port": self.settings.port,
            }
        if len(sessions) == 1:
            return sessions[0].status()
        default = sessions[-1]
        return [s.status(is_default=s is default) for s in sessions]

    def resolve_session(self, identifier: int | str | None = None) -> Session:
        """Pick the session a command should go to."""
        if not self._sessions:
            raise NoActiveSessionError()
        if identifier is None:
            return self.sessions[-1]
        target = parse_target(identifier)
        if target is None:
            return self.sessions[-1]
        matches = self._match(target)
        if not matches or (isinstance(target, str) and len(matches) > 1):
            raise self._ambiguous(identifier, matches)
        return matches[-1]

    def resolve(self, identifier: int | str | None = None) -> EndpointClient:
        return self.resolve_session(identifier).client

    async def execute(
        self,
        command: str,
        args: dict[str, Any] | None = None,
        *,
        identifier: int | str | None = None,
        timeout: float | None = None,
    ) -> Any:
        session = self.resolve_session(identifier)
        return await session.execute(command, args, timeout, policy=self.retry_policy)

    # ── Helpers ─────────────────────────────────────────────────

    def _cancel_inflight(self, target: Target | None) -> None:
        for key, task in list(self._inflight.items()):
            if (
                target is None
                or key == target
                or (isinstance(target, int) and key.port == target)
            ):
                task.cancel()

    async def _retire(self, sessions: list[Session]) -> None:
        for session in sessions:
            session.state = SessionState.REMOVED
        await asyncio.gather(*(s.client.disconnect() for s in sessions))

    def _match(self, target: Target | None) -> list[Session]:
        if target is None:
            return []
        if isinstance(target, EndpointKey):
            session = self._sessions.get(target)
            return [session] if session is not None else []
        if isinstance(target, int):
            return [s for s in self.sessions if s.port == target]
        return [s for s in self.sessions if s.identifier == target]

    def _ambiguous(self, identifier: int | str, matches: list[Session]) -> AmbiguousTargetError:
        if matches:
            ports = ", ".join(str(s.key) for s in matches)
            return AmbiguousTargetError(
                f"{identifier!r} matches several apps ({ports}); target one by host:port"
            )
        connected = ", ".join(s.label for s in self.sessions) or "none"
        return AmbiguousTargetError(
            f"No connected app matches {identifier!r}. Connected apps: {connected}"
        )
