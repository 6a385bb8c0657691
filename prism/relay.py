"""
Prism - Relay Session Manager
==============================
Proxies a panel server's real-time event stream (Wings websocket).

Upstream frames are JSON text shaped {"event": str, "args": [...]}.

Inbound events handled:
    - "auth success"    : token accepted, session becomes usable
    - "console output"  : one console line (args[0]), appended to the buffer
    - "stats"           : JSON-encoded resource metrics (args[0])
    - "status"          : lifecycle state string (args[0])
    - "token expiring"  : fetch a fresh token and re-authenticate
    - "jwt error"       : token rejected

Outbound events sent:
    auth, send command, send logs, send stats, set state

Session lifecycle:

    connecting -> authenticating -> authenticated -> completed
    connecting | authenticating -> failed

`RelaySession` is the pure state machine: feed it frames through
`dispatch()` and it returns the next state. `RelayManager` drives it over a
real socket, invokes the caller's callback exactly once after the first
"auth success", bounds the session with a hard timeout and closes the
upstream socket exactly once on every exit path.

Usage:
    relay = RelayManager(panel, timeout=10)
    lines = await relay.send_command_and_await("abcd1234", "list", wait=1)
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from prism.errors import PanelAPIError, RelayConnectError, RelayProtocolError, RelayTimeout
from prism.panel import PanelClient


logger = logging.getLogger(__name__)

# Inbound events
AUTH_SUCCESS = "auth success"
CONSOLE_OUTPUT = "console output"
STATS = "stats"
STATUS = "status"
TOKEN_EXPIRING = "token expiring"
TOKEN_EXPIRED = "token expired"
JWT_ERROR = "jwt error"

# Outbound events
AUTH = "auth"
SEND_COMMAND = "send command"
SEND_LOGS = "send logs"
SEND_STATS = "send stats"
SET_STATE = "set state"

POWER_ACTIONS = ("start", "stop", "restart", "kill")

# Token bookkeeping that is never shown to callers or browsers.
INTERNAL_EVENTS = {AUTH_SUCCESS, TOKEN_EXPIRING, TOKEN_EXPIRED, JWT_ERROR}


class RelayState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    COMPLETED = "completed"
    FAILED = "failed"


def encode_frame(event: str, *args: Any) -> str:
    return json.dumps({"event": event, "args": list(args)})


def decode_frame(raw: str | bytes) -> dict | None:
    """
    Parse one upstream text frame.

    Returns:
        {"event": str, "args": list}, or None if the frame is not a valid event.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return None

    args = frame.get("args")
    if args is None:
        args = []
    elif not isinstance(args, list):
        args = [args]
    return {"event": frame["event"], "args": args}


class RelaySession:
    """
    State machine for one upstream session.

    Attributes:
        server_id:  Target server.
        state:      Current RelayState.
        buffer:     Console lines in upstream delivery order. Append-only
                    except for explicit clears by the session's callback.
        stats:      Last decoded "stats" payload.
        status:     Last "status" value.
        error:      Why the session failed, if it did.
        token_refresh_pending: Set by "token expiring"; the driver clears it
                    after re-authenticating.
    """

    def __init__(self, server_id: str):
        self.server_id = server_id
        self.state = RelayState.CONNECTING
        self.buffer: list[str] = []
        self.stats: dict | None = None
        self.status: str | None = None
        self.error: str | None = None
        self.token_refresh_pending = False
        self.authenticated = asyncio.Event()
        self.upstream_closed = asyncio.Event()

    @property
    def finished(self) -> bool:
        return self.state in (RelayState.COMPLETED, RelayState.FAILED)

    def opened(self) -> RelayState:
        """Socket is open; the auth frame goes out next."""
        if self.state is RelayState.CONNECTING:
            self.state = RelayState.AUTHENTICATING
        return self.state

    def dispatch(self, frame: dict) -> RelayState:
        """Apply one inbound frame and return the resulting state."""
        event = frame.get("event")
        args = frame.get("args") or []

        if event == CONSOLE_OUTPUT:
            if args:
                self.buffer.append(str(args[0]))
        elif event == STATS:
            self.stats = _decode_stats(args[0] if args else None)
        elif event == STATUS:
            if args:
                self.status = str(args[0])
        elif event == AUTH_SUCCESS:
            if self.state is RelayState.AUTHENTICATING:
                self.state = RelayState.AUTHENTICATED
                self.authenticated.set()
        elif event in (TOKEN_EXPIRING, TOKEN_EXPIRED):
            if not self.finished:
                self.token_refresh_pending = True
        elif event == JWT_ERROR:
            if self.state in (RelayState.CONNECTING, RelayState.AUTHENTICATING):
                self.fail(f"upstream rejected token: {args[0] if args else 'jwt error'}")

        return self.state

    def closed(self) -> RelayState:
        """The upstream socket is gone."""
        self.upstream_closed.set()
        if self.state in (RelayState.CONNECTING, RelayState.AUTHENTICATING):
            self.fail("upstream closed before authentication")
        return self.state

    def complete(self) -> RelayState:
        if self.state is RelayState.AUTHENTICATED:
            self.state = RelayState.COMPLETED
        return self.state

    def fail(self, reason: str) -> RelayState:
        if not self.finished:
            self.state = RelayState.FAILED
            self.error = reason
        return self.state


class RelayConnection:
    """
    Handle given to session callbacks for talking to the upstream socket.

    The token and the underlying socket stay private to the manager.
    """

    def __init__(self, ws, session: RelaySession):
        self._ws = ws
        self._session = session

    @property
    def server_id(self) -> str:
        return self._session.server_id

    @property
    def stats(self) -> dict | None:
        return self._session.stats

    @property
    def status(self) -> str | None:
        return self._session.status

    async def send_event(self, event: str, *args: Any) -> None:
        await self._ws.send(encode_frame(event, *args))

    async def send_command(self, command: str) -> None:
        await self.send_event(SEND_COMMAND, command)

    async def set_state(self, action: str) -> None:
        if action not in POWER_ACTIONS:
            raise ValueError(f"Unknown power action: {action}")
        await self.send_event(SET_STATE, action)

    async def request_logs(self) -> None:
        await self.send_event(SEND_LOGS, None)

    async def request_stats(self) -> None:
        await self.send_event(SEND_STATS, None)

    async def wait_closed(self) -> None:
        """Block until the upstream socket goes away."""
        await self._session.upstream_closed.wait()


SessionCallback = Callable[[RelayConnection, list[str]], Awaitable[Any]]
FrameHandler = Callable[[dict], Awaitable[None]]


class RelayManager:
    """
    Opens, authenticates and tears down upstream relay sessions.

    Attributes:
        panel:        Panel client used for websocket credentials.
        timeout:      Hard bound in seconds on a bounded session.
        command_wait: Default sampling window for send_command_and_await().
    """

    def __init__(
        self,
        panel: PanelClient,
        timeout: float = 10.0,
        command_wait: float = 5.0,
        connect: Callable[..., Awaitable[Any]] | None = None,
    ):
        self.panel = panel
        self.timeout = timeout
        self.command_wait = command_wait
        self._connect = connect or websockets.connect

    async def with_session(self, server_id: str, on_authenticated: SessionCallback) -> Any:
        """
        Run `on_authenticated(connection, buffer)` inside one upstream session.

        The whole span from connection open to callback return is bounded by
        `timeout`.

        Returns:
            Whatever the callback returns.

        Raises:
            RelayTimeout:       The bound elapsed; the socket is force-closed.
            RelayConnectError:  The socket could not be opened.
            RelayProtocolError: Upstream closed or rejected the token before
                                "auth success".
            PanelAPIError:      Credentials could not be fetched.
        """
        return await self._run(server_id, on_authenticated, on_frame=None, bounded=True)

    async def stream(
        self,
        server_id: str,
        on_authenticated: SessionCallback,
        on_frame: FrameHandler | None = None,
    ) -> Any:
        """
        Long-lived variant of with_session() for console bridges.

        Only the handshake is bounded by `timeout`. `on_frame` receives every
        inbound frame except token bookkeeping, after the session has
        applied it.
        """
        return await self._run(server_id, on_authenticated, on_frame=on_frame, bounded=False)

    async def send_command_and_await(self, server_id: str, command: str,
                                     wait: float | None = None) -> list[str]:
        """
        Send a console command and sample the output for a fixed window.

        The upstream protocol has no end-of-output marker, so this returns
        whatever arrived within `wait` seconds. Callers must tolerate
        partial output and unrelated lines.
        """
        wait = self.command_wait if wait is None else wait

        async def _sample(connection: RelayConnection, buffer: list[str]) -> list[str]:
            buffer.clear()
            await connection.send_command(command)
            await asyncio.sleep(wait)
            return list(buffer)

        return await self.with_session(server_id, _sample)

    async def set_power_state(self, server_id: str, action: str) -> None:
        """Send a "set state" power signal (start/stop/restart/kill)."""
        if action not in POWER_ACTIONS:
            raise ValueError(f"Unknown power action: {action}")

        async def _signal(connection: RelayConnection, buffer: list[str]) -> None:
            await connection.set_state(action)

        await self.with_session(server_id, _signal)

    # -- Internal helpers ------------------------------------------------------

    async def _run(self, server_id: str, callback: SessionCallback,
                   on_frame: FrameHandler | None, bounded: bool) -> Any:
        credentials = await self.panel.get_websocket_credentials(server_id)
        session = RelaySession(server_id)
        ws = await self._open(session, credentials["socket"])
        pump = asyncio.create_task(self._pump(ws, session, on_frame))

        try:
            if bounded:
                return await asyncio.wait_for(
                    self._drive(ws, session, pump, credentials["token"], callback),
                    self.timeout,
                )
            await asyncio.wait_for(
                self._handshake(ws, session, pump, credentials["token"]),
                self.timeout,
            )
            return await self._invoke(ws, session, callback)
        except asyncio.TimeoutError:
            logger.warning(
                "Relay session for server %s timed out after %ss in state %s",
                server_id, self.timeout, session.state.value,
            )
            session.fail("timed out")
            raise RelayTimeout(f"Relay session for server {server_id} timed out") from None
        except ConnectionClosed as e:
            logger.warning("Relay session for server %s lost its socket: %s", server_id, e)
            session.fail("connection closed")
            raise RelayProtocolError(f"Upstream for server {server_id} closed: {e}") from e
        finally:
            await self._shutdown(ws, pump, session)

    async def _open(self, session: RelaySession, url: str):
        try:
            ws = await self._connect(url, origin=self.panel.base_url, open_timeout=self.timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            session.fail(f"connect failed: {e}")
            logger.warning("Relay connect for server %s failed: %s", session.server_id, e)
            raise RelayConnectError(f"Could not connect to upstream for server {session.server_id}") from e
        session.opened()
        return ws

    async def _drive(self, ws, session: RelaySession, pump: asyncio.Task,
                     token: str, callback: SessionCallback) -> Any:
        await self._handshake(ws, session, pump, token)
        return await self._invoke(ws, session, callback)

    async def _handshake(self, ws, session: RelaySession, pump: asyncio.Task, token: str) -> None:
        await ws.send(encode_frame(AUTH, token))

        waiter = asyncio.ensure_future(session.authenticated.wait())
        try:
            await asyncio.wait({waiter, pump}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if session.authenticated.is_set():
            return

        cause = pump.exception() if pump.done() and not pump.cancelled() else None
        session.fail(session.error or "upstream closed before authentication")
        logger.warning("Relay handshake for server %s failed: %s", session.server_id, session.error)
        raise RelayProtocolError(
            f"Relay handshake for server {session.server_id} failed: {session.error}"
        ) from cause

    async def _invoke(self, ws, session: RelaySession, callback: SessionCallback) -> Any:
        result = await callback(RelayConnection(ws, session), session.buffer)
        if session.complete() is RelayState.FAILED:
            # The reader stopped mid-session; whatever the callback saw is incomplete.
            raise RelayProtocolError(
                f"Relay session for server {session.server_id} failed: {session.error}"
            )
        return result

    async def _pump(self, ws, session: RelaySession, on_frame: FrameHandler | None) -> None:
        """Read upstream frames into the session until the socket closes."""
        try:
            async for raw in ws:
                frame = decode_frame(raw)
                if frame is None:
                    logger.debug("Ignoring malformed frame for server %s", session.server_id)
                    continue

                state = session.dispatch(frame)
                if session.token_refresh_pending:
                    session.token_refresh_pending = False
                    try:
                        await self._refresh_token(ws, session)
                    except PanelAPIError as e:
                        logger.error("Token refresh for server %s failed: %s", session.server_id, e)
                        session.fail("token refresh failed")
                        break
                if on_frame is not None and frame["event"] not in INTERNAL_EVENTS:
                    await on_frame(frame)
                if state is RelayState.FAILED:
                    break
        except ConnectionClosed as e:
            logger.debug("Upstream for server %s closed: %s", session.server_id, e)
        finally:
            session.closed()

    async def _refresh_token(self, ws, session: RelaySession) -> None:
        credentials = await self.panel.get_websocket_credentials(session.server_id)
        await ws.send(encode_frame(AUTH, credentials["token"]))
        logger.debug("Re-authenticated relay for server %s", session.server_id)

    async def _shutdown(self, ws, pump: asyncio.Task, session: RelaySession) -> None:
        pump.cancel()
        (outcome,) = await asyncio.gather(pump, return_exceptions=True)
        if isinstance(outcome, Exception):
            logger.warning("Relay reader for server %s failed: %s", session.server_id, outcome)
        await ws.close()
        if not session.finished:
            session.fail("aborted")


def _decode_stats(payload: Any) -> dict | None:
    if isinstance(payload, dict):
        return payload
    if not isinstance(payload, str):
        return None
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None
