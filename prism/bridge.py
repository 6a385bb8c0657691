"""
Prism - Console Bridge
=======================
Relays one browser WebSocket to one upstream relay session.

Messages keep the upstream shape {"event": str, "args": [...]} in both
directions, so the dashboard console speaks the same protocol it would
speak to the panel directly, minus the token handling.

Browser -> upstream (all others are ignored):
    - "send command" : console command (args[0])
    - "set state"    : power action (args[0])
    - "send logs"    : replay recent console output
    - "send stats"   : request a stats frame

Upstream -> browser:
    Every frame except auth/token bookkeeping.

Usage:
    bridge = ConsoleBridge(websocket, activity)
    await relay.stream(server_id, bridge.run, bridge.forward)
"""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from prism.relay import (
    POWER_ACTIONS,
    SEND_COMMAND,
    SEND_LOGS,
    SEND_STATS,
    SET_STATE,
    RelayConnection,
    decode_frame,
)
from prism.store import ActivityLog


logger = logging.getLogger(__name__)


class ConsoleBridge:
    """
    Pumps frames between a browser socket and an authenticated relay.

    Attributes:
        websocket: Accepted browser WebSocket.
        activity:  Activity log receiving commands and power actions.
        username:  Who is driving the console (recorded in activity).
    """

    def __init__(self, websocket: WebSocket, activity: ActivityLog, username: str = ""):
        self.websocket = websocket
        self.activity = activity
        self.username = username

    async def forward(self, frame: dict) -> None:
        """Upstream frame -> browser."""
        await self.websocket.send_text(json.dumps(frame, ensure_ascii=False))

    async def run(self, connection: RelayConnection, buffer: list[str]) -> None:
        """
        Session callback: serve the browser until either side goes away.
        """
        await connection.request_logs()
        await connection.request_stats()

        browser = asyncio.ensure_future(self._serve_browser(connection))
        upstream = asyncio.ensure_future(connection.wait_closed())
        try:
            await asyncio.wait({browser, upstream}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            browser.cancel()
            upstream.cancel()

        if browser.done() and not browser.cancelled() and browser.exception() is not None:
            raise browser.exception()

    async def _serve_browser(self, connection: RelayConnection) -> None:
        try:
            while True:
                frame = decode_frame(await self.websocket.receive_text())
                if frame is None:
                    continue
                await self._handle(connection, frame)
        except WebSocketDisconnect:
            logger.debug("Browser left console for server %s", connection.server_id)

    async def _handle(self, connection: RelayConnection, frame: dict) -> None:
        event = frame["event"]
        args = frame["args"]

        if event == SEND_COMMAND and args:
            command = str(args[0])
            await connection.send_command(command)
            self.activity.record(connection.server_id, "console command", {
                "command": command, "user": self.username,
            })
        elif event == SET_STATE and args and args[0] in POWER_ACTIONS:
            await connection.set_state(args[0])
            self.activity.record(connection.server_id, "power action", {
                "action": args[0], "user": self.username,
            })
        elif event == SEND_LOGS:
            await connection.request_logs()
        elif event == SEND_STATS:
            await connection.request_stats()
        else:
            logger.debug("Ignoring browser event %r for server %s", event, connection.server_id)
