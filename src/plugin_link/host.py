"""Host-side endpoint.

The host application accepts plugin connections on a local WebSocket and
speaks the same protocol back: it answers plugin calls with registered
handlers and can call into any connected plugin by its id.

Used as a local host emulator (`plugin-link host`) and in tests.

Routes:
- /        - WebSocket, one connection per plugin process
- /health  - JSON list of connected plugin ids
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from .config import DEFAULT_CALL_TIMEOUT
from .dispatch import Handler
from .endpoint import CommandEndpoint
from .errors import ConnectionLostError, NotConnectedError
from .protocol import STARTUP_TYPE

logger = logging.getLogger(__name__)


class HostSession(CommandEndpoint):
    """One connected plugin, seen from the host."""

    def __init__(self, websocket: WebSocket, host: PluginHost) -> None:
        super().__init__(call_timeout=host.call_timeout)
        self.websocket = websocket
        self.plugin_id: str | None = None
        self._host = host
        self._open = False

        for command, handler in host.handlers.items():
            self.on(command, handler)

    @property
    def is_connected(self) -> bool:
        return self._open and self.websocket.client_state == WebSocketState.CONNECTED

    async def _send_frame(self, frame: str) -> None:
        if not self.is_connected:
            raise NotConnectedError(f"Plugin {self.plugin_id or '<unknown>'} is not connected")
        try:
            await self.websocket.send_text(frame)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ConnectionLostError(f"Connection lost during send: {e}") from e

    def handle_frame(self, frame: str | bytes) -> None:
        envelope = self._router.decode_frame(frame)
        if envelope is None:
            return

        # The startup announcement identifies the plugin and is never answered
        if envelope.type == STARTUP_TYPE:
            payload = envelope.payload if isinstance(envelope.payload, dict) else {}
            plugin_id = payload.get("pluginID") or envelope.sender_id
            if plugin_id:
                self.plugin_id = str(plugin_id)
                self._host._attach(self)
            logger.info(f"Plugin started: {self.plugin_id}")
            return

        self._router.route(envelope)

    async def serve(self) -> None:
        """Accept the connection and pump frames until the plugin disconnects."""
        await self.websocket.accept()
        self._open = True
        try:
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                frame = message.get("text")
                if frame is None:
                    frame = message.get("bytes")
                if frame is not None:
                    self.handle_frame(frame)
        except WebSocketDisconnect:
            pass
        finally:
            self._open = False
            self._host._detach(self)
            self.fail_pending("Plugin disconnected")
            await self._router.cancel()
            logger.info(f"Plugin disconnected: {self.plugin_id}")


class PluginHost:
    """Registry of connected plugins and the host's own handlers.

    Handlers registered here apply to every plugin session, including
    sessions that are already connected.
    """

    def __init__(self, call_timeout: float = DEFAULT_CALL_TIMEOUT) -> None:
        self.call_timeout = call_timeout
        self.handlers: dict[str, Handler] = {}
        self._sessions: dict[str, HostSession] = {}
        self._anonymous: set[HostSession] = set()

    @property
    def sessions(self) -> list[HostSession]:
        return list(self._sessions.values())

    @property
    def plugin_ids(self) -> list[str]:
        return list(self._sessions)

    def session(self, plugin_id: str) -> HostSession | None:
        return self._sessions.get(plugin_id)

    def on(self, command: str, handler: Handler) -> None:
        """Answer `command` from any plugin with `handler`."""
        self.handlers[command] = handler
        for session in self._all_sessions():
            session.on(command, handler)

    def off(self, command: str) -> bool:
        removed = self.handlers.pop(command, None) is not None
        for session in self._all_sessions():
            session.off(command)
        return removed

    async def call(
        self,
        plugin_id: str,
        command: str,
        payload: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Call into a connected plugin and wait for its reply.

        Raises:
            NotConnectedError: If no plugin with that id is connected
        """
        session = self._sessions.get(plugin_id)
        if session is None:
            raise NotConnectedError(f"Plugin not connected: {plugin_id}")
        return await session.call(command, payload, timeout)

    async def broadcast(self, command: str, payload: Any = None) -> int:
        """Notify every identified plugin.

        Returns:
            Number of plugins the notification was sent to
        """
        sent = 0
        for session in self.sessions:
            try:
                await session.notify(command, payload)
                sent += 1
            except (NotConnectedError, ConnectionLostError) as e:
                logger.warning(f"Broadcast of {command} to {session.plugin_id} failed: {e}")
        return sent

    async def websocket_endpoint(self, websocket: WebSocket) -> None:
        """Starlette WebSocket endpoint serving one plugin connection."""
        session = HostSession(websocket, self)
        self._anonymous.add(session)
        await session.serve()

    def _all_sessions(self) -> list[HostSession]:
        return [*self._sessions.values(), *self._anonymous]

    def _attach(self, session: HostSession) -> None:
        self._anonymous.discard(session)
        # A session re-announcing under a new id drops its old registration
        for plugin_id in [key for key, value in self._sessions.items() if value is session]:
            del self._sessions[plugin_id]
        previous = self._sessions.get(session.plugin_id or "")
        if previous is not None and previous is not session:
            logger.warning(f"Plugin {session.plugin_id} reconnected, replacing old session")
        self._sessions[session.plugin_id or ""] = session

    def _detach(self, session: HostSession) -> None:
        self._anonymous.discard(session)
        if session.plugin_id and self._sessions.get(session.plugin_id) is session:
            del self._sessions[session.plugin_id]


def create_host_app(host: PluginHost | None = None) -> Starlette:
    """Create the host ASGI application.

    Args:
        host: Plugin registry to serve; a fresh one is created if omitted.
            Available afterwards as `app.state.host`.
    """
    plugin_host = host or PluginHost()

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "plugins": plugin_host.plugin_ids})

    app = Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            WebSocketRoute("/", plugin_host.websocket_endpoint),
        ]
    )
    app.state.host = plugin_host
    return app
