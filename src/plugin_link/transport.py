"""Plugin-side transport facade.

Combines the connection manager with the command endpoint:

    transport = PluginTransport(config)
    transport.on("plugin.data", handle_data)
    await transport.start()
    await transport.wait_connected()
    result = await transport.call("get-config", timeout=2.0)

On every (re)connect the transport announces itself with a "startup"
envelope; the host does not answer it.
"""

from __future__ import annotations

import logging
from typing import Any

from .config import ReconnectPolicy, TransportConfig
from .connection import ConnectionManager, ConnectionState, Connector, Sleep
from .endpoint import CommandEndpoint
from .errors import TransportError
from .protocol import STARTUP_TYPE

logger = logging.getLogger(__name__)


class PluginTransport(CommandEndpoint):
    """Command transport from a plugin process to its host."""

    def __init__(
        self,
        config: TransportConfig,
        *,
        connector: Connector | None = None,
        sleep: Sleep | None = None,
        policy: ReconnectPolicy | None = None,
    ) -> None:
        """Initialize transport.

        Args:
            config: Connection parameters and timeouts
            connector: Opens the socket; defaults to a WebSocket client
            sleep: Waits between reconnect attempts; defaults to asyncio.sleep
            policy: Reconnect delays; defaults to `config.reconnect_policy()`
        """
        super().__init__(sender_id=config.plugin_id, call_timeout=config.call_timeout)
        self.config = config
        self._connection = ConnectionManager(
            config.url,
            on_frame=self.handle_frame,
            on_open=self._on_open,
            on_close=self._on_close,
            policy=policy or config.reconnect_policy(),
            connector=connector,
            sleep=sleep,
            ping_interval=config.ping_interval,
        )

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    async def start(self) -> None:
        """Connect to the host in the background. Returns immediately."""
        logger.info(
            f"Starting plugin transport with port {self.config.port}, uid {self.config.plugin_id}"
        )
        await self._connection.start()

    async def stop(self) -> None:
        """Disconnect, stop reconnecting and cancel running handlers."""
        await self._connection.stop()
        await self._router.cancel()
        self.fail_pending("Transport stopped")

    async def wait_connected(self, timeout: float | None = None) -> bool:
        return await self._connection.wait_connected(timeout)

    async def wait_closed(self) -> None:
        await self._connection.wait_closed()

    async def _send_frame(self, frame: str) -> None:
        await self._connection.send(frame)

    async def _on_open(self) -> None:
        logger.info("Sending startup command")
        try:
            await self.notify(STARTUP_TYPE, {"pluginID": self.config.plugin_id})
        except TransportError as e:
            logger.error(f"Failed to send startup command: {e}")

    def _on_close(self, error: BaseException | None) -> None:
        self.fail_pending("Connection lost")

    async def __aenter__(self) -> PluginTransport:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
