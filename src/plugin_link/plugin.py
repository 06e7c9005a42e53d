"""Plugin object: the entry point plugin authors build on.

Created explicitly at process start from the connection parameters the
host passed on the command line:

    plugin = create_plugin(port=port, plugin_id=uid, directory=directory)
    plugin.on("plugin.alive", on_alive)
    await plugin.run()

API wrappers for specific host commands are thin calls to `plugin.call()`
and live with the plugin code that needs them.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .config import TransportConfig
from .dispatch import Handler
from .logging_config import get_ui_logger
from .transport import PluginTransport

logger = logging.getLogger(__name__)

UI_LOG_COMMAND = "ui.log"

UI_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def handle_ui_log(payload: Any) -> None:
    """Default "ui.log" handler: write the host UI's message to the UI logger."""
    if not isinstance(payload, dict):
        logger.warning(f"Invalid ui.log payload: {payload!r}")
        return None

    level_name = str(payload.get("level", ""))
    message = payload.get("msg")
    level = UI_LOG_LEVELS.get(level_name.lower())
    if level is None:
        logger.warning(f"Invalid log level: {level_name}, message: {message}")
        return None

    get_ui_logger().log(level, message)
    return None


class Plugin:
    """A plugin process connected to its host."""

    def __init__(self, config: TransportConfig, transport: PluginTransport | None = None) -> None:
        self.config = config
        self.transport = transport or PluginTransport(config)
        self._stopped = asyncio.Event()

    @property
    def plugin_id(self) -> str:
        return self.config.plugin_id

    @property
    def directory(self) -> Path:
        return Path(self.config.directory)

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    def on(self, command: str, handler: Handler) -> None:
        """Register a handler for messages of type `command` from the host."""
        self.transport.on(command, handler)

    def off(self, command: str) -> bool:
        """Unregister the handler for `command`."""
        return self.transport.off(command)

    async def call(self, command: str, payload: Any = None, timeout: float | None = None) -> Any:
        """Send a command to the host and wait for its reply."""
        return await self.transport.call(command, payload, timeout)

    async def notify(self, command: str, payload: Any = None) -> str:
        """Send a command to the host without waiting for a reply."""
        return await self.transport.notify(command, payload)

    async def start(self) -> None:
        """Register default handlers and start connecting."""
        logger.info(f"Starting plugin client with dir {self.directory}")
        if not self.transport.router.has_handler(UI_LOG_COMMAND):
            self.on(UI_LOG_COMMAND, handle_ui_log)
        self._stopped.clear()
        await self.transport.start()

    async def stop(self) -> None:
        await self.transport.stop()
        self._stopped.set()

    async def run(self) -> None:
        """Start, then serve until stop() is called or reconnecting gives up."""
        await self.start()
        stopped = asyncio.create_task(self._stopped.wait())
        closed = asyncio.create_task(self.transport.wait_closed())
        try:
            await asyncio.wait({stopped, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            closed.cancel()
            await self.transport.stop()


def create_plugin(
    port: int,
    plugin_id: str,
    directory: Path | str,
    **options: Any,
) -> Plugin:
    """Create the plugin instance for this process.

    Args:
        port: Host WebSocket port
        plugin_id: Opaque instance id assigned by the host
        directory: Plugin working directory
        **options: Further TransportConfig fields (call_timeout, host, ...)

    Raises:
        ConfigError: If a parameter is missing or invalid
    """
    config = TransportConfig(port=port, plugin_id=plugin_id, directory=directory, **options)
    return Plugin(config)
