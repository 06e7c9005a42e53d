"""Connection manager for the plugin's socket to the host.

Owns the socket lifecycle as an explicit state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> CONNECTING ...
                                      any state -> CLOSED (stop() or policy exhausted)

The socket itself comes from an injectable connector and the wait between
attempts from an injectable sleep, so tests drive every transition without
real sockets or timers.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Protocol, runtime_checkable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import ReconnectPolicy
from .errors import ConnectionLostError, NotConnectedError

logger = logging.getLogger(__name__)

# Largest inbound frame accepted (base64 key images can be large)
MAX_FRAME_SIZE = 16 * 1024 * 1024

# Errors that mean "this attempt failed, try again later"
CONNECT_ERRORS: tuple[type[BaseException], ...] = (OSError, TimeoutError, WebSocketException)


class ConnectionState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@runtime_checkable
class FrameSocket(Protocol):
    """A connected text-message socket.

    `websockets` client connections satisfy this protocol directly.
    Iteration yields inbound frames and ends when the peer closes.
    """

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[FrameSocket]]
FrameCallback = Callable[[str | bytes], object]
OpenCallback = Callable[[], Awaitable[None]]
CloseCallback = Callable[[BaseException | None], None]
Sleep = Callable[[float], Awaitable[None]]


async def open_websocket(url: str, *, ping_interval: float | None = 20.0) -> FrameSocket:
    """Default connector: open a WebSocket client connection."""
    return await websockets.connect(
        url,
        ping_interval=ping_interval,
        ping_timeout=ping_interval,
        max_size=MAX_FRAME_SIZE,
    )


class ConnectionManager:
    """Keeps one connection to the host open, reconnecting forever.

    Every inbound frame is passed verbatim to `on_frame`. After each
    successful connect `on_open` runs (the transport sends its startup
    envelope there); after each disconnect `on_close` receives the error,
    or None for a clean close.
    """

    def __init__(
        self,
        url: str,
        *,
        on_frame: FrameCallback,
        on_open: OpenCallback | None = None,
        on_close: CloseCallback | None = None,
        policy: ReconnectPolicy | None = None,
        connector: Connector | None = None,
        sleep: Sleep | None = None,
        ping_interval: float | None = 20.0,
    ) -> None:
        self.url = url
        self._on_frame = on_frame
        self._on_open = on_open
        self._on_close = on_close
        self._policy = policy or ReconnectPolicy()
        self._connector = connector or functools.partial(open_websocket, ping_interval=ping_interval)
        self._sleep = sleep or asyncio.sleep

        self._state = ConnectionState.DISCONNECTED
        self._socket: FrameSocket | None = None
        self._task: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()
        self._closed = asyncio.Event()
        self._reconnects = 0

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._socket is not None

    @property
    def reconnect_count(self) -> int:
        """Number of reconnect delays taken so far."""
        return self._reconnects

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"Connection state: {self._state.value} -> {state.value}")
            self._state = state

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start connecting in the background. Returns immediately."""
        if self._task is not None and not self._task.done():
            return
        if self._state == ConnectionState.CLOSED:
            raise NotConnectedError("Connection manager was stopped")

        logger.info(f"Starting connection to {self.url}")
        self._closed.clear()
        self._task = asyncio.create_task(self._run(), name="plugin-link-connection")

    async def stop(self) -> None:
        """Close the connection and stop reconnecting."""
        self._set_state(ConnectionState.CLOSED)

        socket = self._socket
        if socket is not None:
            with contextlib.suppress(Exception):
                await socket.close()

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        self._closed.set()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until the socket is open and `on_open` has run.

        Returns:
            True if connected, False if `timeout` expired first
        """
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def wait_closed(self) -> None:
        """Wait until the manager reaches CLOSED."""
        await self._closed.wait()

    # =========================================================================
    # I/O
    # =========================================================================

    async def send(self, frame: str) -> None:
        """Write one frame to the socket.

        Raises:
            NotConnectedError: If the socket is not open
            ConnectionLostError: If the socket closed during the write
        """
        socket = self._socket
        if socket is None or self._state != ConnectionState.CONNECTED:
            raise NotConnectedError(f"Not connected to {self.url} (state: {self._state.value})")

        try:
            await socket.send(frame)
        except ConnectionClosed as e:
            raise ConnectionLostError(f"Connection lost during send: {e}") from e
        except OSError as e:
            raise ConnectionLostError(f"Send failed: {e}") from e

    async def _run(self) -> None:
        attempt = 0
        try:
            while self._state != ConnectionState.CLOSED:
                self._set_state(ConnectionState.CONNECTING)
                try:
                    socket = await self._connector(self.url)
                except CONNECT_ERRORS as e:
                    logger.error(f"Failed to connect to {self.url}: {e}")
                    if self._state != ConnectionState.CLOSED:
                        self._set_state(ConnectionState.DISCONNECTED)
                else:
                    attempt = 0
                    await self._serve(socket)

                if self._state == ConnectionState.CLOSED:
                    break

                delay = self._policy.next_delay(attempt)
                if delay is None:
                    logger.error(f"Giving up on {self.url} after {attempt} attempts")
                    self._set_state(ConnectionState.CLOSED)
                    break

                attempt += 1
                self._reconnects += 1
                logger.info(f"Retrying connection in {delay:g} seconds...")
                await self._sleep(delay)
        finally:
            self._closed.set()

    async def _serve(self, socket: FrameSocket) -> None:
        """Pump frames from a connected socket until it closes."""
        if self._state == ConnectionState.CLOSED:
            with contextlib.suppress(Exception):
                await socket.close()
            return

        self._socket = socket
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"Connected to server at {self.url}")

        error: BaseException | None = None
        try:
            if self._on_open is not None:
                await self._on_open()
            # wait_connected() returns only once on_open has run
            self._connected.set()

            async for frame in socket:
                try:
                    self._on_frame(frame)
                except Exception as e:
                    logger.exception(f"Error handling message: {e}")

            logger.warning("Connection closed")
        except ConnectionClosed as e:
            error = e
            logger.warning(f"Connection closed: {e}")
        except OSError as e:
            error = e
            logger.error(f"Connection error: {e}")
        finally:
            self._socket = None
            self._connected.clear()
            if self._state != ConnectionState.CLOSED:
                self._set_state(ConnectionState.DISCONNECTED)
            with contextlib.suppress(Exception):
                await socket.close()
            if self._on_close is not None:
                self._on_close(error)
