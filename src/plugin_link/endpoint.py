"""Command endpoint shared by both peers.

Either side of the connection can start a call and await its result, and
either side answers the other's calls through registered handlers. This
base class holds that logic; subclasses only say how a frame is written
and whether the socket is currently open.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from .config import DEFAULT_CALL_TIMEOUT
from .correlation import CorrelationTable, PendingCall
from .dispatch import DispatchRouter, Handler
from .errors import ConnectionLostError, NotConnectedError
from .protocol import CommandEnvelope, encode

logger = logging.getLogger(__name__)


class CommandEndpoint(ABC):
    """Request/response correlation over one connection.

    Provides:
    - call(): send a request and await its typed result
    - notify(): send without waiting for a reply
    - on()/off(): answer the peer's requests
    - handle_frame(): feed inbound frames from the socket
    """

    def __init__(
        self,
        *,
        sender_id: str | None = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ) -> None:
        self.sender_id = sender_id
        self.call_timeout = call_timeout
        self._table = CorrelationTable()
        self._router = DispatchRouter(self._table, self._send_frame, sender_id)

    # Abstract methods for subclasses
    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if frames can currently be sent."""
        ...

    @abstractmethod
    async def _send_frame(self, frame: str) -> None:
        """Write one encoded frame to the peer.

        Raises:
            NotConnectedError: If the socket is not open
            ConnectionLostError: If the socket closed during the write
        """
        ...

    @property
    def router(self) -> DispatchRouter:
        return self._router

    @property
    def pending_count(self) -> int:
        """Number of calls awaiting a reply."""
        return len(self._table)

    def has_pending(self, call_id: str) -> bool:
        return call_id in self._table

    async def call(
        self,
        command: str,
        payload: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for the peer's reply.

        Args:
            command: Command type
            payload: Any JSON-representable value
            timeout: Seconds to wait for the reply; defaults to `call_timeout`.
                Zero or negative waits indefinitely (e.g. file dialogs).

        Returns:
            The reply payload

        Raises:
            NotConnectedError: If the socket is not open (nothing is queued)
            EncodeError: If the payload is not JSON-representable
            CallTimeoutError: If no reply arrived in time
            RemoteCallError: If the peer replied with status "error"
            ConnectionLostError: If the connection dropped before the reply
        """
        if timeout is None:
            timeout = self.call_timeout
        if not self.is_connected:
            raise NotConnectedError(f"Cannot call '{command}': not connected")

        envelope = CommandEnvelope.request(command, payload, sender_id=self.sender_id)
        frame = encode(envelope)

        future = self._table.register(envelope.id, command, payload, timeout)
        logger.debug(f"Calling {command} (id={envelope.id}, timeout={timeout:g}s)")
        try:
            await self._send_frame(frame)
        except BaseException:
            self._table.discard(envelope.id)
            raise

        return await future

    async def notify(self, command: str, payload: Any = None) -> str:
        """Send a request without waiting for a reply.

        A reply the peer sends anyway is dropped as an unknown id.

        Returns:
            The envelope id
        """
        envelope = CommandEnvelope.request(command, payload, sender_id=self.sender_id)
        frame = encode(envelope)
        await self._send_frame(frame)
        logger.debug(f"Sent {command} (id={envelope.id}), no reply expected")
        return envelope.id

    def on(self, command: str, handler: Handler) -> None:
        """Register the handler answering `command`. Replaces any previous one."""
        self._router.on(command, handler)

    def off(self, command: str) -> bool:
        """Unregister the handler for `command`."""
        return self._router.off(command)

    def handle_frame(self, frame: str | bytes) -> None:
        """Process one inbound frame from the socket."""
        self._router.handle_frame(frame)

    def fail_pending(self, reason: str = "Connection lost") -> int:
        """Fail every outstanding call with ConnectionLostError.

        Returns:
            Number of calls failed
        """

        def make_error(call: PendingCall) -> ConnectionLostError:
            return ConnectionLostError(f"{reason} before reply to {call.command} (id={call.id})")

        failed = self._table.fail_all(make_error)
        if failed:
            logger.warning(f"{reason}: failed {failed} pending call(s)")
        return failed
