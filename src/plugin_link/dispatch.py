"""Dispatch router for inbound envelopes.

Routes every decoded frame either to the pending call it answers or to the
handler registered for its type, and sends the handler's result back as a
"response" envelope.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .correlation import CorrelationTable
from .errors import DecodeError, EncodeError, TransportError
from .protocol import CommandEnvelope, decode, encode

logger = logging.getLogger(__name__)

# A handler receives the inbound payload and returns the reply payload,
# either directly or as an awaitable.
Handler = Callable[[Any], Any]
FrameSender = Callable[[str], Awaitable[None]]


def describe_error(exc: BaseException) -> str:
    """Non-empty diagnostic text for a handler failure."""
    return str(exc) or exc.__class__.__name__


class DispatchRouter:
    """Routes inbound envelopes to pending calls or registered handlers.

    Handler registry:
        One handler per command type. Registering a type again replaces the
        previous handler (last write wins); there is no fan-out.

    Scheduling:
        Replies to pending calls complete inline. Each handler invocation
        runs in its own task, so a slow handler never holds up the receive
        loop and replies may leave in a different order than requests came
        in. Correlation by id is what keeps them straight.
    """

    def __init__(
        self,
        table: CorrelationTable,
        send: FrameSender,
        sender_id: str | None = None,
    ) -> None:
        """Initialize router.

        Args:
            table: Pending calls that replies are matched against
            send: Coroutine function writing an encoded frame to the peer
            sender_id: Stamped on every reply as `senderID`
        """
        self._table = table
        self._send = send
        self._sender_id = sender_id
        self._handlers: dict[str, Handler] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    # =========================================================================
    # Handler registry
    # =========================================================================

    def on(self, command: str, handler: Handler) -> None:
        """Register `handler` for `command`, replacing any previous one."""
        if command in self._handlers:
            logger.debug(f"Replacing handler for command: {command}")
        else:
            logger.debug(f"Registered handler for command: {command}")
        self._handlers[command] = handler

    def off(self, command: str) -> bool:
        """Unregister the handler for `command`.

        Returns:
            True if a handler was removed
        """
        if self._handlers.pop(command, None) is None:
            return False
        logger.debug(f"Unregistered handler for command: {command}")
        return True

    def has_handler(self, command: str) -> bool:
        return command in self._handlers

    def get_handler(self, command: str) -> Handler | None:
        return self._handlers.get(command)

    @property
    def registered_commands(self) -> list[str]:
        return list(self._handlers)

    # =========================================================================
    # Routing
    # =========================================================================

    def handle_frame(self, frame: str | bytes) -> asyncio.Task[None] | None:
        """Decode and route one inbound frame."""
        envelope = self.decode_frame(frame)
        if envelope is None:
            return None
        return self.route(envelope)

    def decode_frame(self, frame: str | bytes) -> CommandEnvelope | None:
        """Decode a frame, logging and dropping it if malformed."""
        try:
            return decode(frame)
        except DecodeError as e:
            logger.error(f"Invalid message format, dropping frame: {e} ({e.frame!r})")
            return None

    def route(self, envelope: CommandEnvelope) -> asyncio.Task[None] | None:
        """Route a decoded envelope.

        Returns:
            The task running the handler, or None when the envelope completed
            a pending call or was dropped
        """
        if self._table.complete(envelope.id, envelope.status, envelope.payload, envelope.error):
            logger.debug(f"Completed call {envelope.id} ({envelope.status.value})")
            return None

        if envelope.is_reply:
            logger.debug(f"Dropping reply for unknown call id: {envelope.id}")
            return None

        handler = self._handlers.get(envelope.type)
        if handler is None:
            logger.debug(f"No handler for command '{envelope.type}', dropping")
            return None

        task = asyncio.create_task(
            self._invoke(handler, envelope),
            name=f"handler:{envelope.type}:{envelope.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _invoke(self, handler: Handler, envelope: CommandEnvelope) -> None:
        """Run one handler and send exactly one reply for it."""
        try:
            result = handler(envelope.payload)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Error in handler for {envelope.type}: {e}")
            reply = CommandEnvelope.reply(
                envelope.id, error=describe_error(e), sender_id=self._sender_id
            )
        else:
            reply = CommandEnvelope.reply(envelope.id, payload=result, sender_id=self._sender_id)

        try:
            frame = encode(reply)
        except EncodeError as e:
            logger.error(f"Handler result for {envelope.type} is not serializable: {e}")
            frame = encode(
                CommandEnvelope.reply(
                    envelope.id,
                    error=f"Handler result is not serializable: {e}",
                    sender_id=self._sender_id,
                )
            )

        try:
            await self._send(frame)
        except TransportError as e:
            logger.warning(f"Dropping reply to {envelope.type} (id={envelope.id}): {e}")

    # =========================================================================
    # Task management
    # =========================================================================

    @property
    def active_handlers(self) -> int:
        """Number of handler invocations still running."""
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until all running handlers have sent their replies."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        """Cancel all running handlers. Their replies are not sent."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
