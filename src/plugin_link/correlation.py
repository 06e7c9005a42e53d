"""Correlation table for outstanding calls.

Maps a request id to the future its caller is awaiting, plus the timer
that expires it. All mutation happens on the event loop thread, so the
table needs no locking.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import CallTimeoutError, RemoteCallError
from .protocol import EnvelopeStatus

logger = logging.getLogger(__name__)


@dataclass
class PendingCall:
    """One outstanding request awaiting a reply or its timeout."""

    id: str
    command: str
    payload: Any
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = None
    timeout: float | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class CorrelationTable:
    """Pending calls keyed by envelope id.

    Usage:
        future = table.register(envelope.id, "draw", payload, timeout=5.0)
        await send(envelope)
        result = await future          # resolved by table.complete(...)

    Invariants:
        - at most one entry per id
        - an entry's timer is cancelled exactly once, when the entry leaves
          the table, so a late timer can never evict a newer entry
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingCall] = {}

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[str]:
        """Ids of all outstanding calls."""
        return list(self._pending)

    def get(self, call_id: str) -> PendingCall | None:
        return self._pending.get(call_id)

    def register(
        self,
        call_id: str,
        command: str,
        payload: Any = None,
        timeout: float | None = None,
    ) -> asyncio.Future[Any]:
        """Create a pending entry and return the future it completes.

        Args:
            call_id: Envelope id of the outgoing request
            command: Command type, kept for diagnostics
            payload: Request payload, kept for diagnostics
            timeout: Seconds before the call fails with CallTimeoutError.
                None or <= 0 waits for the reply indefinitely.

        Raises:
            ValueError: If `call_id` is already pending
        """
        if call_id in self._pending:
            raise ValueError(f"Call id already pending: {call_id}")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        entry = PendingCall(id=call_id, command=command, payload=payload, future=future)

        if timeout is not None and timeout > 0:
            entry.timeout = timeout
            entry.timer = loop.call_later(timeout, self._expire, call_id, future)

        self._pending[call_id] = entry
        future.add_done_callback(lambda f: self._forget_cancelled(call_id, f))
        return future

    def complete(
        self,
        call_id: str,
        status: EnvelopeStatus | str,
        payload: Any = None,
        error: str | None = None,
    ) -> bool:
        """Resolve the pending call for `call_id` with a reply.

        Returns:
            True if a pending call was found, False for unknown ids
            (duplicate or late replies), which are otherwise ignored
        """
        entry = self._pending.pop(call_id, None)
        if entry is None:
            return False

        entry.cancel_timer()
        if entry.future.done():
            return True

        if EnvelopeStatus(status) == EnvelopeStatus.SUCCESS:
            entry.future.set_result(payload)
        else:
            entry.future.set_exception(RemoteCallError(entry.command, error, entry.payload))
        return True

    def discard(self, call_id: str) -> bool:
        """Drop a pending call without a reply. Its future is cancelled."""
        entry = self._pending.pop(call_id, None)
        if entry is None:
            return False

        entry.cancel_timer()
        if not entry.future.done():
            entry.future.cancel()
        elif not entry.future.cancelled():
            # Mark a stored exception as retrieved; nobody will await it now.
            entry.future.exception()
        return True

    def fail_all(self, make_error: Callable[[PendingCall], BaseException]) -> int:
        """Fail every pending call with the exception `make_error` builds for it.

        Returns:
            Number of calls failed
        """
        entries = list(self._pending.values())
        self._pending.clear()

        for entry in entries:
            entry.cancel_timer()
            if not entry.future.done():
                entry.future.set_exception(make_error(entry))
        return len(entries)

    def _expire(self, call_id: str, future: asyncio.Future[Any]) -> None:
        entry = self._pending.get(call_id)
        if entry is None or entry.future is not future:
            return

        del self._pending[call_id]
        entry.timer = None
        logger.warning(f"Call timed out: {entry.command} (id={call_id})")
        if not future.done():
            future.set_exception(
                CallTimeoutError(entry.command, entry.payload, entry.timeout or 0.0)
            )

    def _forget_cancelled(self, call_id: str, future: asyncio.Future[Any]) -> None:
        """Remove the entry when its caller gave up (task cancelled)."""
        if not future.cancelled():
            return
        entry = self._pending.get(call_id)
        if entry is not None and entry.future is future:
            del self._pending[call_id]
            entry.cancel_timer()
