"""Exception hierarchy for the command transport.

Protocol-level problems (malformed frames, late replies) are recovered
inside the transport and only logged. The exceptions below are the ones
that reach calling code: a call that timed out, a call the peer answered
with an error, or a call that could not be sent at all.
"""

from __future__ import annotations

import json
from typing import Any

# Longest payload rendering included in error messages
MAX_PAYLOAD_PREVIEW = 200


def describe_payload(payload: Any) -> str:
    """Render a payload for diagnostics, truncated to a readable length."""
    try:
        text = json.dumps(payload, ensure_ascii=False, default=repr)
    except (TypeError, ValueError):
        text = repr(payload)
    if len(text) > MAX_PAYLOAD_PREVIEW:
        return text[: MAX_PAYLOAD_PREVIEW - 3] + "..."
    return text


class TransportError(Exception):
    """Base exception for all transport errors."""


class EncodeError(TransportError, ValueError):
    """Raised when an envelope cannot be serialized to a text frame."""


class DecodeError(TransportError, ValueError):
    """Raised when a text frame is not a usable envelope."""

    def __init__(self, message: str, frame: str | bytes | None = None) -> None:
        super().__init__(message)
        self.frame = frame[:100] if frame is not None else None


class ConfigError(TransportError, ValueError):
    """Raised when transport configuration is invalid."""


class NotConnectedError(TransportError, ConnectionError):
    """Raised when sending while the socket is not open."""


class ConnectionLostError(TransportError, ConnectionError):
    """Raised when the connection drops while a call is outstanding."""


class CallError(TransportError):
    """A call() that did not produce a successful reply.

    Carries the request's command type and payload for diagnostics.
    """

    def __init__(self, message: str, command: str, payload: Any = None) -> None:
        super().__init__(message)
        self.command = command
        self.payload = payload


class CallTimeoutError(CallError, TimeoutError):
    """No reply arrived before the call's timeout expired."""

    def __init__(self, command: str, payload: Any = None, timeout: float = 0.0) -> None:
        super().__init__(
            f"Request timed out after {timeout:g}s, command: {command}, "
            f"payload: {describe_payload(payload)}",
            command,
            payload,
        )
        self.timeout = timeout


class RemoteCallError(CallError):
    """The peer answered the call with status "error"."""

    def __init__(self, command: str, remote_error: str | None, payload: Any = None) -> None:
        super().__init__(
            f"Request failed: {remote_error or 'Unknown error'}, command: {command}, "
            f"payload: {describe_payload(payload)}",
            command,
            payload,
        )
        self.remote_error = remote_error
