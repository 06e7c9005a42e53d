"""plugin-link - command transport between a plugin process and its host.

One persistent WebSocket per plugin process carries JSON command
envelopes both ways. Either side can call the other and await a typed
result; replies are matched to calls by envelope id.
"""

from .config import ReconnectPolicy, TransportConfig
from .connection import ConnectionManager, ConnectionState, FrameSocket
from .correlation import CorrelationTable, PendingCall
from .dispatch import DispatchRouter, Handler
from .endpoint import CommandEndpoint
from .errors import (
    CallError,
    CallTimeoutError,
    ConfigError,
    ConnectionLostError,
    DecodeError,
    EncodeError,
    NotConnectedError,
    RemoteCallError,
    TransportError,
)
from .logging_config import configure_logging
from .plugin import Plugin, create_plugin
from .protocol import (
    RESPONSE_TYPE,
    STARTUP_TYPE,
    CommandEnvelope,
    EnvelopeStatus,
    decode,
    encode,
)
from .transport import PluginTransport

__version__ = "0.1.0"

__all__ = [
    # Protocol
    "RESPONSE_TYPE",
    "STARTUP_TYPE",
    "CommandEnvelope",
    "EnvelopeStatus",
    "decode",
    "encode",
    # Core
    "CorrelationTable",
    "PendingCall",
    "DispatchRouter",
    "Handler",
    "CommandEndpoint",
    "ConnectionManager",
    "ConnectionState",
    "FrameSocket",
    "PluginTransport",
    # Plugin
    "Plugin",
    "create_plugin",
    # Configuration
    "ReconnectPolicy",
    "TransportConfig",
    "configure_logging",
    # Exceptions
    "TransportError",
    "EncodeError",
    "DecodeError",
    "ConfigError",
    "NotConnectedError",
    "ConnectionLostError",
    "CallError",
    "CallTimeoutError",
    "RemoteCallError",
]
