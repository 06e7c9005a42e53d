"""Transport configuration.

The host launches each plugin process with three connection parameters
(`--port`, `--uid`, `--dir`). Everything else has a default matching the
host's expectations: 5 second call timeout and a fixed 5 second reconnect
delay, retried forever.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError

DEFAULT_HOST = "localhost"
DEFAULT_CALL_TIMEOUT = 5.0
DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_PING_INTERVAL = 20.0


@dataclass(frozen=True)
class ReconnectPolicy:
    """Delay between reconnect attempts.

    `attempt` counts consecutive failed connects and resets after every
    successful one. With the defaults the delay is a constant 5 seconds
    and attempts never run out.
    """

    delay: float = DEFAULT_RECONNECT_DELAY
    backoff: float = 1.0
    max_delay: float | None = None
    max_attempts: int | None = None

    def next_delay(self, attempt: int) -> float | None:
        """Seconds to wait before attempt number `attempt`, or None to give up."""
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None
        delay = self.delay * (self.backoff**attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


@dataclass
class TransportConfig:
    """Configuration for one plugin process."""

    # Connection parameters supplied by the host
    port: int
    plugin_id: str
    directory: Path | str

    host: str = DEFAULT_HOST
    call_timeout: float = DEFAULT_CALL_TIMEOUT

    # Reconnection
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    reconnect_backoff: float = 1.0
    max_reconnect_delay: float | None = None
    max_reconnect_attempts: int | None = None

    # Keep-alive pings; None disables them
    ping_interval: float | None = DEFAULT_PING_INTERVAL

    def __post_init__(self) -> None:
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ConfigError(f"Port must be an integer, got {self.port!r}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"Port out of range: {self.port}")
        if not self.plugin_id:
            raise ConfigError("Plugin id is required")
        if not str(self.directory):
            raise ConfigError("Plugin directory is required")
        if self.reconnect_delay < 0:
            raise ConfigError(f"Reconnect delay must not be negative: {self.reconnect_delay}")
        if self.reconnect_backoff < 1.0:
            raise ConfigError(f"Reconnect backoff must be >= 1.0: {self.reconnect_backoff}")
        self.directory = Path(self.directory)

    @property
    def url(self) -> str:
        """WebSocket URL of the host."""
        return f"ws://{self.host}:{self.port}"

    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            delay=self.reconnect_delay,
            backoff=self.reconnect_backoff,
            max_delay=self.max_reconnect_delay,
            max_attempts=self.max_reconnect_attempts,
        )
