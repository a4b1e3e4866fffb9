"""
=============================================================================
CAPTURE SERVER CONFIGURATION
=============================================================================

All tunables for the capture listener live in one dataclass. Values come
from (in order of precedence):

    1. Command-line flags          python -m hellocapture --port 8443
    2. Environment variables       CAPTURE_PORT=8443
    3. Defaults below

The read timeout is the one value that shapes runtime behavior the most:

    ┌──────────────────────────────────────────────────────────────────┐
    │  connect ──► read ──► read ──► ...idle... ──► timeout ──► close  │
    │              ▲        ▲                                          │
    │              └────────┴── deadline re-armed after every read     │
    └──────────────────────────────────────────────────────────────────┘

It is an IDLE timeout, not a total session timeout. It also bounds how
long a graceful shutdown can take, since in-flight reads are never
aborted.

=============================================================================
"""

import os
from dataclasses import dataclass
from typing import Tuple


LOG_FORMATS = ("text", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class CaptureConfig:
    """
    Configuration for the capture listener.

    Development:
        CaptureConfig(host="127.0.0.1", port=0, read_timeout=1.0)

    Production:
        CaptureConfig(host="0.0.0.0", port=443, log_format="json")
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    host: str = "0.0.0.0"
    """Address to bind to. "0.0.0.0" listens on every interface."""

    port: int = 60443
    """Port to listen on. 0 lets the OS pick a free port."""

    backlog: int = 128
    """Maximum number of queued, not yet accepted connections."""

    buffer_size: int = 4096
    """Maximum number of bytes requested by a single read."""

    read_timeout: float = 15.0
    """
    Idle read timeout in seconds.
    Re-armed before every read; a peer that stays silent this long
    is disconnected.
    """

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""

    log_format: str = "text"
    """Capture record format: 'text' for humans, 'json' for aggregators."""

    @property
    def listen_address(self) -> str:
        """The configured endpoint as HOST:PORT."""
        return f"{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> "CaptureConfig":
        """
        Create configuration from environment variables.

            CAPTURE_HOST          Bind address (default: 0.0.0.0)
            CAPTURE_PORT          Listen port (default: 60443)
            CAPTURE_READ_TIMEOUT  Idle read timeout in seconds (default: 15)
            CAPTURE_BUFFER_SIZE   Bytes per read (default: 4096)
            CAPTURE_LOG_LEVEL     Logging level (default: INFO)
            CAPTURE_LOG_FORMAT    text or json (default: text)

        Raises:
            ValueError: If a numeric variable does not parse.
        """
        return cls(
            host=os.getenv("CAPTURE_HOST", "0.0.0.0"),
            port=int(os.getenv("CAPTURE_PORT", "60443")),
            read_timeout=float(os.getenv("CAPTURE_READ_TIMEOUT", "15")),
            buffer_size=int(os.getenv("CAPTURE_BUFFER_SIZE", "4096")),
            log_level=os.getenv("CAPTURE_LOG_LEVEL", "INFO"),
            log_format=os.getenv("CAPTURE_LOG_FORMAT", "text"),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Called once at startup so a bad value fails before the listener
        is bound rather than on the first connection.

        Raises:
            ValueError: If any value is out of range.
        """
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.read_timeout <= 0:
            raise ValueError("read_timeout must be > 0")

        if self.buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(
                f"Invalid log_level: {self.log_level!r}. "
                f"Must be one of {', '.join(LOG_LEVELS)}."
            )

        if self.log_format not in LOG_FORMATS:
            raise ValueError(
                f"Invalid log_format: {self.log_format!r}. "
                f"Must be one of {', '.join(LOG_FORMATS)}."
            )


def parse_listen_address(value: str, default_host: str = "0.0.0.0") -> Tuple[str, int]:
    """
    Split a HOST:PORT string into its parts.

    An empty host (":60443") means every interface. IPv6 hosts may be
    bracketed ("[::1]:60443").

    Raises:
        ValueError: If the port is missing or not a number.
    """
    host, sep, port = value.rpartition(":")
    if not sep:
        raise ValueError(f"Missing port in address: {value!r}")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in address: {value!r}") from None

    return (host or default_host, port_number)

