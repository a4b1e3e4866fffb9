"""
=============================================================================
CAPTURE SERVER
=============================================================================

Ties the listener, the sessions and the shutdown coordinator together.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CAPTURE SERVER ARCHITECTURE                       │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │                       ┌─────────────────┐                           │
    │                       │  CaptureServer  │                           │
    │                       └────────┬────────┘                           │
    │            ┌───────────────────┼───────────────────┐                │
    │            ▼                   ▼                   ▼                │
    │    ┌──────────────┐   ┌─────────────────┐  ┌──────────────┐        │
    │    │ SocketServer │   │    Shutdown     │  │ RecordLogger │        │
    │    │ (accepting)  │   │   Coordinator   │  │ (recording)  │        │
    │    └──────┬───────┘   └────────▲────────┘  └──────▲───────┘        │
    │           │ per connection     │ register/complete │                │
    │           ▼                    │                   │                │
    │    ┌─────────────────────┐     │                   │                │
    │    │  ConnectionSession  │─────┴───────────────────┘                │
    │    │  (thread)           │                                          │
    │    └─────────────────────┘                                          │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Sessions run one thread each, with no pool and no cap. A session spends
nearly all its time blocked in recv(), and the idle timeout bounds how
long it can live.

=============================================================================
"""

import signal
import socket
import logging
import threading
from typing import Optional, Tuple

from .config import CaptureConfig
from .core import SocketServer, ConnectionSession, ShutdownCoordinator
from .recorder import RecordLogger, HandshakeRecordLogger


logger = logging.getLogger(__name__)


class CaptureServer:
    """
    Passive TCP capture listener.

    Example:
        server = CaptureServer(CaptureConfig(port=60443))
        server.run()   # Blocks until SIGINT/SIGTERM, then drains

    Embedded (tests, other apps):
        server = CaptureServer(config, record_logger=my_logger)
        server.start()
        ...
        server.shutdown()
    """

    def __init__(
        self,
        config: Optional[CaptureConfig] = None,
        record_logger: Optional[RecordLogger] = None,
    ):
        self.config = config or CaptureConfig()
        self.record_logger = record_logger or HandshakeRecordLogger(
            log_format=self.config.log_format,
        )

        self._socket_server = SocketServer(self.config)
        self._coordinator = ShutdownCoordinator(self._socket_server)
        self._accept_thread: Optional[threading.Thread] = None
        self._shutdown_requested = threading.Event()
        self._original_handlers: dict = {}

    @property
    def address(self) -> Tuple[str, int]:
        return self._socket_server.address

    @property
    def coordinator(self) -> ShutdownCoordinator:
        return self._coordinator

    @property
    def active_sessions(self) -> int:
        return self._coordinator.live_count

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self):
        """
        Bind the listener and start the accept loop in the background.

        Raises:
            OSError: If the listener cannot be bound.
        """
        self._socket_server.bind()

        self._accept_thread = threading.Thread(
            target=self._socket_server.serve,
            args=(self._handle_connection,),
            name="accept-loop",
            daemon=True,
        )
        self._accept_thread.start()

    def run(self):
        """
        Serve until SIGINT/SIGTERM, then drain and return.

        Must be called from the main thread (signal handlers).

        Raises:
            OSError: If the listener cannot be bound.
        """
        self.start()
        self._setup_signals()
        try:
            self._shutdown_requested.wait()
        finally:
            self._restore_signals()
            self.shutdown()

    def request_shutdown(self):
        """Ask run() to begin the drain. Safe from signal handlers."""
        self._shutdown_requested.set()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting and wait for in-flight sessions.

        Returns:
            True if every session finished, False if timeout expired.
        """
        self._shutdown_requested.set()
        drained = self._coordinator.initiate_shutdown(timeout)
        if self._accept_thread is not None:
            self._accept_thread.join(timeout)
        return drained

    def _setup_signals(self):
        def shutdown_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            logger.info(f"Received {signal_name}, initiating graceful shutdown...")
            self.request_shutdown()

        self._original_handlers[signal.SIGTERM] = signal.signal(signal.SIGTERM, shutdown_handler)
        self._original_handlers[signal.SIGINT] = signal.signal(signal.SIGINT, shutdown_handler)

    def _restore_signals(self):
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    def _handle_connection(self, client_socket: socket.socket, client_address: Tuple):
        """
        Spawn a session thread for an accepted connection.

        Runs on the accept thread. Registration happens here, before the
        thread exists, so a drain that starts now still waits for it.
        """
        registration = self._coordinator.register()
        session = ConnectionSession(
            client_socket,
            client_address,
            record_logger=self.record_logger,
            registration=registration,
            read_timeout=self.config.read_timeout,
            buffer_size=self.config.buffer_size,
        )

        thread = threading.Thread(
            target=session.run,
            name=f"session-{session.peer_address}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            logger.error(f"[{session.peer_address}] Could not start session: {e}")
            session.close()
            registration.complete()
