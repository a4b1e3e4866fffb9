"""
=============================================================================
LISTENING SOCKET AND ACCEPT LOOP
=============================================================================

This module owns the listening socket: it binds it, accepts connections
on it and closes it. It knows nothing about what happens to a connection
after accept(); each one is handed to a callback.

SOCKET LIFECYCLE (Server Side):
────────────────────────────────

    1. socket()    Create a socket file descriptor
    2. bind()      Associate the socket with an IP:PORT
    3. listen()    OS starts queueing incoming connections
    4. accept()    Wait for a connection, get a NEW socket for it
    5. close()     Release the listening socket
                   └─ New connection attempts are refused from here on

=============================================================================
STOPPING A BLOCKED accept()
=============================================================================

The accept loop runs in its own thread and the shutdown path closes the
socket from another thread. Closing a file descriptor does not reliably
wake a thread blocked in accept() on every platform, so we do two things:

    shutdown(SHUT_RDWR)   Wakes a blocked accept() on Linux right away
    settimeout(0.5)       accept() returns at least every half second,
                          at which point the closed flag is checked

Either way, the loop sees an OSError with the closed flag set and returns
normally. That is the designed stop signal, not an error.

=============================================================================
"""

import socket
import time
import logging
import threading
from typing import Callable, Optional, Tuple

from ..config import CaptureConfig


logger = logging.getLogger(__name__)


ConnectionHandler = Callable[[socket.socket, Tuple], None]


class SocketServer:
    """
    Listening socket plus accept loop.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      SocketServer Internals                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │    bind()            Create, configure, bind and listen              │
    │        │             (raises OSError on failure: fatal at startup)   │
    │        ▼                                                             │
    │    serve(handler)    Accept loop (BLOCKS, run it in a thread)        │
    │        │                                                             │
    │        └──► accept()  ──► handler(client_socket, client_address)    │
    │                 │                                                    │
    │                 ├── poll timeout   → loop                            │
    │                 ├── OSError, closed → return                         │
    │                 └── OSError, open  → log, loop                       │
    │                                                                      │
    │    close()           Stop accepting (from any thread)                │
    │    wait_stopped()    Block until serve() has returned                │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    Usage:
        server = SocketServer(config)
        server.bind()
        threading.Thread(target=server.serve, args=(handler,)).start()
        ...
        server.close()
        server.wait_stopped()
    """

    POLL_INTERVAL = 0.5

    # Pause after a failed accept so a persistent error (EMFILE) cannot spin
    ACCEPT_RETRY_DELAY = 0.1

    def __init__(self, config: CaptureConfig):
        self.config = config
        self._socket: Optional[socket.socket] = None

        self._lock = threading.Lock()
        self._closed = False
        self._serving = False

        # Set while no accept loop is running
        self._stopped = threading.Event()
        self._stopped.set()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def address(self) -> Tuple[str, int]:
        """The bound (host, port), or the configured one before bind()."""
        if self._socket is not None and not self._closed:
            name = self._socket.getsockname()
            return (name[0], name[1])
        return (self.config.host, self.config.port)

    def _create_socket(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.config.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)

        # Allow restarting right away while old connections sit in TIME_WAIT
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        sock.settimeout(self.POLL_INTERVAL)
        return sock

    def bind(self):
        """
        Create the listening socket.

        Raises:
            OSError: If the address cannot be bound. The socket is closed
                     before the error propagates.
        """
        sock = self._create_socket()
        try:
            sock.bind((self.config.host, self.config.port))
            sock.listen(self.config.backlog)
        except OSError as e:
            logger.error(f"Failed to start TCP listener on {self.config.listen_address}: {e}")
            sock.close()
            raise

        self._socket = sock
        host, port = self.address
        logger.info(f"TCP listener started on {host}:{port}")

    def serve(self, connection_handler: ConnectionHandler):
        """
        Accept connections until close() is called.

        Args:
            connection_handler: Called with (client_socket, client_address)
                                for each connection. Must not block.
        """
        with self._lock:
            if self._socket is None:
                raise RuntimeError("serve() called before bind()")
            if self._closed:
                return
            self._serving = True
            self._stopped.clear()

        logger.info("Accept loop started. Waiting for connections...")
        try:
            self._accept_loop(connection_handler)
        finally:
            with self._lock:
                self._serving = False
                self._stopped.set()

    def _accept_loop(self, connection_handler: ConnectionHandler):
        while True:
            try:
                client_socket, client_address = self._socket.accept()
            except socket.timeout:
                # Poll interval elapsed; re-check the closed flag
                if self._closed:
                    logger.info("Listener closed, accept loop terminating.")
                    return
                continue
            except OSError as e:
                if self._closed:
                    logger.info("Listener closed, accept loop terminating.")
                    return
                logger.error(f"Error accepting connection: {e}")
                time.sleep(self.ACCEPT_RETRY_DELAY)
                continue

            logger.debug(f"Accepted connection from {client_address[0]}:{client_address[1]}")

            try:
                connection_handler(client_socket, client_address)
            except Exception as e:
                logger.exception(f"Connection handler error: {e}")
                client_socket.close()

    def close(self):
        """
        Close the listening socket.

        Safe to call from any thread and more than once.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sock = self._socket
            if not self._serving:
                self._stopped.set()

        if sock is None:
            return

        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Not supported on a listening socket everywhere
        try:
            sock.close()
        except OSError as e:
            logger.error(f"Error closing listener: {e}")

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the accept loop to return.

        Returns:
            True if no accept loop is running, False if timeout expired.
        """
        return self._stopped.wait(timeout)
